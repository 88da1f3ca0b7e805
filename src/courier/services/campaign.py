"""Campaign lifecycle and throttled fan-out.

A campaign is created by
:meth:`~courier.services.notification.NotificationService.enqueue_campaign`
together with one pending notification per recipient.  This module
takes it from there:

* :class:`CampaignService` starts, cancels, lists and summarises
  campaigns, and moves pending notifications of running campaigns onto
  the dispatch queue.
* :class:`CampaignEnqueuer` is the daemon thread that calls
  :meth:`CampaignService.enqueue_due` at ``enqueue_rate_per_second``.

Summary counts are always recomputed from the notifications; nothing
intercepts individual transitions to maintain them.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from courier.core.errors import (
    DuplicateActiveEntry,
    InvalidTransition,
    NotCancelable,
    NotFound,
)
from courier.core.types import CampaignStatus, NotificationStatus
from courier.services.leader import CAMPAIGN_LOCK_ID, AdvisoryLeader
from courier.store.base import NotificationFilter

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from uuid import UUID

    from pypgkit import Database

    from courier.config.settings import CampaignSettings
    from courier.metrics.collector import MetricsCollector
    from courier.models import Campaign
    from courier.store.base import DeliveryStore

log = logging.getLogger(__name__)

_S = NotificationStatus
_ACTIVE = (_S.PENDING, _S.QUEUED, _S.PROCESSING, _S.FAILED)
_SENT = (_S.SENT, _S.DELIVERED, _S.READ)
_DELIVERED = (_S.DELIVERED, _S.READ)
_CANCEL_PAGE = 500
_MAX_BACKOFF_SECONDS = 300


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _related(campaign_id: UUID) -> NotificationFilter:
    return NotificationFilter(related_entity="campaign", related_id=str(campaign_id))


class CampaignService:
    """Campaign operations over the delivery store."""

    def __init__(
        self,
        store: DeliveryStore,
        settings: CampaignSettings,
        *,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._metrics = metrics
        self._clock = clock

    def get(self, campaign_id: UUID) -> Campaign:
        campaign = self._store.get_campaign(campaign_id)
        if campaign is None:
            msg = f"Campaign {campaign_id} not found"
            raise NotFound(msg)
        return campaign

    def list(
        self,
        *,
        statuses: Sequence[CampaignStatus] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Campaign]:
        return self._store.list_campaigns(statuses=statuses, limit=limit, offset=offset)

    def start(self, campaign_id: UUID) -> Campaign:
        """draft -> scheduled; fan-out begins once ``scheduled_at`` is due."""
        campaign = self.get(campaign_id)
        if campaign.status != CampaignStatus.DRAFT:
            msg = f"Campaign {campaign_id} is {campaign.status.value}; only drafts can be started"
            raise InvalidTransition(msg)
        now = self._clock()
        updated = self._store.update_campaign(
            campaign_id,
            {
                "status": CampaignStatus.SCHEDULED,
                "scheduled_at": campaign.scheduled_at or now,
                "updated_at": now,
            },
            expected_status=CampaignStatus.DRAFT,
        )
        if updated is None:
            msg = f"Campaign {campaign_id} changed concurrently"
            raise InvalidTransition(msg)
        log.info("Campaign %s scheduled for %s", campaign_id, updated.scheduled_at)
        return updated

    def cancel(self, campaign_id: UUID) -> Campaign:
        """Cancel the campaign and its pending/queued notifications.

        Notifications already processing or sent are left alone.
        """
        campaign = self.get(campaign_id)
        if campaign.status in (CampaignStatus.COMPLETED, CampaignStatus.CANCELLED):
            msg = f"Campaign {campaign_id} is already {campaign.status.value}"
            raise InvalidTransition(msg)
        now = self._clock()
        updated = self._store.update_campaign(
            campaign_id,
            {"status": CampaignStatus.CANCELLED, "completed_at": now, "updated_at": now},
            expected_status=campaign.status,
        )
        if updated is None:
            msg = f"Campaign {campaign_id} changed concurrently"
            raise InvalidTransition(msg)

        cancelled = 0
        for status in (_S.PENDING, _S.QUEUED):
            cancelled += self._cancel_notifications(campaign_id, status)
        log.info("Campaign %s cancelled (%d notifications cancelled)", campaign_id, cancelled)
        return self.summarize(updated)

    def _cancel_notifications(self, campaign_id: UUID, status: NotificationStatus) -> int:
        base = _related(campaign_id)
        filters = NotificationFilter(
            related_entity=base.related_entity,
            related_id=base.related_id,
            status=status,
        )
        cancelled = 0
        while True:
            page = self._store.list_notifications(filters, limit=_CANCEL_PAGE)
            progressed = False
            for n in page:
                try:
                    self._store.cancel(n.id, now=self._clock())
                except (NotCancelable, NotFound):
                    continue
                cancelled += 1
                progressed = True
            if len(page) < _CANCEL_PAGE or not progressed:
                return cancelled

    # -- fan-out ----------------------------------------------------------------

    def activate_due(self) -> list[Campaign]:
        """Move scheduled campaigns whose time has come to running."""
        now = self._clock()
        started = []
        for campaign in self._store.list_campaigns(statuses=[CampaignStatus.SCHEDULED], limit=100):
            if campaign.scheduled_at is not None and campaign.scheduled_at > now:
                continue
            updated = self._store.update_campaign(
                campaign.id,
                {"status": CampaignStatus.RUNNING, "started_at": now, "updated_at": now},
                expected_status=CampaignStatus.SCHEDULED,
            )
            if updated is not None:
                log.info("Campaign %s (%s) is running", updated.id, updated.name)
                started.append(updated)
        return started

    def enqueue_due(self, limit: int | None = None) -> int:
        """Queue up to *limit* pending notifications of running campaigns.

        Returns the number of notifications moved to the queue.
        """
        budget = self._settings.enqueue_batch_size if limit is None else limit
        self.activate_due()
        enqueued = 0
        running = self._store.list_campaigns(statuses=[CampaignStatus.RUNNING], limit=100)
        for campaign in running:
            if enqueued >= budget:
                break
            ids = self._store.pending_notification_ids(
                "campaign",
                str(campaign.id),
                limit=budget - enqueued,
            )
            for notification_id in ids:
                now = self._clock()
                try:
                    self._store.enqueue(notification_id, scheduled_at=now, now=now)
                except (InvalidTransition, DuplicateActiveEntry, NotFound):
                    # cancelled or enqueued by another process meanwhile
                    continue
                enqueued += 1
                if self._metrics:
                    self._metrics.increment(
                        "courier_notifications_enqueued_total",
                        labels={"channel": campaign.channel.value},
                    )
        if enqueued:
            log.debug("Campaign enqueuer queued %d notifications", enqueued)
        return enqueued

    # -- summaries --------------------------------------------------------------

    def summarize(self, campaign: Campaign) -> Campaign:
        """Recompute counts and complete the campaign when nothing is left.

        A running campaign completes once none of its notifications is
        pending, queued, processing or failed.
        """
        counts: dict[str, int] = {}
        for (_, status), n in self._store.count_notifications(_related(campaign.id)).items():
            counts[status] = counts.get(status, 0) + n

        changes: dict = {
            "sent_count": sum(counts.get(s.value, 0) for s in _SENT),
            "delivered_count": sum(counts.get(s.value, 0) for s in _DELIVERED),
            "failed_count": counts.get(_S.FAILED_FINAL.value, 0),
        }
        active = sum(counts.get(s.value, 0) for s in _ACTIVE)
        completing = campaign.status == CampaignStatus.RUNNING and active == 0
        if completing:
            now = self._clock()
            changes.update(status=CampaignStatus.COMPLETED, completed_at=now, updated_at=now)

        unchanged = all(getattr(campaign, k) == v for k, v in changes.items())
        if unchanged:
            return campaign
        updated = self._store.update_campaign(
            campaign.id,
            changes,
            expected_status=campaign.status,
        )
        if updated is None:
            # status moved concurrently; the next pass recomputes
            return self._store.get_campaign(campaign.id) or campaign
        if completing:
            log.info(
                "Campaign %s completed: %d sent, %d delivered, %d failed",
                campaign.id,
                updated.sent_count,
                updated.delivered_count,
                updated.failed_count,
            )
        return updated

    def summarize_active(self) -> int:
        """Summarise every running campaign; returns how many completed."""
        completed = 0
        for campaign in self._store.list_campaigns(statuses=[CampaignStatus.RUNNING], limit=500):
            if self.summarize(campaign).status == CampaignStatus.COMPLETED:
                completed += 1
        return completed


class CampaignEnqueuer:
    """Daemon thread that feeds running campaigns into the dispatch queue.

    Each cycle queues at most ``enqueue_batch_size`` notifications and
    then sleeps long enough to keep the overall rate at or below
    ``enqueue_rate_per_second``.  When a database is provided, an
    advisory lock makes one process the enqueuer per cycle.
    """

    def __init__(
        self,
        service: CampaignService,
        settings: CampaignSettings,
        *,
        db: Database | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._service = service
        self._settings = settings
        self._leader = AdvisoryLeader(db, CAMPAIGN_LOCK_ID)
        self._metrics = metrics
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._consecutive_failures = 0

    def start(self) -> None:
        """Start the background enqueuer thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="campaign-enqueuer",
            daemon=True,
        )
        self._thread.start()
        log.info(
            "Campaign enqueuer started (rate=%.1f/s, batch=%d)",
            self._settings.enqueue_rate_per_second,
            self._settings.enqueue_batch_size,
        )

    def stop(self) -> None:
        """Signal the enqueuer to stop and wait for it."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self._settings.poll_interval_seconds + 5)
            log.info("Campaign enqueuer stopped")

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        """One cycle: returns the number of notifications queued."""
        with self._leader.lead() as leader:
            if not leader:
                return 0
            return self._service.enqueue_due(self._settings.enqueue_batch_size)

    def _run(self) -> None:
        poll = self._settings.poll_interval_seconds
        while not self._stop_event.is_set():
            try:
                enqueued = self.run_once()
                self._consecutive_failures = 0
            except Exception:
                self._consecutive_failures += 1
                log.exception(
                    "Campaign enqueuer error (consecutive failures: %d)",
                    self._consecutive_failures,
                )
                if self._metrics:
                    self._metrics.increment("courier_worker_errors_total")
                self._stop_event.wait(
                    timeout=min(poll * (2**self._consecutive_failures), _MAX_BACKOFF_SECONDS),
                )
                continue
            if enqueued:
                self._stop_event.wait(timeout=enqueued / self._settings.enqueue_rate_per_second)
            else:
                self._stop_event.wait(timeout=poll)

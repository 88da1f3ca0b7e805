"""Process-local delivery store.

Used for development (``store.backend: memory``), single-process
deployments that can afford to lose state on restart, and tests.

All records live in plain dicts of frozen dataclasses.  A single
:class:`threading.Lock` serialises every public method, which gives
the same atomicity as a PostgreSQL transaction: a claim, the
one-active-entry check, and a failure plus its retry decision are
each observed by other threads as one step.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import Counter
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from courier.core.errors import ClaimConflict, DuplicateActiveEntry, InvalidTransition, NotFound
from courier.core.state import apply_transition, log_transition
from courier.core.types import ClaimStatus, NotificationStatus
from courier.models import QueueEntry
from courier.store.base import (
    Claimed,
    DeliveryStore,
    NotificationFilter,
    plan_cancel,
    plan_failure,
    plan_manual_retry,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from datetime import datetime
    from decimal import Decimal
    from uuid import UUID

    from courier.core.retry import RetryDecision
    from courier.core.state import Transition
    from courier.core.types import CampaignStatus, Channel
    from courier.models import Campaign, Notification, Template

log = logging.getLogger(__name__)


def _matches(n: Notification, f: NotificationFilter) -> bool:
    if f.channel is not None and n.channel != f.channel:
        return False
    if f.status is not None and n.status != f.status:
        return False
    if f.related_entity is not None and n.related_entity != f.related_entity:
        return False
    if f.related_id is not None and n.related_id != f.related_id:
        return False
    if f.created_from is not None and n.created_at < f.created_from:
        return False
    return not (f.created_to is not None and n.created_at > f.created_to)


class InMemoryStore(DeliveryStore):
    """Thread-safe in-memory implementation of :class:`DeliveryStore`."""

    backend = "memory"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._notifications: dict[UUID, Notification] = {}
        self._entries: dict[UUID, QueueEntry] = {}
        self._active: dict[UUID, UUID] = {}  # notification_id -> active entry id
        self._templates: dict[UUID, Template] = {}
        self._campaigns: dict[UUID, Campaign] = {}

    # -- internal helpers (caller holds the lock) ----------------------------

    def _require(self, notification_id: UUID) -> Notification:
        n = self._notifications.get(notification_id)
        if n is None:
            msg = f"Notification {notification_id} not found"
            raise NotFound(msg)
        return n

    def _apply(self, n: Notification, t: Transition) -> Notification:
        if t.is_noop:
            return n
        updated = replace(n, **t.changes)
        self._notifications[n.id] = updated
        log_transition("notification", n.id, t.from_status, t.to_status, reason=t.reason)
        return updated

    def _new_entry(self, n: Notification, scheduled_at: datetime, now: datetime) -> QueueEntry:
        if n.id in self._active:
            msg = f"Notification {n.id} already has active queue entry {self._active[n.id]}"
            raise DuplicateActiveEntry(msg)
        entry = QueueEntry(
            id=uuid.uuid4(),
            notification_id=n.id,
            priority=n.priority,
            scheduled_at=scheduled_at,
            created_at=now,
        )
        self._entries[entry.id] = entry
        self._active[n.id] = entry.id
        return entry

    def _set_entry(self, entry: QueueEntry, **changes: Any) -> QueueEntry:
        updated = replace(entry, **changes)
        self._entries[entry.id] = updated
        if updated.is_active:
            self._active[updated.notification_id] = updated.id
        elif self._active.get(updated.notification_id) == updated.id:
            del self._active[updated.notification_id]
        return updated

    def _held(self, entry_id: UUID, worker_id: str) -> tuple[QueueEntry, Notification]:
        entry = self._entries.get(entry_id)
        if (
            entry is None
            or entry.claim_status != ClaimStatus.PROCESSING
            or entry.claimed_by != worker_id
        ):
            msg = f"Queue entry {entry_id} is not held by {worker_id}"
            raise ClaimConflict(msg)
        return entry, self._require(entry.notification_id)

    def _claim_locked(self, entry: QueueEntry, worker_id: str, now: datetime) -> Claimed | None:
        n = self._require(entry.notification_id)
        if n.status != NotificationStatus.QUEUED:
            log.warning(
                "Queue entry %s points at notification %s in status %s; abandoning entry",
                entry.id,
                n.id,
                n.status.value,
            )
            self._set_entry(entry, claim_status=ClaimStatus.ABANDONED, completed_at=now)
            return None
        t = apply_transition(
            n,
            NotificationStatus.PROCESSING,
            now=now,
            reason=f"claimed by {worker_id}",
        )
        entry = self._set_entry(
            entry,
            claim_status=ClaimStatus.PROCESSING,
            claimed_by=worker_id,
            claimed_at=now,
        )
        return Claimed(entry, self._apply(n, t))

    # -- notifications ------------------------------------------------------

    def add_notifications(
        self,
        notifications: Sequence[Notification],
        *,
        enqueue_at: datetime | None,
        now: datetime,
    ) -> list[Notification]:
        stored: list[Notification] = []
        with self._lock:
            for n in notifications:
                if n.id in self._notifications:
                    msg = f"Notification {n.id} already exists"
                    raise ValueError(msg)
            for n in notifications:
                self._notifications[n.id] = n
                if enqueue_at is not None:
                    t = apply_transition(
                        n, NotificationStatus.QUEUED, now=now, next_attempt_at=enqueue_at
                    )
                    n = self._apply(n, t)  # noqa: PLW2901
                    self._new_entry(n, enqueue_at, now)
                stored.append(n)
        return stored

    def get_notification(self, notification_id: UUID) -> Notification | None:
        with self._lock:
            return self._notifications.get(notification_id)

    def find_by_provider_message_id(
        self,
        provider_message_id: str,
        provider_name: str | None = None,
    ) -> Notification | None:
        with self._lock:
            fallback = None
            for n in self._notifications.values():
                if n.provider_message_id != provider_message_id:
                    continue
                if provider_name is None or n.provider_name == provider_name:
                    return n
                fallback = fallback or n
            return fallback

    def list_notifications(
        self,
        filters: NotificationFilter | None = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Notification]:
        f = filters or NotificationFilter()
        with self._lock:
            rows = [n for n in self._notifications.values() if _matches(n, f)]
        rows.sort(key=lambda n: n.created_at, reverse=True)
        return rows[offset : offset + limit]

    def count_notifications(
        self,
        filters: NotificationFilter | None = None,
    ) -> dict[tuple[str, str], int]:
        f = filters or NotificationFilter()
        with self._lock:
            counts = Counter(
                (n.channel.value, n.status.value)
                for n in self._notifications.values()
                if _matches(n, f)
            )
        return dict(counts)

    def pending_notification_ids(
        self,
        related_entity: str,
        related_id: str,
        *,
        limit: int,
    ) -> list[UUID]:
        with self._lock:
            rows = [
                n
                for n in self._notifications.values()
                if n.status == NotificationStatus.PENDING
                and n.related_entity == related_entity
                and n.related_id == related_id
            ]
        rows.sort(key=lambda n: n.created_at)
        return [n.id for n in rows[:limit]]

    def transition(self, notification_id: UUID, transition: Transition) -> Notification | None:
        with self._lock:
            n = self._notifications.get(notification_id)
            if n is None or n.status != transition.from_status:
                return None
            return self._apply(n, transition)

    def enqueue(
        self,
        notification_id: UUID,
        *,
        scheduled_at: datetime,
        now: datetime,
    ) -> QueueEntry:
        with self._lock:
            n = self._require(notification_id)
            if notification_id in self._active:
                msg = f"Notification {notification_id} already has an active queue entry"
                raise DuplicateActiveEntry(msg)
            if n.status != NotificationStatus.PENDING:
                msg = f"Only pending notifications can be enqueued; {n.id} is {n.status.value}"
                raise InvalidTransition(msg)
            t = apply_transition(n, NotificationStatus.QUEUED, now=now, next_attempt_at=scheduled_at)
            n = self._apply(n, t)
            return self._new_entry(n, scheduled_at, now)

    def cancel(self, notification_id: UUID, *, now: datetime) -> Notification:
        with self._lock:
            n = self._require(notification_id)
            if n.status == NotificationStatus.PROCESSING and not n.cancel_requested:
                self._notifications[n.id] = replace(n, cancel_requested=True, updated_at=now)
                log.info("Cancel requested for in-flight notification %s", n.id)
            t = plan_cancel(n, now=now)
            entry_id = self._active.get(n.id)
            if entry_id is not None:
                self._set_entry(
                    self._entries[entry_id],
                    claim_status=ClaimStatus.ABANDONED,
                    completed_at=now,
                )
            return self._apply(n, t)

    def retry(self, notification_id: UUID, *, now: datetime) -> Notification:
        with self._lock:
            n = self._require(notification_id)
            t = plan_manual_retry(n, now=now)
            if n.id in self._active:
                msg = f"Notification {n.id} already has an active queue entry"
                raise DuplicateActiveEntry(msg)
            n = self._apply(n, t)
            self._new_entry(n, now, now)
            return n

    # -- dispatch queue -----------------------------------------------------

    def claim_batch(self, worker_id: str, *, limit: int, now: datetime) -> list[Claimed]:
        with self._lock:
            due = [
                e
                for e in self._entries.values()
                if e.claim_status == ClaimStatus.QUEUED and e.scheduled_at <= now
            ]
            due.sort(key=lambda e: (e.priority, e.scheduled_at, e.created_at))
            claimed = (self._claim_locked(e, worker_id, now) for e in due[:limit])
            return [c for c in claimed if c is not None]

    def claim(self, entry_id: UUID, worker_id: str, *, now: datetime) -> Claimed:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or entry.claim_status != ClaimStatus.QUEUED:
                msg = f"Queue entry {entry_id} is not claimable"
                raise ClaimConflict(msg)
            claimed = self._claim_locked(entry, worker_id, now)
        if claimed is None:
            msg = f"Queue entry {entry_id} was abandoned"
            raise ClaimConflict(msg)
        return claimed

    def renew_claim(self, entry_id: UUID, worker_id: str, *, now: datetime) -> QueueEntry:
        with self._lock:
            entry, _ = self._held(entry_id, worker_id)
            return self._set_entry(entry, claimed_at=now)

    def complete_sent(
        self,
        entry_id: UUID,
        worker_id: str,
        *,
        provider_name: str,
        provider_message_id: str,
        cost_usd: Decimal,
        subject: str | None,
        body: str,
        now: datetime,
    ) -> Notification:
        with self._lock:
            entry, n = self._held(entry_id, worker_id)
            t = apply_transition(
                n,
                NotificationStatus.SENT,
                now=now,
                provider_name=provider_name,
                provider_message_id=provider_message_id,
                cost_usd=cost_usd,
                subject=subject,
                body=body,
                error=None,
            )
            self._set_entry(entry, claim_status=ClaimStatus.DONE, completed_at=now)
            return self._apply(n, t)

    def complete_failed(
        self,
        entry_id: UUID,
        worker_id: str,
        *,
        error: str,
        decide: Callable[[Notification], RetryDecision],
        now: datetime,
    ) -> tuple[Notification, RetryDecision]:
        with self._lock:
            entry, n = self._held(entry_id, worker_id)
            changes, decision, steps = plan_failure(n, error=error, decide=decide, now=now)
            self._set_entry(entry, claim_status=ClaimStatus.DONE, completed_at=now)
            updated = replace(n, **changes)
            self._notifications[n.id] = updated
            for step in steps:
                log_transition(
                    "notification", n.id, step.from_status, step.to_status, reason=step.reason
                )
            if decision.retry:
                self._new_entry(updated, decision.next_attempt_at, now)
            return updated, decision

    def defer(
        self,
        entry_id: UUID,
        worker_id: str,
        *,
        scheduled_at: datetime,
        now: datetime,
    ) -> Notification:
        with self._lock:
            entry, n = self._held(entry_id, worker_id)
            t = apply_transition(
                n,
                NotificationStatus.QUEUED,
                now=now,
                reason="rate limited",
                next_attempt_at=scheduled_at,
            )
            self._set_entry(
                entry,
                claim_status=ClaimStatus.QUEUED,
                claimed_by=None,
                claimed_at=None,
                scheduled_at=scheduled_at,
            )
            return self._apply(n, t)

    def reclaim_stale(self, *, claimed_before: datetime, now: datetime) -> int:
        reclaimed = 0
        with self._lock:
            stale = [
                e
                for e in self._entries.values()
                if e.claim_status == ClaimStatus.PROCESSING
                and e.claimed_at is not None
                and e.claimed_at < claimed_before
            ]
            for entry in stale:
                n = self._require(entry.notification_id)
                self._set_entry(
                    entry,
                    claim_status=ClaimStatus.QUEUED,
                    claimed_by=None,
                    claimed_at=None,
                    scheduled_at=now,
                )
                if n.status == NotificationStatus.PROCESSING:
                    t = apply_transition(
                        n,
                        NotificationStatus.QUEUED,
                        now=now,
                        reason=f"stuck claim of {entry.claimed_by} reclaimed",
                        next_attempt_at=now,
                    )
                    self._apply(n, t)
                reclaimed += 1
        return reclaimed

    def queue_entries(self, notification_id: UUID) -> list[QueueEntry]:
        with self._lock:
            rows = [e for e in self._entries.values() if e.notification_id == notification_id]
        rows.sort(key=lambda e: e.created_at)
        return rows

    def queue_depth(self, *, now: datetime) -> dict[str, int]:
        depth = {"due": 0, "scheduled": 0, "processing": 0}
        with self._lock:
            for e in self._entries.values():
                if e.claim_status == ClaimStatus.PROCESSING:
                    depth["processing"] += 1
                elif e.claim_status == ClaimStatus.QUEUED:
                    depth["due" if e.scheduled_at <= now else "scheduled"] += 1
        return depth

    # -- templates ----------------------------------------------------------

    def add_template(self, template: Template) -> Template:
        with self._lock:
            self._templates[template.id] = template
        return template

    def get_template(self, template_id: UUID) -> Template | None:
        with self._lock:
            return self._templates.get(template_id)

    def list_templates(
        self,
        *,
        channel: Channel | None = None,
        include_inactive: bool = False,
    ) -> list[Template]:
        with self._lock:
            rows = [
                t
                for t in self._templates.values()
                if (channel is None or t.channel == channel)
                and (include_inactive or t.is_active)
            ]
        rows.sort(key=lambda t: (t.name, t.channel.value))
        return rows

    def update_template(
        self,
        template_id: UUID,
        changes: dict[str, Any],
        *,
        now: datetime,
    ) -> Template:
        with self._lock:
            current = self._templates.get(template_id)
            if current is None:
                msg = f"Template {template_id} not found"
                raise NotFound(msg)
            updated = replace(current, **changes, updated_at=now)
            self._templates[template_id] = updated
            return updated

    # -- campaigns ----------------------------------------------------------

    def add_campaign(self, campaign: Campaign) -> Campaign:
        with self._lock:
            self._campaigns[campaign.id] = campaign
        return campaign

    def get_campaign(self, campaign_id: UUID) -> Campaign | None:
        with self._lock:
            return self._campaigns.get(campaign_id)

    def list_campaigns(
        self,
        *,
        statuses: Sequence[CampaignStatus] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Campaign]:
        with self._lock:
            rows = [
                c for c in self._campaigns.values() if statuses is None or c.status in statuses
            ]
        rows.sort(key=lambda c: c.created_at, reverse=True)
        return rows[offset : offset + limit]

    def update_campaign(
        self,
        campaign_id: UUID,
        changes: dict[str, Any],
        *,
        expected_status: CampaignStatus | None = None,
    ) -> Campaign | None:
        with self._lock:
            current = self._campaigns.get(campaign_id)
            if current is None:
                return None
            if expected_status is not None and current.status != expected_status:
                return None
            updated = replace(current, **changes)
            self._campaigns[campaign_id] = updated
            return updated

    # -- health -------------------------------------------------------------

    def ping(self) -> bool:
        return True


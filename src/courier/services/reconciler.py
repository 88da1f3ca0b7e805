"""Webhook reconciler: applies provider callbacks to notifications.

Events are applied monotonically (``sent < delivered < read`` and
``sent < failed_final``) through the same transition function the
workers use, with a compare-and-set on the current status.  Replays,
stale events and events that lose a race are ignored, never errors.

A callback can arrive before the worker has committed ``sent`` (the
provider answered faster than our transaction), so the lookup by
provider message id is retried with exponential backoff before the
event is declared an orphan.  The events of one callback request share
a single wait budget (``max_lookup_wait_seconds``) so that a batch of
orphans cannot hold the request past the server timeout.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from courier.core.errors import InvalidTransition, ReconciliationOrphan
from courier.core.state import apply_transition, webhook_target
from courier.core.types import NotificationStatus, ReconcileOutcome

if TYPE_CHECKING:
    from collections.abc import Callable

    from courier.config.settings import WebhookSettings
    from courier.metrics.collector import MetricsCollector
    from courier.models import Notification, WebhookEvent
    from courier.store.base import DeliveryStore

log = logging.getLogger(__name__)

_MAX_CAS_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(UTC)


class WebhookReconciler:
    """Apply normalised :class:`WebhookEvent` objects.

    Parameters
    ----------
    store:
        Notification store.
    settings:
        ``lookup_attempts``, ``lookup_backoff_seconds`` and
        ``max_lookup_wait_seconds`` are read.
    metrics:
        Optional metrics collector.
    sleep, clock, monotonic:
        Injectable for tests.

    """

    def __init__(
        self,
        store: DeliveryStore,
        settings: WebhookSettings,
        *,
        metrics: MetricsCollector | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._attempts = max(settings.lookup_attempts, 1)
        self._backoff = settings.lookup_backoff_seconds
        self._max_wait = settings.max_lookup_wait_seconds
        self._metrics = metrics
        self._sleep = sleep
        self._clock = clock
        self._monotonic = monotonic

    def reconcile_all(self, events: list[WebhookEvent]) -> list[ReconcileOutcome]:
        """Apply the events of one callback request under a shared wait budget."""
        deadline = self._monotonic() + self._max_wait
        return [self.reconcile(event, deadline=deadline) for event in events]

    def reconcile(
        self,
        event: WebhookEvent,
        *,
        deadline: float | None = None,
    ) -> ReconcileOutcome:
        """Apply *event*; never raises for orphans or stale events.

        *deadline* is a ``monotonic`` instant after which the lookup
        stops backing off and settles for the lookups already made.
        """
        notification, lookups = self._lookup(event, deadline)
        if notification is None:
            orphan = ReconciliationOrphan(
                f"No notification for {event.provider_name} message "
                f"{event.provider_message_id} ({event.event_type.value})"
            )
            log.warning(
                "%s after %d lookups",
                orphan,
                lookups,
                extra={
                    "provider": event.provider_name,
                    "provider_message_id": event.provider_message_id,
                },
            )
            if self._metrics:
                self._metrics.increment(
                    "courier_webhook_orphans_total",
                    labels={"provider": event.provider_name},
                )
            return self._count(event, ReconcileOutcome.ORPHAN)

        for _ in range(_MAX_CAS_ATTEMPTS):
            outcome = self._apply(notification, event)
            if outcome is not None:
                return self._count(event, outcome)
            # lost the compare-and-set; re-read and decide again
            notification = self._store.get_notification(notification.id)
            if notification is None:
                return self._count(event, ReconcileOutcome.ORPHAN)

        log.warning(
            "Gave up applying %s to %s after %d conflicting updates",
            event.event_type.value,
            notification.id,
            _MAX_CAS_ATTEMPTS,
        )
        return self._count(event, ReconcileOutcome.IGNORED)

    def _lookup(
        self,
        event: WebhookEvent,
        deadline: float | None,
    ) -> tuple[Notification | None, int]:
        lookups = 0
        for attempt in range(self._attempts):
            found = self._store.find_by_provider_message_id(
                event.provider_message_id,
                event.provider_name,
            )
            lookups += 1
            if found is not None:
                return found, lookups
            if attempt == self._attempts - 1:
                break
            delay = self._backoff * (2**attempt)
            if deadline is not None:
                delay = min(delay, deadline - self._monotonic())
                if delay <= 0:
                    break
            self._sleep(delay)
        return None, lookups

    def _apply(self, notification: Notification, event: WebhookEvent) -> ReconcileOutcome | None:
        """Return the outcome, or ``None`` when the CAS lost a race."""
        target = webhook_target(notification.status, event.event_type)
        if target is None:
            log.debug(
                "Ignoring %s for %s in status %s",
                event.event_type.value,
                notification.id,
                notification.status.value,
            )
            return ReconcileOutcome.IGNORED

        fields = {}
        if target == NotificationStatus.FAILED_FINAL:
            fields["error"] = event.error or f"{event.provider_name}: {event.event_type.value}"
        try:
            transition = apply_transition(
                notification,
                target,
                now=self._clock(),
                at=event.timestamp,
                reason=f"webhook {event.provider_name} {event.event_type.value}",
                **fields,
            )
        except InvalidTransition:
            log.exception("Webhook produced an invalid transition for %s", notification.id)
            return ReconcileOutcome.IGNORED

        if self._store.transition(notification.id, transition) is None:
            return None
        return ReconcileOutcome.APPLIED

    def _count(self, event: WebhookEvent, outcome: ReconcileOutcome) -> ReconcileOutcome:
        if self._metrics:
            self._metrics.increment(
                "courier_webhook_events_total",
                labels={
                    "provider": event.provider_name,
                    "event": event.event_type.value,
                    "outcome": outcome.value,
                },
            )
        return outcome

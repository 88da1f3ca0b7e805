"""Abstract delivery store: the Notification Store and Dispatch Queue.

Both backends (:mod:`courier.store.postgres` and
:mod:`courier.store.memory`) implement this contract.  Every method
that changes more than one record does so atomically, and every status
change is computed by :func:`courier.core.state.apply_transition` so
that the two backends cannot drift apart semantically.

The plan functions at the bottom of this module are the pieces of
transition logic shared by both backends.  They are pure: they take
the committed state and return the column changes to persist.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, NamedTuple

from courier.core.errors import InvalidTransition, NotCancelable
from courier.core.state import CANCELABLE_STATUSES, apply_transition
from courier.core.types import NotificationStatus

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from datetime import datetime
    from decimal import Decimal
    from uuid import UUID

    from courier.core.retry import RetryDecision
    from courier.core.state import Transition
    from courier.core.types import CampaignStatus, Channel
    from courier.models import Campaign, Notification, QueueEntry, Template


class Claimed(NamedTuple):
    """A queue entry held by a worker, with its notification."""

    entry: QueueEntry
    notification: Notification


@dataclass(frozen=True)
class NotificationFilter:
    """Optional equality / range filters for listing notifications."""

    channel: Channel | None = None
    status: NotificationStatus | None = None
    related_entity: str | None = None
    related_id: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None


class DeliveryStore(abc.ABC):
    """Durable notification records plus the claimable dispatch queue."""

    backend: str = "abstract"

    # -- notifications ------------------------------------------------------

    @abc.abstractmethod
    def add_notifications(
        self,
        notifications: Sequence[Notification],
        *,
        enqueue_at: datetime | None,
        now: datetime,
    ) -> list[Notification]:
        """Insert *notifications* (status pending) in one transaction.

        When *enqueue_at* is given each one is also moved to ``queued``
        with a queue entry scheduled at that time.  Returns the stored
        notifications in input order.
        """

    @abc.abstractmethod
    def get_notification(self, notification_id: UUID) -> Notification | None: ...

    @abc.abstractmethod
    def find_by_provider_message_id(
        self,
        provider_message_id: str,
        provider_name: str | None = None,
    ) -> Notification | None:
        """Correlate a provider callback with its notification.

        Prefers the ``(provider_name, provider_message_id)`` pair and
        falls back to the message id alone.
        """

    @abc.abstractmethod
    def list_notifications(
        self,
        filters: NotificationFilter | None = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Notification]:
        """Newest first."""

    @abc.abstractmethod
    def count_notifications(
        self,
        filters: NotificationFilter | None = None,
    ) -> dict[tuple[str, str], int]:
        """Return ``{(channel, status): count}`` for matching notifications."""

    @abc.abstractmethod
    def pending_notification_ids(
        self,
        related_entity: str,
        related_id: str,
        *,
        limit: int,
    ) -> list[UUID]:
        """Oldest pending notifications related to one business object."""

    @abc.abstractmethod
    def transition(self, notification_id: UUID, transition: Transition) -> Notification | None:
        """Persist *transition* with a compare-and-set on ``from_status``.

        Returns the updated notification, or ``None`` when the stored
        status no longer equals ``transition.from_status``.
        """

    @abc.abstractmethod
    def enqueue(
        self,
        notification_id: UUID,
        *,
        scheduled_at: datetime,
        now: datetime,
    ) -> QueueEntry:
        """Move a pending notification to queued and create its entry.

        Raises
        ------
        NotFound
            Unknown notification.
        InvalidTransition
            The notification is not pending.
        DuplicateActiveEntry
            An active entry already exists.

        """

    @abc.abstractmethod
    def cancel(self, notification_id: UUID, *, now: datetime) -> Notification:
        """Cancel a pending/queued notification and abandon its entry.

        A processing notification gets ``cancel_requested`` set (so the
        in-flight send is never retried) and :class:`NotCancelable` is
        raised, as it is for every other status.
        """

    @abc.abstractmethod
    def retry(self, notification_id: UUID, *, now: datetime) -> Notification:
        """Administrative retry: failed_final -> queued with a new entry."""

    # -- dispatch queue -----------------------------------------------------

    @abc.abstractmethod
    def claim_batch(self, worker_id: str, *, limit: int, now: datetime) -> list[Claimed]:
        """Claim up to *limit* due entries for *worker_id*.

        Entries are chosen by ``priority ASC, scheduled_at ASC`` among
        ``claim_status = queued AND scheduled_at <= now``.  Entries
        claimed by a concurrent caller are skipped, never returned twice.
        """

    @abc.abstractmethod
    def claim(self, entry_id: UUID, worker_id: str, *, now: datetime) -> Claimed:
        """Claim one specific entry; raises :class:`ClaimConflict` if taken."""

    @abc.abstractmethod
    def renew_claim(self, entry_id: UUID, worker_id: str, *, now: datetime) -> QueueEntry:
        """Refresh ``claimed_at`` on an entry *worker_id* still holds.

        Workers call this right before handing a message to the provider
        so that the stuck-claim sweep measures from the send, not from
        the batch claim.  Raises :class:`ClaimConflict` when the entry
        was reclaimed in the meantime; the caller must not send.
        """

    @abc.abstractmethod
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
        """processing -> sent; entry done.

        Raises :class:`ClaimConflict` when *worker_id* no longer holds
        the entry (it was reclaimed as stuck).
        """

    @abc.abstractmethod
    def complete_failed(
        self,
        entry_id: UUID,
        worker_id: str,
        *,
        error: str,
        decide: Callable[[Notification], RetryDecision],
        now: datetime,
    ) -> tuple[Notification, RetryDecision]:
        """Record a failed attempt and the retry decision atomically.

        processing -> failed -> (queued with a new entry | failed_final).
        *decide* is called with the notification as committed at that
        instant (including ``cancel_requested``).
        """

    @abc.abstractmethod
    def defer(
        self,
        entry_id: UUID,
        worker_id: str,
        *,
        scheduled_at: datetime,
        now: datetime,
    ) -> Notification:
        """Hand a claimed entry back (processing -> queued) without a retry."""

    @abc.abstractmethod
    def reclaim_stale(self, *, claimed_before: datetime, now: datetime) -> int:
        """Move processing entries claimed before *claimed_before* back to queued."""

    @abc.abstractmethod
    def queue_entries(self, notification_id: UUID) -> list[QueueEntry]:
        """Every entry ever created for a notification, oldest first."""

    @abc.abstractmethod
    def queue_depth(self, *, now: datetime) -> dict[str, int]:
        """Return ``{"due": n, "scheduled": n, "processing": n}``."""

    # -- templates ----------------------------------------------------------

    @abc.abstractmethod
    def add_template(self, template: Template) -> Template: ...

    @abc.abstractmethod
    def get_template(self, template_id: UUID) -> Template | None: ...

    @abc.abstractmethod
    def list_templates(
        self,
        *,
        channel: Channel | None = None,
        include_inactive: bool = False,
    ) -> list[Template]: ...

    @abc.abstractmethod
    def update_template(
        self,
        template_id: UUID,
        changes: dict[str, Any],
        *,
        now: datetime,
    ) -> Template:
        """Apply *changes*; raises :class:`NotFound`."""

    # -- campaigns ----------------------------------------------------------

    @abc.abstractmethod
    def add_campaign(self, campaign: Campaign) -> Campaign: ...

    @abc.abstractmethod
    def get_campaign(self, campaign_id: UUID) -> Campaign | None: ...

    @abc.abstractmethod
    def list_campaigns(
        self,
        *,
        statuses: Sequence[CampaignStatus] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Campaign]: ...

    @abc.abstractmethod
    def update_campaign(
        self,
        campaign_id: UUID,
        changes: dict[str, Any],
        *,
        expected_status: CampaignStatus | None = None,
    ) -> Campaign | None:
        """Apply *changes*, guarded on *expected_status* when given.

        Returns ``None`` when the campaign is missing or the guard fails.
        """

    # -- health -------------------------------------------------------------

    @abc.abstractmethod
    def ping(self) -> bool:
        """Return True when the backend is reachable."""


# ---------------------------------------------------------------------------
# Shared transition planning
# ---------------------------------------------------------------------------


def plan_failure(
    notification: Notification,
    *,
    error: str,
    decide: Callable[[Notification], RetryDecision],
    now: datetime,
) -> tuple[dict[str, Any], RetryDecision, list[Transition]]:
    """Compute processing -> failed -> queued|failed_final.

    Returns the merged column changes, the decision, and both
    transitions (for logging).
    """
    failed = apply_transition(
        notification,
        NotificationStatus.FAILED,
        now=now,
        error=error,
    )
    after_fail = replace(notification, **failed.changes)
    decision = decide(after_fail)
    if decision.retry:
        second = apply_transition(
            after_fail,
            NotificationStatus.QUEUED,
            now=now,
            reason=decision.reason,
            retry_count=decision.retry_count,
            next_attempt_at=decision.next_attempt_at,
        )
    else:
        second = apply_transition(
            after_fail,
            NotificationStatus.FAILED_FINAL,
            now=now,
            reason=decision.reason,
        )
    return {**failed.changes, **second.changes}, decision, [failed, second]


def plan_cancel(notification: Notification, *, now: datetime) -> Transition:
    """Return the cancel transition, or raise :class:`NotCancelable`."""
    if notification.status not in CANCELABLE_STATUSES:
        msg = f"Notification {notification.id} is {notification.status.value}; cannot cancel"
        raise NotCancelable(msg)
    return apply_transition(
        notification,
        NotificationStatus.CANCELLED,
        now=now,
        reason="cancelled by request",
    )


def plan_manual_retry(notification: Notification, *, now: datetime) -> Transition:
    """failed_final -> queued with a fresh retry budget."""
    if notification.status != NotificationStatus.FAILED_FINAL:
        msg = (
            f"Only failed_final notifications can be retried; "
            f"{notification.id} is {notification.status.value}"
        )
        raise InvalidTransition(msg)
    return apply_transition(
        notification,
        NotificationStatus.QUEUED,
        now=now,
        reason="manual retry",
    )

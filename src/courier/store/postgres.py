"""PostgreSQL delivery store.

Every multi-row state change runs on one :class:`UnitOfWork`
transaction.  Rows are always locked in the same order (queue entry
first, then its notification) so concurrent claims, cancels and
outcome writes cannot deadlock each other.

Claiming uses ``SELECT ... FOR UPDATE SKIP LOCKED``: two workers polling
at the same instant receive disjoint batches, and the partial unique
index ``uq_queue_entries_active`` backs the one-active-entry rule at
the database level.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from enum import Enum
from typing import TYPE_CHECKING, Any

from psycopg import errors as pg_errors
from psycopg.types.json import Jsonb

from courier.core.errors import (
    ClaimConflict,
    DuplicateActiveEntry,
    InvalidTransition,
    NotCancelable,
    NotFound,
)
from courier.core.state import apply_transition, log_transition
from courier.core.types import ClaimStatus, NotificationStatus
from courier.db.unit_of_work import UnitOfWork
from courier.repositories import (
    CampaignRepository,
    NotificationRepository,
    QueueEntryRepository,
    TemplateRepository,
)
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

    from pypgkit import Database

    from courier.core.retry import RetryDecision
    from courier.core.state import Transition
    from courier.core.types import CampaignStatus, Channel
    from courier.models import Campaign, Notification, QueueEntry, Template

log = logging.getLogger(__name__)

_ACTIVE = (ClaimStatus.QUEUED.value, ClaimStatus.PROCESSING.value)

_CLAIM_BATCH_SQL = (
    "WITH picked AS ("
    "  SELECT id FROM queue_entries "
    "  WHERE claim_status = %s AND scheduled_at <= %s "
    "  ORDER BY priority, scheduled_at, created_at "
    "  LIMIT %s "
    "  FOR UPDATE SKIP LOCKED"
    ") "
    "UPDATE queue_entries q "
    "SET claim_status = %s, claimed_by = %s, claimed_at = %s "
    "FROM picked WHERE q.id = picked.id "
    "RETURNING q.*"
)


def _db_value(value: Any) -> Any:  # noqa: ANN401
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, (dict, list)):
        return Jsonb(value)
    return value


def _db_columns(changes: dict[str, Any]) -> dict[str, Any]:
    return {k: _db_value(v) for k, v in changes.items()}


class PostgresStore(DeliveryStore):
    """:class:`DeliveryStore` on PostgreSQL via PyPGKit."""

    backend = "database"

    def __init__(self, db: Database) -> None:
        self._db = db
        self._notifications = NotificationRepository(db)
        self._entries = QueueEntryRepository(db)
        self._templates = TemplateRepository(db)
        self._campaigns = CampaignRepository(db)

    # -- transaction helpers -------------------------------------------------

    def _lock_notification(self, uow: UnitOfWork, notification_id: UUID) -> Notification:
        row = uow.fetch_one(
            "SELECT * FROM notifications WHERE id = %s FOR UPDATE",
            (notification_id,),
        )
        if row is None:
            msg = f"Notification {notification_id} not found"
            raise NotFound(msg)
        return self._notifications._row_to_entity(row)  # noqa: SLF001

    def _lock_held_entry(
        self,
        uow: UnitOfWork,
        entry_id: UUID,
        worker_id: str,
    ) -> QueueEntry:
        row = uow.fetch_one(
            "SELECT * FROM queue_entries WHERE id = %s FOR UPDATE",
            (entry_id,),
        )
        if (
            row is None
            or row["claim_status"] != ClaimStatus.PROCESSING.value
            or row["claimed_by"] != worker_id
        ):
            msg = f"Queue entry {entry_id} is not held by {worker_id}"
            raise ClaimConflict(msg)
        return self._entries._row_to_entity(row)  # noqa: SLF001

    def _write(
        self,
        uow: UnitOfWork,
        n: Notification,
        changes: dict[str, Any],
        steps: Sequence[Transition],
    ) -> Notification:
        """CAS-update *n* from its current status and log *steps*."""
        if not changes:
            return n
        row = uow.update_where(
            "notifications",
            _db_columns(changes),
            {"id": n.id, "status": n.status.value},
        )
        if row is None:
            msg = f"Notification {n.id} changed concurrently (expected {n.status.value})"
            raise InvalidTransition(msg)
        for step in steps:
            log_transition(
                "notification", n.id, step.from_status, step.to_status, reason=step.reason
            )
        return self._notifications._row_to_entity(row)  # noqa: SLF001

    def _set_entry(self, uow: UnitOfWork, entry_id: UUID, **changes: Any) -> QueueEntry:
        row = uow.update_where("queue_entries", _db_columns(changes), {"id": entry_id})
        return self._entries._row_to_entity(row)  # noqa: SLF001

    def _insert_entry(
        self,
        uow: UnitOfWork,
        n: Notification,
        scheduled_at: datetime,
        now: datetime,
    ) -> QueueEntry:
        active = uow.fetch_one(
            "SELECT id FROM queue_entries WHERE notification_id = %s AND claim_status = ANY(%s)",
            (n.id, list(_ACTIVE)),
        )
        if active is not None:
            msg = f"Notification {n.id} already has active queue entry {active['id']}"
            raise DuplicateActiveEntry(msg)
        row = uow.insert(
            "queue_entries",
            {
                "notification_id": n.id,
                "priority": n.priority,
                "scheduled_at": scheduled_at,
                "claim_status": ClaimStatus.QUEUED.value,
                "created_at": now,
            },
        )
        return self._entries._row_to_entity(row)  # noqa: SLF001

    # -- notifications ------------------------------------------------------

    def add_notifications(
        self,
        notifications: Sequence[Notification],
        *,
        enqueue_at: datetime | None,
        now: datetime,
    ) -> list[Notification]:
        if not notifications:
            return []
        to_insert: list[Notification] = []
        steps: list[Transition] = []
        for n in notifications:
            if enqueue_at is not None:
                t = apply_transition(
                    n, NotificationStatus.QUEUED, now=now, next_attempt_at=enqueue_at
                )
                steps.append(t)
                n = replace(n, **t.changes)  # noqa: PLW2901
            to_insert.append(n)

        rows = [self._notifications._entity_to_row(n) for n in to_insert]  # noqa: SLF001
        with UnitOfWork(self._db) as uow:
            inserted = uow.insert_many("notifications", rows)
            if enqueue_at is not None:
                uow.insert_many(
                    "queue_entries",
                    [
                        {
                            "notification_id": n.id,
                            "priority": n.priority,
                            "scheduled_at": enqueue_at,
                            "claim_status": ClaimStatus.QUEUED.value,
                            "created_at": now,
                        }
                        for n in to_insert
                    ],
                )

        for n, t in zip(to_insert, steps, strict=False):
            log_transition("notification", n.id, t.from_status, t.to_status)
        by_id = {r["id"]: self._notifications._row_to_entity(r) for r in inserted}  # noqa: SLF001
        return [by_id[n.id] for n in to_insert]

    def get_notification(self, notification_id: UUID) -> Notification | None:
        return self._notifications.find_by_id(notification_id)

    def find_by_provider_message_id(
        self,
        provider_message_id: str,
        provider_name: str | None = None,
    ) -> Notification | None:
        return self._notifications.find_by_provider_message_id(
            provider_message_id,
            provider_name,
        )

    def list_notifications(
        self,
        filters: NotificationFilter | None = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Notification]:
        return self._notifications.search(filters, limit=limit, offset=offset)

    def count_notifications(
        self,
        filters: NotificationFilter | None = None,
    ) -> dict[tuple[str, str], int]:
        return self._notifications.count_by_channel_status(filters)

    def pending_notification_ids(
        self,
        related_entity: str,
        related_id: str,
        *,
        limit: int,
    ) -> list[UUID]:
        return self._notifications.pending_ids_for(related_entity, related_id, limit)

    def transition(self, notification_id: UUID, transition: Transition) -> Notification | None:
        if transition.is_noop:
            return self.get_notification(notification_id)
        with UnitOfWork(self._db) as uow:
            row = uow.update_where(
                "notifications",
                _db_columns(transition.changes),
                {"id": notification_id, "status": transition.from_status.value},
            )
        if row is None:
            return None
        log_transition(
            "notification",
            notification_id,
            transition.from_status,
            transition.to_status,
            reason=transition.reason,
        )
        return self._notifications._row_to_entity(row)  # noqa: SLF001

    def enqueue(
        self,
        notification_id: UUID,
        *,
        scheduled_at: datetime,
        now: datetime,
    ) -> QueueEntry:
        try:
            with UnitOfWork(self._db) as uow:
                n = self._lock_notification(uow, notification_id)
                if n.status != NotificationStatus.PENDING:
                    msg = (
                        f"Only pending notifications can be enqueued; "
                        f"{n.id} is {n.status.value}"
                    )
                    raise InvalidTransition(msg)
                t = apply_transition(
                    n, NotificationStatus.QUEUED, now=now, next_attempt_at=scheduled_at
                )
                entry = self._insert_entry(uow, n, scheduled_at, now)
                self._write(uow, n, t.changes, [t])
        except pg_errors.UniqueViolation as exc:
            msg = f"Notification {notification_id} already has an active queue entry"
            raise DuplicateActiveEntry(msg) from exc
        return entry

    def cancel(self, notification_id: UUID, *, now: datetime) -> Notification:
        refused: NotCancelable | None = None
        with UnitOfWork(self._db) as uow:
            active = uow.fetch_one(
                "SELECT * FROM queue_entries "
                "WHERE notification_id = %s AND claim_status = ANY(%s) FOR UPDATE",
                (notification_id, list(_ACTIVE)),
            )
            n = self._lock_notification(uow, notification_id)
            if n.status == NotificationStatus.PROCESSING and not n.cancel_requested:
                uow.execute(
                    "UPDATE notifications SET cancel_requested = TRUE, updated_at = %s "
                    "WHERE id = %s",
                    (now, n.id),
                )
                log.info("Cancel requested for in-flight notification %s", n.id)
            try:
                t = plan_cancel(n, now=now)
            except NotCancelable as exc:
                refused = exc
            else:
                if active is not None:
                    self._set_entry(
                        uow,
                        active["id"],
                        claim_status=ClaimStatus.ABANDONED,
                        completed_at=now,
                    )
                n = self._write(uow, n, t.changes, [t])
        if refused is not None:
            raise refused
        return n

    def retry(self, notification_id: UUID, *, now: datetime) -> Notification:
        with UnitOfWork(self._db) as uow:
            n = self._lock_notification(uow, notification_id)
            t = plan_manual_retry(n, now=now)
            self._insert_entry(uow, n, now, now)
            return self._write(uow, n, t.changes, [t])

    # -- dispatch queue -----------------------------------------------------

    def _claim_notification(
        self,
        uow: UnitOfWork,
        entry: QueueEntry,
        worker_id: str,
        now: datetime,
    ) -> Notification | None:
        n = self._lock_notification(uow, entry.notification_id)
        if n.status != NotificationStatus.QUEUED:
            log.warning(
                "Queue entry %s points at notification %s in status %s; abandoning entry",
                entry.id,
                n.id,
                n.status.value,
            )
            self._set_entry(uow, entry.id, claim_status=ClaimStatus.ABANDONED, completed_at=now)
            return None
        t = apply_transition(
            n,
            NotificationStatus.PROCESSING,
            now=now,
            reason=f"claimed by {worker_id}",
        )
        return self._write(uow, n, t.changes, [t])

    def claim_batch(self, worker_id: str, *, limit: int, now: datetime) -> list[Claimed]:
        claimed: list[Claimed] = []
        with UnitOfWork(self._db) as uow:
            rows = uow.fetch_all(
                _CLAIM_BATCH_SQL,
                (
                    ClaimStatus.QUEUED.value,
                    now,
                    limit,
                    ClaimStatus.PROCESSING.value,
                    worker_id,
                    now,
                ),
            )
            entries = sorted(
                (self._entries._row_to_entity(r) for r in rows),  # noqa: SLF001
                key=lambda e: (e.priority, e.scheduled_at, e.created_at),
            )
            for entry in entries:
                n = self._claim_notification(uow, entry, worker_id, now)
                if n is not None:
                    claimed.append(Claimed(entry, n))
        return claimed

    def claim(self, entry_id: UUID, worker_id: str, *, now: datetime) -> Claimed:
        with UnitOfWork(self._db) as uow:
            row = uow.update_where(
                "queue_entries",
                {
                    "claim_status": ClaimStatus.PROCESSING.value,
                    "claimed_by": worker_id,
                    "claimed_at": now,
                },
                {"id": entry_id, "claim_status": ClaimStatus.QUEUED.value},
            )
            if row is None:
                msg = f"Queue entry {entry_id} is not claimable"
                raise ClaimConflict(msg)
            entry = self._entries._row_to_entity(row)  # noqa: SLF001
            n = self._claim_notification(uow, entry, worker_id, now)
        if n is None:
            msg = f"Queue entry {entry_id} was abandoned"
            raise ClaimConflict(msg)
        return Claimed(entry, n)

    def renew_claim(self, entry_id: UUID, worker_id: str, *, now: datetime) -> QueueEntry:
        with UnitOfWork(self._db) as uow:
            row = uow.update_where(
                "queue_entries",
                {"claimed_at": now},
                {
                    "id": entry_id,
                    "claim_status": ClaimStatus.PROCESSING.value,
                    "claimed_by": worker_id,
                },
            )
        if row is None:
            msg = f"Queue entry {entry_id} is not held by {worker_id}"
            raise ClaimConflict(msg)
        return self._entries._row_to_entity(row)  # noqa: SLF001

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
        with UnitOfWork(self._db) as uow:
            entry = self._lock_held_entry(uow, entry_id, worker_id)
            n = self._lock_notification(uow, entry.notification_id)
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
            self._set_entry(uow, entry.id, claim_status=ClaimStatus.DONE, completed_at=now)
            return self._write(uow, n, t.changes, [t])

    def complete_failed(
        self,
        entry_id: UUID,
        worker_id: str,
        *,
        error: str,
        decide: Callable[[Notification], RetryDecision],
        now: datetime,
    ) -> tuple[Notification, RetryDecision]:
        with UnitOfWork(self._db) as uow:
            entry = self._lock_held_entry(uow, entry_id, worker_id)
            n = self._lock_notification(uow, entry.notification_id)
            changes, decision, steps = plan_failure(n, error=error, decide=decide, now=now)
            self._set_entry(uow, entry.id, claim_status=ClaimStatus.DONE, completed_at=now)
            updated = self._write(uow, n, changes, steps)
            if decision.retry:
                self._insert_entry(uow, updated, decision.next_attempt_at, now)
        return updated, decision

    def defer(
        self,
        entry_id: UUID,
        worker_id: str,
        *,
        scheduled_at: datetime,
        now: datetime,
    ) -> Notification:
        with UnitOfWork(self._db) as uow:
            entry = self._lock_held_entry(uow, entry_id, worker_id)
            n = self._lock_notification(uow, entry.notification_id)
            t = apply_transition(
                n,
                NotificationStatus.QUEUED,
                now=now,
                reason="rate limited",
                next_attempt_at=scheduled_at,
            )
            self._set_entry(
                uow,
                entry.id,
                claim_status=ClaimStatus.QUEUED,
                claimed_by=None,
                claimed_at=None,
                scheduled_at=scheduled_at,
            )
            return self._write(uow, n, t.changes, [t])

    def reclaim_stale(self, *, claimed_before: datetime, now: datetime) -> int:
        reclaimed = 0
        with UnitOfWork(self._db) as uow:
            rows = uow.fetch_all(
                "SELECT * FROM queue_entries "
                "WHERE claim_status = %s AND claimed_at < %s "
                "ORDER BY claimed_at "
                "FOR UPDATE SKIP LOCKED",
                (ClaimStatus.PROCESSING.value, claimed_before),
            )
            for row in rows:
                entry = self._entries._row_to_entity(row)  # noqa: SLF001
                self._set_entry(
                    uow,
                    entry.id,
                    claim_status=ClaimStatus.QUEUED,
                    claimed_by=None,
                    claimed_at=None,
                    scheduled_at=now,
                )
                n = self._lock_notification(uow, entry.notification_id)
                if n.status == NotificationStatus.PROCESSING:
                    t = apply_transition(
                        n,
                        NotificationStatus.QUEUED,
                        now=now,
                        reason=f"stuck claim of {entry.claimed_by} reclaimed",
                        next_attempt_at=now,
                    )
                    self._write(uow, n, t.changes, [t])
                reclaimed += 1
        return reclaimed

    def queue_entries(self, notification_id: UUID) -> list[QueueEntry]:
        return self._entries.find_by_notification(notification_id)

    def queue_depth(self, *, now: datetime) -> dict[str, int]:
        return self._entries.depth(now)

    # -- templates ----------------------------------------------------------

    def add_template(self, template: Template) -> Template:
        return self._templates.create(template)

    def get_template(self, template_id: UUID) -> Template | None:
        return self._templates.find_by_id(template_id)

    def list_templates(
        self,
        *,
        channel: Channel | None = None,
        include_inactive: bool = False,
    ) -> list[Template]:
        return self._templates.list_filtered(channel, include_inactive=include_inactive)

    def update_template(
        self,
        template_id: UUID,
        changes: dict[str, Any],
        *,
        now: datetime,
    ) -> Template:
        with UnitOfWork(self._db) as uow:
            row = uow.update_where(
                "templates",
                _db_columns({**changes, "updated_at": now}),
                {"id": template_id},
            )
        if row is None:
            msg = f"Template {template_id} not found"
            raise NotFound(msg)
        return self._templates._row_to_entity(row)  # noqa: SLF001

    # -- campaigns ----------------------------------------------------------

    def add_campaign(self, campaign: Campaign) -> Campaign:
        return self._campaigns.create(campaign)

    def get_campaign(self, campaign_id: UUID) -> Campaign | None:
        return self._campaigns.find_by_id(campaign_id)

    def list_campaigns(
        self,
        *,
        statuses: Sequence[CampaignStatus] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Campaign]:
        return self._campaigns.find_in_statuses(statuses, limit=limit, offset=offset)

    def update_campaign(
        self,
        campaign_id: UUID,
        changes: dict[str, Any],
        *,
        expected_status: CampaignStatus | None = None,
    ) -> Campaign | None:
        where: dict[str, Any] = {"id": campaign_id}
        if expected_status is not None:
            where["status"] = expected_status.value
        with UnitOfWork(self._db) as uow:
            row = uow.update_where("campaigns", _db_columns(changes), where)
        return self._campaigns._row_to_entity(row) if row else None  # noqa: SLF001

    # -- health -------------------------------------------------------------

    def ping(self) -> bool:
        return self._db.health_check()

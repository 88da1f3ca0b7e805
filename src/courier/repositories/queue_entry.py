"""Queue entry repository."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pypgkit import BaseRepository

from courier.core.types import ClaimStatus
from courier.models.queue_entry import QueueEntry

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID


class QueueEntryRepository(BaseRepository[QueueEntry]):
    table_name = "queue_entries"
    primary_key = "id"

    def _row_to_entity(self, row: dict) -> QueueEntry:
        return QueueEntry(
            id=row["id"],
            notification_id=row["notification_id"],
            priority=row["priority"],
            scheduled_at=row["scheduled_at"],
            claim_status=ClaimStatus(row["claim_status"]),
            claimed_by=row.get("claimed_by"),
            claimed_at=row.get("claimed_at"),
            completed_at=row.get("completed_at"),
            created_at=row["created_at"],
        )

    def _entity_to_row(self, entity: QueueEntry) -> dict:
        return {
            "id": entity.id,
            "notification_id": entity.notification_id,
            "priority": entity.priority,
            "scheduled_at": entity.scheduled_at,
            "claim_status": entity.claim_status.value,
            "claimed_by": entity.claimed_by,
            "claimed_at": entity.claimed_at,
            "completed_at": entity.completed_at,
            "created_at": entity.created_at,
        }

    def find_by_notification(self, notification_id: UUID) -> list[QueueEntry]:
        return self.find_by({"notification_id": notification_id}, order_by="created_at")

    def depth(self, now: datetime) -> dict[str, int]:
        """Count queued (due / scheduled) and processing entries."""
        row = self._db.fetch_one(
            "SELECT "
            "  count(*) FILTER (WHERE claim_status = 'queued' AND scheduled_at <= %s) AS due, "
            "  count(*) FILTER (WHERE claim_status = 'queued' AND scheduled_at > %s) AS scheduled, "
            "  count(*) FILTER (WHERE claim_status = 'processing') AS processing "
            "FROM queue_entries "
            "WHERE claim_status IN ('queued', 'processing')",
            (now, now),
            as_dict=True,
        )
        row = row or {}
        return {k: int(row.get(k) or 0) for k in ("due", "scheduled", "processing")}

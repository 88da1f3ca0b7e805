"""Campaign repository."""

from __future__ import annotations

from typing import TYPE_CHECKING

from psycopg.types.json import Jsonb
from pypgkit import BaseRepository

from courier.core.types import CampaignStatus, Channel
from courier.models.campaign import Campaign

if TYPE_CHECKING:
    from collections.abc import Sequence


class CampaignRepository(BaseRepository[Campaign]):
    table_name = "campaigns"
    primary_key = "id"

    def _row_to_entity(self, row: dict) -> Campaign:
        return Campaign(
            id=row["id"],
            name=row["name"],
            description=row.get("description"),
            channel=Channel(row["channel"]),
            template_id=row["template_id"],
            priority=row["priority"],
            status=CampaignStatus(row["status"]),
            variables=row.get("variables") or {},
            scheduled_at=row.get("scheduled_at"),
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            total_recipients=row["total_recipients"],
            sent_count=row["sent_count"],
            delivered_count=row["delivered_count"],
            failed_count=row["failed_count"],
            created_by=row.get("created_by"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _entity_to_row(self, entity: Campaign) -> dict:
        return {
            "id": entity.id,
            "name": entity.name,
            "description": entity.description,
            "channel": entity.channel.value,
            "template_id": entity.template_id,
            "priority": entity.priority,
            "status": entity.status.value,
            "variables": Jsonb(entity.variables),
            "scheduled_at": entity.scheduled_at,
            "started_at": entity.started_at,
            "completed_at": entity.completed_at,
            "total_recipients": entity.total_recipients,
            "sent_count": entity.sent_count,
            "delivered_count": entity.delivered_count,
            "failed_count": entity.failed_count,
            "created_by": entity.created_by,
            "created_at": entity.created_at,
            "updated_at": entity.updated_at,
        }

    def find_in_statuses(
        self,
        statuses: Sequence[CampaignStatus] | None,
        *,
        limit: int,
        offset: int,
    ) -> list[Campaign]:
        if statuses is None:
            return self.find_all(limit=limit, offset=offset, order_by="created_at", order_desc=True)
        rows = self._db.fetch_all(
            "SELECT * FROM campaigns WHERE status = ANY(%s) "
            "ORDER BY created_at DESC LIMIT %s OFFSET %s",
            ([s.value for s in statuses], limit, offset),
            as_dict=True,
        )
        return [self._row_to_entity(r) for r in rows]

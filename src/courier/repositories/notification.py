"""Notification repository."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from psycopg.types.json import Jsonb
from pypgkit import BaseRepository

from courier.core.types import Channel, NotificationStatus
from courier.models.notification import Notification

if TYPE_CHECKING:
    from uuid import UUID

    from courier.store.base import NotificationFilter


def filter_clause(filters: NotificationFilter | None) -> tuple[str, list]:
    """Build a ``WHERE`` clause (possibly empty) from *filters*."""
    if filters is None:
        return "", []
    parts: list[str] = []
    params: list = []
    for column, value in (
        ("channel", filters.channel),
        ("status", filters.status),
        ("related_entity", filters.related_entity),
        ("related_id", filters.related_id),
    ):
        if value is not None:
            parts.append(f"{column} = %s")
            params.append(value.value if hasattr(value, "value") else value)
    if filters.created_from is not None:
        parts.append("created_at >= %s")
        params.append(filters.created_from)
    if filters.created_to is not None:
        parts.append("created_at <= %s")
        params.append(filters.created_to)
    if not parts:
        return "", []
    return "WHERE " + " AND ".join(parts), params


class NotificationRepository(BaseRepository[Notification]):
    table_name = "notifications"
    primary_key = "id"

    def _row_to_entity(self, row: dict) -> Notification:
        return Notification(
            id=row["id"],
            channel=Channel(row["channel"]),
            recipient=row["recipient"],
            subject=row.get("subject"),
            body=row.get("body") or "",
            status=NotificationStatus(row["status"]),
            priority=row["priority"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            next_attempt_at=row.get("next_attempt_at"),
            provider_name=row.get("provider_name"),
            provider_message_id=row.get("provider_message_id"),
            template_id=row.get("template_id"),
            template_variables=row.get("template_variables") or {},
            attachments=tuple(row.get("attachments") or ()),
            related_entity=row.get("related_entity"),
            related_id=row.get("related_id"),
            created_by=row.get("created_by"),
            error=row.get("error"),
            cost_usd=Decimal(row.get("cost_usd") or 0),
            cancel_requested=row.get("cancel_requested", False),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            sent_at=row.get("sent_at"),
            delivered_at=row.get("delivered_at"),
            read_at=row.get("read_at"),
            failed_at=row.get("failed_at"),
        )

    def _entity_to_row(self, entity: Notification) -> dict:
        return {
            "id": entity.id,
            "channel": entity.channel.value,
            "recipient": entity.recipient,
            "subject": entity.subject,
            "body": entity.body,
            "status": entity.status.value,
            "priority": entity.priority,
            "retry_count": entity.retry_count,
            "max_retries": entity.max_retries,
            "next_attempt_at": entity.next_attempt_at,
            "provider_name": entity.provider_name,
            "provider_message_id": entity.provider_message_id,
            "template_id": entity.template_id,
            "template_variables": Jsonb(entity.template_variables),
            "attachments": Jsonb(list(entity.attachments)),
            "related_entity": entity.related_entity,
            "related_id": entity.related_id,
            "created_by": entity.created_by,
            "error": entity.error,
            "cost_usd": entity.cost_usd,
            "cancel_requested": entity.cancel_requested,
            "created_at": entity.created_at,
            "updated_at": entity.updated_at,
        }

    def find_by_provider_message_id(
        self,
        provider_message_id: str,
        provider_name: str | None = None,
    ) -> Notification | None:
        """Look up by provider id, preferring an exact provider match."""
        if provider_name is not None:
            row = self._db.fetch_one(
                "SELECT * FROM notifications "
                "WHERE provider_name = %s AND provider_message_id = %s "
                "ORDER BY sent_at DESC NULLS LAST LIMIT 1",
                (provider_name, provider_message_id),
                as_dict=True,
            )
            if row:
                return self._row_to_entity(row)
        row = self._db.fetch_one(
            "SELECT * FROM notifications "
            "WHERE provider_message_id = %s "
            "ORDER BY sent_at DESC NULLS LAST LIMIT 1",
            (provider_message_id,),
            as_dict=True,
        )
        return self._row_to_entity(row) if row else None

    def search(
        self,
        filters: NotificationFilter | None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Notification]:
        """Filtered listing, newest first."""
        where, params = filter_clause(filters)
        rows = self._db.fetch_all(
            f"SELECT * FROM notifications {where} "  # noqa: S608
            "ORDER BY created_at DESC LIMIT %s OFFSET %s",
            (*params, limit, offset),
            as_dict=True,
        )
        return [self._row_to_entity(r) for r in rows]

    def count_by_channel_status(
        self,
        filters: NotificationFilter | None,
    ) -> dict[tuple[str, str], int]:
        where, params = filter_clause(filters)
        rows = self._db.fetch_all(
            f"SELECT channel, status, count(*) AS n FROM notifications {where} "  # noqa: S608
            "GROUP BY channel, status",
            tuple(params),
            as_dict=True,
        )
        return {(r["channel"], r["status"]): r["n"] for r in rows}

    def pending_ids_for(self, related_entity: str, related_id: str, limit: int) -> list[UUID]:
        rows = self._db.fetch_all(
            "SELECT id FROM notifications "
            "WHERE status = %s AND related_entity = %s AND related_id = %s "
            "ORDER BY created_at LIMIT %s",
            (NotificationStatus.PENDING.value, related_entity, related_id, limit),
            as_dict=True,
        )
        return [r["id"] for r in rows]

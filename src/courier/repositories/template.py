"""Template repository."""

from __future__ import annotations

from pypgkit import BaseRepository

from courier.core.types import Channel
from courier.models.template import Template


class TemplateRepository(BaseRepository[Template]):
    table_name = "templates"
    primary_key = "id"

    def _row_to_entity(self, row: dict) -> Template:
        return Template(
            id=row["id"],
            name=row["name"],
            channel=Channel(row["channel"]),
            subject_template=row.get("subject_template"),
            body_template=row["body_template"],
            required_variables=frozenset(row.get("required_variables") or ()),
            is_active=row["is_active"],
            created_by=row.get("created_by"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _entity_to_row(self, entity: Template) -> dict:
        return {
            "id": entity.id,
            "name": entity.name,
            "channel": entity.channel.value,
            "subject_template": entity.subject_template,
            "body_template": entity.body_template,
            "required_variables": sorted(entity.required_variables),
            "is_active": entity.is_active,
            "created_by": entity.created_by,
            "created_at": entity.created_at,
            "updated_at": entity.updated_at,
        }

    def list_filtered(
        self,
        channel: Channel | None,
        *,
        include_inactive: bool,
    ) -> list[Template]:
        conditions: dict = {}
        if channel is not None:
            conditions["channel"] = channel.value
        if not include_inactive:
            conditions["is_active"] = True
        if conditions:
            return self.find_by(conditions, order_by="name")
        return self.find_all(order_by="name")

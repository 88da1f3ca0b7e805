"""Template management: create, edit and deactivate stored templates.

Templates are never deleted, because notifications keep a reference to
the template they were created from.  Deactivation makes new sends and
renders of that template fail closed.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from courier.app.errors import VALIDATION, ApiProblem
from courier.core.errors import NotFound, RenderError
from courier.core.types import Channel
from courier.models import Template

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping
    from uuid import UUID

    from courier.rendering import TemplateRenderer
    from courier.store.base import DeliveryStore

log = logging.getLogger(__name__)

_MAX_NAME_LENGTH = 200
_EDITABLE = frozenset(
    {"name", "subject_template", "body_template", "required_variables", "is_active"},
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _invalid(detail: str, field: str) -> ApiProblem:
    return ApiProblem(VALIDATION, detail, 400, errors=[{"field": field, "detail": detail}])


def _variables(value: Iterable[Any] | None) -> frozenset[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str) or not all(isinstance(v, str) and v for v in value):
        raise _invalid("required_variables must be a list of names", "required_variables")
    return frozenset(value)


class TemplateService:
    """CRUD over :class:`Template` records with syntax validation."""

    def __init__(
        self,
        store: DeliveryStore,
        renderer: TemplateRenderer,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._renderer = renderer
        self._clock = clock

    def _validate_source(self, subject_template: str | None, body_template: str) -> None:
        if not body_template or not body_template.strip():
            raise _invalid("body_template is required", "body_template")
        try:
            self._renderer.validate(subject_template, body_template)
        except RenderError as exc:
            raise _invalid(str(exc), "body_template") from exc

    def create(  # noqa: PLR0913
        self,
        name: str,
        channel: Channel | str,
        body_template: str,
        *,
        subject_template: str | None = None,
        required_variables: Iterable[str] | None = None,
        created_by: str | None = None,
    ) -> Template:
        if not name or not name.strip() or len(name) > _MAX_NAME_LENGTH:
            raise _invalid(f"name is required (at most {_MAX_NAME_LENGTH} characters)", "name")
        try:
            ch = Channel(channel)
        except ValueError:
            raise _invalid(f"channel must be one of {[c.value for c in Channel]}", "channel") from None
        self._validate_source(subject_template, body_template)
        now = self._clock()
        template = self._store.add_template(
            Template(
                id=uuid.uuid4(),
                name=name.strip(),
                channel=ch,
                subject_template=subject_template,
                body_template=body_template,
                required_variables=_variables(required_variables),
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
        )
        log.info("Created %s template %s (%s)", ch.value, template.id, template.name)
        return template

    def get(self, template_id: UUID) -> Template:
        template = self._store.get_template(template_id)
        if template is None:
            msg = f"Template {template_id} not found"
            raise NotFound(msg)
        return template

    def list(
        self,
        *,
        channel: Channel | None = None,
        include_inactive: bool = False,
    ) -> list[Template]:
        return self._store.list_templates(channel=channel, include_inactive=include_inactive)

    def update(self, template_id: UUID, changes: Mapping[str, Any]) -> Template:
        """Apply a partial update; the channel cannot change."""
        unknown = set(changes) - _EDITABLE
        if unknown:
            field = sorted(unknown)[0]
            raise _invalid(f"fields cannot be updated: {sorted(unknown)}", field)
        current = self.get(template_id)
        updates = dict(changes)
        if "name" in updates:
            name = updates["name"]
            if not isinstance(name, str) or not name.strip() or len(name) > _MAX_NAME_LENGTH:
                raise _invalid("name must be a non-empty string", "name")
            updates["name"] = name.strip()
        if "required_variables" in updates:
            updates["required_variables"] = _variables(updates["required_variables"])
        if "is_active" in updates and not isinstance(updates["is_active"], bool):
            raise _invalid("is_active must be a boolean", "is_active")
        if "subject_template" in updates or "body_template" in updates:
            self._validate_source(
                updates.get("subject_template", current.subject_template),
                updates.get("body_template", current.body_template),
            )
        updated = self._store.update_template(template_id, updates, now=self._clock())
        log.info("Updated template %s (%s)", template_id, ", ".join(sorted(updates)))
        return updated

    def deactivate(self, template_id: UUID) -> Template:
        self.get(template_id)
        updated = self._store.update_template(
            template_id,
            {"is_active": False},
            now=self._clock(),
        )
        log.info("Deactivated template %s (%s)", template_id, updated.name)
        return updated

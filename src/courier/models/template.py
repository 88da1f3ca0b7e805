"""Message template entity."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from courier.core.types import Channel

if TYPE_CHECKING:
    from uuid import UUID

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass(frozen=True)
class Template:
    id: UUID
    name: str
    channel: Channel
    body_template: str
    subject_template: str | None = None
    required_variables: frozenset[str] = frozenset()
    is_active: bool = True
    created_by: str | None = None
    created_at: datetime = _EPOCH
    updated_at: datetime = _EPOCH

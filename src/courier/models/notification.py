"""Notification entity."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from courier.core.types import Channel, NotificationStatus

if TYPE_CHECKING:
    from uuid import UUID

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass(frozen=True)
class Notification:
    id: UUID
    channel: Channel
    recipient: str
    body: str = ""
    subject: str | None = None
    status: NotificationStatus = NotificationStatus.PENDING
    priority: int = 5
    retry_count: int = 0
    max_retries: int = 3
    next_attempt_at: datetime | None = None
    provider_name: str | None = None
    provider_message_id: str | None = None
    template_id: UUID | None = None
    template_variables: dict[str, Any] = field(default_factory=dict)
    attachments: tuple[dict[str, Any], ...] = ()
    related_entity: str | None = None
    related_id: str | None = None
    created_by: str | None = None
    error: str | None = None
    cost_usd: Decimal = Decimal("0")
    cancel_requested: bool = False
    created_at: datetime = _EPOCH
    updated_at: datetime = _EPOCH
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    read_at: datetime | None = None
    failed_at: datetime | None = None

"""Normalised inbound provider event."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from courier.core.types import WebhookEventType


@dataclass(frozen=True)
class WebhookEvent:
    provider_name: str
    provider_message_id: str
    event_type: WebhookEventType
    timestamp: datetime
    raw_payload: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

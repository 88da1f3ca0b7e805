"""Campaign entity.

The ``*_count`` fields are summaries recomputed from the campaign's
notifications by the maintenance worker; nothing else writes them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from courier.core.types import CampaignStatus, Channel

if TYPE_CHECKING:
    from uuid import UUID

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass(frozen=True)
class Campaign:
    id: UUID
    name: str
    channel: Channel
    template_id: UUID
    priority: int = 5
    description: str | None = None
    status: CampaignStatus = CampaignStatus.DRAFT
    variables: dict[str, Any] = field(default_factory=dict)
    scheduled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    total_recipients: int = 0
    sent_count: int = 0
    delivered_count: int = 0
    failed_count: int = 0
    created_by: str | None = None
    created_at: datetime = _EPOCH
    updated_at: datetime = _EPOCH


@dataclass(frozen=True)
class CampaignRecipient:
    """One target of a campaign, with per-recipient template variables."""

    recipient: str
    variables: dict[str, Any] = field(default_factory=dict)

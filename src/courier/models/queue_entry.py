"""Dispatch queue entry entity."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from courier.core.types import ACTIVE_CLAIM_STATUSES, ClaimStatus

if TYPE_CHECKING:
    from uuid import UUID

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass(frozen=True)
class QueueEntry:
    id: UUID
    notification_id: UUID
    priority: int = 5
    scheduled_at: datetime = _EPOCH
    claim_status: ClaimStatus = ClaimStatus.QUEUED
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = _EPOCH

    @property
    def is_active(self) -> bool:
        return self.claim_status in ACTIVE_CLAIM_STATUSES

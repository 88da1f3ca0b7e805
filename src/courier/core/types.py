"""Enumerated types for the courier persistence layer.

All enums inherit from :class:`enum.StrEnum` so their ``.value`` is a
plain string that psycopg serialises as TEXT and JSON round-trips
naturally.
"""

from __future__ import annotations

from enum import StrEnum

# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


class Channel(StrEnum):
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"
    PUSH = "push"


# ---------------------------------------------------------------------------
# Notification
# ---------------------------------------------------------------------------


class NotificationStatus(StrEnum):
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    FAILED_FINAL = "failed_final"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Queue entry
# ---------------------------------------------------------------------------


class ClaimStatus(StrEnum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    ABANDONED = "abandoned"


# Entries in these states count against the one-active-entry invariant.
ACTIVE_CLAIM_STATUSES = frozenset({ClaimStatus.QUEUED, ClaimStatus.PROCESSING})


# ---------------------------------------------------------------------------
# Campaign
# ---------------------------------------------------------------------------


class CampaignStatus(StrEnum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class WebhookEventType(StrEnum):
    DELIVERED = "delivered"
    BOUNCED = "bounced"
    OPENED = "opened"
    FAILED = "failed"


class ReconcileOutcome(StrEnum):
    APPLIED = "applied"
    IGNORED = "ignored"
    ORPHAN = "orphan"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ErrorClass(StrEnum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"

"""Notification and queue-entry state machines.

Every status change in the engine -- worker outcomes, retry decisions,
webhook events, cancellation, stuck-claim reclaim -- is computed by
:func:`apply_transition`.  The store backends only persist the
resulting column changes with a compare-and-set on the previous
status, so both the worker path and the webhook path share one
definition of what a transition does.

Usage::

    from courier.core.state import apply_transition
    from courier.core.types import NotificationStatus

    t = apply_transition(n, NotificationStatus.SENT, now=now,
                         provider_name="sendgrid",
                         provider_message_id="abc")
    store.transition(n.id, t)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from courier.core.errors import InvalidTransition
from courier.core.types import ClaimStatus, NotificationStatus, WebhookEventType

if TYPE_CHECKING:
    from datetime import datetime

    from courier.models.notification import Notification

log = logging.getLogger(__name__)

_S = NotificationStatus

# ---------------------------------------------------------------------------
# Notification: pending → queued → processing → sent/failed,
#   sent → delivered → read, sent → failed_final (bounce),
#   failed → queued (retry) / failed_final.
# ---------------------------------------------------------------------------

NOTIFICATION_TRANSITIONS: dict[NotificationStatus, frozenset[NotificationStatus]] = {
    _S.PENDING: frozenset({_S.QUEUED, _S.CANCELLED}),
    _S.QUEUED: frozenset({_S.PROCESSING, _S.CANCELLED}),
    _S.PROCESSING: frozenset(
        {
            _S.SENT,
            _S.FAILED,
            _S.QUEUED,  # rate-limit deferral / stuck-claim reclaim
        }
    ),
    _S.SENT: frozenset({_S.DELIVERED, _S.READ, _S.FAILED_FINAL}),
    _S.DELIVERED: frozenset({_S.READ}),
    _S.READ: frozenset(),
    _S.FAILED: frozenset({_S.QUEUED, _S.FAILED_FINAL}),
    _S.FAILED_FINAL: frozenset({_S.QUEUED}),  # administrative retry
    _S.CANCELLED: frozenset(),
}

# ---------------------------------------------------------------------------
# Queue entry: queued → processing/abandoned,
#              processing → done/queued (deferral, reclaim).
# ---------------------------------------------------------------------------

QUEUE_TRANSITIONS: dict[ClaimStatus, frozenset[ClaimStatus]] = {
    ClaimStatus.QUEUED: frozenset({ClaimStatus.PROCESSING, ClaimStatus.ABANDONED}),
    ClaimStatus.PROCESSING: frozenset({ClaimStatus.DONE, ClaimStatus.QUEUED}),
    ClaimStatus.DONE: frozenset(),
    ClaimStatus.ABANDONED: frozenset(),
}

# ---------------------------------------------------------------------------
# Webhook order: sent < delivered < read, sent < failed_final.
# An event is applied only when it moves forward in this order.
# ---------------------------------------------------------------------------

WEBHOOK_ORDER: dict[NotificationStatus, frozenset[NotificationStatus]] = {
    _S.SENT: frozenset({_S.DELIVERED, _S.READ, _S.FAILED_FINAL}),
    _S.DELIVERED: frozenset({_S.READ}),
    _S.READ: frozenset(),
    _S.FAILED_FINAL: frozenset(),
}

WEBHOOK_EVENT_TARGETS: dict[WebhookEventType, NotificationStatus] = {
    WebhookEventType.DELIVERED: _S.DELIVERED,
    WebhookEventType.OPENED: _S.READ,
    WebhookEventType.BOUNCED: _S.FAILED_FINAL,
    WebhookEventType.FAILED: _S.FAILED_FINAL,
}

CANCELABLE_STATUSES = frozenset({_S.PENDING, _S.QUEUED})

# Set-once timestamp column written when a status is first reached.
_TIMESTAMP_FOR: dict[NotificationStatus, str] = {
    _S.SENT: "sent_at",
    _S.DELIVERED: "delivered_at",
    _S.READ: "read_at",
    _S.FAILED_FINAL: "failed_at",
}

_ALLOWED_FIELDS = frozenset(
    {
        "provider_name",
        "provider_message_id",
        "error",
        "retry_count",
        "next_attempt_at",
        "cost_usd",
        "subject",
        "body",
        "cancel_requested",
    }
)


def assert_transition(current, target, table: dict) -> None:
    """Raise :class:`InvalidTransition` if *current* → *target* is not allowed.

    Parameters
    ----------
    current:
        The current status of the resource.
    target:
        The desired new status.
    table:
        :data:`NOTIFICATION_TRANSITIONS` or :data:`QUEUE_TRANSITIONS`.

    """
    allowed = table.get(current)
    if allowed is None:
        msg = f"Unknown status {current!r}"
        raise InvalidTransition(msg)
    if target not in allowed:
        msg = (
            f"Invalid transition {current.value!r} -> {target.value!r}; "
            f"allowed targets: {sorted(s.value for s in allowed) or '(terminal)'}"
        )
        raise InvalidTransition(msg)


@dataclass(frozen=True)
class Transition:
    """A computed status change, ready to be persisted.

    ``changes`` maps column names to new values and always contains
    ``status`` unless the transition is a no-op.
    """

    from_status: NotificationStatus
    to_status: NotificationStatus
    changes: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None

    @property
    def is_noop(self) -> bool:
        return not self.changes


def apply_transition(  # noqa: C901
    notification: Notification,
    target: NotificationStatus,
    *,
    now: datetime,
    at: datetime | None = None,
    reason: str | None = None,
    **fields: Any,
) -> Transition:
    """Compute the column changes for moving *notification* to *target*.

    Total: every (status, target) pair either yields a
    :class:`Transition` or raises :class:`InvalidTransition`.
    Idempotent: asking for the status the notification already has
    yields a no-op transition instead of an error.

    Parameters
    ----------
    notification:
        Current committed state.
    target:
        Desired status.
    now:
        Wall-clock time used for ``updated_at``.
    at:
        Event time for the set-once timestamp (defaults to *now*).
        Webhooks pass the provider's event timestamp.
    reason:
        Optional human-readable reason, used for logging.
    fields:
        Extra columns to write; see ``_ALLOWED_FIELDS``.

    """
    current = notification.status
    if current == target:
        return Transition(current, target, {}, reason)

    assert_transition(current, target, NOTIFICATION_TRANSITIONS)

    unknown = set(fields) - _ALLOWED_FIELDS
    if unknown:
        msg = f"Unsupported transition fields: {sorted(unknown)}"
        raise InvalidTransition(msg)

    changes: dict[str, Any] = {"status": target, "updated_at": now}
    changes.update(fields)

    ts_col = _TIMESTAMP_FOR.get(target)
    when = at or now
    if ts_col is not None and getattr(notification, ts_col) is None:
        changes[ts_col] = when
    if target == _S.READ and notification.delivered_at is None:
        # read implies delivered
        changes["delivered_at"] = when

    if target == _S.SENT and not fields.get("provider_message_id"):
        msg = "Transition to 'sent' requires provider_message_id"
        raise InvalidTransition(msg)

    if target == _S.QUEUED and current == _S.FAILED:
        retry_count = fields.get("retry_count")
        if retry_count is None or fields.get("next_attempt_at") is None:
            msg = "Retry requires retry_count and next_attempt_at"
            raise InvalidTransition(msg)
        if retry_count > notification.max_retries:
            msg = (
                f"retry_count {retry_count} would exceed max_retries "
                f"{notification.max_retries}"
            )
            raise InvalidTransition(msg)

    if target == _S.QUEUED and current == _S.FAILED_FINAL:
        changes.setdefault("retry_count", 0)
        changes.setdefault("next_attempt_at", now)
        changes.setdefault("cancel_requested", False)

    return Transition(current, target, changes, reason)


def webhook_target(
    current: NotificationStatus,
    event_type: WebhookEventType,
) -> NotificationStatus | None:
    """Return the status a webhook event moves to, or ``None`` to ignore it.

    Events that do not advance *current* in :data:`WEBHOOK_ORDER`
    (stale, duplicate, or arriving for a notification that is not in
    a post-send state) are ignored.
    """
    target = WEBHOOK_EVENT_TARGETS[event_type]
    successors = WEBHOOK_ORDER.get(current)
    if successors is None or target not in successors:
        return None
    return target


def log_transition(
    resource_type: str,
    resource_id,
    from_status,
    to_status,
    *,
    reason: str | None = None,
) -> None:
    """Emit a structured log entry for a state transition.

    Parameters
    ----------
    resource_type:
        ``"notification"``, ``"queue_entry"`` or ``"campaign"``.
    resource_id:
        The UUID of the resource.
    from_status:
        The previous status value.
    to_status:
        The new status value.
    reason:
        Optional human-readable reason for the transition.

    """
    extra = {
        "event": "state_transition",
        "resource_type": resource_type,
        "resource_id": str(resource_id),
        "from_status": from_status.value if hasattr(from_status, "value") else str(from_status),
        "to_status": to_status.value if hasattr(to_status, "value") else str(to_status),
    }
    if reason:
        extra["reason"] = reason
    log.info(
        "%s %s: %s -> %s%s",
        resource_type,
        resource_id,
        extra["from_status"],
        extra["to_status"],
        f" ({reason})" if reason else "",
        extra=extra,
    )

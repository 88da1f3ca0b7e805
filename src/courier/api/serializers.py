"""Response serializers for the producer API.

Each function takes a model entity and produces a dictionary suitable
for ``flask.jsonify``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from courier.app.errors import ApiProblem

if TYPE_CHECKING:
    from datetime import datetime

    from courier.config.settings import ChannelBinding
    from courier.models import Campaign, Notification, Template

# Provider config keys whose values are never returned.
_SECRET_MARKERS = ("key", "token", "secret", "password", "auth")
_REDACTED = "***"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_notification(notification: Notification) -> dict:
    """Serialize a notification with its delivery state."""
    return {
        "id": str(notification.id),
        "channel": notification.channel.value,
        "recipient": notification.recipient,
        "status": notification.status.value,
        "subject": notification.subject,
        "body": notification.body,
        "template_id": str(notification.template_id) if notification.template_id else None,
        "template_variables": notification.template_variables,
        "priority": notification.priority,
        "retry_count": notification.retry_count,
        "max_retries": notification.max_retries,
        "next_attempt_at": _iso(notification.next_attempt_at),
        "provider_name": notification.provider_name,
        "provider_message_id": notification.provider_message_id,
        "related_entity": notification.related_entity,
        "related_id": notification.related_id,
        "attachments": [a.get("filename") for a in notification.attachments],
        "error": notification.error,
        "cost_usd": str(notification.cost_usd),
        "created_by": notification.created_by,
        "created_at": _iso(notification.created_at),
        "updated_at": _iso(notification.updated_at),
        "sent_at": _iso(notification.sent_at),
        "delivered_at": _iso(notification.delivered_at),
        "read_at": _iso(notification.read_at),
        "failed_at": _iso(notification.failed_at),
    }


def serialize_bulk_result(index: int, result: Notification | ApiProblem) -> dict:
    """One entry of a send-bulk response."""
    if isinstance(result, ApiProblem):
        return {"index": index, "accepted": False, "error": result.to_dict()}
    return {
        "index": index,
        "accepted": True,
        "id": str(result.id),
        "status": result.status.value,
    }


def serialize_template(template: Template) -> dict:
    return {
        "id": str(template.id),
        "name": template.name,
        "channel": template.channel.value,
        "subject_template": template.subject_template,
        "body_template": template.body_template,
        "required_variables": sorted(template.required_variables),
        "is_active": template.is_active,
        "created_by": template.created_by,
        "created_at": _iso(template.created_at),
        "updated_at": _iso(template.updated_at),
    }


def serialize_campaign(campaign: Campaign) -> dict:
    """Serialize a campaign including its summary counts."""
    return {
        "id": str(campaign.id),
        "name": campaign.name,
        "description": campaign.description,
        "channel": campaign.channel.value,
        "template_id": str(campaign.template_id),
        "priority": campaign.priority,
        "status": campaign.status.value,
        "variables": campaign.variables,
        "scheduled_at": _iso(campaign.scheduled_at),
        "started_at": _iso(campaign.started_at),
        "completed_at": _iso(campaign.completed_at),
        "summary": {
            "total_recipients": campaign.total_recipients,
            "sent": campaign.sent_count,
            "delivered": campaign.delivered_count,
            "failed": campaign.failed_count,
        },
        "created_by": campaign.created_by,
        "created_at": _iso(campaign.created_at),
        "updated_at": _iso(campaign.updated_at),
    }


def redact_config(config: dict[str, Any]) -> dict[str, Any]:
    """Replace credential-looking values with ``***``."""
    redacted: dict[str, Any] = {}
    for key, value in config.items():
        if any(marker in key.lower() for marker in _SECRET_MARKERS):
            redacted[key] = _REDACTED
        elif isinstance(value, dict):
            redacted[key] = redact_config(value)
        else:
            redacted[key] = value
    return redacted


def serialize_binding(binding: ChannelBinding) -> dict:
    """Serialize a configured provider binding, secrets redacted."""
    return {
        "channel": binding.channel.value,
        "provider": binding.provider,
        "kind": binding.kind,
        "is_default": binding.is_default,
        "rate_limit_per_minute": binding.rate_limit_per_minute,
        "cost_per_message": binding.cost_per_message,
        "timeout_seconds": binding.timeout_seconds,
        "config": redact_config(binding.config),
    }

"""Turn provider callback payloads into :class:`WebhookEvent` objects.

Each provider reports status changes in its own shape.  Normalisers
map them onto the four courier event types and drop everything else
(processed, deferred, click, queued, ...), which carries no delivery
state.

===========  ==========================  ==========
provider     provider event              normalised
===========  ==========================  ==========
sendgrid     delivered                   delivered
             bounce, dropped             bounced
             open                        opened
twilio       delivered                   delivered
             failed, undelivered         failed
             read                        opened
generic      already normalised objects  as given
===========  ==========================  ==========
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from courier.core.types import WebhookEventType
from courier.models import WebhookEvent

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

log = logging.getLogger(__name__)

_SENDGRID_EVENTS = {
    "delivered": WebhookEventType.DELIVERED,
    "bounce": WebhookEventType.BOUNCED,
    "dropped": WebhookEventType.BOUNCED,
    "open": WebhookEventType.OPENED,
}

_TWILIO_STATUSES = {
    "delivered": WebhookEventType.DELIVERED,
    "failed": WebhookEventType.FAILED,
    "undelivered": WebhookEventType.FAILED,
    "read": WebhookEventType.OPENED,
}


class MalformedWebhook(ValueError):  # noqa: N818
    """The callback body does not have the provider's expected shape."""


def _timestamp(value: Any, default: datetime) -> datetime:  # noqa: ANN401
    if value is None or value == "":
        return default
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value, tz=UTC)
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        msg = f"Unparseable timestamp {value!r}"
        raise MalformedWebhook(msg) from None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def normalize_sendgrid(
    provider: str,
    payload: Any,  # noqa: ANN401
    form: Mapping[str, str],  # noqa: ARG001
    now: datetime,
) -> list[WebhookEvent]:
    """SendGrid Event Webhook: a JSON array of event objects."""
    if not isinstance(payload, list):
        msg = "SendGrid webhook body must be a JSON array"
        raise MalformedWebhook(msg)
    events = []
    for item in payload:
        if not isinstance(item, dict):
            msg = "SendGrid webhook items must be objects"
            raise MalformedWebhook(msg)
        event_type = _SENDGRID_EVENTS.get(item.get("event", ""))
        sg_id = item.get("sg_message_id")
        if event_type is None or not sg_id:
            log.debug("Ignoring SendGrid event %r", item.get("event"))
            continue
        events.append(
            WebhookEvent(
                provider_name=provider,
                # sg_message_id is "<X-Message-Id>.filter..."; the send
                # recorded only the X-Message-Id part
                provider_message_id=str(sg_id).split(".", 1)[0],
                event_type=event_type,
                timestamp=_timestamp(item.get("timestamp"), now),
                raw_payload=item,
                error=item.get("reason"),
            )
        )
    return events


def normalize_twilio(
    provider: str,
    payload: Any,  # noqa: ANN401, ARG001
    form: Mapping[str, str],
    now: datetime,
) -> list[WebhookEvent]:
    """Twilio status callback: a form post with ``MessageSid``/``MessageStatus``."""
    sid = form.get("MessageSid") or form.get("SmsSid")
    status = form.get("MessageStatus") or form.get("SmsStatus")
    if not sid or not status:
        msg = "Twilio callback needs MessageSid and MessageStatus"
        raise MalformedWebhook(msg)
    event_type = _TWILIO_STATUSES.get(status)
    if event_type is None:
        log.debug("Ignoring Twilio status %r for %s", status, sid)
        return []
    error = None
    if form.get("ErrorCode"):
        error = f"twilio error {form['ErrorCode']}: {form.get('ErrorMessage', '')}".strip(": ")
    return [
        WebhookEvent(
            provider_name=provider,
            provider_message_id=sid,
            event_type=event_type,
            timestamp=now,
            raw_payload=dict(form),
            error=error,
        )
    ]


def normalize_generic(
    provider: str,
    payload: Any,  # noqa: ANN401
    form: Mapping[str, str],  # noqa: ARG001
    now: datetime,
) -> list[WebhookEvent]:
    """Already-normalised ``{provider_message_id, event_type, timestamp}`` objects."""
    items = payload if isinstance(payload, list) else [payload]
    events = []
    for item in items:
        if not isinstance(item, dict):
            msg = "Webhook body must be a JSON object or array of objects"
            raise MalformedWebhook(msg)
        message_id = item.get("provider_message_id")
        if not message_id:
            msg = "provider_message_id is required"
            raise MalformedWebhook(msg)
        try:
            event_type = WebhookEventType(item.get("event_type"))
        except ValueError:
            msg = f"event_type must be one of {[e.value for e in WebhookEventType]}"
            raise MalformedWebhook(msg) from None
        events.append(
            WebhookEvent(
                provider_name=provider,
                provider_message_id=str(message_id),
                event_type=event_type,
                timestamp=_timestamp(item.get("timestamp"), now),
                raw_payload=item,
                error=item.get("error"),
            )
        )
    return events


NORMALIZERS: dict[str, Callable[..., list[WebhookEvent]]] = {
    "sendgrid": normalize_sendgrid,
    "twilio": normalize_twilio,
}


def normalize(
    provider: str,
    kind: str,
    payload: Any,  # noqa: ANN401
    form: Mapping[str, str] | None = None,
    *,
    now: datetime | None = None,
) -> list[WebhookEvent]:
    """Normalise one callback body for *provider* (adapter *kind*).

    Raises
    ------
    MalformedWebhook
        The body does not have the expected shape.

    """
    func = NORMALIZERS.get(kind, normalize_generic)
    return func(provider, payload, form or {}, now or datetime.now(UTC))

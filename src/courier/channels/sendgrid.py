"""SendGrid v3 Mail Send adapter."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from courier.channels import http
from courier.channels.base import ChannelAdapter
from courier.core.errors import TransientSendError
from courier.core.types import Channel

if TYPE_CHECKING:
    from courier.channels.base import OutboundMessage

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.sendgrid.com"


class SendGridAdapter(ChannelAdapter):
    kind = "sendgrid"
    channels = frozenset({Channel.EMAIL})
    required_config = frozenset({"api_key", "from_email"})

    def _payload(self, message: OutboundMessage) -> dict[str, Any]:
        cfg = self.config
        sender: dict[str, str] = {"email": cfg["from_email"]}
        if cfg.get("from_name"):
            sender["name"] = cfg["from_name"]
        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": message.recipient}]}],
            "from": sender,
            "subject": message.subject or "",
            "content": [{"type": "text/html", "value": message.body}],
            "custom_args": {"notification_id": message.idempotency_key},
        }
        attachments = [
            {
                "content": a["content"],
                "filename": a["filename"],
                "type": a.get("content_type", "application/octet-stream"),
                "disposition": "attachment",
            }
            for a in message.attachments
            if a.get("content")
        ]
        if attachments:
            payload["attachments"] = attachments
        return payload

    def send(self, message: OutboundMessage) -> str:
        base = self.config.get("base_url", DEFAULT_BASE_URL).rstrip("/")
        resp = http.post(
            f"{base}/v3/mail/send",
            provider=self.provider_name,
            timeout=self.binding.timeout_seconds,
            headers={"Authorization": f"Bearer {self.config['api_key']}"},
            json_body=self._payload(message),
        )
        message_id = resp.headers.get("x-message-id")
        if not message_id:
            msg = f"SendGrid accepted the message (HTTP {resp.status}) without X-Message-Id"
            raise TransientSendError(msg, provider=self.provider_name, status_code=resp.status)
        return message_id

"""Firebase Cloud Messaging HTTP v1 adapter (push)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from courier.channels import http
from courier.channels.base import ChannelAdapter
from courier.core.errors import TransientSendError
from courier.core.types import Channel

if TYPE_CHECKING:
    from courier.channels.base import OutboundMessage

DEFAULT_BASE_URL = "https://fcm.googleapis.com"


class FcmAdapter(ChannelAdapter):
    kind = "fcm"
    channels = frozenset({Channel.PUSH})
    required_config = frozenset({"project_id", "access_token"})

    def send(self, message: OutboundMessage) -> str:
        cfg = self.config
        body: dict[str, Any] = {
            "message": {
                "token": message.recipient,
                "notification": {"title": message.subject or "", "body": message.body},
                "data": {"notification_id": message.idempotency_key},
            },
        }
        base = cfg.get("base_url", DEFAULT_BASE_URL).rstrip("/")
        resp = http.post(
            f"{base}/v1/projects/{cfg['project_id']}/messages:send",
            provider=self.provider_name,
            timeout=self.binding.timeout_seconds,
            headers={"Authorization": f"Bearer {cfg['access_token']}"},
            json_body=body,
        )
        name = resp.json().get("name")
        if not name:
            msg = f"FCM response (HTTP {resp.status}) has no message name"
            raise TransientSendError(msg, provider=self.provider_name, status_code=resp.status)
        return name

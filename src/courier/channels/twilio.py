"""Twilio Programmable Messaging adapter (SMS and WhatsApp)."""

from __future__ import annotations

from typing import TYPE_CHECKING

from courier.channels import http
from courier.channels.base import ChannelAdapter
from courier.channels.phone import format_whatsapp_body, to_e164, whatsapp_address
from courier.core.errors import TransientSendError
from courier.core.types import Channel

if TYPE_CHECKING:
    from courier.channels.base import OutboundMessage

DEFAULT_BASE_URL = "https://api.twilio.com"


class TwilioAdapter(ChannelAdapter):
    kind = "twilio"
    channels = frozenset({Channel.SMS, Channel.WHATSAPP})
    required_config = frozenset({"account_sid", "auth_token", "from_number"})

    def _addresses(self, message: OutboundMessage) -> tuple[str, str]:
        cc = self.config.get("default_country_code")
        if message.channel == Channel.WHATSAPP:
            return (
                whatsapp_address(message.recipient, cc),
                whatsapp_address(self.config["from_number"]),
            )
        return to_e164(message.recipient, cc), self.config["from_number"]

    def send(self, message: OutboundMessage) -> str:
        cfg = self.config
        to, sender = self._addresses(message)
        body = message.body
        if message.channel == Channel.WHATSAPP:
            body = format_whatsapp_body(body)

        form: list[tuple[str, str]] = [("To", to), ("From", sender), ("Body", body)]
        form.extend(("MediaUrl", a["url"]) for a in message.attachments if a.get("url"))
        if cfg.get("status_callback_url"):
            form.append(("StatusCallback", cfg["status_callback_url"]))

        base = cfg.get("base_url", DEFAULT_BASE_URL).rstrip("/")
        resp = http.post(
            f"{base}/2010-04-01/Accounts/{cfg['account_sid']}/Messages.json",
            provider=self.provider_name,
            timeout=self.binding.timeout_seconds,
            headers={
                "Authorization": http.basic_auth(cfg["account_sid"], cfg["auth_token"]),
                "I-Twilio-Idempotency-Token": message.idempotency_key,
            },
            form=form,
        )
        sid = resp.json().get("sid")
        if not sid:
            msg = f"Twilio response (HTTP {resp.status}) has no message sid"
            raise TransientSendError(msg, provider=self.provider_name, status_code=resp.status)
        return sid

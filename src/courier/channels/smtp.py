"""SMTP email adapter.

Opens one connection per message.  The generated ``Message-ID`` header
is returned as the provider message id, so bounce processing can
correlate on it.
"""

from __future__ import annotations

import base64
import logging
import smtplib
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import TYPE_CHECKING

from courier.channels.base import ChannelAdapter
from courier.core.errors import PermanentSendError, TransientSendError
from courier.core.types import Channel

if TYPE_CHECKING:
    from courier.channels.base import OutboundMessage

log = logging.getLogger(__name__)

_PERMANENT_SMTP_CODE = 500


class SmtpAdapter(ChannelAdapter):
    kind = "smtp"
    channels = frozenset({Channel.EMAIL})
    required_config = frozenset({"host", "from_address"})

    def _build(self, message: OutboundMessage, message_id: str) -> MIMEMultipart:
        cfg = self.config
        mime = MIMEMultipart("mixed")
        sender = cfg["from_address"]
        mime["From"] = formataddr((cfg["from_name"], sender)) if cfg.get("from_name") else sender
        mime["To"] = message.recipient
        mime["Subject"] = message.subject or ""
        mime["Message-ID"] = message_id
        mime["X-Courier-Notification-Id"] = message.idempotency_key

        alternative = MIMEMultipart("alternative")
        alternative.attach(MIMEText(message.body, "html", "utf-8"))
        mime.attach(alternative)

        for attachment in message.attachments:
            content = attachment.get("content")
            if not content:
                log.warning(
                    "Skipping attachment %r without inline content for %s",
                    attachment.get("filename"),
                    message.idempotency_key,
                )
                continue
            maintype, _, subtype = attachment.get(
                "content_type", "application/octet-stream"
            ).partition("/")
            part = MIMEApplication(base64.b64decode(content), _subtype=subtype or "octet-stream")
            part.add_header("Content-Disposition", "attachment", filename=attachment["filename"])
            mime.attach(part)
        return mime

    def send(self, message: OutboundMessage) -> str:
        cfg = self.config
        domain = cfg.get("message_id_domain") or cfg["from_address"].rpartition("@")[2] or None
        message_id = make_msgid(idstring=message.idempotency_key[:8], domain=domain)
        mime = self._build(message, message_id)

        try:
            with smtplib.SMTP(
                cfg["host"],
                int(cfg.get("port", 587)),
                timeout=self.binding.timeout_seconds,
            ) as server:
                server.ehlo()
                if cfg.get("use_tls", True):
                    server.starttls()
                    server.ehlo()
                if cfg.get("username"):
                    server.login(cfg["username"], cfg.get("password", ""))
                server.sendmail(cfg["from_address"], [message.recipient], mime.as_string())
        except smtplib.SMTPRecipientsRefused as exc:
            msg = f"Recipient refused: {message.recipient}"
            raise PermanentSendError(msg, provider=self.provider_name) from exc
        except smtplib.SMTPAuthenticationError as exc:
            # credentials are fixable without touching the message
            msg = f"SMTP authentication failed ({exc.smtp_code})"
            raise TransientSendError(
                msg, provider=self.provider_name, status_code=exc.smtp_code
            ) from exc
        except smtplib.SMTPResponseException as exc:
            detail = exc.smtp_error.decode("utf-8", "replace") if isinstance(
                exc.smtp_error, bytes
            ) else str(exc.smtp_error)
            msg = f"SMTP {exc.smtp_code}: {detail}"
            cls = PermanentSendError if exc.smtp_code >= _PERMANENT_SMTP_CODE else TransientSendError
            raise cls(msg, provider=self.provider_name, status_code=exc.smtp_code) from exc
        except (smtplib.SMTPException, OSError) as exc:
            msg = f"SMTP transport error: {exc}"
            raise TransientSendError(msg, provider=self.provider_name) from exc

        return message_id.strip("<>")

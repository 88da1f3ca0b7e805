"""Logging adapter for development and tests.

Accepts every channel, writes the message to the log and returns a
synthetic provider id.  ``config.fail`` makes it raise instead:
``"transient"`` or ``"permanent"``.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from courier.channels.base import ChannelAdapter
from courier.core.errors import PermanentSendError, TransientSendError
from courier.core.types import Channel

if TYPE_CHECKING:
    from courier.channels.base import OutboundMessage

log = logging.getLogger(__name__)


class LogAdapter(ChannelAdapter):
    kind = "log"
    channels = frozenset(Channel)

    def send(self, message: OutboundMessage) -> str:
        fail = self.config.get("fail")
        if fail == "permanent":
            msg = f"{self.provider_name}: configured to reject {message.recipient}"
            raise PermanentSendError(msg, provider=self.provider_name)
        if fail == "transient":
            msg = f"{self.provider_name}: configured to fail transiently"
            raise TransientSendError(msg, provider=self.provider_name)

        provider_message_id = f"{self.provider_name}-{uuid.uuid4().hex}"
        log.info(
            "[%s] %s to %s: %s",
            self.provider_name,
            message.channel.value,
            message.recipient,
            message.subject or message.body[:60],
            extra={
                "provider": self.provider_name,
                "notification_id": message.idempotency_key,
                "provider_message_id": provider_message_id,
            },
        )
        return provider_message_id

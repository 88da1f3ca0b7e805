"""Channel adapter contract.

An adapter turns an :class:`OutboundMessage` into one provider call and
returns the provider's message id.  Failures are reported by raising
:class:`~courier.core.errors.TransientSendError` (retryable) or
:class:`~courier.core.errors.PermanentSendError` (terminal).  Any other
exception escaping ``send`` is treated as transient by the worker.

Adapters are shared by all worker threads and must not keep per-call
mutable state on ``self``.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from courier.core.types import Channel

if TYPE_CHECKING:
    from courier.config.settings import ChannelBinding


@dataclass(frozen=True)
class OutboundMessage:
    """Everything an adapter needs for one send.

    ``idempotency_key`` is the notification id; providers that support
    de-duplication receive it so a reclaimed, re-sent entry is not
    delivered twice.
    """

    channel: Channel
    recipient: str
    body: str
    idempotency_key: str
    subject: str | None = None
    attachments: tuple[dict[str, Any], ...] = field(default_factory=tuple)


class ChannelAdapter(abc.ABC):
    """Base class for provider adapters."""

    kind: ClassVar[str]
    channels: ClassVar[frozenset[Channel]]
    required_config: ClassVar[frozenset[str]] = frozenset()

    def __init__(self, binding: ChannelBinding) -> None:
        self.binding = binding
        self.provider_name = binding.provider
        self.config = binding.config

    @abc.abstractmethod
    def send(self, message: OutboundMessage) -> str:
        """Hand *message* to the provider and return its message id."""

    def close(self) -> None:  # noqa: B027
        """Release provider resources; the default adapter holds none."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} provider={self.provider_name} kind={self.kind}>"

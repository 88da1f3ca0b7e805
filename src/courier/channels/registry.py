"""Adapter kinds and the channel -> provider registry.

Adapters are built once per process from the ``channels`` config
section and shared by every worker thread.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from courier.channels.fcm import FcmAdapter
from courier.channels.log import LogAdapter
from courier.channels.sendgrid import SendGridAdapter
from courier.channels.smtp import SmtpAdapter
from courier.channels.twilio import TwilioAdapter
from courier.core.errors import PermanentSendError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from courier.channels.base import ChannelAdapter
    from courier.config.settings import ChannelBinding
    from courier.core.types import Channel

log = logging.getLogger(__name__)

ADAPTER_CLASSES: dict[str, type[ChannelAdapter]] = {
    cls.kind: cls
    for cls in (SmtpAdapter, SendGridAdapter, TwilioAdapter, FcmAdapter, LogAdapter)
}

# kind -> (supported channels, required provider-config keys)
ADAPTER_REQUIREMENTS: dict[str, tuple[frozenset[str], frozenset[str]]] = {
    kind: (frozenset(c.value for c in cls.channels), cls.required_config)
    for kind, cls in ADAPTER_CLASSES.items()
}


class ChannelRegistry:
    """Resolve ``(channel, provider)`` to a configured adapter.

    Parameters
    ----------
    bindings:
        The ``channels`` settings.  Each binding gets one adapter.

    """

    def __init__(self, bindings: Iterable[ChannelBinding]) -> None:
        self._adapters: dict[str, ChannelAdapter] = {}
        self._bindings: dict[str, ChannelBinding] = {}
        self._defaults: dict[Channel, str] = {}
        self._by_channel: dict[Channel, list[str]] = {}

        for binding in bindings:
            cls = ADAPTER_CLASSES.get(binding.kind)
            if cls is None:
                msg = f"Unknown adapter kind {binding.kind!r} for provider {binding.provider!r}"
                raise ValueError(msg)
            self._adapters[binding.provider] = cls(binding)
            self._bindings[binding.provider] = binding
            self._by_channel.setdefault(binding.channel, []).append(binding.provider)
            if binding.is_default:
                self._defaults[binding.channel] = binding.provider

        log.info(
            "Channel registry ready: %s",
            ", ".join(f"{b.channel.value}->{p}" for p, b in self._bindings.items()) or "(empty)",
        )

    def resolve(
        self,
        channel: Channel,
        provider: str | None = None,
    ) -> tuple[ChannelAdapter, ChannelBinding]:
        """Return the adapter and binding to send *channel* through.

        Without *provider*, the channel's default binding is used, or
        its first binding when none is marked default.

        Raises
        ------
        PermanentSendError
            No provider is bound for the channel, or *provider* is not
            bound to it.

        """
        if provider is None:
            provider = self._defaults.get(channel)
            if provider is None:
                candidates = self._by_channel.get(channel)
                if not candidates:
                    msg = f"No provider configured for channel '{channel.value}'"
                    raise PermanentSendError(msg)
                provider = candidates[0]

        binding = self._bindings.get(provider)
        if binding is None or binding.channel != channel:
            msg = f"Provider '{provider}' is not bound to channel '{channel.value}'"
            raise PermanentSendError(msg, provider=provider)
        return self._adapters[provider], binding

    def bindings(self) -> list[ChannelBinding]:
        return list(self._bindings.values())

    def binding(self, provider: str) -> ChannelBinding | None:
        return self._bindings.get(provider)

    def close(self) -> None:
        for adapter in self._adapters.values():
            try:
                adapter.close()
            except Exception:
                log.exception("Error closing adapter %r", adapter)

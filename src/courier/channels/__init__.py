"""Provider adapters for email, SMS, WhatsApp and push."""

from courier.channels.base import ChannelAdapter, OutboundMessage
from courier.channels.registry import ADAPTER_CLASSES, ADAPTER_REQUIREMENTS, ChannelRegistry

__all__ = [
    "ADAPTER_CLASSES",
    "ADAPTER_REQUIREMENTS",
    "ChannelAdapter",
    "ChannelRegistry",
    "OutboundMessage",
]

"""Inbound provider callback normalisation."""

from courier.webhooks.normalizers import MalformedWebhook, normalize

__all__ = ["MalformedWebhook", "normalize"]

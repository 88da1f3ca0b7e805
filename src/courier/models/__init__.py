"""Entity models for the courier persistence layer.

All models are frozen dataclasses.  Use :func:`dataclasses.replace`
for modifications (copy-on-write).
"""

from courier.models.campaign import Campaign, CampaignRecipient
from courier.models.notification import Notification
from courier.models.queue_entry import QueueEntry
from courier.models.template import Template
from courier.models.webhook import WebhookEvent

__all__ = [
    "Campaign",
    "CampaignRecipient",
    "Notification",
    "QueueEntry",
    "Template",
    "WebhookEvent",
]

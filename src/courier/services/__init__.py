"""Delivery engine services: producers, workers and background loops."""

from courier.services.campaign import CampaignEnqueuer, CampaignService
from courier.services.maintenance_worker import MaintenanceWorker
from courier.services.notification import NotificationService
from courier.services.rate_limiter import (
    DatabaseRateLimiter,
    InMemoryRateLimiter,
    RateDecision,
    create_rate_limiter,
)
from courier.services.reconciler import WebhookReconciler
from courier.services.template import TemplateService
from courier.services.workers import DispatchWorkerPool

__all__ = [
    "CampaignEnqueuer",
    "CampaignService",
    "DatabaseRateLimiter",
    "DispatchWorkerPool",
    "InMemoryRateLimiter",
    "MaintenanceWorker",
    "NotificationService",
    "RateDecision",
    "TemplateService",
    "WebhookReconciler",
    "create_rate_limiter",
]

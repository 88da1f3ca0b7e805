"""Dependency injection container for Courier.

Created once during application startup and stored on the Flask app
via ``app.extensions["container"]``.  Accessible from any request
context with :func:`get_container`.

Usage::

    from courier.app.context import get_container

    c = get_container()
    notification = c.notifications.get_status(notification_id)
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from flask import current_app

if TYPE_CHECKING:
    from pypgkit import Database

    from courier.app.shutdown import ShutdownCoordinator
    from courier.channels.registry import ChannelRegistry
    from courier.config.settings import CourierSettings
    from courier.metrics.collector import MetricsCollector
    from courier.rendering import TemplateRenderer
    from courier.services import (
        CampaignEnqueuer,
        CampaignService,
        DatabaseRateLimiter,
        DispatchWorkerPool,
        InMemoryRateLimiter,
        MaintenanceWorker,
        NotificationService,
        TemplateService,
        WebhookReconciler,
    )
    from courier.store.base import DeliveryStore

log = logging.getLogger(__name__)


class Container:
    """Application-wide dependency container.

    Holds the delivery store, the optional :class:`Database` (absent
    with the in-memory store) and every service built on them.  The
    background threads are created here but only started by
    :meth:`start_background`.
    """

    def __init__(  # noqa: PLR0913
        self,
        settings: CourierSettings,
        store: DeliveryStore,
        db: Database | None = None,
        *,
        shutdown_coordinator: ShutdownCoordinator | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialise the container and wire up all dependencies."""
        from courier.channels.registry import ChannelRegistry as _CR  # noqa: N814, PLC0415
        from courier.rendering import TemplateRenderer as _TR  # noqa: N814, PLC0415
        from courier.services import (  # noqa: PLC0415
            CampaignEnqueuer as _CE,  # noqa: N814
        )
        from courier.services import (  # noqa: PLC0415
            CampaignService as _CS,  # noqa: N814
        )
        from courier.services import (  # noqa: PLC0415
            DatabaseRateLimiter as _DRL,  # noqa: N814
        )
        from courier.services import (  # noqa: PLC0415
            DispatchWorkerPool as _DWP,  # noqa: N814
        )
        from courier.services import (  # noqa: PLC0415
            MaintenanceWorker as _MW,  # noqa: N814
        )
        from courier.services import (  # noqa: PLC0415
            NotificationService as _NS,  # noqa: N814
        )
        from courier.services import (  # noqa: PLC0415
            TemplateService as _TS,  # noqa: N814
        )
        from courier.services import (  # noqa: PLC0415
            WebhookReconciler as _WR,  # noqa: N814
        )
        from courier.services import create_rate_limiter  # noqa: PLC0415

        self.settings: CourierSettings = settings
        self.store: DeliveryStore = store
        self.db: Database | None = db
        self.shutdown_coordinator = shutdown_coordinator
        self.metrics: MetricsCollector | None = metrics

        # Core utilities
        self.renderer: TemplateRenderer = _TR()
        self.channels: ChannelRegistry = _CR(settings.channels)
        self.rate_limiter: InMemoryRateLimiter | DatabaseRateLimiter = create_rate_limiter(
            settings.rate_limits,
            db,
        )

        # Services
        self.notifications: NotificationService = _NS(store, settings, metrics=metrics)
        self.templates: TemplateService = _TS(store, self.renderer)
        self.campaigns: CampaignService = _CS(store, settings.campaigns, metrics=metrics)
        self.reconciler: WebhookReconciler = _WR(store, settings.webhooks, metrics=metrics)

        # Background loops
        self.dispatch_pool: DispatchWorkerPool = _DWP(
            store,
            self.channels,
            self.renderer,
            self.rate_limiter,
            settings,
            metrics=metrics,
        )
        self.campaign_enqueuer: CampaignEnqueuer = _CE(
            self.campaigns,
            settings.campaigns,
            db=db,
            metrics=metrics,
        )
        self.maintenance_worker: MaintenanceWorker = _MW(
            store,
            settings,
            campaigns=self.campaigns,
            db_rate_limiter=(self.rate_limiter if isinstance(self.rate_limiter, _DRL) else None),
            db=db,
            metrics=metrics,
        )

        if metrics is not None:
            metrics.register_gauge("courier_queue_depth", self._queue_depth)
            metrics.register_gauge(
                "courier_workers_alive",
                lambda: {"dispatch": self.dispatch_pool.alive_count()},
                label="pool",
            )

    def _queue_depth(self) -> dict[str, int]:
        return self.store.queue_depth(now=datetime.now(UTC))

    def background_threads(self) -> dict[str, bool]:
        """Liveness of every background loop, keyed by name."""
        return {
            "dispatch_workers": self.dispatch_pool.alive_count() > 0,
            "campaign_enqueuer": self.campaign_enqueuer.is_alive(),
            "maintenance_worker": self.maintenance_worker.is_alive(),
        }

    def start_background(self) -> None:
        """Start the dispatch pool, campaign enqueuer and maintenance worker."""
        self.dispatch_pool.start()
        self.campaign_enqueuer.start()
        self.maintenance_worker.start()

    def stop_background(self) -> None:
        """Stop every background loop and release adapter resources."""
        self.campaign_enqueuer.stop()
        self.maintenance_worker.stop()
        self.dispatch_pool.stop()
        self.channels.close()


def get_container() -> Container:
    """Return the :class:`Container` from the current Flask app.

    Raises :class:`RuntimeError` if ``create_app`` did not build one.
    """
    container = current_app.extensions.get("container")
    if container is None:
        msg = "Dependency container not available -- was create_app() given a store?"
        raise RuntimeError(msg)
    return container

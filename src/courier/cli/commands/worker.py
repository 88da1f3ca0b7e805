"""Worker subcommand: run the delivery loops without the HTTP API."""

from __future__ import annotations

import logging
import time

log = logging.getLogger(__name__)

_POLL_SECONDS = 0.5


def run_worker(config, args) -> None:  # noqa: ARG001
    """Run dispatch workers, campaign enqueuer and maintenance until signalled."""
    from courier.app.context import Container  # noqa: PLC0415
    from courier.app.shutdown import ShutdownCoordinator  # noqa: PLC0415
    from courier.cli.commands.serve import _database_for  # noqa: PLC0415
    from courier.metrics.collector import MetricsCollector  # noqa: PLC0415
    from courier.store import create_store  # noqa: PLC0415

    settings = config.settings
    if settings.store.backend == "memory":
        log.warning(
            "Standalone worker with the in-memory store only sees "
            "notifications enqueued in this process",
        )

    db = _database_for(settings)
    store = create_store(settings, db)
    coordinator = ShutdownCoordinator(graceful_timeout=settings.server.graceful_timeout)
    container = Container(
        settings,
        store,
        db,
        shutdown_coordinator=coordinator,
        metrics=MetricsCollector(),
    )

    coordinator.register_signals()
    container.start_background()
    log.info(
        "Worker process started (%d dispatch threads); waiting for SIGTERM",
        settings.workers.count,
    )

    try:
        while not coordinator.is_shutting_down:
            time.sleep(_POLL_SECONDS)
    except KeyboardInterrupt:
        log.info("Interrupted")
    finally:
        container.stop_background()
        log.info("Worker process stopped")

"""Flask application factory for Courier.

Usage::

    from courier.app import create_app
    from courier.config import get_config
    from courier.db import init_database

    db  = init_database(get_config().settings.database)
    app = create_app(config=get_config(), database=db)

Tests and single-process development use the in-memory store::

    app = create_app(settings=settings, store=InMemoryStore(), start_workers=False)
"""

from __future__ import annotations

import atexit
import logging
from typing import TYPE_CHECKING

from flask import Flask, jsonify

if TYPE_CHECKING:
    from flask.typing import ResponseReturnValue
    from pypgkit import Database

    from courier.config.courier_config import CourierConfig
    from courier.config.settings import CourierSettings
    from courier.store.base import DeliveryStore

log = logging.getLogger(__name__)


def create_app(  # noqa: C901, PLR0913, PLR0915
    config: CourierConfig | None = None,
    database: Database | None = None,
    *,
    store: DeliveryStore | None = None,
    settings: CourierSettings | None = None,
    start_workers: bool | None = None,
) -> Flask:
    """Create and configure the Courier Flask application.

    Parameters
    ----------
    config:
        Loaded :class:`CourierConfig`.  Falls back to :func:`get_config`
        when neither *config* nor *settings* is given.
    database:
        Initialised :class:`Database`.  Required by the PostgreSQL store
        and the database rate limiter.
    store:
        Explicit delivery store.  Built from ``store.backend`` when
        ``None``; if that needs a database and none was given, the app
        starts with probes only (useful for ``--validate-only``).
    settings:
        Settings tree to use instead of ``config.settings``.
    start_workers:
        Start the dispatch pool and background loops.  Defaults to
        ``workers.enabled``.

    Returns
    -------
    Flask
        Fully configured WSGI application.

    """
    if settings is None:
        if config is None:
            from courier.config import get_config  # noqa: PLC0415

            config = get_config()
        settings = config.settings

    app = Flask("courier")
    app.config["COURIER_SETTINGS"] = settings
    app.config["COURIER_CONFIG"] = config
    app.config["MAX_CONTENT_LENGTH"] = settings.api.max_request_body_bytes

    # -- Metrics ------------------------------------------------------------
    from courier.metrics import MetricsCollector  # noqa: PLC0415

    metrics = MetricsCollector()
    app.extensions["metrics"] = metrics

    # -- Graceful shutdown coordinator --------------------------------------
    from courier.app.shutdown import ShutdownCoordinator  # noqa: PLC0415

    shutdown_coordinator = ShutdownCoordinator(
        graceful_timeout=settings.server.graceful_timeout,
    )
    app.extensions["shutdown_coordinator"] = shutdown_coordinator
    atexit.register(shutdown_coordinator.initiate)

    # -- Error handlers (RFC 7807) ------------------------------------------
    from courier.app.errors import register_error_handlers  # noqa: PLC0415

    register_error_handlers(app)

    # -- Request lifecycle hooks --------------------------------------------
    from courier.app.middleware import register_request_hooks  # noqa: PLC0415

    register_request_hooks(app)

    # -- Infrastructure endpoints -------------------------------------------
    _register_health(app)

    # -- Delivery store -----------------------------------------------------
    if store is None and (database is not None or settings.store.backend == "memory"):
        from courier.store import create_store  # noqa: PLC0415

        store = create_store(settings, database)

    # -- Dependency container -----------------------------------------------
    if store is not None:
        from courier.app.context import Container  # noqa: PLC0415

        container = Container(
            settings,
            store,
            database,
            shutdown_coordinator=shutdown_coordinator,
            metrics=metrics,
        )
        app.extensions["container"] = container

        if start_workers is None:
            start_workers = settings.workers.enabled
        if start_workers:
            container.start_background()
            shutdown_coordinator.on_shutdown("background workers", container.stop_background)

        # -- API routes -----------------------------------------------------
        from courier.api import register_blueprints  # noqa: PLC0415

        register_blueprints(app)

        # -- Metrics endpoint (optional) ------------------------------------
        if settings.metrics.enabled:
            from courier.api.metrics import metrics_bp  # noqa: PLC0415

            app.register_blueprint(
                metrics_bp,
                url_prefix=settings.metrics.path,
            )
            log.info("Metrics endpoint registered at %s", settings.metrics.path)
    else:
        log.warning("No delivery store available; only health probes are served")

    # -- Config hot-reload (SIGHUP) -----------------------------------------
    shutdown_coordinator.register_reload_signal()

    @app.before_request
    def _check_config_reload() -> None:
        """Reload safe config sections when SIGHUP is received."""
        sc = app.extensions.get("shutdown_coordinator")
        if sc is None or not sc.reload_requested:
            return

        try:
            cfg = app.config.get("COURIER_CONFIG")
            if cfg is None:
                return

            new_settings = cfg.reload_settings()
            current = app.config["COURIER_SETTINGS"]
            reloaded = []

            # Only reload safe sections: logging and the API key list
            if new_settings.logging != current.logging:
                from courier.logging import configure_logging  # noqa: PLC0415

                configure_logging(new_settings.logging)
                reloaded.append(f"logging.level={new_settings.logging.level}")

            if new_settings.api.api_keys != current.api.api_keys:
                reloaded.append("api.api_keys")

            if reloaded:
                app.config["COURIER_SETTINGS"] = new_settings
                log.info("Config hot-reloaded sections: %s", ", ".join(reloaded))
            else:
                log.info("Config reload requested but no safe-to-reload changes detected")
        except Exception:
            log.exception("Config hot-reload failed")
        finally:
            sc.consume_reload()

    log.info("Flask application created")
    return app


# ---------------------------------------------------------------------------
# Infrastructure endpoints
# ---------------------------------------------------------------------------


def _register_health(app: Flask) -> None:  # noqa: C901
    """Register ``/livez``, ``/healthz``, and ``/readyz`` probes."""
    from courier import __version__  # noqa: PLC0415

    @app.route("/livez")
    def livez() -> ResponseReturnValue:
        """Return minimal liveness probe."""
        return jsonify({"alive": True, "version": __version__}), 200

    @app.route("/healthz")
    def healthz() -> ResponseReturnValue:  # noqa: C901
        """Return store, pool, worker and queue health."""
        result: dict = {"status": "ok", "version": __version__}
        checks: dict = {}

        container = app.extensions.get("container")
        if container is not None:
            try:
                ok = container.store.ping()
            except Exception:  # noqa: BLE001
                ok = False
            checks["store"] = "connected" if ok else "disconnected"
            if not ok:
                result["status"] = "degraded"

            # Connection pool stats
            if container.db is not None:
                try:
                    stats = container.db.get_stats()
                    pool_info = {
                        "size": stats.get("pool_size", 0),
                        "available": stats.get("pool_available", 0),
                        "waiting": stats.get("requests_waiting", 0),
                        "min": stats.get("pool_min", 0),
                        "max": stats.get("pool_max", 0),
                    }
                    result["pool"] = pool_info
                    if pool_info["available"] == 0 and pool_info["waiting"] > 0:
                        result["status"] = "degraded"
                except Exception:  # noqa: BLE001
                    log.debug("Failed to retrieve connection pool stats")

            shutdown_coord = app.extensions.get("shutdown_coordinator")
            if shutdown_coord is not None:
                result["shutting_down"] = shutdown_coord.is_shutting_down

            # Worker liveness (only meaningful once the pool was started)
            if container.dispatch_pool.size:
                workers_status = {
                    name: "alive" if alive else "dead"
                    for name, alive in container.background_threads().items()
                }
                result["workers"] = workers_status
                if "dead" in workers_status.values():
                    result["status"] = "degraded"

            if ok:
                try:
                    from datetime import UTC, datetime  # noqa: PLC0415

                    result["queue"] = container.store.queue_depth(now=datetime.now(UTC))
                except Exception:  # noqa: BLE001
                    log.debug("Failed to read queue depth")

        if checks:
            result["checks"] = checks

        code = 200 if result["status"] == "ok" else 503
        return jsonify(result), code

    @app.route("/readyz")
    def readyz() -> ResponseReturnValue:
        """Return readiness: a store is wired and reachable, not shutting down."""
        container = app.extensions.get("container")
        if container is None:
            return jsonify({"ready": False, "reason": "Container not initialized"}), 503

        shutdown_coord = app.extensions.get("shutdown_coordinator")
        if shutdown_coord is not None and shutdown_coord.is_shutting_down:
            return jsonify({"ready": False, "reason": "Shutting down"}), 503

        try:
            ok = container.store.ping()
        except Exception:  # noqa: BLE001
            ok = False
        if not ok:
            return jsonify({"ready": False, "reason": "Store not reachable"}), 503

        return jsonify({"ready": True}), 200

"""Serve subcommand: start the HTTP API (and, per config, the workers)."""

from __future__ import annotations

import logging

log = logging.getLogger(__name__)


def _database_for(settings):
    """Initialise PostgreSQL when any component is configured to use it."""
    if settings.store.backend != "database" and settings.rate_limits.backend != "database":
        return None
    from courier.db import init_database  # noqa: PLC0415

    return init_database(settings.database)


def run_serve(config, args) -> None:
    """Start the Courier server."""
    from courier.app import create_app  # noqa: PLC0415

    settings = config.settings
    db = _database_for(settings)

    if args.dev:
        log.info("Starting development server (not for production)")
        app = create_app(config=config, database=db)
        app.run(
            host=settings.server.bind,
            port=settings.server.port,
            debug=True,
            use_reloader=False,
        )
    else:
        from courier.server.gunicorn_app import run_gunicorn  # noqa: PLC0415

        # threads do not survive gunicorn's fork; workers start per process
        app = create_app(config=config, database=db, start_workers=False)
        run_gunicorn(app, settings.server, start_workers=settings.workers.enabled)

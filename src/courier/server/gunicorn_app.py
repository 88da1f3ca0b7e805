"""Run the API under gunicorn without a separate gunicorn config file.

Dispatch threads cannot be started before gunicorn forks (threads do
not survive ``fork``), so when the server also delivers, each worker
process starts its own background loops in ``post_worker_init`` and
stops them in ``worker_exit``.  Claims are row-locked in PostgreSQL, so
several worker processes can dispatch from one queue.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from flask import Flask

    from courier.config.settings import ServerSettings

log = logging.getLogger(__name__)

_GUNICORN_MISSING = (
    "gunicorn is not installed.  Install it with:\n"
    "    pip install gunicorn\n\n"
    "gunicorn only runs on Unix.  Use 'serve --dev' for the Flask "
    "development server on Windows."
)


def _container(worker):
    return worker.wsgi.extensions.get("container")


def _start_background(worker) -> None:
    """``post_worker_init``: start delivery threads in the forked worker."""
    container = _container(worker)
    if container is not None:
        container.start_background()


def _stop_background(server, worker) -> None:  # noqa: ARG001
    """``worker_exit``: let in-progress sends finish before the worker exits."""
    container = _container(worker)
    if container is not None:
        container.stop_background()


def gunicorn_options(settings: ServerSettings, *, start_workers: bool = False) -> dict[str, Any]:
    """Translate the ``server`` config section into gunicorn settings.

    ``max_requests`` and its jitter are only passed when non-zero so
    gunicorn's own defaults apply otherwise.  gunicorn's access log is
    disabled; requests are logged on ``courier.access``.
    """
    options: dict[str, Any] = {
        "bind": f"{settings.bind}:{settings.port}",
        "workers": settings.workers,
        "worker_class": settings.worker_class,
        "timeout": settings.timeout,
        "graceful_timeout": settings.graceful_timeout,
        "keepalive": settings.keepalive,
        "accesslog": None,
    }
    for name in ("max_requests", "max_requests_jitter"):
        value = getattr(settings, name)
        if value:
            options[name] = value
    if start_workers:
        options["post_worker_init"] = _start_background
        options["worker_exit"] = _stop_background
    return options


def run_gunicorn(app: Flask, settings: ServerSettings, *, start_workers: bool = False) -> None:
    """Serve *app* with gunicorn until the master process exits.

    Raises :class:`RuntimeError` when gunicorn cannot be imported.
    """
    try:
        from gunicorn.app.base import BaseApplication  # noqa: PLC0415
    except ImportError:
        raise RuntimeError(_GUNICORN_MISSING) from None

    options = gunicorn_options(settings, start_workers=start_workers)

    class _CourierServer(BaseApplication):
        def __init__(self) -> None:
            self.application = app
            super().__init__()

        def load_config(self) -> None:
            for key, value in options.items():
                self.cfg.set(key, value)

        def load(self) -> Flask:
            return self.application

    log.info(
        "gunicorn listening on %s with %d %s workers%s",
        options["bind"],
        settings.workers,
        settings.worker_class,
        ", each running delivery threads" if start_workers else "",
    )
    _CourierServer().run()

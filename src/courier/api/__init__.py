"""Producer HTTP API: Flask blueprint registration.

Call :func:`register_blueprints` during application startup to wire
all route blueprints into the Flask app under ``api.base_path``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from flask import Flask

log = logging.getLogger(__name__)


def register_blueprints(app: Flask) -> None:
    """Register all API blueprints on the Flask application."""
    settings = app.config["COURIER_SETTINGS"]
    base = settings.api.base_path.rstrip("/")

    from courier.api.campaigns import campaigns_bp  # noqa: PLC0415
    from courier.api.notifications import notifications_bp  # noqa: PLC0415
    from courier.api.providers import providers_bp  # noqa: PLC0415
    from courier.api.templates import templates_bp  # noqa: PLC0415
    from courier.api.webhooks import webhooks_bp  # noqa: PLC0415

    app.register_blueprint(notifications_bp, url_prefix=base + "/notifications")
    app.register_blueprint(templates_bp, url_prefix=base + "/templates")
    app.register_blueprint(campaigns_bp, url_prefix=base + "/campaigns")
    app.register_blueprint(providers_bp, url_prefix=base + "/providers")
    app.register_blueprint(webhooks_bp, url_prefix=base + "/webhooks")

    log.info("API registered at %s/", base)

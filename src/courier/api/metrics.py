"""Prometheus-compatible metrics endpoint.

``GET /metrics`` returns metrics in text format.  Not under the API
base path, so no API key is required; restrict it at the proxy.
"""

from __future__ import annotations

from flask import Blueprint, current_app, make_response

metrics_bp = Blueprint("metrics", __name__)


@metrics_bp.route("", methods=["GET"])
def get_metrics():
    """Return metrics in Prometheus text exposition format."""
    collector = current_app.extensions.get("metrics")
    if collector is None:
        return "# No metrics available\n", 200, {"Content-Type": "text/plain"}

    response = make_response(collector.export())
    response.headers["Content-Type"] = "text/plain; version=0.0.4; charset=utf-8"
    return response

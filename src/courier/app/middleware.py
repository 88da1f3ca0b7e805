"""Flask request lifecycle hooks for Courier.

Registered via :func:`register_request_hooks`:

* Request ID generation / passthrough (``X-Request-ID``)
* API-key authentication for the producer API (webhooks are exempt;
  providers authenticate with the per-provider webhook secret)
* Request timing
* Security headers, HTTP metrics and structured access logging
"""

from __future__ import annotations

import hmac
import logging
import time
from typing import TYPE_CHECKING
from uuid import uuid4

from flask import Flask, g, request

from courier.app.errors import UNAUTHORIZED, ApiProblem

if TYPE_CHECKING:
    from collections.abc import Sequence

log = logging.getLogger(__name__)
access_log = logging.getLogger("courier.access")


def _presented_key() -> str | None:
    key = request.headers.get("X-API-Key")
    if key:
        return key
    auth = request.headers.get("Authorization", "")
    scheme, _, token = auth.partition(" ")
    if scheme.lower() == "bearer" and token:
        return token.strip()
    return None


def check_api_key(presented: str | None, keys: Sequence[str]) -> bool:
    """Constant-time membership test of *presented* in *keys*."""
    if presented is None:
        return False
    matched = False
    for key in keys:
        # no early exit, so timing does not reveal which key matched
        matched |= hmac.compare_digest(presented.encode(), key.encode())
    return matched


def _requires_auth(app: Flask, path: str) -> bool:
    settings = app.config.get("COURIER_SETTINGS")
    if settings is None or not settings.api.api_keys:
        return False
    base = settings.api.base_path.rstrip("/")
    if not path.startswith(base + "/"):
        return False
    return not path.startswith(base + "/webhooks/")


def register_request_hooks(app: Flask) -> None:
    """Register before/after request hooks for ID tracking, auth,
    timing, and access logging.
    """

    @app.before_request
    def _before_request() -> None:
        g.request_id = request.headers.get("X-Request-ID") or uuid4().hex
        g.start_time = time.monotonic()

        if _requires_auth(app, request.path):
            settings = app.config["COURIER_SETTINGS"]
            if not check_api_key(_presented_key(), settings.api.api_keys):
                raise ApiProblem(
                    UNAUTHORIZED,
                    "A valid API key is required (X-API-Key or Bearer token)",
                    401,
                    headers={"WWW-Authenticate": 'Bearer realm="courier"'},
                )

    @app.after_request
    def _after_request(response):
        # Security headers
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers.setdefault("Cache-Control", "no-store")

        request_id = getattr(g, "request_id", None)
        if request_id:
            response.headers["X-Request-ID"] = request_id

        # Metrics
        status = response.status_code
        collector = app.extensions.get("metrics")
        if collector is not None:
            collector.increment(
                "courier_http_requests_total",
                labels={"method": request.method, "status": str(status)},
            )

        # Access log
        duration_ms = _elapsed_ms()
        level = (
            logging.WARNING
            if 400 <= status < 500
            else logging.ERROR
            if status >= 500
            else logging.INFO
        )
        access_log.log(
            level,
            "%s %s %s %.1fms",
            request.method,
            request.path,
            status,
            duration_ms,
            extra={
                "method": request.method,
                "path": request.path,
                "status": status,
                "duration_ms": round(duration_ms, 1),
                "content_length": response.content_length,
            },
        )

        return response


def _elapsed_ms() -> float:
    start = getattr(g, "start_time", None)
    if start is None:
        return 0.0
    return (time.monotonic() - start) * 1000

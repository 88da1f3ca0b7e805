"""Request helpers shared by the API blueprints.

Provides:
- ``json_body``: parse the request body as a JSON object or raise 400
- ``uuid_arg``: parse a UUID path segment or raise 404
- ``tracked``: decorator registering a write endpoint with the
  shutdown coordinator so graceful shutdown waits for it
"""

from __future__ import annotations

import functools
from typing import Any
from uuid import UUID

from flask import current_app, request

from courier.app.errors import NOT_FOUND, VALIDATION, ApiProblem


def json_body(*, expect: type = dict) -> Any:  # noqa: ANN401
    """Return the parsed JSON body, which must be an instance of *expect*."""
    data = request.get_json(silent=True)
    if not isinstance(data, expect):
        kind = "an object" if expect is dict else "an array"
        raise ApiProblem(VALIDATION, f"Request body must be {kind} in JSON", 400)
    return data


def uuid_arg(value: str, what: str) -> UUID:
    """Parse *value* as a UUID; malformed ids are simply not found."""
    try:
        return UUID(value)
    except ValueError:
        raise ApiProblem(NOT_FOUND, f"{what} {value} not found", 404) from None


def int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ApiProblem(
            VALIDATION,
            f"'{name}' must be an integer",
            400,
            errors=[{"field": name, "detail": "must be an integer"}],
        ) from None


def tracked(name: str):
    """Decorator: count the request as in-flight work during shutdown."""

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            coordinator = current_app.extensions.get("shutdown_coordinator")
            if coordinator is None:
                return fn(*args, **kwargs)
            with coordinator.track(name):
                return fn(*args, **kwargs)

        return wrapper

    return decorator

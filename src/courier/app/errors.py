"""RFC 7807 Problem Details for the courier HTTP API.

Provides :class:`ApiProblem`, an exception that renders itself as an
``application/problem+json`` response, the courier error-type URNs,
and a Flask error-handler registration function that also translates
domain exceptions raised by the services.

Usage::

    raise ApiProblem(VALIDATION, "recipient is required", 400)
"""

from __future__ import annotations

import logging
from typing import Any

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from courier.core.errors import (
    DeliveryError,
    DuplicateActiveEntry,
    InvalidTransition,
    NotCancelable,
    NotFound,
    RenderError,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Error-type URNs
# ---------------------------------------------------------------------------
_P = "urn:courier:error:"

CONFLICT = _P + "conflict"
INVALID_TRANSITION = _P + "invalidTransition"
NOT_CANCELABLE = _P + "notCancelable"
NOT_FOUND = _P + "notFound"
PAYLOAD_TOO_LARGE = _P + "payloadTooLarge"
RENDER_FAILED = _P + "renderFailed"
SERVER_INTERNAL = _P + "serverInternal"
UNAUTHORIZED = _P + "unauthorized"
VALIDATION = _P + "validation"

PROBLEM_CONTENT_TYPE = "application/problem+json"


# ---------------------------------------------------------------------------
# Problem exception
# ---------------------------------------------------------------------------


class ApiProblem(Exception):
    """An RFC 7807 *problem details* object that doubles as an exception.

    Parameters
    ----------
    error_type:
        A URN string (one of the constants above) or ``"about:blank"``
        for generic HTTP errors.
    detail:
        Human-readable explanation of the problem.
    status:
        HTTP status code (default 400).
    title:
        Short summary; omitted when *error_type* is self-explanatory.
    errors:
        Optional per-field or per-item error list (bulk validation).
    headers:
        Extra HTTP headers to include on the response.

    """

    def __init__(
        self,
        error_type: str,
        detail: str,
        status: int = 400,
        *,
        title: str | None = None,
        errors: list[dict[str, Any]] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.error_type = error_type
        self.detail = detail
        self.status = status
        self.title = title
        self.errors = errors
        self.extra_headers = headers or {}
        super().__init__(detail)

    def to_dict(self) -> dict[str, Any]:
        """Serialise to the RFC 7807 JSON structure."""
        body: dict[str, Any] = {
            "type": self.error_type,
            "detail": self.detail,
            "status": self.status,
        }
        if self.title is not None:
            body["title"] = self.title
        if self.errors:
            body["errors"] = self.errors
        return body

    def to_response(self):
        """Build a Flask :class:`~flask.Response`."""
        resp = jsonify(self.to_dict())
        resp.status_code = self.status
        resp.headers["Content-Type"] = PROBLEM_CONTENT_TYPE
        resp.headers["Cache-Control"] = "no-store"
        for key, value in self.extra_headers.items():
            resp.headers[key] = value
        return resp


# First match wins; subclasses must precede their bases.
_DOMAIN_PROBLEMS: tuple[tuple[type[DeliveryError], str, int], ...] = (
    (NotFound, NOT_FOUND, 404),
    (NotCancelable, NOT_CANCELABLE, 409),
    (InvalidTransition, INVALID_TRANSITION, 409),
    (DuplicateActiveEntry, CONFLICT, 409),
    (RenderError, RENDER_FAILED, 400),
)


def problem_from_domain(exc: DeliveryError) -> ApiProblem:
    """Map a domain exception onto its HTTP problem.

    Render failures list each missing template variable under
    ``errors``.  Anything unmapped becomes a 500.
    """
    for exc_type, error_type, status in _DOMAIN_PROBLEMS:
        if isinstance(exc, exc_type):
            missing = getattr(exc, "missing", None) or ()
            return ApiProblem(
                error_type,
                str(exc),
                status,
                errors=[{"field": name, "detail": "missing"} for name in missing] or None,
            )
    log.error("Unmapped domain error: %r", exc)
    return ApiProblem(SERVER_INTERNAL, "An unexpected internal error occurred", 500)


# ---------------------------------------------------------------------------
# Flask error handler registration
# ---------------------------------------------------------------------------


def register_error_handlers(app: Flask) -> None:
    """Attach handlers that produce RFC 7807 responses for all errors."""

    @app.errorhandler(ApiProblem)
    def _handle_api_problem(exc: ApiProblem):
        return exc.to_response()

    @app.errorhandler(DeliveryError)
    def _handle_domain_error(exc: DeliveryError):
        return problem_from_domain(exc).to_response()

    @app.errorhandler(HTTPException)
    def _handle_http_exception(exc: HTTPException):
        if exc.code == 413:  # noqa: PLR2004
            return ApiProblem(
                PAYLOAD_TOO_LARGE,
                "Request body exceeds api.max_request_body_bytes",
                413,
            ).to_response()
        problem = ApiProblem(
            "about:blank",
            exc.description or "An error occurred",
            exc.code or 500,
            title=exc.name,
        )
        return problem.to_response()

    @app.errorhandler(Exception)
    def _handle_unhandled(exc: Exception):
        # HTTPException and domain errors are caught above; this
        # handler covers genuine 500s.
        log.exception("Unhandled exception during request")
        problem = ApiProblem(
            SERVER_INTERNAL,
            "An unexpected internal error occurred",
            500,
        )
        return problem.to_response()

"""Log formatting for API requests and delivery workers.

Two audiences read courier logs: log shippers (``format: json``, one
object per line) and developers at a terminal (``format: text``).  Both
formats carry the same delivery fields (``notification_id``,
``channel``, ``provider``, ``campaign_id``) when a call site passes
them through ``extra=``, plus the request context that
:class:`RequestContextFilter` adds for records emitted inside a Flask
request.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from courier.config.settings import LoggingSettings

_REQUEST_FIELDS = ("request_id", "client_ip", "method", "path")
_DELIVERY_FIELDS = ("notification_id", "channel", "provider", "campaign_id")

# Attributes every LogRecord has; anything else on a record came from extra=.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)),
) | {"message", "asctime", "taskName", *_REQUEST_FIELDS}

_NOISY_LOGGERS = ("werkzeug", "gunicorn", "gunicorn.access", "gunicorn.error")


def _present(value: object) -> bool:
    return value is not None and value != "-"


class StructuredFormatter(logging.Formatter):
    """One JSON object per record.

    Request context comes first, then any ``extra=`` attributes.
    Placeholder context (``"-"`` / ``None``) from worker threads is
    left out.
    """

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        data: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.message,
        }
        data.update(
            (field, getattr(record, field))
            for field in _REQUEST_FIELDS
            if _present(getattr(record, field, None))
        )
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS and not key.startswith("_"):
                data.setdefault(key, value)

        if record.exc_info and record.exc_info[0] is not None:
            data["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            data["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(data, default=str)


class TextFormatter(logging.Formatter):
    """Console format with delivery fields appended as ``key=value``."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)-8s [%(request_id)s] %(threadName)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "request_id"):
            record.request_id = "-"  # type: ignore[attr-defined]
        line = super().format(record)
        fields = " ".join(
            f"{field}={getattr(record, field)}"
            for field in _DELIVERY_FIELDS
            if _present(getattr(record, field, None))
        )
        if not fields:
            return line
        # keep tracebacks below the fields
        head, sep, tail = line.partition("\n")
        return f"{head} {fields}{sep}{tail}"


class RequestContextFilter(logging.Filter):
    """Stamp request context on every record.

    Records from dispatch and maintenance threads get placeholders so
    both formatters always find the attributes.  Values already set by
    the caller win outside a request.
    """

    _DEFAULTS = {"request_id": "-", "client_ip": "-", "method": None, "path": None}

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        for field, default in self._DEFAULTS.items():
            if not hasattr(record, field):
                setattr(record, field, default)

        from flask import g, has_request_context, request  # noqa: PLC0415

        if has_request_context():
            record.request_id = getattr(g, "request_id", record.request_id)  # type: ignore[attr-defined]
            record.client_ip = request.remote_addr or record.client_ip  # type: ignore[attr-defined]
            record.method = request.method  # type: ignore[attr-defined]
            record.path = request.path  # type: ignore[attr-defined]
        return True


def configure_logging(settings: LoggingSettings) -> logging.Logger:
    """Point the ``courier`` logger tree at stderr in the configured format.

    Called at startup and again on SIGHUP; each call replaces the
    previous handler.  An unknown level name falls back to INFO.
    """
    root = logging.getLogger("courier")
    root.setLevel(getattr(logging, settings.level.upper(), logging.INFO))
    root.handlers.clear()
    root.propagate = False

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        StructuredFormatter() if settings.format == "json" else TextFormatter(),
    )
    handler.addFilter(RequestContextFilter())
    root.addHandler(handler)

    logging.getLogger("courier.access").setLevel(logging.INFO)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return root

"""In-process metrics collector.

Counters are incremented by the workers, the reconciler and the HTTP
hooks.  Gauges are read at export time from registered callbacks
(queue depth, live worker threads).  Exports Prometheus text format.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

log = logging.getLogger(__name__)

_HELP = {
    "courier_notifications_enqueued_total": "Notifications accepted from producers",
    "courier_sends_total": "Provider send attempts by outcome",
    "courier_retries_scheduled_total": "Failed attempts re-enqueued for retry",
    "courier_rate_limited_total": "Sends deferred by the rate limiter",
    "courier_queue_reclaimed_total": "Stuck processing entries returned to the queue",
    "courier_webhook_events_total": "Provider callback events by outcome",
    "courier_webhook_orphans_total": "Provider callbacks matching no notification",
    "courier_worker_errors_total": "Unexpected errors in background loops",
    "courier_http_requests_total": "HTTP requests by method and status",
}


class MetricsCollector:
    """Thread-safe in-process metrics collector."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}
        self._gauges: dict[str, Callable[[], dict[str, float]]] = {}
        self._start_time = time.time()

    def increment(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        """Increment a counter."""
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + amount

    def get(self, name: str, labels: dict | None = None) -> int:
        """Get the current value of a counter."""
        key = self._make_key(name, labels)
        with self._lock:
            return self._counters.get(key, 0)

    def register_gauge(
        self,
        name: str,
        func: Callable[[], dict[str, float]],
        *,
        label: str = "state",
    ) -> None:
        """Register *func* returning ``{label_value: value}`` for gauge *name*."""
        with self._lock:
            self._gauges[name] = lambda: {
                self._make_key(name, {label: k}): v for k, v in func().items()
            }

    def export(self) -> str:
        """Export all metrics in Prometheus text format."""
        lines = [
            "# HELP courier_uptime_seconds Time since process start",
            "# TYPE courier_uptime_seconds gauge",
            f"courier_uptime_seconds {time.time() - self._start_time:.1f}",
            "",
        ]

        with self._lock:
            grouped: dict[str, list[tuple[str, int]]] = {}
            for key, value in sorted(self._counters.items()):
                name = key.split("{")[0]
                grouped.setdefault(name, []).append((key, value))
            gauges = dict(self._gauges)

        for name, entries in sorted(grouped.items()):
            if name in _HELP:
                lines.append(f"# HELP {name} {_HELP[name]}")
            lines.append(f"# TYPE {name} counter")
            lines.extend(f"{key} {value}" for key, value in entries)
            lines.append("")

        for name, func in sorted(gauges.items()):
            try:
                samples = func()
            except Exception:
                log.exception("Gauge %s failed", name)
                continue
            lines.append(f"# TYPE {name} gauge")
            lines.extend(f"{key} {value}" for key, value in sorted(samples.items()))
            lines.append("")

        return "\n".join(lines) + "\n"

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        if not labels:
            return name
        label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

"""Maintenance worker: periodic housekeeping tasks.

Single daemon thread running named tasks on independent intervals.
Each task tracks its own ``last_run`` timestamp; an exception in one
task does not block the others.

Tasks:

* ``stuck_claim_sweep``: return processing entries older than
  ``queue.processing_timeout_seconds`` to the queue.
* ``campaign_summary``: recompute campaign counts and complete
  finished campaigns.
* ``rate_limit_gc``: delete expired counters (database limiter only).

Usage::

    worker = MaintenanceWorker(store, settings, campaigns=svc, db=db)
    worker.start()
    ...
    worker.stop()
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from courier.services.leader import MAINTENANCE_LOCK_ID, AdvisoryLeader

if TYPE_CHECKING:
    from collections.abc import Callable

    from pypgkit import Database

    from courier.config.settings import CourierSettings
    from courier.metrics.collector import MetricsCollector
    from courier.services.campaign import CampaignService
    from courier.services.rate_limiter import DatabaseRateLimiter
    from courier.store.base import DeliveryStore

log = logging.getLogger(__name__)

_MIN_LOOP_INTERVAL = 1.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


class _MaintenanceTask:
    """A named task with its own interval and last-run tracking."""

    __slots__ = ("_last_run", "consecutive_failures", "func", "interval_seconds", "name")

    def __init__(self, name: str, interval_seconds: float, func: Callable[[], None]) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func
        self._last_run: float | None = None
        self.consecutive_failures = 0

    def is_due(self, now: float) -> bool:
        return self._last_run is None or (now - self._last_run) >= self.interval_seconds

    def run(self, now: float) -> None:
        self._last_run = now
        self.func()


class MaintenanceWorker:
    """Daemon thread running maintenance tasks on independent intervals.

    When a database is provided, ``pg_try_advisory_lock`` ensures only
    one instance across the cluster runs the tasks in a given cycle.
    """

    def __init__(  # noqa: PLR0913
        self,
        store: DeliveryStore,
        settings: CourierSettings,
        *,
        campaigns: CampaignService | None = None,
        db_rate_limiter: DatabaseRateLimiter | None = None,
        db: Database | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._metrics = metrics
        self._clock = clock
        self._leader = AdvisoryLeader(db, MAINTENANCE_LOCK_ID)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tasks: list[_MaintenanceTask] = [
            _MaintenanceTask(
                "stuck_claim_sweep",
                settings.queue.reclaim_interval_seconds,
                self._stuck_claim_sweep,
            ),
        ]
        if campaigns is not None:
            self._tasks.append(
                _MaintenanceTask(
                    "campaign_summary",
                    settings.campaigns.summary_interval_seconds,
                    campaigns.summarize_active,
                )
            )
        if db_rate_limiter is not None:
            self._tasks.append(
                _MaintenanceTask(
                    "rate_limit_gc",
                    settings.rate_limits.gc_interval_seconds,
                    lambda: self._rate_limit_gc(db_rate_limiter),
                )
            )
        self._loop_interval = max(
            min(t.interval_seconds for t in self._tasks) / 2,
            _MIN_LOOP_INTERVAL,
        )

    @property
    def task_names(self) -> list[str]:
        return [t.name for t in self._tasks]

    def start(self) -> None:
        """Start the background worker thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="maintenance-worker",
            daemon=True,
        )
        self._thread.start()
        log.info("Maintenance worker started (tasks: %s)", self.task_names)

    def stop(self) -> None:
        """Signal the worker to stop and wait for it."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self._loop_interval + 5)
            log.info("Maintenance worker stopped")

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.run_pending()
            self._stop_event.wait(timeout=self._loop_interval)

    def run_pending(self, now: float | None = None) -> list[str]:
        """Run every due task once; returns the names that ran."""
        ran: list[str] = []
        with self._leader.lead() as leader:
            if not leader:
                return ran
            now = time.monotonic() if now is None else now
            for task in self._tasks:
                if self._stop_event.is_set():
                    break
                if task.is_due(now):
                    self._execute_task(task, now)
                    ran.append(task.name)
        return ran

    def _execute_task(self, task: _MaintenanceTask, now: float) -> None:
        try:
            task.run(now)
            task.consecutive_failures = 0
        except Exception:
            task.consecutive_failures += 1
            log.exception(
                "Maintenance task '%s' failed (consecutive: %d)",
                task.name,
                task.consecutive_failures,
            )
            if self._metrics:
                self._metrics.increment("courier_worker_errors_total")

    # -- tasks ------------------------------------------------------------------

    def _stuck_claim_sweep(self) -> None:
        """Return entries stuck in processing to the queue."""
        now = self._clock()
        cutoff = now - timedelta(seconds=self._settings.queue.processing_timeout_seconds)
        reclaimed = self._store.reclaim_stale(claimed_before=cutoff, now=now)
        if reclaimed:
            log.warning(
                "Stuck-claim sweep: returned %d entries to the queue "
                "(their sends may be repeated)",
                reclaimed,
            )
            if self._metrics:
                self._metrics.increment("courier_queue_reclaimed_total", reclaimed)

    @staticmethod
    def _rate_limit_gc(limiter: DatabaseRateLimiter) -> None:
        deleted = limiter.gc()
        if deleted:
            log.debug("Rate limit GC: deleted %d expired counters", deleted)

"""Send-time rate limiters, one logical limit per ``(channel, provider)``.

Both backends are shared by every worker thread of a process; the
database backend is additionally shared across processes.  Workers
never hold a limiter of their own.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from courier.db.unit_of_work import UnitOfWork

if TYPE_CHECKING:
    from collections.abc import Callable

    from pypgkit import Database

    from courier.config.settings import RateLimitSettings

log = logging.getLogger(__name__)

WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: float = 0.0


def _key(channel: str, provider: str) -> str:
    return f"{channel}:{provider}"


class InMemoryRateLimiter:
    """Sliding-window log limiter, exact per rolling minute.

    Parameters
    ----------
    settings:
        Rate limit settings (only ``gc_interval_seconds`` is read).
    clock:
        Monotonic time source; injectable for tests.

    """

    def __init__(
        self,
        settings: RateLimitSettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._gc_interval = settings.gc_interval_seconds if settings is not None else 300
        self._windows: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def acquire(self, channel: str, provider: str, limit_per_minute: int) -> RateDecision:
        now = self._clock()
        horizon = now - WINDOW_SECONDS
        key = _key(channel, provider)

        with self._lock:
            self._maybe_cleanup(now)
            stamps = self._windows.setdefault(key, deque())
            while stamps and stamps[0] <= horizon:
                stamps.popleft()

            if len(stamps) >= limit_per_minute:
                retry_after = max(stamps[0] + WINDOW_SECONDS - now, 0.001)
                return RateDecision(False, retry_after)

            stamps.append(now)
            return RateDecision(True)

    def gc(self, max_age_seconds: int | None = None) -> int:  # noqa: ARG002
        """Drop empty windows; returns the number of keys removed."""
        with self._lock:
            before = len(self._windows)
            self._maybe_cleanup(self._clock(), force=True)
            return before - len(self._windows)

    def _maybe_cleanup(self, now: float, *, force: bool = False) -> None:
        if not force and now - self._last_cleanup < self._gc_interval:
            return
        self._last_cleanup = now
        horizon = now - WINDOW_SECONDS
        for key in list(self._windows):
            stamps = self._windows[key]
            while stamps and stamps[0] <= horizon:
                stamps.popleft()
            if not stamps:
                del self._windows[key]


class _OverLimit(Exception):  # noqa: N818
    def __init__(self, retry_after: float) -> None:
        self.retry_after = retry_after
        super().__init__(retry_after)


class DatabaseRateLimiter:
    """Fixed-window counters in PostgreSQL, shared across processes.

    Each window is aligned to ``floor(now / 60) * 60``.  The admitted
    count is estimated over a rolling minute as
    ``current + previous * (1 - elapsed / 60)``; a send that would push
    the estimate over the limit is rolled back so it does not consume
    budget.  The upsert takes the counter row lock, which serialises
    concurrent acquirers of one key.
    """

    _UPSERT_SQL = (
        "INSERT INTO rate_limit_counters (compound_key, window_start, counter) "
        "VALUES (%s, %s, 1) "
        "ON CONFLICT (compound_key, window_start) "
        "DO UPDATE SET counter = rate_limit_counters.counter + 1 "
        "RETURNING counter"
    )
    _PREVIOUS_SQL = (
        "SELECT counter FROM rate_limit_counters WHERE compound_key = %s AND window_start = %s"
    )

    def __init__(
        self,
        settings: RateLimitSettings,
        db: Database,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._db = db
        self._clock = clock

    def acquire(self, channel: str, provider: str, limit_per_minute: int) -> RateDecision:
        epoch = self._clock()
        window_ts = math.floor(epoch / WINDOW_SECONDS) * WINDOW_SECONDS
        elapsed = epoch - window_ts
        window_start = datetime.fromtimestamp(window_ts, tz=UTC)
        previous_start = window_start - timedelta(seconds=WINDOW_SECONDS)
        key = _key(channel, provider)

        try:
            with UnitOfWork(self._db) as uow:
                current = uow.fetch_one(self._UPSERT_SQL, (key, window_start))["counter"]
                row = uow.fetch_one(self._PREVIOUS_SQL, (key, previous_start))
                previous = row["counter"] if row else 0
                weight = 1 - elapsed / WINDOW_SECONDS
                if current + previous * weight > limit_per_minute:
                    raise _OverLimit(
                        _retry_after(current, previous, elapsed, limit_per_minute),
                    )
        except _OverLimit as over:
            return RateDecision(False, over.retry_after)
        return RateDecision(True)

    def gc(self, max_age_seconds: int | None = None) -> int:
        """Delete expired rate limit counters. Returns rows deleted."""
        if max_age_seconds is None:
            max_age_seconds = self._settings.gc_max_age_seconds
        cutoff = datetime.fromtimestamp(self._clock() - max_age_seconds, tz=UTC)
        return self._db.execute(
            "DELETE FROM rate_limit_counters WHERE window_start < %s",
            (cutoff,),
        )


def _retry_after(current: int, previous: int, elapsed: float, limit: int) -> float:
    """Seconds until the rolling estimate admits one more send."""
    if current > limit or previous == 0:
        return max(WINDOW_SECONDS - elapsed, 1.0)
    # previous * (1 - (elapsed + t) / 60) + current <= limit
    wait = WINDOW_SECONDS * (1 - (limit - current) / previous) - elapsed
    return min(max(wait, 1.0), WINDOW_SECONDS - elapsed + 1)


def create_rate_limiter(
    settings: RateLimitSettings,
    db: Database | None = None,
) -> InMemoryRateLimiter | DatabaseRateLimiter:
    """Factory: create the appropriate rate limiter based on config."""
    if settings.backend == "database" and db is not None:
        log.info("Using database-backed rate limiter")
        return DatabaseRateLimiter(settings, db)
    if settings.backend == "database":
        log.warning("rate_limits.backend is 'database' but no database is available")
    log.info("Using in-memory rate limiter")
    return InMemoryRateLimiter(settings)

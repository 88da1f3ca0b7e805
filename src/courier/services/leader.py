"""Advisory-lock leader election for singleton background loops.

Several courier processes may share one database; loops that must run
on only one of them per cycle (stuck-claim sweep, campaign fan-out)
take a PostgreSQL session advisory lock for the duration of a cycle.
The lock is acquired and released on the same pooled connection.
"""

from __future__ import annotations

import contextlib
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

    from pypgkit import Database

log = logging.getLogger(__name__)

# Stable lock ids, one per loop.
MAINTENANCE_LOCK_ID = 731_001
CAMPAIGN_LOCK_ID = 731_002


class AdvisoryLeader:
    """Hold ``pg_try_advisory_lock(lock_id)`` for one cycle.

    Without a database (in-memory store) every caller is the leader.
    """

    def __init__(self, db: Database | None, lock_id: int) -> None:
        self._db = db
        self._lock_id = lock_id

    @contextlib.contextmanager
    def lead(self) -> Iterator[bool]:
        """Yield True when this process holds the lock for the block."""
        if self._db is None:
            yield True
            return
        with contextlib.ExitStack() as stack:
            try:
                conn = stack.enter_context(self._db.connection())
                row = conn.execute("SELECT pg_try_advisory_lock(%s)", (self._lock_id,)).fetchone()
                conn.commit()
                acquired = bool(row[0])
            except Exception:
                log.debug("Advisory lock %d check failed, skipping this cycle", self._lock_id)
                acquired = False
            try:
                yield acquired
            finally:
                if acquired:
                    with contextlib.suppress(Exception):
                        conn.execute("SELECT pg_advisory_unlock(%s)", (self._lock_id,))
                        conn.commit()

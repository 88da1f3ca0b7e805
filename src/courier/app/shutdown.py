"""Graceful shutdown for the API process and the delivery loops.

Request handlers doing work the caller waits on (bulk enqueue, campaign
creation) wrap it in :meth:`ShutdownCoordinator.track`.  On SIGTERM or
SIGINT, or at interpreter exit, the coordinator waits up to
``graceful_timeout`` seconds for tracked work to finish and then runs
the stop hooks in registration order.  The factory registers the
container's ``stop_background`` there; dispatch workers finish the send
they are in and leave everything else queued for the next process.

SIGHUP only raises a flag.  The app factory consumes it on the next
request and reloads the hot-reloadable configuration sections.
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections import Counter
from contextlib import contextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable, Generator

log = logging.getLogger(__name__)


class ShutdownCoordinator:
    """Drain tracked work, then stop background components.

    Parameters
    ----------
    graceful_timeout:
        Seconds to wait for tracked operations before the stop hooks
        run regardless.

    """

    def __init__(self, graceful_timeout: int = 30) -> None:
        self._graceful_timeout = graceful_timeout
        self._stopping = threading.Event()
        self._reload = threading.Event()
        self._cond = threading.Condition()
        self._active: Counter[str] = Counter()
        self._hooks: list[tuple[str, Callable[[], None]]] = []

    @property
    def is_shutting_down(self) -> bool:
        return self._stopping.is_set()

    @property
    def in_flight_count(self) -> int:
        with self._cond:
            return sum(self._active.values())

    def in_flight(self) -> dict[str, int]:
        """Snapshot of tracked operations by name."""
        with self._cond:
            return dict(self._active)

    def on_shutdown(self, name: str, func: Callable[[], None]) -> None:
        """Run *func* after the drain; hooks run in registration order."""
        self._hooks.append((name, func))

    @contextmanager
    def track(self, name: str) -> Generator[None, None, None]:
        """Count the enclosed block as in-flight work named *name*."""
        if self._stopping.is_set():
            log.warning("'%s' accepted while shutting down", name)
        with self._cond:
            self._active[name] += 1
        try:
            yield
        finally:
            with self._cond:
                self._active[name] -= 1
                if self._active[name] <= 0:
                    del self._active[name]
                if not self._active:
                    self._cond.notify_all()

    def initiate(self) -> None:
        """Drain tracked work and run the stop hooks.  Idempotent."""
        with self._cond:
            if self._stopping.is_set():
                return
            self._stopping.set()

        log.info("Shutting down (grace period %ds)", self._graceful_timeout)
        leftover = self._drain()
        if leftover:
            log.warning(
                "Grace period expired with work still running: %s",
                ", ".join(f"{name} x{count}" for name, count in sorted(leftover.items())),
            )
        else:
            log.info("No tracked work in flight")
        self._run_hooks()

    def _drain(self) -> dict[str, int]:
        deadline = time.monotonic() + self._graceful_timeout
        with self._cond:
            while self._active:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._cond.wait(remaining)
            return dict(self._active)

    def _run_hooks(self) -> None:
        for name, func in self._hooks:
            started = time.monotonic()
            try:
                func()
            except Exception:
                log.exception("Stopping %s failed", name)
                continue
            log.info("Stopped %s in %.2fs", name, time.monotonic() - started)

    # -- config reload --------------------------------------------------------

    @property
    def reload_requested(self) -> bool:
        """True between a SIGHUP and :meth:`consume_reload`."""
        return self._reload.is_set()

    def consume_reload(self) -> None:
        self._reload.clear()

    # -- signals --------------------------------------------------------------

    def register_signals(self) -> None:
        """Install SIGTERM and SIGINT handlers (main thread only)."""
        for signum in (signal.SIGTERM, signal.SIGINT):
            self._install(signum, self._signal_handler)

    def register_reload_signal(self) -> None:
        """Install the SIGHUP handler where the platform has one."""
        sighup = getattr(signal, "SIGHUP", None)
        if sighup is None:
            log.debug("No SIGHUP on this platform; config reload disabled")
            return
        if self._install(sighup, self._reload_handler):
            log.info("SIGHUP reloads logging and API keys")

    @staticmethod
    def _install(signum: int, handler: Callable) -> bool:
        try:
            signal.signal(signum, handler)
        except (ValueError, OSError):
            log.debug(
                "Cannot install %s handler outside the main thread",
                signal.Signals(signum).name,
            )
            return False
        return True

    def _signal_handler(self, signum: int, frame) -> None:  # noqa: ARG002
        name = signal.Signals(signum).name
        if self._stopping.is_set():
            log.info("Received %s again; shutdown already in progress", name)
            return
        log.info("Received %s", name)
        # initiate() blocks for the grace period; keep the handler short
        threading.Thread(
            target=self.initiate,
            name="courier-shutdown",
            daemon=True,
        ).start()

    def _reload_handler(self, signum: int, frame) -> None:  # noqa: ARG002
        log.info("Received SIGHUP; configuration reload pending")
        self._reload.set()

"""Dispatch worker pool.

``workers.count`` daemon threads each run an independent loop::

    claim batch -> render -> rate-limit -> send -> persist outcome

Shared state lives only in the store, the queue and the rate limiter,
so workers need no coordination among themselves.  A failure in one
notification never stops the loop: adapter errors are classified and
handed to the retry scheduler, unexpected errors count as transient,
and store errors make the loop back off exponentially.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from courier.channels.base import OutboundMessage
from courier.core.errors import (
    ClaimConflict,
    RenderError,
    SendError,
    TransientSendError,
)
from courier.core.retry import decide
from courier.core.types import ErrorClass
from courier.rendering import RenderedContent

if TYPE_CHECKING:
    from collections.abc import Callable

    from courier.channels.base import ChannelAdapter
    from courier.channels.registry import ChannelRegistry
    from courier.config.settings import ChannelBinding, CourierSettings
    from courier.metrics.collector import MetricsCollector
    from courier.models import Notification
    from courier.rendering import TemplateRenderer
    from courier.services.rate_limiter import DatabaseRateLimiter, InMemoryRateLimiter
    from courier.store.base import Claimed, DeliveryStore

log = logging.getLogger(__name__)

_MAX_BACKOFF_SECONDS = 300
_MAX_ERROR_LENGTH = 1000


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DispatchWorkerPool:
    """Fixed-size pool of dispatch threads.

    Parameters
    ----------
    store:
        Notification store and dispatch queue.
    registry:
        Channel -> adapter resolution.
    renderer:
        Template renderer for notifications that reference a template.
    rate_limiter:
        Shared per-(channel, provider) throttle.
    settings:
        Full settings; ``queue``, ``retry`` and ``workers`` are read.
    metrics:
        Optional metrics collector.
    clock:
        Source of "now"; injectable for tests.

    """

    def __init__(  # noqa: PLR0913
        self,
        store: DeliveryStore,
        registry: ChannelRegistry,
        renderer: TemplateRenderer,
        rate_limiter: InMemoryRateLimiter | DatabaseRateLimiter,
        settings: CourierSettings,
        *,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._registry = registry
        self._renderer = renderer
        self._limiter = rate_limiter
        self._settings = settings
        self._metrics = metrics
        self._clock = clock
        self._poll_seconds = settings.queue.poll_interval_seconds
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._executor: ThreadPoolExecutor | None = None
        self._id_prefix = f"{socket.gethostname()}-{os.getpid()}"

    # -- lifecycle ------------------------------------------------------------

    def start(self) -> None:
        """Start ``workers.count`` dispatch threads."""
        if self.alive_count():
            return
        count = self._settings.workers.count
        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=count * 2,
            thread_name_prefix="courier-send",
        )
        self._threads = []
        for i in range(count):
            worker_id = f"{self._id_prefix}-{i}"
            thread = threading.Thread(
                target=self._run,
                args=(worker_id,),
                name=f"dispatch-worker-{i}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        log.info(
            "Dispatch worker pool started (workers=%d, poll=%.1fs, batch=%d)",
            count,
            self._poll_seconds,
            self._settings.queue.batch_size,
        )

    def stop(self, timeout: float | None = None) -> None:
        """Signal every worker to stop and wait for them."""
        self._stop_event.set()
        join_timeout = timeout if timeout is not None else self._poll_seconds + 5
        for thread in self._threads:
            thread.join(timeout=join_timeout)
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        if self._threads:
            log.info("Dispatch worker pool stopped")
        self._threads = []

    def alive_count(self) -> int:
        return sum(1 for t in self._threads if t.is_alive())

    @property
    def size(self) -> int:
        return len(self._threads)

    # -- loop -----------------------------------------------------------------

    def _run(self, worker_id: str) -> None:
        failures = 0
        while not self._stop_event.is_set():
            try:
                processed = self.process_once(worker_id)
                failures = 0
            except Exception:
                failures += 1
                log.exception(
                    "Dispatch worker %s poll error (consecutive failures: %d)",
                    worker_id,
                    failures,
                )
                if self._metrics:
                    self._metrics.increment("courier_worker_errors_total")
                backoff = min(self._poll_seconds * (2**failures), _MAX_BACKOFF_SECONDS)
                self._stop_event.wait(timeout=backoff)
                continue
            if processed == 0:
                self._stop_event.wait(timeout=self._poll_seconds)

    def process_once(self, worker_id: str) -> int:
        """Claim one batch and process it; returns the number claimed."""
        batch = self._store.claim_batch(
            worker_id,
            limit=self._settings.queue.batch_size,
            now=self._clock(),
        )
        for idx, claimed in enumerate(batch):
            if self._stop_event.is_set():
                self._release(batch[idx:], worker_id)
                break
            self.process(claimed, worker_id)
        return len(batch)

    def _release(self, remaining: list[Claimed], worker_id: str) -> None:
        # hand unstarted claims back instead of waiting for the stuck sweep
        now = self._clock()
        for claimed in remaining:
            try:
                self._store.defer(claimed.entry.id, worker_id, scheduled_at=now, now=now)
            except ClaimConflict:
                continue

    # -- one notification -----------------------------------------------------

    def process(self, claimed: Claimed, worker_id: str) -> str:
        """Deliver one claimed notification; returns the outcome label.

        Outcomes: ``sent``, ``retry``, ``failed``, ``deferred`` or
        ``discarded`` (the claim was lost, either before sending or
        before the outcome could be recorded).
        """
        notification = claimed.notification
        binding: ChannelBinding | None = None
        try:
            adapter, binding = self._registry.resolve(notification.channel)
            content = self._render(notification)

            if not self._still_held(claimed, worker_id):
                return "discarded"

            decision = self._limiter.acquire(
                notification.channel.value,
                binding.provider,
                binding.rate_limit_per_minute,
            )
            if not decision.allowed:
                return self._defer(claimed, worker_id, binding, decision.retry_after)

            provider_message_id = self._send(adapter, binding, notification, content)
        except SendError as exc:
            return self._fail(claimed, worker_id, binding, exc)
        except Exception as exc:
            log.exception("Unexpected error delivering notification %s", notification.id)
            wrapped = TransientSendError(
                f"unexpected error: {type(exc).__name__}: {exc}",
                provider=binding.provider if binding else None,
            )
            return self._fail(claimed, worker_id, binding, wrapped)

        return self._succeed(claimed, worker_id, binding, provider_message_id, content)

    def _still_held(self, claimed: Claimed, worker_id: str) -> bool:
        # a batch is claimed at one instant; later entries may have been swept
        try:
            self._store.renew_claim(claimed.entry.id, worker_id, now=self._clock())
        except ClaimConflict:
            log.warning(
                "Worker %s lost its claim on entry %s (notification %s) before sending; skipped",
                worker_id,
                claimed.entry.id,
                claimed.notification.id,
            )
            return False
        return True

    def _render(self, notification: Notification) -> RenderedContent:
        if notification.template_id is None:
            return RenderedContent(subject=notification.subject, body=notification.body)
        template = self._store.get_template(notification.template_id)
        if template is None:
            msg = f"Template {notification.template_id} no longer exists"
            raise RenderError(msg)
        return self._renderer.render(template, notification.template_variables)

    def _send(
        self,
        adapter: ChannelAdapter,
        binding: ChannelBinding,
        notification: Notification,
        content: RenderedContent,
    ) -> str:
        message = OutboundMessage(
            channel=notification.channel,
            recipient=notification.recipient,
            subject=content.subject,
            body=content.body,
            attachments=notification.attachments,
            idempotency_key=str(notification.id),
        )
        if self._executor is None:
            return adapter.send(message)
        future = self._executor.submit(adapter.send, message)
        try:
            return future.result(timeout=binding.timeout_seconds)
        except FuturesTimeout:
            future.cancel()
            msg = f"{binding.provider} send timed out after {binding.timeout_seconds:g}s"
            raise TransientSendError(msg, provider=binding.provider) from None

    def _defer(
        self,
        claimed: Claimed,
        worker_id: str,
        binding: ChannelBinding,
        retry_after: float,
    ) -> str:
        now = self._clock()
        delay = max(retry_after, self._settings.workers.defer_seconds)
        try:
            self._store.defer(
                claimed.entry.id,
                worker_id,
                scheduled_at=now + timedelta(seconds=delay),
                now=now,
            )
        except ClaimConflict:
            return self._discarded(claimed, worker_id, "deferral")
        if self._metrics:
            self._metrics.increment(
                "courier_rate_limited_total",
                labels={"channel": claimed.notification.channel.value, "provider": binding.provider},
            )
        log.debug(
            "Rate limited %s on %s; deferred %.1fs",
            claimed.notification.id,
            binding.provider,
            delay,
        )
        return "deferred"

    def _succeed(
        self,
        claimed: Claimed,
        worker_id: str,
        binding: ChannelBinding,
        provider_message_id: str,
        content: RenderedContent,
    ) -> str:
        try:
            self._store.complete_sent(
                claimed.entry.id,
                worker_id,
                provider_name=binding.provider,
                provider_message_id=provider_message_id,
                cost_usd=Decimal(str(binding.cost_per_message)),
                subject=content.subject,
                body=content.body,
                now=self._clock(),
            )
        except ClaimConflict:
            return self._discarded(claimed, worker_id, "sent")
        self._count_send(claimed, binding.provider, "sent")
        return "sent"

    def _fail(
        self,
        claimed: Claimed,
        worker_id: str,
        binding: ChannelBinding | None,
        exc: SendError,
    ) -> str:
        now = self._clock()
        error_class = exc.error_class
        policy = self._settings.retry

        def _decide(current: Notification):
            return decide(
                current.retry_count,
                current.max_retries,
                error_class,
                now,
                policy=policy,
                cancel_requested=current.cancel_requested,
            )

        try:
            _, decision = self._store.complete_failed(
                claimed.entry.id,
                worker_id,
                error=str(exc)[:_MAX_ERROR_LENGTH],
                decide=_decide,
                now=now,
            )
        except ClaimConflict:
            return self._discarded(claimed, worker_id, "failure")

        provider = binding.provider if binding else (exc.provider or "none")
        label = "transient_error" if error_class == ErrorClass.TRANSIENT else "permanent_error"
        self._count_send(claimed, provider, label)
        log.warning(
            "Send of %s via %s failed (%s): %s; %s",
            claimed.notification.id,
            provider,
            error_class.value,
            exc,
            decision.reason,
            extra={
                "notification_id": str(claimed.notification.id),
                "provider": provider,
                "error_class": error_class.value,
            },
        )
        if decision.retry:
            if self._metrics:
                self._metrics.increment(
                    "courier_retries_scheduled_total",
                    labels={"channel": claimed.notification.channel.value},
                )
            return "retry"
        return "failed"

    def _discarded(self, claimed: Claimed, worker_id: str, what: str) -> str:
        log.warning(
            "Worker %s lost its claim on entry %s (notification %s); %s outcome discarded",
            worker_id,
            claimed.entry.id,
            claimed.notification.id,
            what,
        )
        return "discarded"

    def _count_send(self, claimed: Claimed, provider: str, outcome: str) -> None:
        if self._metrics:
            self._metrics.increment(
                "courier_sends_total",
                labels={
                    "channel": claimed.notification.channel.value,
                    "provider": provider,
                    "outcome": outcome,
                },
            )

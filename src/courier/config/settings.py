"""Typed, frozen dataclasses for every configuration section.

This module is the **single source of truth** for default values.
JSON Schema defaults exist only for documentation; these builders
are what the application actually reads.

Access pattern::

    from courier.config import get_config

    q = get_config().settings.queue
    print(q.batch_size, q.processing_timeout_seconds)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from courier.core.retry import RetryPolicy
from courier.core.types import Channel

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServerSettings:
    """HTTP server configuration (bind address, workers, timeouts)."""

    bind: str
    port: int
    workers: int
    worker_class: str
    timeout: int
    graceful_timeout: int
    keepalive: int
    max_requests: int
    max_requests_jitter: int


def _build_server(data: dict | None) -> ServerSettings:
    d = data or {}
    return ServerSettings(
        bind=d.get("bind", "0.0.0.0"),  # noqa: S104
        port=d.get("port", 8080),
        workers=d.get("workers", 2),
        worker_class=d.get("worker_class", "sync"),
        timeout=d.get("timeout", 30),
        graceful_timeout=d.get("graceful_timeout", 30),
        keepalive=d.get("keepalive", 2),
        max_requests=d.get("max_requests", 0),
        max_requests_jitter=d.get("max_requests_jitter", 0),
    )


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ApiSettings:
    """Producer-facing HTTP API settings."""

    base_path: str
    api_keys: tuple[str, ...]
    max_bulk_size: int
    max_request_body_bytes: int


def _build_api(data: dict | None) -> ApiSettings:
    d = data or {}
    return ApiSettings(
        base_path=d.get("base_path", "/api"),
        api_keys=tuple(d.get("api_keys", [])),
        max_bulk_size=d.get("max_bulk_size", 1000),
        max_request_body_bytes=d.get("max_request_body_bytes", 10 * 1024 * 1024),
    )


# ---------------------------------------------------------------------------
# Database / store
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseSettings:
    """PostgreSQL connection and pool settings."""

    host: str
    port: int
    database: str
    user: str
    password: str
    sslmode: str
    min_connections: int
    max_connections: int
    connection_timeout: float
    auto_setup: bool


def _build_database(data: dict | None) -> DatabaseSettings:
    d = data or {}
    return DatabaseSettings(
        host=d.get("host", "localhost"),
        port=d.get("port", 5432),
        database=d.get("database", "courier"),
        user=d.get("user", "courier"),
        password=d.get("password", ""),
        sslmode=d.get("sslmode", "prefer"),
        min_connections=d.get("min_connections", 2),
        max_connections=d.get("max_connections", 10),
        connection_timeout=d.get("connection_timeout", 30.0),
        auto_setup=d.get("auto_setup", False),
    )


@dataclass(frozen=True)
class StoreSettings:
    """Notification store backend selection."""

    backend: str


def _build_store(data: dict | None) -> StoreSettings:
    d = data or {}
    return StoreSettings(backend=d.get("backend", "database"))


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoggingSettings:
    """Application logging configuration (level, format)."""

    level: str
    format: str


def _build_logging(data: dict | None) -> LoggingSettings:
    d = data or {}
    return LoggingSettings(
        level=d.get("level", "INFO"),
        format=d.get("format", "json"),
    )


# ---------------------------------------------------------------------------
# Queue / retry / workers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QueueSettings:
    """Dispatch queue polling, claiming and stuck-claim recovery."""

    poll_interval_seconds: float
    batch_size: int
    processing_timeout_seconds: int
    reclaim_interval_seconds: int
    default_priority: int
    default_max_retries: int


def _build_queue(data: dict | None) -> QueueSettings:
    d = data or {}
    return QueueSettings(
        poll_interval_seconds=d.get("poll_interval_seconds", 2.0),
        batch_size=d.get("batch_size", 10),
        processing_timeout_seconds=d.get("processing_timeout_seconds", 300),
        reclaim_interval_seconds=d.get("reclaim_interval_seconds", 60),
        default_priority=d.get("default_priority", 5),
        default_max_retries=d.get("default_max_retries", 3),
    )


def _build_retry(data: dict | None) -> RetryPolicy:
    d = data or {}
    return RetryPolicy(
        base_delay_seconds=d.get("base_delay_seconds", 60),
        max_delay_seconds=d.get("max_delay_seconds", 3600),
    )


@dataclass(frozen=True)
class WorkerSettings:
    """Dispatch worker pool sizing."""

    enabled: bool
    count: int
    defer_seconds: float


def _build_workers(data: dict | None) -> WorkerSettings:
    d = data or {}
    return WorkerSettings(
        enabled=d.get("enabled", True),
        count=d.get("count", 4),
        defer_seconds=d.get("defer_seconds", 1.0),
    )


# ---------------------------------------------------------------------------
# Rate limits
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RateLimitSettings:
    """Backend for the per-(channel, provider) send throttle."""

    backend: str
    gc_interval_seconds: int
    gc_max_age_seconds: int


def _build_rate_limits(data: dict | None) -> RateLimitSettings:
    d = data or {}
    return RateLimitSettings(
        backend=d.get("backend", "memory"),
        gc_interval_seconds=d.get("gc_interval_seconds", 300),
        gc_max_age_seconds=d.get("gc_max_age_seconds", 3600),
    )


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChannelBinding:
    """One provider bound to a channel.

    ``config`` is passed through to the adapter (API keys, sender
    addresses, endpoints).
    """

    channel: Channel
    provider: str
    kind: str
    is_default: bool
    rate_limit_per_minute: int
    cost_per_message: float
    timeout_seconds: float
    config: dict[str, Any]


def _build_channel_binding(d: dict) -> ChannelBinding:
    return ChannelBinding(
        channel=Channel(d["channel"]),
        provider=d["provider"],
        kind=d.get("kind", d["provider"]),
        is_default=d.get("is_default", False),
        rate_limit_per_minute=d.get("rate_limit_per_minute", 60),
        cost_per_message=d.get("cost_per_message", 0.0),
        timeout_seconds=d.get("timeout_seconds", 30.0),
        config=dict(d.get("config") or {}),
    )


def _build_channels(data: list | None) -> tuple[ChannelBinding, ...]:
    return tuple(_build_channel_binding(d) for d in data or [])


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WebhookSettings:
    """Inbound provider callback handling."""

    lookup_attempts: int
    lookup_backoff_seconds: float
    max_lookup_wait_seconds: float
    secrets: dict[str, str]
    secret_header: str


def _build_webhooks(data: dict | None) -> WebhookSettings:
    d = data or {}
    return WebhookSettings(
        lookup_attempts=d.get("lookup_attempts", 5),
        lookup_backoff_seconds=d.get("lookup_backoff_seconds", 0.2),
        max_lookup_wait_seconds=d.get("max_lookup_wait_seconds", 10.0),
        secrets=dict(d.get("secrets") or {}),
        secret_header=d.get("secret_header", "X-Webhook-Secret"),
    )


# ---------------------------------------------------------------------------
# Campaigns
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CampaignSettings:
    """Campaign fan-out throttling and summarisation."""

    enqueue_rate_per_second: float
    enqueue_batch_size: int
    poll_interval_seconds: float
    summary_interval_seconds: int
    max_recipients: int


def _build_campaigns(data: dict | None) -> CampaignSettings:
    d = data or {}
    return CampaignSettings(
        enqueue_rate_per_second=d.get("enqueue_rate_per_second", 100.0),
        enqueue_batch_size=d.get("enqueue_batch_size", 100),
        poll_interval_seconds=d.get("poll_interval_seconds", 5.0),
        summary_interval_seconds=d.get("summary_interval_seconds", 30),
        max_recipients=d.get("max_recipients", 100_000),
    )


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricsSettings:
    enabled: bool
    path: str


def _build_metrics(data: dict | None) -> MetricsSettings:
    d = data or {}
    return MetricsSettings(
        enabled=d.get("enabled", True),
        path=d.get("path", "/metrics"),
    )


# ---------------------------------------------------------------------------
# Root settings aggregate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CourierSettings:
    server: ServerSettings
    api: ApiSettings
    database: DatabaseSettings
    store: StoreSettings
    logging: LoggingSettings
    queue: QueueSettings
    retry: RetryPolicy
    workers: WorkerSettings
    rate_limits: RateLimitSettings
    channels: tuple[ChannelBinding, ...]
    webhooks: WebhookSettings
    campaigns: CampaignSettings
    metrics: MetricsSettings


def build_settings(data: dict) -> CourierSettings:
    """Build the full typed settings tree from raw config data.

    Called once during :class:`CourierConfig` initialization after
    schema validation and environment-variable resolution.
    """
    return CourierSettings(
        server=_build_server(data.get("server")),
        api=_build_api(data.get("api")),
        database=_build_database(data.get("database")),
        store=_build_store(data.get("store")),
        logging=_build_logging(data.get("logging")),
        queue=_build_queue(data.get("queue")),
        retry=_build_retry(data.get("retry")),
        workers=_build_workers(data.get("workers")),
        rate_limits=_build_rate_limits(data.get("rate_limits")),
        channels=_build_channels(data.get("channels")),
        webhooks=_build_webhooks(data.get("webhooks")),
        campaigns=_build_campaigns(data.get("campaigns")),
        metrics=_build_metrics(data.get("metrics")),
    )

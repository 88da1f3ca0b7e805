"""Configuration subsystem for courier.

Public API::

    from courier.config import get_config, CourierConfig

    # At startup (CLI only):
    CourierConfig(config_file="config.yaml", schema_file="bundled")

    # Everywhere else:
    cfg   = get_config()
    batch = cfg.settings.queue.batch_size   # typed access
    raw   = cfg.get("channels")             # dynamic dot-path
"""

from courier.config.courier_config import (
    ConfigValidationError,
    CourierConfig,
    get_config,
)
from courier.config.settings import (
    ApiSettings,
    CampaignSettings,
    ChannelBinding,
    CourierSettings,
    DatabaseSettings,
    LoggingSettings,
    MetricsSettings,
    QueueSettings,
    RateLimitSettings,
    ServerSettings,
    StoreSettings,
    WebhookSettings,
    WorkerSettings,
    build_settings,
)

__all__ = [
    "ApiSettings",
    "CampaignSettings",
    "ChannelBinding",
    "ConfigValidationError",
    # Core
    "CourierConfig",
    # Root
    "CourierSettings",
    "DatabaseSettings",
    "LoggingSettings",
    "MetricsSettings",
    "QueueSettings",
    "RateLimitSettings",
    # Sections
    "ServerSettings",
    "StoreSettings",
    "WebhookSettings",
    "WorkerSettings",
    "build_settings",
    "get_config",
]

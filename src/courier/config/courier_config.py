"""courier configuration loader built on ConfigKit.

Lifecycle::

    # 1. CLI creates the singleton (once, at startup)
    CourierConfig(config_file="/etc/courier/config.yaml", schema_file="bundled")

    # 2. Any module retrieves it afterwards
    from courier.config import get_config
    cfg = get_config()
    cfg.settings.queue.batch_size  # typed access

    # 3. Extension / dynamic access
    cfg.get("channels", default=[])
"""

from __future__ import annotations

import logging
import os
import re
from collections import Counter
from pathlib import Path
from typing import Any

from configkit import ConfigKit, ConfigKitMeta

from courier.config.settings import CourierSettings, build_settings

_SCHEMA_PATH = Path(__file__).parent / "schema.json"

_ENV_RE = re.compile(
    r"^\$\{([^}:]+?)(?::-(.*))?\}$",
    re.DOTALL,
)

_ALL_CHANNELS = ("email", "sms", "whatsapp", "push")


def _get_adapter_requirements() -> dict[str, tuple[frozenset[str], frozenset[str]]]:
    """Return ``kind -> (supported channels, required config keys)``."""
    from courier.channels.registry import ADAPTER_REQUIREMENTS  # noqa: PLC0415

    return ADAPTER_REQUIREMENTS


log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level singleton reference
# ---------------------------------------------------------------------------
_instance: CourierConfig | None = None


def get_config() -> CourierConfig:
    """Return the initialised configuration singleton.

    Raises :class:`RuntimeError` if :class:`CourierConfig` has not been
    created yet (i.e. the CLI entry point has not run).
    """
    if _instance is None:
        msg = (
            "Configuration not initialised. "
            "CourierConfig must be created with config_file= before calling get_config()."
        )
        raise RuntimeError(msg)
    return _instance


# ---------------------------------------------------------------------------
# Validation error collector
# ---------------------------------------------------------------------------


class ConfigValidationError(Exception):
    """Raised when cross-field validation finds one or more problems."""

    def __init__(self, errors: list[str]) -> None:
        """Store *errors* and build a human-readable message."""
        self.errors = errors
        body = "\n".join(f"  - {e}" for e in errors)
        super().__init__(f"Configuration validation failed:\n{body}")


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def _resolve_value(value: str, path: str) -> str:
    """Replace ``${VAR}`` or ``${VAR:-default}`` with env var value."""
    match = _ENV_RE.match(value)
    if match is None:
        return value
    var_name = match.group(1)
    fallback = match.group(2)
    resolved = os.environ.get(var_name)
    if resolved is not None:
        return resolved
    if fallback is not None:
        return fallback
    raise ConfigValidationError(
        [
            f"Environment variable '${{{var_name}}}' referenced "
            f"at '{path}' is not set and has no default",
        ],
    )


def _resolve_env_vars(
    data: Any,  # noqa: ANN401
    path: str = "",
) -> None:
    """Walk *data* in-place and resolve ``${VAR}``/``${VAR:-default}`` strings."""
    if isinstance(data, dict):
        for key in data:
            child_path = f"{path}.{key}" if path else key
            if isinstance(data[key], str):
                data[key] = _resolve_value(data[key], child_path)
            elif isinstance(data[key], (dict, list)):
                _resolve_env_vars(data[key], child_path)
    elif isinstance(data, list):
        for idx, item in enumerate(data):
            child_path = f"{path}[{idx}]"
            if isinstance(item, str):
                data[idx] = _resolve_value(item, child_path)
            elif isinstance(item, (dict, list)):
                _resolve_env_vars(item, child_path)


# ---------------------------------------------------------------------------
# Config class
# ---------------------------------------------------------------------------


class CourierConfig(ConfigKit):
    """Central configuration for the courier service.

    Subclasses :class:`configkit.ConfigKit`.  The JSON schema is
    bundled at ``config/schema.json``; users supply only ``config_file``.

    After construction the typed settings tree is available at
    :pyattr:`settings` and the raw dict via :pyattr:`data` /
    :pymeth:`get`.
    """

    def __init__(
        self,
        *,
        config_file: str | Path,
        schema_file: str | Path | None = None,  # noqa: ARG002
    ) -> None:
        """Initialise the courier configuration singleton.

        Parameters
        ----------
        config_file:
            Path to the YAML/JSON configuration file.
        schema_file:
            Ignored.  Exists only to satisfy the
            :class:`ConfigKitMeta` singleton guard.

        """
        global _instance  # noqa: PLW0603

        super().__init__(
            config_file=config_file,
            schema_file=_SCHEMA_PATH,
        )

        self._settings: CourierSettings = build_settings(self.data)
        _instance = self

    # -- lifecycle overrides ------------------------------------------------

    def _load(self) -> None:
        """Load config file then resolve ``${VAR}`` env-var references.

        Runs env-var resolution **before** schema validation so that
        substituted values (e.g. ``${LOG_LEVEL:-INFO}``) are checked
        against enum constraints in the schema.
        """
        super()._load()
        _resolve_env_vars(self._data)

    # -- typed access -------------------------------------------------------

    @property
    def settings(self) -> CourierSettings:
        """Fully-typed, frozen settings tree."""
        return self._settings

    # -- cross-field validation ---------------------------------------------

    def additional_checks(self) -> None:  # noqa: C901, PLR0912
        """Semantic & cross-field validation.

        Called automatically by ConfigKit **after** schema validation
        passes.
        """
        errors: list[str] = []
        warnings: list[str] = []

        server = self.data.get("server") or {}
        store = self.data.get("store") or {}
        rate_limits = self.data.get("rate_limits") or {}
        retry = self.data.get("retry") or {}
        channels = self.data.get("channels") or []
        database = self.data.get("database")
        queue = self.data.get("queue") or {}
        webhooks = self.data.get("webhooks") or {}

        # -- database --
        uses_db = (
            store.get("backend", "database") == "database"
            or rate_limits.get("backend", "memory") == "database"
        )
        if uses_db and not database:
            errors.append(
                "database section is required when store.backend or "
                "rate_limits.backend is 'database'",
            )
        if rate_limits.get("backend") == "database" and store.get("backend") == "memory":
            warnings.append(
                "rate_limits.backend is 'database' but store.backend is 'memory'; "
                "notifications are process-local while rate limits are shared",
            )
        if database:
            min_conn = database.get("min_connections", 2)
            max_conn = database.get("max_connections", 10)
            if min_conn > max_conn:
                errors.append(
                    f"database.min_connections ({min_conn}) must be <= "
                    f"database.max_connections ({max_conn})",
                )

        # -- retry --
        base = retry.get("base_delay_seconds", 60)
        cap = retry.get("max_delay_seconds", 3600)
        if base > cap:
            errors.append(
                f"retry.base_delay_seconds ({base}) must be <= retry.max_delay_seconds ({cap})",
            )

        # -- channels --
        processing_timeout = queue.get("processing_timeout_seconds", 300)
        requirements = _get_adapter_requirements()
        names = Counter(b.get("provider") for b in channels)
        for name, count in names.items():
            if count > 1:
                errors.append(f"channels: provider '{name}' is bound more than once")

        defaults = Counter(b.get("channel") for b in channels if b.get("is_default"))
        for channel, count in defaults.items():
            if count > 1:
                errors.append(
                    f"channels: channel '{channel}' has {count} default providers (max 1)",
                )

        for idx, binding in enumerate(channels):
            kind = binding.get("kind", binding.get("provider"))
            req = requirements.get(kind)
            if req is None:
                errors.append(
                    f"channels[{idx}].kind '{kind}' is not a known adapter. "
                    f"Known kinds: {sorted(requirements)}",
                )
                continue
            supported, required_keys = req
            if binding.get("channel") not in supported:
                errors.append(
                    f"channels[{idx}]: adapter '{kind}' does not support "
                    f"channel '{binding.get('channel')}' (supports {sorted(supported)})",
                )
            timeout = binding.get("timeout_seconds", 30)
            if timeout >= processing_timeout:
                errors.append(
                    f"channels[{idx}] ({binding.get('provider')}): timeout_seconds ({timeout}) "
                    f"must be < queue.processing_timeout_seconds ({processing_timeout}); "
                    "a send still in progress would be reclaimed and sent again",
                )
            cfg = binding.get("config") or {}
            missing = sorted(k for k in required_keys if not cfg.get(k))
            if missing:
                errors.append(
                    f"channels[{idx}] ({binding.get('provider')}): missing config keys {missing}",
                )

        bound = {b.get("channel") for b in channels}
        for channel in _ALL_CHANNELS:
            if channel not in bound:
                warnings.append(
                    f"no provider bound for channel '{channel}'; "
                    "notifications on it will fail permanently",
                )

        # -- webhooks --
        provider_names = set(names)
        for provider in (webhooks.get("secrets") or {}):
            if provider not in provider_names and provider not in ("sendgrid", "twilio"):
                warnings.append(
                    f"webhooks.secrets has an entry for unknown provider '{provider}'",
                )

        max_wait = webhooks.get("max_lookup_wait_seconds", 10)
        server_timeout = server.get("timeout", 30)
        if max_wait >= server_timeout:
            errors.append(
                f"webhooks.max_lookup_wait_seconds ({max_wait}) must be < "
                f"server.timeout ({server_timeout}); a callback batch would outlive its request",
            )

        # -- multi-process --
        workers = server.get("workers", 2)
        if store.get("backend", "database") == "memory" and workers > 1:
            warnings.append(
                f"store.backend is 'memory' with server.workers={workers}; "
                "each process keeps its own queue and notifications",
            )
        if rate_limits.get("backend", "memory") == "memory" and workers > 1:
            warnings.append(
                "rate_limits.backend is 'memory' with "
                f"server.workers={workers}; limits are per-process "
                "and will be exceeded across processes. "
                "Use 'database' backend for shared rate limiting.",
            )

        for w in warnings:
            log.warning("Config warning: %s", w)

        if errors:
            raise ConfigValidationError(errors)

    # -- helpers ------------------------------------------------------------

    def reload_settings(self) -> CourierSettings:
        """Re-read the config file and rebuild settings.

        Does not reset the singleton.  Used for config hot-reload
        (SIGHUP).
        """
        source_file = getattr(self, "_config_path", None)
        if source_file is None or not Path(source_file).is_file():
            msg = f"Cannot reload: config file {source_file!s} is not readable"
            raise RuntimeError(msg)

        new_data = self._parse_config(Path(source_file))
        _resolve_env_vars(new_data)
        return build_settings(new_data)

    @classmethod
    def reset(cls) -> None:
        """Reset the singleton -- testing only."""
        global _instance  # noqa: PLW0603
        _instance = None
        ConfigKitMeta.reset()

    def __repr__(self) -> str:
        """Return a developer-friendly representation."""
        source = getattr(self, "_config_path", "?")
        return f"<CourierConfig config_file={source}>"

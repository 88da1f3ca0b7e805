"""Root conftest for the courier test suite."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
import yaml

# ---------------------------------------------------------------------------
# Make ``src/`` importable without installing the package
# ---------------------------------------------------------------------------
_SRC = str(Path(__file__).resolve().parent.parent / "src")
if _SRC not in sys.path:
    sys.path.insert(0, _SRC)


# ---------------------------------------------------------------------------
# Minimal config data shared by multiple test modules
# ---------------------------------------------------------------------------


def _log_bindings() -> list[dict]:
    return [
        {"channel": "email", "provider": "log-email", "kind": "log", "is_default": True},
        {"channel": "sms", "provider": "log-sms", "kind": "log", "is_default": True},
        {"channel": "whatsapp", "provider": "log-whatsapp", "kind": "log"},
        {"channel": "push", "provider": "log-push", "kind": "log"},
    ]


@pytest.fixture()
def minimal_config_data() -> dict:
    """Return a dict containing the minimum config for an in-memory setup."""
    return {
        "store": {"backend": "memory"},
        "server": {"workers": 1},
        "channels": _log_bindings(),
    }


@pytest.fixture()
def tmp_config_file(tmp_path: Path, minimal_config_data: dict) -> Path:
    """Write *minimal_config_data* to a temp YAML file and return its path."""
    cfg = tmp_path / "config.yaml"
    cfg.write_text(
        yaml.safe_dump(minimal_config_data, default_flow_style=False, sort_keys=False),
        encoding="utf-8",
    )
    return cfg


@pytest.fixture()
def settings(minimal_config_data: dict):
    """Typed settings built from *minimal_config_data* without the singleton."""
    from courier.config.settings import build_settings

    return build_settings(minimal_config_data)


# ---------------------------------------------------------------------------
# ConfigKit singleton cleanup: autouse so every test gets a fresh slate
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def fresh_config():
    """Reset the CourierConfig singleton before and after every test."""
    from courier.config.courier_config import CourierConfig

    CourierConfig.reset()
    yield
    CourierConfig.reset()


@pytest.fixture(autouse=True)
def _restore_courier_logger():
    """Undo ``configure_logging`` so caplog keeps seeing courier records."""
    import logging

    yield
    for name in ("courier", "courier.access"):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
        logger.propagate = True
        logger.setLevel(logging.NOTSET)

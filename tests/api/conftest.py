"""Fixtures for the producer API tests: an app over the in-memory store."""

from __future__ import annotations

import pytest

from courier.app import create_app
from courier.config.settings import build_settings
from courier.store import InMemoryStore


@pytest.fixture()
def api_config(minimal_config_data: dict) -> dict:
    """Config for API tests; override keys before requesting ``app``."""
    data = dict(minimal_config_data)
    data["webhooks"] = {"lookup_attempts": 1}
    return data


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def app(api_config: dict, store: InMemoryStore):
    application = create_app(settings=build_settings(api_config), store=store, start_workers=False)
    application.config["TESTING"] = True
    return application


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def container(app):
    return app.extensions["container"]

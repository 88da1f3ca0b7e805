"""Notification Store and Dispatch Queue backends.

Usage::

    from courier.store import create_store

    store = create_store(settings, db)   # PostgresStore or InMemoryStore
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from courier.store.base import Claimed, DeliveryStore, NotificationFilter
from courier.store.memory import InMemoryStore

if TYPE_CHECKING:
    from pypgkit import Database

    from courier.config.settings import CourierSettings

log = logging.getLogger(__name__)


def create_store(settings: CourierSettings, db: Database | None = None) -> DeliveryStore:
    """Factory: build the store selected by ``store.backend``."""
    if settings.store.backend == "database":
        if db is None:
            msg = "store.backend is 'database' but no database was initialised"
            raise RuntimeError(msg)
        from courier.store.postgres import PostgresStore  # noqa: PLC0415

        log.info("Using PostgreSQL delivery store")
        return PostgresStore(db)
    log.info("Using in-memory delivery store (state is lost on restart)")
    return InMemoryStore()


__all__ = [
    "Claimed",
    "DeliveryStore",
    "InMemoryStore",
    "NotificationFilter",
    "create_store",
]

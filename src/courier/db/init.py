"""PostgreSQL connection setup and schema status.

The queue, notifications, templates, campaigns and the shared rate
limit counters all live in one schema, ``schema.sql``, applied through
PyPGKit.  Every statement in it is idempotent, so ``courier db migrate``
and ``database.auto_setup`` can run against an existing database.

Usage::

    from courier.db.init import init_database, table_status

    db = init_database(settings.database)
    table_status(db)   # {"notifications": True, ...}
"""

from __future__ import annotations

import logging
import re
from functools import cache
from pathlib import Path
from typing import TYPE_CHECKING

from pypgkit import Database, DatabaseConfig

if TYPE_CHECKING:
    from courier.config.settings import DatabaseSettings

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

_CREATE_TABLE_RE = re.compile(r"^CREATE TABLE IF NOT EXISTS (\w+)", re.MULTILINE)

log = logging.getLogger(__name__)


@cache
def schema_tables() -> tuple[str, ...]:
    """Table names created by ``schema.sql``, in file order."""
    return tuple(_CREATE_TABLE_RE.findall(SCHEMA_PATH.read_text(encoding="utf-8")))


def table_status(db: Database) -> dict[str, bool]:
    """Map each schema table to whether it exists in ``public``."""
    tables = schema_tables()
    rows = db.fetch_all(
        "SELECT table_name FROM information_schema.tables "
        "WHERE table_schema = 'public' AND table_name = ANY(%s)",
        (list(tables),),
        as_dict=True,
    )
    present = {row["table_name"] for row in rows}
    return {name: name in present for name in tables}


def _settings_to_config(settings: DatabaseSettings) -> DatabaseConfig:
    return DatabaseConfig(
        host=settings.host,
        port=settings.port,
        database=settings.database,
        user=settings.user,
        password=settings.password,
        sslmode=settings.sslmode,
        min_connections=settings.min_connections,
        max_connections=settings.max_connections,
        connection_timeout=settings.connection_timeout,
    )


def init_database(settings: DatabaseSettings, *, apply_schema: bool | None = None) -> Database:
    """Create the process-wide PyPGKit :class:`Database`.

    A second call returns the existing instance unchanged, so the API
    factory and the worker command can both call it.

    Parameters
    ----------
    settings:
        The ``database`` section of :class:`CourierSettings`.
    apply_schema:
        ``True`` or ``False`` to force or skip applying ``schema.sql``;
        ``None`` follows ``settings.auto_setup``.

    """
    if Database.is_initialized():
        log.debug("Reusing the initialised connection pool")
        return Database.get_instance()

    setup = settings.auto_setup if apply_schema is None else apply_schema
    log.info(
        "Opening pool to postgresql://%s@%s:%s/%s (%d-%d connections)%s",
        settings.user,
        settings.host,
        settings.port,
        settings.database,
        settings.min_connections,
        settings.max_connections,
        ", applying schema" if setup else "",
    )
    return Database.init(
        config=_settings_to_config(settings),
        schema_path=SCHEMA_PATH if setup else None,
        auto_setup=setup,
        interactive=False,
    )

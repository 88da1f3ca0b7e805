"""Unit of Work: several statements on one PostgreSQL transaction.

Delivery state changes touch more than one table (a notification and
its queue entry, or a campaign and its fan-out).  Pool-level helpers
such as :meth:`Database.fetch_one` each borrow their own connection,
so this wrapper pins one connection for the lifetime of a ``with``
block.

Usage::

    from courier.db import UnitOfWork

    with UnitOfWork(db) as uow:
        row = uow.fetch_one("SELECT ... FOR UPDATE", (nid,))
        uow.update_where("notifications", {"status": "queued"},
                         {"id": nid, "status": "pending"})
        uow.insert("queue_entries", {...})
        # COMMIT on clean exit; ROLLBACK on exception
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Self

from psycopg.rows import dict_row
from pypgkit import Database

if TYPE_CHECKING:
    from collections.abc import Sequence

    from psycopg import Cursor


class UnitOfWork:
    """Transaction-scoped SQL helpers sharing a single connection.

    Table and column names are interpolated into SQL and must come from
    code, never from request input.  Values are always bound.
    """

    def __init__(self, database: Database | None = None) -> None:
        self._db = database or Database.get_instance()
        self._tx = None
        self._conn = None

    # -- context manager -----------------------------------------------------

    def __enter__(self) -> Self:
        self._tx = self._db.transaction()
        self._conn = self._tx.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        try:
            self._tx.__exit__(exc_type, exc_val, exc_tb)
        finally:
            self._tx = None
            self._conn = None

    def _cursor(self, *, as_dict: bool = True) -> Cursor:
        if self._conn is None:
            msg = "UnitOfWork must be used as a context manager"
            raise RuntimeError(msg)
        if as_dict:
            return self._conn.cursor(row_factory=dict_row)
        return self._conn.cursor()

    # -- writes --------------------------------------------------------------

    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """INSERT one row and return it via ``RETURNING *``."""
        columns = ", ".join(row)
        placeholders = ", ".join(["%s"] * len(row))
        sql = f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) RETURNING *"
        with self._cursor() as cur:
            cur.execute(sql, list(row.values()))
            return cur.fetchone()

    def insert_many(self, table: str, rows: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
        """Multi-row INSERT; every row must have the same keys.

        Returns the inserted rows; match them up by primary key.
        """
        if not rows:
            return []
        columns = list(rows[0])
        one = "(" + ", ".join(["%s"] * len(columns)) + ")"
        params: list[Any] = []
        for row in rows:
            if list(row) != columns:
                msg = f"insert_many into {table}: rows have differing columns"
                raise ValueError(msg)
            params.extend(row.values())
        sql = (
            f"INSERT INTO {table} ({', '.join(columns)}) "
            f"VALUES {', '.join([one] * len(rows))} RETURNING *"
        )
        with self._cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchall()

    def update_where(
        self,
        table: str,
        set_values: dict[str, Any],
        where: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Compare-and-set UPDATE.

        Every *where* pair is AND-joined, so including the expected
        current status turns this into a CAS.  A ``None`` value matches
        ``IS NULL``.

        Returns
        -------
        dict or None
            The updated row, or ``None`` when the guard did not match.

        """
        set_sql = ", ".join(f"{col} = %s" for col in set_values)
        where_sql, where_params = _where_clause(where)
        sql = f"UPDATE {table} SET {set_sql} WHERE {where_sql} RETURNING *"
        with self._cursor() as cur:
            cur.execute(sql, [*set_values.values(), *where_params])
            return cur.fetchone()

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> int:
        """Run a statement and return its rowcount."""
        with self._cursor(as_dict=False) as cur:
            cur.execute(sql, params)
            return cur.rowcount

    # -- reads ---------------------------------------------------------------

    def fetch_one(self, sql: str, params: Sequence[Any] | None = None) -> dict[str, Any] | None:
        with self._cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchone()

    def fetch_all(self, sql: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]]:
        with self._cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchall()


def _where_clause(where: dict[str, Any]) -> tuple[str, list[Any]]:
    parts: list[str] = []
    params: list[Any] = []
    for col, value in where.items():
        if value is None:
            parts.append(f"{col} IS NULL")
        else:
            parts.append(f"{col} = %s")
            params.append(value)
    return " AND ".join(parts), params

"""Unit tests for courier.db.unit_of_work: UnitOfWork."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from courier.db.unit_of_work import UnitOfWork

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _mock_database():
    """Create a mock Database with transaction context manager support."""
    db = MagicMock()
    conn = MagicMock()
    tx = MagicMock()
    tx.__enter__ = MagicMock(return_value=conn)
    tx.__exit__ = MagicMock(return_value=False)
    db.transaction.return_value = tx
    return db, conn, tx


def _mock_cursor(return_value=None, fetchall_value=None, rowcount=1):
    """Create a mock cursor context manager."""
    cursor = MagicMock()
    cursor.fetchone.return_value = return_value
    cursor.fetchall.return_value = fetchall_value or []
    cursor.rowcount = rowcount
    cursor.__enter__ = MagicMock(return_value=cursor)
    cursor.__exit__ = MagicMock(return_value=False)
    return cursor


# ---------------------------------------------------------------------------
# Context manager behaviour
# ---------------------------------------------------------------------------


class TestContextManager:
    def test_enters_transaction_and_sets_connection(self):
        db, conn, tx = _mock_database()
        uow = UnitOfWork(db)

        with uow as ctx:
            assert ctx is uow
            assert uow._conn is conn

        db.transaction.assert_called_once()
        tx.__enter__.assert_called_once()

    def test_exit_clears_connection(self):
        db, _conn, tx = _mock_database()
        uow = UnitOfWork(db)

        with uow:
            assert uow._conn is not None

        assert uow._conn is None
        tx.__exit__.assert_called_once()

    def test_exception_is_passed_to_transaction(self):
        db, _conn, tx = _mock_database()
        uow = UnitOfWork(db)

        with pytest.raises(ValueError, match="boom"), uow:
            raise ValueError("boom")

        args = tx.__exit__.call_args[0]
        assert args[0] is ValueError
        assert uow._conn is None

    def test_use_outside_context_raises(self):
        db, _conn, _tx = _mock_database()
        with pytest.raises(RuntimeError, match="context manager"):
            UnitOfWork(db).fetch_one("SELECT 1")


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


class TestInsert:
    def test_builds_returning_insert(self):
        db, conn, _tx = _mock_database()
        cursor = _mock_cursor(return_value={"id": 1, "status": "queued"})
        conn.cursor.return_value = cursor

        with UnitOfWork(db) as uow:
            row = uow.insert("queue_entries", {"notification_id": "n", "priority": 5})

        sql, params = cursor.execute.call_args[0]
        assert sql == (
            "INSERT INTO queue_entries (notification_id, priority) VALUES (%s, %s) RETURNING *"
        )
        assert params == ["n", 5]
        assert row == {"id": 1, "status": "queued"}


class TestInsertMany:
    def test_multi_row_values(self):
        db, conn, _tx = _mock_database()
        cursor = _mock_cursor(fetchall_value=[{"id": 1}, {"id": 2}])
        conn.cursor.return_value = cursor

        with UnitOfWork(db) as uow:
            rows = uow.insert_many("notifications", [{"a": 1, "b": 2}, {"a": 3, "b": 4}])

        sql, params = cursor.execute.call_args[0]
        assert "VALUES (%s, %s), (%s, %s) RETURNING *" in sql
        assert params == [1, 2, 3, 4]
        assert len(rows) == 2

    def test_empty_is_noop(self):
        db, conn, _tx = _mock_database()
        with UnitOfWork(db) as uow:
            assert uow.insert_many("notifications", []) == []
        conn.cursor.assert_not_called()

    def test_mismatched_columns_rejected(self):
        db, conn, _tx = _mock_database()
        conn.cursor.return_value = _mock_cursor()
        with pytest.raises(ValueError, match="differing columns"), UnitOfWork(db) as uow:
            uow.insert_many("notifications", [{"a": 1}, {"b": 2}])


class TestUpdateWhere:
    def test_compare_and_set(self):
        db, conn, _tx = _mock_database()
        cursor = _mock_cursor(return_value={"id": "n", "status": "queued"})
        conn.cursor.return_value = cursor

        with UnitOfWork(db) as uow:
            row = uow.update_where(
                "notifications",
                {"status": "queued"},
                {"id": "n", "status": "pending"},
            )

        sql, params = cursor.execute.call_args[0]
        assert sql == (
            "UPDATE notifications SET status = %s WHERE id = %s AND status = %s RETURNING *"
        )
        assert params == ["queued", "n", "pending"]
        assert row["status"] == "queued"

    def test_none_matches_is_null(self):
        db, conn, _tx = _mock_database()
        cursor = _mock_cursor(return_value=None)
        conn.cursor.return_value = cursor

        with UnitOfWork(db) as uow:
            row = uow.update_where("queue_entries", {"claimed_by": "w"}, {"claimed_by": None})

        sql, params = cursor.execute.call_args[0]
        assert "WHERE claimed_by IS NULL" in sql
        assert params == ["w"]
        assert row is None


class TestExecuteAndFetch:
    def test_execute_returns_rowcount(self):
        db, conn, _tx = _mock_database()
        conn.cursor.return_value = _mock_cursor(rowcount=7)
        with UnitOfWork(db) as uow:
            assert uow.execute("DELETE FROM rate_limit_counters") == 7

    def test_fetch_all(self):
        db, conn, _tx = _mock_database()
        conn.cursor.return_value = _mock_cursor(fetchall_value=[{"id": 1}])
        with UnitOfWork(db) as uow:
            assert uow.fetch_all("SELECT id FROM campaigns") == [{"id": 1}]

"""Tests for courier.store.postgres against a mocked UnitOfWork."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
from psycopg import errors as pg_errors

from courier.core.errors import ClaimConflict, DuplicateActiveEntry, NotCancelable
from courier.core.state import apply_transition
from courier.core.types import ClaimStatus, NotificationStatus
from courier.store.postgres import PostgresStore, _db_value

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _notification_row(status: str = "queued", **kwargs) -> dict:
    row = {
        "id": uuid4(),
        "channel": "email",
        "recipient": "user@example.com",
        "subject": None,
        "body": "hello",
        "status": status,
        "priority": 5,
        "retry_count": 0,
        "max_retries": 3,
        "cancel_requested": False,
        "cost_usd": Decimal(0),
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(kwargs)
    return row


def _entry_row(notification_id, claim_status: str = "queued", **kwargs) -> dict:
    row = {
        "id": uuid4(),
        "notification_id": notification_id,
        "priority": 5,
        "scheduled_at": NOW,
        "claim_status": claim_status,
        "claimed_by": None,
        "claimed_at": None,
        "completed_at": None,
        "created_at": NOW,
    }
    row.update(kwargs)
    return row


@pytest.fixture()
def uow():
    """Patch UnitOfWork so every ``with UnitOfWork(db)`` yields one mock."""
    mock_uow = MagicMock()
    with patch("courier.store.postgres.UnitOfWork") as cls:
        cls.return_value.__enter__.return_value = mock_uow
        cls.return_value.__exit__.return_value = False
        yield mock_uow


class TestDbValue:
    def test_enum_to_value(self):
        assert _db_value(NotificationStatus.SENT) == "sent"

    def test_set_sorted(self):
        assert _db_value(frozenset({"b", "a"})) == ["a", "b"]

    def test_plain_passthrough(self):
        assert _db_value(3) == 3


class TestClaimBatch:
    def test_uses_skip_locked_and_moves_notification(self, uow):
        n_row = _notification_row("queued")
        e_row = _entry_row(n_row["id"], "processing", claimed_by="w1", claimed_at=NOW)
        uow.fetch_all.return_value = [e_row]
        uow.fetch_one.return_value = n_row
        uow.update_where.return_value = {**n_row, "status": "processing"}

        claimed = PostgresStore(MagicMock()).claim_batch("w1", limit=5, now=NOW)

        sql, params = uow.fetch_all.call_args[0]
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert "ORDER BY priority, scheduled_at" in sql
        assert params == ("queued", NOW, 5, "processing", "w1", NOW)
        assert len(claimed) == 1
        assert claimed[0].notification.status == NotificationStatus.PROCESSING
        assert claimed[0].entry.claimed_by == "w1"

        table, changes, where = uow.update_where.call_args[0]
        assert table == "notifications"
        assert changes["status"] == "processing"
        assert where == {"id": n_row["id"], "status": "queued"}

    def test_entry_for_cancelled_notification_is_abandoned(self, uow):
        n_row = _notification_row("cancelled")
        uow.fetch_all.return_value = [_entry_row(n_row["id"], "processing")]
        uow.fetch_one.return_value = n_row
        uow.update_where.return_value = _entry_row(n_row["id"], "abandoned")

        assert PostgresStore(MagicMock()).claim_batch("w1", limit=5, now=NOW) == []
        table, changes, _where = uow.update_where.call_args[0]
        assert table == "queue_entries"
        assert changes["claim_status"] == "abandoned"


class TestRenewClaim:
    def test_refreshes_claimed_at_only_for_holder(self, uow):
        later = NOW + timedelta(minutes=4)
        entry_id = uuid4()
        uow.update_where.return_value = _entry_row(
            uuid4(), "processing", id=entry_id, claimed_by="w1", claimed_at=later
        )

        entry = PostgresStore(MagicMock()).renew_claim(entry_id, "w1", now=later)

        table, changes, where = uow.update_where.call_args[0]
        assert table == "queue_entries"
        assert changes == {"claimed_at": later}
        assert where == {"id": entry_id, "claim_status": "processing", "claimed_by": "w1"}
        assert entry.claimed_at == later

    def test_reclaimed_entry_raises_claim_conflict(self, uow):
        uow.update_where.return_value = None
        with pytest.raises(ClaimConflict):
            PostgresStore(MagicMock()).renew_claim(uuid4(), "w1", now=NOW)


class TestComplete:
    def test_not_held_raises_claim_conflict(self, uow):
        uow.fetch_one.return_value = _entry_row(uuid4(), "queued")
        with pytest.raises(ClaimConflict):
            PostgresStore(MagicMock()).complete_sent(
                uuid4(),
                "w1",
                provider_name="p",
                provider_message_id="m",
                cost_usd=Decimal(0),
                subject=None,
                body="b",
                now=NOW,
            )

    def test_sent_writes_entry_done_and_notification(self, uow):
        n_row = _notification_row("processing")
        e_row = _entry_row(n_row["id"], "processing", claimed_by="w1", claimed_at=NOW)
        uow.fetch_one.side_effect = [e_row, n_row]
        uow.update_where.side_effect = [
            {**e_row, "claim_status": "done"},
            {**n_row, "status": "sent", "provider_message_id": "m-1", "sent_at": NOW},
        ]

        sent = PostgresStore(MagicMock()).complete_sent(
            e_row["id"],
            "w1",
            provider_name="sendgrid",
            provider_message_id="m-1",
            cost_usd=Decimal("0.001"),
            subject="s",
            body="b",
            now=NOW,
        )

        assert sent.status == NotificationStatus.SENT
        entry_call, notif_call = uow.update_where.call_args_list
        assert entry_call[0][1]["claim_status"] == "done"
        assert notif_call[0][2] == {"id": n_row["id"], "status": "processing"}

    def test_failed_with_retry_inserts_new_entry(self, uow):
        n_row = _notification_row("processing")
        e_row = _entry_row(n_row["id"], "processing", claimed_by="w1", claimed_at=NOW)
        retry_at = NOW + timedelta(minutes=1)
        # locked entry, locked notification, active-entry check
        uow.fetch_one.side_effect = [e_row, n_row, None]
        uow.update_where.side_effect = [
            {**e_row, "claim_status": "done"},
            {**n_row, "status": "queued", "retry_count": 1, "next_attempt_at": retry_at},
        ]
        uow.insert.return_value = _entry_row(n_row["id"], "queued", scheduled_at=retry_at)

        def decide(n):
            from courier.core.retry import RetryDecision

            return RetryDecision(True, 1, retry_at, "retry 1/3")

        updated, decision = PostgresStore(MagicMock()).complete_failed(
            e_row["id"], "w1", error="timeout", decide=decide, now=NOW
        )

        assert decision.retry is True
        assert updated.status == NotificationStatus.QUEUED
        table, row = uow.insert.call_args[0]
        assert table == "queue_entries"
        assert row["scheduled_at"] == retry_at
        assert row["claim_status"] == ClaimStatus.QUEUED.value


class TestEnqueue:
    def test_unique_violation_maps_to_duplicate(self, uow):
        uow.fetch_one.side_effect = pg_errors.UniqueViolation("duplicate key")
        with pytest.raises(DuplicateActiveEntry):
            PostgresStore(MagicMock()).enqueue(uuid4(), scheduled_at=NOW, now=NOW)

    def test_existing_active_entry(self, uow):
        n_row = _notification_row("pending")
        uow.fetch_one.side_effect = [n_row, {"id": uuid4()}]
        with pytest.raises(DuplicateActiveEntry):
            PostgresStore(MagicMock()).enqueue(n_row["id"], scheduled_at=NOW, now=NOW)


class TestCancel:
    def test_processing_sets_flag_then_refuses(self, uow):
        n_row = _notification_row("processing")
        uow.fetch_one.side_effect = [_entry_row(n_row["id"], "processing"), n_row]

        with pytest.raises(NotCancelable):
            PostgresStore(MagicMock()).cancel(n_row["id"], now=NOW)

        sql, params = uow.execute.call_args[0]
        assert "cancel_requested = TRUE" in sql
        assert params == (NOW, n_row["id"])
        uow.update_where.assert_not_called()

    def test_queued_abandons_entry(self, uow):
        n_row = _notification_row("queued")
        e_row = _entry_row(n_row["id"], "queued")
        uow.fetch_one.side_effect = [e_row, n_row]
        uow.update_where.side_effect = [
            {**e_row, "claim_status": "abandoned"},
            {**n_row, "status": "cancelled"},
        ]

        cancelled = PostgresStore(MagicMock()).cancel(n_row["id"], now=NOW)

        assert cancelled.status == NotificationStatus.CANCELLED
        assert uow.update_where.call_args_list[0][0][1]["claim_status"] == "abandoned"


class TestTransition:
    def test_cas_miss_returns_none(self, uow):
        store = PostgresStore(MagicMock())
        repo_row = _notification_row("sent")
        n = store._notifications._row_to_entity(repo_row)
        t = apply_transition(n, NotificationStatus.DELIVERED, now=NOW)
        uow.update_where.return_value = None

        assert store.transition(n.id, t) is None
        _table, _changes, where = uow.update_where.call_args[0]
        assert where == {"id": n.id, "status": "sent"}


class TestPing:
    def test_delegates_to_health_check(self):
        db = MagicMock()
        db.health_check.return_value = False
        assert PostgresStore(db).ping() is False

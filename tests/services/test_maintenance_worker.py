"""Tests for courier.services.maintenance_worker."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock
from uuid import uuid4

from courier.config.settings import build_settings
from courier.core.types import Channel, ClaimStatus, NotificationStatus
from courier.metrics.collector import MetricsCollector
from courier.models import Notification
from courier.services.maintenance_worker import MaintenanceWorker
from courier.store import InMemoryStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _make_worker(store=None, **kwargs) -> MaintenanceWorker:
    settings = build_settings(
        {
            "queue": {"processing_timeout_seconds": 300, "reclaim_interval_seconds": 60},
            "campaigns": {"summary_interval_seconds": 30},
            "rate_limits": {"gc_interval_seconds": 600},
        }
    )
    kwargs.setdefault("clock", lambda: NOW)
    return MaintenanceWorker(store or InMemoryStore(), settings, **kwargs)


def _claimed_at(store: InMemoryStore, when: datetime) -> Notification:
    n = Notification(
        id=uuid4(),
        channel=Channel.SMS,
        recipient="+15550100000",
        body="x",
        created_at=when,
        updated_at=when,
    )
    store.add_notifications([n], enqueue_at=when, now=when)
    store.claim_batch("w-dead", limit=1, now=when)
    return n


class TestTasks:
    def test_task_names(self):
        worker = _make_worker(campaigns=MagicMock(), db_rate_limiter=MagicMock())
        assert worker.task_names == ["stuck_claim_sweep", "campaign_summary", "rate_limit_gc"]

    def test_sweep_only_by_default(self):
        assert _make_worker().task_names == ["stuck_claim_sweep"]


class TestStuckClaimSweep:
    def test_reclaims_stale_processing(self):
        store = InMemoryStore()
        stale = _claimed_at(store, NOW - timedelta(seconds=400))
        fresh = _claimed_at(store, NOW - timedelta(seconds=10))
        metrics = MetricsCollector()

        assert _make_worker(store, metrics=metrics).run_pending(now=0.0) == ["stuck_claim_sweep"]

        assert store.get_notification(stale.id).status == NotificationStatus.QUEUED
        (entry,) = store.queue_entries(stale.id)
        assert entry.claim_status == ClaimStatus.QUEUED
        assert entry.claimed_by is None
        assert store.get_notification(fresh.id).status == NotificationStatus.PROCESSING
        assert metrics.get("courier_queue_reclaimed_total") == 1

    def test_reclaimed_entry_is_claimable_again(self):
        store = InMemoryStore()
        n = _claimed_at(store, NOW - timedelta(seconds=400))
        _make_worker(store).run_pending(now=0.0)

        (claimed,) = store.claim_batch("w-new", limit=1, now=NOW)
        assert claimed.notification.id == n.id


class TestScheduling:
    def test_intervals_are_independent(self):
        campaigns = MagicMock()
        limiter = MagicMock()
        limiter.gc.return_value = 0
        worker = _make_worker(campaigns=campaigns, db_rate_limiter=limiter)

        assert worker.run_pending(now=0.0) == [
            "stuck_claim_sweep",
            "campaign_summary",
            "rate_limit_gc",
        ]
        assert worker.run_pending(now=10.0) == []
        assert worker.run_pending(now=30.0) == ["campaign_summary"]
        assert worker.run_pending(now=60.0) == ["stuck_claim_sweep", "campaign_summary"]
        assert campaigns.summarize_active.call_count == 3
        limiter.gc.assert_called_once()

    def test_failing_task_does_not_block_others(self):
        store = MagicMock()
        store.reclaim_stale.side_effect = RuntimeError("db down")
        campaigns = MagicMock()
        metrics = MetricsCollector()
        worker = _make_worker(store, campaigns=campaigns, metrics=metrics)

        assert worker.run_pending(now=0.0) == ["stuck_claim_sweep", "campaign_summary"]
        campaigns.summarize_active.assert_called_once()
        assert metrics.get("courier_worker_errors_total") == 1

    def test_not_leader_runs_nothing(self):
        db = MagicMock()
        conn = MagicMock()
        conn.execute.return_value.fetchone.return_value = (False,)
        db.connection.return_value.__enter__.return_value = conn
        store = MagicMock()

        assert _make_worker(store, db=db).run_pending(now=0.0) == []
        store.reclaim_stale.assert_not_called()

    def test_lock_check_failure_skips_cycle(self):
        db = MagicMock()
        db.connection.return_value.__enter__.side_effect = RuntimeError("pool exhausted")
        store = MagicMock()

        assert _make_worker(store, db=db).run_pending(now=0.0) == []


class TestLifecycle:
    def test_start_stop(self):
        worker = _make_worker()
        worker.start()
        try:
            assert worker.is_alive()
        finally:
            worker.stop()
        assert not worker.is_alive()

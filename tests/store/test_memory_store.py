"""Tests for courier.store.memory: the in-process delivery store."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from courier.core.errors import (
    ClaimConflict,
    DuplicateActiveEntry,
    InvalidTransition,
    NotCancelable,
    NotFound,
)
from courier.core.retry import RetryPolicy, decide
from courier.core.state import apply_transition
from courier.core.types import Channel, ClaimStatus, ErrorClass, NotificationStatus
from courier.models import Notification
from courier.store import InMemoryStore, NotificationFilter

_S = NotificationStatus
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
POLICY = RetryPolicy(base_delay_seconds=60, max_delay_seconds=3600)


def _make_notification(**kwargs) -> Notification:
    defaults = {
        "id": uuid4(),
        "channel": Channel.EMAIL,
        "recipient": "user@example.com",
        "body": "hello",
        "created_at": NOW,
        "updated_at": NOW,
    }
    defaults.update(kwargs)
    return Notification(**defaults)


def _transient(n: Notification):
    return decide(
        n.retry_count,
        n.max_retries,
        ErrorClass.TRANSIENT,
        NOW,
        policy=POLICY,
        cancel_requested=n.cancel_requested,
    )


def _permanent(n: Notification):
    return decide(n.retry_count, n.max_retries, ErrorClass.PERMANENT, NOW, policy=POLICY)


def _queued(store: InMemoryStore, **kwargs) -> Notification:
    (n,) = store.add_notifications([_make_notification(**kwargs)], enqueue_at=NOW, now=NOW)
    return n


def _active_entries(store: InMemoryStore, notification_id) -> list:
    return [e for e in store.queue_entries(notification_id) if e.is_active]


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class TestAddNotifications:
    def test_pending_without_enqueue(self):
        store = InMemoryStore()
        (n,) = store.add_notifications([_make_notification()], enqueue_at=None, now=NOW)
        assert n.status == _S.PENDING
        assert store.queue_entries(n.id) == []

    def test_enqueue_creates_one_entry(self):
        store = InMemoryStore()
        n = _queued(store)
        assert n.status == _S.QUEUED
        entries = store.queue_entries(n.id)
        assert len(entries) == 1
        assert entries[0].claim_status == ClaimStatus.QUEUED
        assert entries[0].priority == n.priority

    def test_duplicate_id_rejected_atomically(self):
        store = InMemoryStore()
        existing = _queued(store)
        fresh = _make_notification()
        with pytest.raises(ValueError):
            store.add_notifications(
                [fresh, _make_notification(id=existing.id)],
                enqueue_at=NOW,
                now=NOW,
            )
        assert store.get_notification(fresh.id) is None

    def test_get_missing_returns_none(self):
        assert InMemoryStore().get_notification(uuid4()) is None


class TestListAndCount:
    def test_filters(self):
        store = InMemoryStore()
        _queued(store, related_entity="order", related_id="1")
        _queued(store, channel=Channel.SMS, recipient="+15550100000")
        rows = store.list_notifications(NotificationFilter(channel=Channel.SMS))
        assert [r.channel for r in rows] == [Channel.SMS]
        rows = store.list_notifications(NotificationFilter(related_entity="order"))
        assert len(rows) == 1

    def test_newest_first_with_paging(self):
        store = InMemoryStore()
        ids = [_queued(store, created_at=NOW + timedelta(seconds=i)).id for i in range(5)]
        rows = store.list_notifications(limit=2, offset=1)
        assert [r.id for r in rows] == [ids[3], ids[2]]

    def test_created_range(self):
        store = InMemoryStore()
        _queued(store, created_at=NOW - timedelta(days=2))
        recent = _queued(store, created_at=NOW)
        rows = store.list_notifications(
            NotificationFilter(created_from=NOW - timedelta(hours=1)),
        )
        assert [r.id for r in rows] == [recent.id]

    def test_count_by_channel_and_status(self):
        store = InMemoryStore()
        _queued(store)
        _queued(store)
        store.add_notifications([_make_notification()], enqueue_at=None, now=NOW)
        counts = store.count_notifications()
        assert counts == {("email", "queued"): 2, ("email", "pending"): 1}

    def test_pending_ids_for_related_object(self):
        store = InMemoryStore()
        older = _make_notification(related_entity="c", related_id="x", created_at=NOW)
        newer = _make_notification(
            related_entity="c",
            related_id="x",
            created_at=NOW + timedelta(seconds=1),
        )
        store.add_notifications([newer, older], enqueue_at=None, now=NOW)
        assert store.pending_notification_ids("c", "x", limit=1) == [older.id]


class TestEnqueue:
    def test_pending_to_queued(self):
        store = InMemoryStore()
        (n,) = store.add_notifications([_make_notification()], enqueue_at=None, now=NOW)
        entry = store.enqueue(n.id, scheduled_at=NOW, now=NOW)
        assert entry.notification_id == n.id
        assert store.get_notification(n.id).status == _S.QUEUED

    def test_second_active_entry_rejected(self):
        store = InMemoryStore()
        n = _queued(store)
        with pytest.raises(DuplicateActiveEntry):
            store.enqueue(n.id, scheduled_at=NOW, now=NOW)
        assert len(_active_entries(store, n.id)) == 1

    def test_unknown_notification(self):
        with pytest.raises(NotFound):
            InMemoryStore().enqueue(uuid4(), scheduled_at=NOW, now=NOW)

    def test_non_pending_rejected(self):
        store = InMemoryStore()
        n = _queued(store)
        store.cancel(n.id, now=NOW)
        with pytest.raises(InvalidTransition):
            store.enqueue(n.id, scheduled_at=NOW, now=NOW)


# ---------------------------------------------------------------------------
# Claiming
# ---------------------------------------------------------------------------


class TestClaim:
    def test_claim_batch_orders_by_priority_then_schedule(self):
        store = InMemoryStore()
        low = _queued(store, priority=9)
        high = _queued(store, priority=1)
        claimed = store.claim_batch("w1", limit=10, now=NOW)
        assert [c.notification.id for c in claimed] == [high.id, low.id]
        assert all(c.notification.status == _S.PROCESSING for c in claimed)
        assert all(c.entry.claimed_by == "w1" for c in claimed)

    def test_future_entries_not_claimed(self):
        store = InMemoryStore()
        store.add_notifications(
            [_make_notification()],
            enqueue_at=NOW + timedelta(minutes=5),
            now=NOW,
        )
        assert store.claim_batch("w1", limit=10, now=NOW) == []
        assert len(store.claim_batch("w1", limit=10, now=NOW + timedelta(minutes=5))) == 1

    def test_claimed_entry_not_returned_twice(self):
        store = InMemoryStore()
        _queued(store)
        assert len(store.claim_batch("w1", limit=10, now=NOW)) == 1
        assert store.claim_batch("w2", limit=10, now=NOW) == []

    def test_claim_specific_entry_conflict(self):
        store = InMemoryStore()
        n = _queued(store)
        (entry,) = store.queue_entries(n.id)
        store.claim(entry.id, "w1", now=NOW)
        with pytest.raises(ClaimConflict):
            store.claim(entry.id, "w2", now=NOW)

    def test_entry_of_non_queued_notification_abandoned_and_skipped(self):
        store = InMemoryStore()
        first = _queued(store, priority=1)
        orphan = _queued(store, priority=2)
        last = _queued(store, priority=3)
        # notification cancelled behind the queue's back; its entry stays queued
        store.transition(orphan.id, apply_transition(orphan, _S.CANCELLED, now=NOW))

        claimed = store.claim_batch("w1", limit=10, now=NOW)

        assert [c.notification.id for c in claimed] == [first.id, last.id]
        (entry,) = store.queue_entries(orphan.id)
        assert entry.claim_status == ClaimStatus.ABANDONED
        assert store.get_notification(orphan.id).status == _S.CANCELLED
        assert store.get_notification(last.id).status == _S.PROCESSING

    def test_claim_specific_abandoned_entry_conflicts(self):
        store = InMemoryStore()
        n = _queued(store)
        store.transition(n.id, apply_transition(n, _S.CANCELLED, now=NOW))
        (entry,) = store.queue_entries(n.id)
        with pytest.raises(ClaimConflict, match="abandoned"):
            store.claim(entry.id, "w1", now=NOW)
        assert store.queue_entries(n.id)[0].claim_status == ClaimStatus.ABANDONED

    def test_renew_claim_refreshes_claimed_at(self):
        store = InMemoryStore()
        _queued(store)
        (c,) = store.claim_batch("w1", limit=1, now=NOW)
        later = NOW + timedelta(minutes=4)

        assert store.renew_claim(c.entry.id, "w1", now=later).claimed_at == later
        assert store.reclaim_stale(claimed_before=later - timedelta(seconds=1), now=later) == 0

    def test_renew_claim_by_non_holder_conflicts(self):
        store = InMemoryStore()
        _queued(store)
        (c,) = store.claim_batch("w1", limit=1, now=NOW)
        store.reclaim_stale(claimed_before=NOW + timedelta(seconds=1), now=NOW)
        with pytest.raises(ClaimConflict):
            store.renew_claim(c.entry.id, "w1", now=NOW)

    def test_concurrent_claimers_never_share_an_entry(self):
        store = InMemoryStore()
        for _ in range(200):
            _queued(store)

        results: dict[str, list] = {}
        barrier = threading.Barrier(8)

        def worker(name: str) -> None:
            barrier.wait()
            mine = []
            while True:
                batch = store.claim_batch(name, limit=3, now=NOW)
                if not batch:
                    break
                mine.extend(c.entry.id for c in batch)
            results[name] = mine

        threads = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        all_ids = [eid for ids in results.values() for eid in ids]
        assert len(all_ids) == 200
        assert len(set(all_ids)) == 200


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------


class TestComplete:
    def test_complete_sent(self):
        store = InMemoryStore()
        n = _queued(store)
        (c,) = store.claim_batch("w1", limit=1, now=NOW)
        sent = store.complete_sent(
            c.entry.id,
            "w1",
            provider_name="log-email",
            provider_message_id="m-1",
            cost_usd=Decimal("0.001"),
            subject="Hi",
            body="rendered",
            now=NOW,
        )
        assert sent.status == _S.SENT
        assert sent.provider_message_id == "m-1"
        assert sent.sent_at == NOW
        assert sent.body == "rendered"
        assert store.queue_entries(n.id)[0].claim_status == ClaimStatus.DONE
        assert store.find_by_provider_message_id("m-1", "log-email").id == n.id

    def test_complete_by_non_holder_conflicts(self):
        store = InMemoryStore()
        _queued(store)
        (c,) = store.claim_batch("w1", limit=1, now=NOW)
        with pytest.raises(ClaimConflict):
            store.complete_sent(
                c.entry.id,
                "w2",
                provider_name="p",
                provider_message_id="m",
                cost_usd=Decimal(0),
                subject=None,
                body="b",
                now=NOW,
            )

    def test_transient_failure_requeues_with_new_entry(self):
        store = InMemoryStore()
        n = _queued(store, max_retries=3)
        (c,) = store.claim_batch("w1", limit=1, now=NOW)
        updated, decision = store.complete_failed(
            c.entry.id,
            "w1",
            error="timeout",
            decide=_transient,
            now=NOW,
        )
        assert decision.retry is True
        assert updated.status == _S.QUEUED
        assert updated.retry_count == 1
        assert updated.error == "timeout"
        assert updated.next_attempt_at == NOW + timedelta(seconds=60)
        entries = store.queue_entries(n.id)
        assert [e.claim_status for e in entries] == [ClaimStatus.DONE, ClaimStatus.QUEUED]
        assert entries[1].scheduled_at == NOW + timedelta(seconds=60)

    def test_permanent_failure_is_final(self):
        store = InMemoryStore()
        n = _queued(store)
        (c,) = store.claim_batch("w1", limit=1, now=NOW)
        updated, decision = store.complete_failed(
            c.entry.id,
            "w1",
            error="bad address",
            decide=_permanent,
            now=NOW,
        )
        assert decision.retry is False
        assert updated.status == _S.FAILED_FINAL
        assert updated.retry_count == 0
        assert updated.failed_at == NOW
        assert _active_entries(store, n.id) == []

    def test_defer_returns_entry_to_queue(self):
        store = InMemoryStore()
        n = _queued(store)
        (c,) = store.claim_batch("w1", limit=1, now=NOW)
        later = NOW + timedelta(seconds=30)
        deferred = store.defer(c.entry.id, "w1", scheduled_at=later, now=NOW)
        assert deferred.status == _S.QUEUED
        assert deferred.retry_count == 0
        (entry,) = store.queue_entries(n.id)
        assert entry.claim_status == ClaimStatus.QUEUED
        assert entry.scheduled_at == later
        assert entry.claimed_by is None


# ---------------------------------------------------------------------------
# Cancel / retry / reclaim
# ---------------------------------------------------------------------------


class TestCancel:
    def test_cancel_queued_abandons_entry(self):
        store = InMemoryStore()
        n = _queued(store)
        cancelled = store.cancel(n.id, now=NOW)
        assert cancelled.status == _S.CANCELLED
        assert store.queue_entries(n.id)[0].claim_status == ClaimStatus.ABANDONED
        assert store.claim_batch("w1", limit=10, now=NOW) == []

    def test_cancel_processing_sets_flag_and_raises(self):
        store = InMemoryStore()
        n = _queued(store)
        store.claim_batch("w1", limit=1, now=NOW)
        with pytest.raises(NotCancelable):
            store.cancel(n.id, now=NOW)
        assert store.get_notification(n.id).cancel_requested is True

    def test_cancel_requested_blocks_retry(self):
        store = InMemoryStore()
        n = _queued(store, max_retries=5)
        (c,) = store.claim_batch("w1", limit=1, now=NOW)
        with pytest.raises(NotCancelable):
            store.cancel(n.id, now=NOW)
        updated, decision = store.complete_failed(
            c.entry.id,
            "w1",
            error="timeout",
            decide=_transient,
            now=NOW,
        )
        assert decision.retry is False
        assert updated.status == _S.FAILED_FINAL

    def test_cancel_sent_rejected(self):
        store = InMemoryStore()
        n = _queued(store)
        (c,) = store.claim_batch("w1", limit=1, now=NOW)
        store.complete_sent(
            c.entry.id,
            "w1",
            provider_name="p",
            provider_message_id="m",
            cost_usd=Decimal(0),
            subject=None,
            body="b",
            now=NOW,
        )
        with pytest.raises(NotCancelable):
            store.cancel(n.id, now=NOW)

    def test_cancel_unknown(self):
        with pytest.raises(NotFound):
            InMemoryStore().cancel(uuid4(), now=NOW)


class TestManualRetry:
    def test_failed_final_requeued_with_fresh_budget(self):
        store = InMemoryStore()
        n = _queued(store)
        (c,) = store.claim_batch("w1", limit=1, now=NOW)
        store.complete_failed(c.entry.id, "w1", error="x", decide=_permanent, now=NOW)
        retried = store.retry(n.id, now=NOW)
        assert retried.status == _S.QUEUED
        assert retried.retry_count == 0
        assert len(_active_entries(store, n.id)) == 1

    def test_only_failed_final(self):
        store = InMemoryStore()
        n = _queued(store)
        with pytest.raises(InvalidTransition):
            store.retry(n.id, now=NOW)


class TestReclaim:
    def test_stale_claims_requeued(self):
        store = InMemoryStore()
        n = _queued(store)
        store.claim_batch("w1", limit=1, now=NOW)
        later = NOW + timedelta(minutes=10)
        assert store.reclaim_stale(claimed_before=later - timedelta(minutes=5), now=later) == 1
        assert store.get_notification(n.id).status == _S.QUEUED
        (entry,) = store.queue_entries(n.id)
        assert entry.claim_status == ClaimStatus.QUEUED
        assert entry.scheduled_at == later

    def test_fresh_claims_untouched(self):
        store = InMemoryStore()
        _queued(store)
        store.claim_batch("w1", limit=1, now=NOW)
        assert store.reclaim_stale(claimed_before=NOW - timedelta(minutes=5), now=NOW) == 0

    def test_late_completion_after_reclaim_conflicts(self):
        store = InMemoryStore()
        _queued(store)
        (c,) = store.claim_batch("w1", limit=1, now=NOW)
        store.reclaim_stale(claimed_before=NOW + timedelta(seconds=1), now=NOW)
        with pytest.raises(ClaimConflict):
            store.complete_failed(c.entry.id, "w1", error="x", decide=_transient, now=NOW)


class TestTransitionCompareAndSet:
    def test_stale_from_status_returns_none(self):
        store = InMemoryStore()
        n = _queued(store)
        t = apply_transition(n, _S.CANCELLED, now=NOW)
        store.cancel(n.id, now=NOW)
        assert store.transition(n.id, t) is None


class TestQueueDepth:
    def test_counts(self):
        store = InMemoryStore()
        _queued(store)
        _queued(store)
        store.add_notifications(
            [_make_notification()],
            enqueue_at=NOW + timedelta(hours=1),
            now=NOW,
        )
        store.claim_batch("w1", limit=1, now=NOW)
        assert store.queue_depth(now=NOW) == {"due": 1, "scheduled": 1, "processing": 1}

    def test_ping(self):
        assert InMemoryStore().ping() is True

"""Unit tests for courier.core.state: notification and queue state machines."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from courier.core.errors import InvalidTransition
from courier.core.state import (
    NOTIFICATION_TRANSITIONS,
    QUEUE_TRANSITIONS,
    apply_transition,
    assert_transition,
    log_transition,
    webhook_target,
)
from courier.core.types import (
    Channel,
    ClaimStatus,
    NotificationStatus,
    WebhookEventType,
)
from courier.models import Notification

_S = NotificationStatus
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _make_notification(status: NotificationStatus = _S.PENDING, **kwargs) -> Notification:
    defaults = {
        "id": uuid4(),
        "channel": Channel.EMAIL,
        "recipient": "user@example.com",
        "body": "hello",
        "status": status,
        "created_at": NOW,
        "updated_at": NOW,
    }
    defaults.update(kwargs)
    return Notification(**defaults)


# ---------------------------------------------------------------------------
# TestNotificationTransitions
# ---------------------------------------------------------------------------


class TestNotificationTransitions:
    @pytest.mark.parametrize(
        "current,target",
        [
            (_S.PENDING, _S.QUEUED),
            (_S.PENDING, _S.CANCELLED),
            (_S.QUEUED, _S.PROCESSING),
            (_S.QUEUED, _S.CANCELLED),
            (_S.PROCESSING, _S.SENT),
            (_S.PROCESSING, _S.FAILED),
            (_S.PROCESSING, _S.QUEUED),
            (_S.SENT, _S.DELIVERED),
            (_S.SENT, _S.READ),
            (_S.SENT, _S.FAILED_FINAL),
            (_S.DELIVERED, _S.READ),
            (_S.FAILED, _S.QUEUED),
            (_S.FAILED, _S.FAILED_FINAL),
            (_S.FAILED_FINAL, _S.QUEUED),
        ],
    )
    def test_valid_transitions(self, current, target):
        assert_transition(current, target, NOTIFICATION_TRANSITIONS)  # no exception

    @pytest.mark.parametrize("terminal", [_S.READ, _S.CANCELLED])
    def test_terminal_states_reject_everything(self, terminal):
        for target in NotificationStatus:
            if target == terminal:
                continue
            with pytest.raises(InvalidTransition, match="Invalid transition"):
                assert_transition(terminal, target, NOTIFICATION_TRANSITIONS)

    def test_processing_cannot_be_cancelled(self):
        with pytest.raises(InvalidTransition):
            assert_transition(_S.PROCESSING, _S.CANCELLED, NOTIFICATION_TRANSITIONS)

    def test_delivered_cannot_regress_to_sent(self):
        with pytest.raises(InvalidTransition):
            assert_transition(_S.DELIVERED, _S.SENT, NOTIFICATION_TRANSITIONS)

    def test_unknown_status(self):
        with pytest.raises(InvalidTransition, match="Unknown status"):
            assert_transition("bogus", _S.SENT, NOTIFICATION_TRANSITIONS)

    def test_invalid_transition_is_value_error(self):
        with pytest.raises(ValueError):
            assert_transition(_S.PENDING, _S.SENT, NOTIFICATION_TRANSITIONS)

    def test_table_covers_every_status(self):
        assert set(NOTIFICATION_TRANSITIONS) == set(NotificationStatus)


class TestQueueTransitions:
    def test_queued_to_processing(self):
        assert_transition(ClaimStatus.QUEUED, ClaimStatus.PROCESSING, QUEUE_TRANSITIONS)

    def test_processing_back_to_queued(self):
        assert_transition(ClaimStatus.PROCESSING, ClaimStatus.QUEUED, QUEUE_TRANSITIONS)

    @pytest.mark.parametrize("terminal", [ClaimStatus.DONE, ClaimStatus.ABANDONED])
    def test_terminal_entries(self, terminal):
        with pytest.raises(InvalidTransition):
            assert_transition(terminal, ClaimStatus.QUEUED, QUEUE_TRANSITIONS)


# ---------------------------------------------------------------------------
# apply_transition
# ---------------------------------------------------------------------------


class TestApplyTransition:
    def test_same_status_is_noop(self):
        n = _make_notification(_S.QUEUED)
        t = apply_transition(n, _S.QUEUED, now=NOW)
        assert t.is_noop
        assert t.changes == {}

    def test_sets_status_and_updated_at(self):
        n = _make_notification(_S.PENDING)
        later = NOW + timedelta(seconds=5)
        t = apply_transition(n, _S.QUEUED, now=later)
        assert t.changes["status"] == _S.QUEUED
        assert t.changes["updated_at"] == later

    def test_sent_requires_provider_message_id(self):
        n = _make_notification(_S.PROCESSING)
        with pytest.raises(InvalidTransition, match="provider_message_id"):
            apply_transition(n, _S.SENT, now=NOW, provider_name="log")

    def test_sent_sets_sent_at_once(self):
        n = _make_notification(_S.PROCESSING)
        t = apply_transition(n, _S.SENT, now=NOW, provider_message_id="m-1")
        assert t.changes["sent_at"] == NOW

    def test_set_once_timestamp_not_overwritten(self):
        earlier = NOW - timedelta(hours=1)
        n = _make_notification(_S.SENT, delivered_at=earlier)
        t = apply_transition(n, _S.DELIVERED, now=NOW)
        assert "delivered_at" not in t.changes

    def test_event_time_used_for_timestamp(self):
        n = _make_notification(_S.SENT)
        event_at = NOW - timedelta(minutes=3)
        t = apply_transition(n, _S.DELIVERED, now=NOW, at=event_at)
        assert t.changes["delivered_at"] == event_at
        assert t.changes["updated_at"] == NOW

    def test_read_implies_delivered(self):
        n = _make_notification(_S.SENT)
        t = apply_transition(n, _S.READ, now=NOW)
        assert t.changes["read_at"] == NOW
        assert t.changes["delivered_at"] == NOW

    def test_retry_requires_count_and_time(self):
        n = _make_notification(_S.FAILED)
        with pytest.raises(InvalidTransition, match="retry_count"):
            apply_transition(n, _S.QUEUED, now=NOW)

    def test_retry_cannot_exceed_budget(self):
        n = _make_notification(_S.FAILED, max_retries=2, retry_count=2)
        with pytest.raises(InvalidTransition, match="exceed"):
            apply_transition(n, _S.QUEUED, now=NOW, retry_count=3, next_attempt_at=NOW)

    def test_manual_retry_resets_budget(self):
        n = _make_notification(_S.FAILED_FINAL, retry_count=3, cancel_requested=True)
        t = apply_transition(n, _S.QUEUED, now=NOW)
        assert t.changes["retry_count"] == 0
        assert t.changes["next_attempt_at"] == NOW
        assert t.changes["cancel_requested"] is False

    def test_unknown_field_rejected(self):
        n = _make_notification(_S.PENDING)
        with pytest.raises(InvalidTransition, match="Unsupported"):
            apply_transition(n, _S.QUEUED, now=NOW, recipient="other@example.com")

    def test_invalid_pair_raises(self):
        n = _make_notification(_S.CANCELLED)
        with pytest.raises(InvalidTransition):
            apply_transition(n, _S.QUEUED, now=NOW)


# ---------------------------------------------------------------------------
# webhook_target
# ---------------------------------------------------------------------------


class TestWebhookTarget:
    @pytest.mark.parametrize(
        "current,event,expected",
        [
            (_S.SENT, WebhookEventType.DELIVERED, _S.DELIVERED),
            (_S.SENT, WebhookEventType.OPENED, _S.READ),
            (_S.SENT, WebhookEventType.BOUNCED, _S.FAILED_FINAL),
            (_S.SENT, WebhookEventType.FAILED, _S.FAILED_FINAL),
            (_S.DELIVERED, WebhookEventType.OPENED, _S.READ),
        ],
    )
    def test_forward_events_apply(self, current, event, expected):
        assert webhook_target(current, event) == expected

    @pytest.mark.parametrize(
        "current,event",
        [
            (_S.DELIVERED, WebhookEventType.DELIVERED),
            (_S.READ, WebhookEventType.DELIVERED),
            (_S.DELIVERED, WebhookEventType.BOUNCED),
            (_S.FAILED_FINAL, WebhookEventType.DELIVERED),
            (_S.PROCESSING, WebhookEventType.DELIVERED),
            (_S.QUEUED, WebhookEventType.OPENED),
        ],
    )
    def test_stale_or_early_events_ignored(self, current, event):
        assert webhook_target(current, event) is None


# ---------------------------------------------------------------------------
# log_transition
# ---------------------------------------------------------------------------


class TestLogTransition:
    def test_logs_structured_extra(self, caplog):
        nid = uuid4()
        with caplog.at_level(logging.INFO, logger="courier.core.state"):
            log_transition("notification", nid, _S.QUEUED, _S.PROCESSING, reason="claimed")
        record = caplog.records[-1]
        assert record.resource_id == str(nid)
        assert record.from_status == "queued"
        assert record.to_status == "processing"
        assert record.reason == "claimed"
        assert "(claimed)" in record.getMessage()

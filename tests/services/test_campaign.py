"""Tests for courier.services.campaign: lifecycle and throttled fan-out."""

from __future__ import annotations

import time
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from courier.config.settings import build_settings
from courier.core.errors import InvalidTransition, NotFound
from courier.core.retry import RetryDecision
from courier.core.types import CampaignStatus, Channel, NotificationStatus
from courier.models import CampaignRecipient, Template
from courier.services.campaign import CampaignEnqueuer, CampaignService
from courier.services.notification import NotificationService
from courier.store import InMemoryStore, NotificationFilter

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

_S = NotificationStatus


class _Clock:
    def __init__(self) -> None:
        self.now = NOW

    def __call__(self) -> datetime:
        return self.now


def _setup(recipients: int = 3, *, start: bool = True, scheduled_at=None, **campaign_settings):
    store = InMemoryStore()
    clock = _Clock()
    settings = build_settings({"campaigns": campaign_settings})
    template = store.add_template(
        Template(
            id=uuid4(),
            name="promo",
            channel=Channel.EMAIL,
            subject_template="Hi {{ name }}",
            body_template="Deals for {{ name }}",
            required_variables=frozenset({"name"}),
            updated_at=NOW,
        )
    )
    campaign = NotificationService(store, settings, clock=clock).enqueue_campaign(
        template.id,
        [CampaignRecipient(f"u{i}@example.com", {"name": f"u{i}"}) for i in range(recipients)],
        name="spring",
        start=start,
        scheduled_at=scheduled_at,
    )
    service = CampaignService(store, settings.campaigns, clock=clock)
    return store, service, campaign, clock


def _statuses(store: InMemoryStore, campaign_id) -> list[NotificationStatus]:
    rows = store.list_notifications(
        NotificationFilter(related_entity="campaign", related_id=str(campaign_id))
    )
    return sorted(n.status for n in rows)


def _deliver_all(store: InMemoryStore, *, fail_one: bool = False) -> None:
    for idx, claimed in enumerate(store.claim_batch("w1", limit=100, now=NOW)):
        if fail_one and idx == 0:
            store.complete_failed(
                claimed.entry.id,
                "w1",
                error="bounced",
                decide=lambda n: RetryDecision(False, n.retry_count, reason="permanent error"),
                now=NOW,
            )
            continue
        store.complete_sent(
            claimed.entry.id,
            "w1",
            provider_name="p",
            provider_message_id=f"m-{idx}",
            cost_usd=Decimal(0),
            subject=None,
            body="b",
            now=NOW,
        )


class TestStart:
    def test_draft_to_scheduled(self):
        _store, service, campaign, _clock = _setup(start=False)
        started = service.start(campaign.id)
        assert started.status == CampaignStatus.SCHEDULED
        assert started.scheduled_at == NOW

    def test_only_drafts(self):
        _store, service, campaign, _clock = _setup()
        with pytest.raises(InvalidTransition, match="only drafts"):
            service.start(campaign.id)

    def test_unknown(self):
        _store, service, _campaign, _clock = _setup()
        with pytest.raises(NotFound):
            service.start(uuid4())


class TestEnqueueDue:
    def test_fan_out_respects_budget(self):
        store, service, campaign, _clock = _setup(recipients=3)

        assert service.enqueue_due(limit=2) == 2
        assert service.get(campaign.id).status == CampaignStatus.RUNNING
        assert _statuses(store, campaign.id) == sorted([_S.PENDING, _S.QUEUED, _S.QUEUED])

        assert service.enqueue_due(limit=2) == 1
        assert service.enqueue_due(limit=2) == 0

    def test_future_campaign_waits(self):
        store, service, campaign, clock = _setup(scheduled_at=NOW + timedelta(hours=1))

        assert service.enqueue_due() == 0
        assert service.get(campaign.id).status == CampaignStatus.SCHEDULED

        clock.now = NOW + timedelta(hours=1)
        assert service.enqueue_due() == 3

    def test_draft_is_not_fanned_out(self):
        store, service, campaign, _clock = _setup(start=False)
        assert service.enqueue_due() == 0
        assert set(_statuses(store, campaign.id)) == {_S.PENDING}


class TestSummaries:
    def test_completes_when_nothing_is_left(self):
        store, service, campaign, _clock = _setup(recipients=3)
        service.enqueue_due()
        _deliver_all(store, fail_one=True)

        assert service.summarize_active() == 1
        done = service.get(campaign.id)
        assert done.status == CampaignStatus.COMPLETED
        assert done.completed_at == NOW
        assert (done.sent_count, done.delivered_count, done.failed_count) == (2, 0, 1)

    def test_running_campaign_keeps_running(self):
        store, service, campaign, _clock = _setup(recipients=3)
        service.enqueue_due(limit=1)

        assert service.summarize_active() == 0
        assert service.get(campaign.id).status == CampaignStatus.RUNNING

    def test_unchanged_summary_skips_write(self):
        store = MagicMock()
        store.count_notifications.return_value = {}
        campaign = MagicMock(
            status=CampaignStatus.SCHEDULED, sent_count=0, delivered_count=0, failed_count=0
        )
        service = CampaignService(store, build_settings({}).campaigns)
        assert service.summarize(campaign) is campaign
        store.update_campaign.assert_not_called()


class TestCancel:
    def test_cancels_pending_and_queued(self):
        store, service, campaign, _clock = _setup(recipients=3)
        service.enqueue_due(limit=1)

        cancelled = service.cancel(campaign.id)

        assert cancelled.status == CampaignStatus.CANCELLED
        assert set(_statuses(store, campaign.id)) == {_S.CANCELLED}

    def test_leaves_sent_alone(self):
        store, service, campaign, _clock = _setup(recipients=2)
        service.enqueue_due(limit=1)
        _deliver_all(store)

        service.cancel(campaign.id)
        assert _statuses(store, campaign.id) == sorted([_S.SENT, _S.CANCELLED])
        assert service.get(campaign.id).sent_count == 1

    def test_twice_is_rejected(self):
        _store, service, campaign, _clock = _setup()
        service.cancel(campaign.id)
        with pytest.raises(InvalidTransition, match="already cancelled"):
            service.cancel(campaign.id)


class TestCampaignEnqueuer:
    def test_run_once_without_database(self):
        service = MagicMock()
        service.enqueue_due.return_value = 4
        settings = build_settings({"campaigns": {"enqueue_batch_size": 7}}).campaigns

        assert CampaignEnqueuer(service, settings).run_once() == 4
        service.enqueue_due.assert_called_once_with(7)

    def test_not_leader_skips_cycle(self):
        service = MagicMock()
        db = MagicMock()
        conn = MagicMock()
        conn.execute.return_value.fetchone.return_value = (False,)
        db.connection.return_value.__enter__.return_value = conn
        settings = build_settings({}).campaigns

        assert CampaignEnqueuer(service, settings, db=db).run_once() == 0
        service.enqueue_due.assert_not_called()

    def test_leader_releases_lock(self):
        service = MagicMock()
        service.enqueue_due.return_value = 0
        db = MagicMock()
        conn = MagicMock()
        conn.execute.return_value.fetchone.return_value = (True,)
        db.connection.return_value.__enter__.return_value = conn
        settings = build_settings({}).campaigns

        CampaignEnqueuer(service, settings, db=db).run_once()

        statements = [c.args[0] for c in conn.execute.call_args_list]
        assert statements == [
            "SELECT pg_try_advisory_lock(%s)",
            "SELECT pg_advisory_unlock(%s)",
        ]

    def test_thread_start_stop(self):
        service = MagicMock()
        service.enqueue_due.return_value = 0
        settings = build_settings({"campaigns": {"poll_interval_seconds": 0.01}}).campaigns
        enqueuer = CampaignEnqueuer(service, settings)

        enqueuer.start()
        try:
            assert enqueuer.is_alive()
            time.sleep(0.05)
        finally:
            enqueuer.stop()
        assert not enqueuer.is_alive()
        assert service.enqueue_due.called

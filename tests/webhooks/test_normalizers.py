"""Tests for courier.webhooks.normalizers."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from courier.core.types import WebhookEventType
from courier.webhooks.normalizers import MalformedWebhook, normalize

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

_E = WebhookEventType


class TestSendGrid:
    def test_maps_known_events_and_drops_others(self):
        payload = [
            {"event": "processed", "sg_message_id": "abc.filter1"},
            {"event": "delivered", "sg_message_id": "abc.filter1", "timestamp": 1772366400},
            {"event": "open", "sg_message_id": "def.filter2"},
            {"event": "dropped", "sg_message_id": "ghi.f", "reason": "Bounced Address"},
            {"event": "click", "sg_message_id": "abc.filter1"},
        ]
        events = normalize("sendgrid", "sendgrid", payload, now=NOW)

        assert [(e.provider_message_id, e.event_type) for e in events] == [
            ("abc", _E.DELIVERED),
            ("def", _E.OPENED),
            ("ghi", _E.BOUNCED),
        ]
        assert events[0].timestamp == datetime.fromtimestamp(1772366400, tz=UTC)
        assert events[1].timestamp == NOW
        assert events[2].error == "Bounced Address"
        assert events[0].provider_name == "sendgrid"

    def test_custom_provider_name(self):
        (event,) = normalize(
            "sg-eu", "sendgrid", [{"event": "delivered", "sg_message_id": "x"}], now=NOW
        )
        assert event.provider_name == "sg-eu"

    def test_missing_message_id_is_dropped(self):
        assert normalize("sendgrid", "sendgrid", [{"event": "delivered"}], now=NOW) == []

    @pytest.mark.parametrize("payload", [{"event": "delivered"}, ["not an object"]])
    def test_malformed(self, payload):
        with pytest.raises(MalformedWebhook):
            normalize("sendgrid", "sendgrid", payload, now=NOW)


class TestTwilio:
    def test_delivered(self):
        form = {"MessageSid": "SM1", "MessageStatus": "delivered"}
        (event,) = normalize("twilio", "twilio", None, form, now=NOW)
        assert event.provider_message_id == "SM1"
        assert event.event_type == _E.DELIVERED
        assert event.timestamp == NOW
        assert event.raw_payload == form

    def test_undelivered_carries_error(self):
        form = {
            "MessageSid": "SM2",
            "MessageStatus": "undelivered",
            "ErrorCode": "30003",
            "ErrorMessage": "Unreachable destination handset",
        }
        (event,) = normalize("twilio", "twilio", None, form, now=NOW)
        assert event.event_type == _E.FAILED
        assert event.error == "twilio error 30003: Unreachable destination handset"

    def test_read_maps_to_opened(self):
        form = {"SmsSid": "SM3", "SmsStatus": "read"}
        (event,) = normalize("twilio-whatsapp", "twilio", None, form, now=NOW)
        assert event.event_type == _E.OPENED
        assert event.provider_name == "twilio-whatsapp"

    def test_intermediate_status_is_dropped(self):
        form = {"MessageSid": "SM4", "MessageStatus": "sent"}
        assert normalize("twilio", "twilio", None, form, now=NOW) == []

    def test_missing_sid(self):
        with pytest.raises(MalformedWebhook, match="MessageSid"):
            normalize("twilio", "twilio", None, {"MessageStatus": "delivered"}, now=NOW)


class TestGeneric:
    def test_single_object(self):
        (event,) = normalize(
            "log-email",
            "log",
            {
                "provider_message_id": "m-1",
                "event_type": "bounced",
                "timestamp": "2026-03-01T12:00:00Z",
                "error": "no such user",
            },
            now=NOW,
        )
        assert event.event_type == _E.BOUNCED
        assert event.timestamp == NOW
        assert event.error == "no such user"

    def test_naive_timestamp_is_utc(self):
        (event,) = normalize(
            "p",
            "fcm",
            [{"provider_message_id": "m", "event_type": "delivered", "timestamp": "2026-03-01T12:00:00"}],
            now=NOW,
        )
        assert event.timestamp == NOW

    def test_unknown_event_type(self):
        with pytest.raises(MalformedWebhook, match="event_type"):
            normalize("p", "log", {"provider_message_id": "m", "event_type": "clicked"}, now=NOW)

    def test_missing_message_id(self):
        with pytest.raises(MalformedWebhook, match="provider_message_id"):
            normalize("p", "log", {"event_type": "delivered"}, now=NOW)

    def test_bad_timestamp(self):
        with pytest.raises(MalformedWebhook, match="timestamp"):
            normalize(
                "p",
                "log",
                {"provider_message_id": "m", "event_type": "delivered", "timestamp": "soon"},
                now=NOW,
            )

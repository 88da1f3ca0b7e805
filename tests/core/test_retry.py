"""Unit tests for courier.core.retry: backoff and retry decisions."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from courier.core.retry import RetryPolicy, backoff, decide
from courier.core.types import ErrorClass

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
POLICY = RetryPolicy(base_delay_seconds=60, max_delay_seconds=3600)


class TestBackoff:
    @pytest.mark.parametrize(
        "n,expected",
        [(0, 60), (1, 120), (2, 240), (5, 1920), (6, 3600), (20, 3600)],
    )
    def test_capped_exponential(self, n, expected):
        assert backoff(n, POLICY) == expected

    def test_non_decreasing(self):
        delays = [backoff(n, POLICY) for n in range(40)]
        assert delays == sorted(delays)

    def test_huge_n_returns_cap(self):
        assert backoff(10_000, POLICY) == 3600

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            backoff(-1, POLICY)


class TestDecide:
    def test_transient_with_budget_retries(self):
        d = decide(0, 3, ErrorClass.TRANSIENT, NOW, policy=POLICY)
        assert d.retry is True
        assert d.retry_count == 1
        assert d.next_attempt_at == NOW + timedelta(seconds=60)

    def test_second_retry_waits_longer(self):
        d = decide(1, 3, ErrorClass.TRANSIENT, NOW, policy=POLICY)
        assert d.retry_count == 2
        assert d.next_attempt_at == NOW + timedelta(seconds=120)

    def test_budget_exhausted(self):
        d = decide(3, 3, ErrorClass.TRANSIENT, NOW, policy=POLICY)
        assert d.retry is False
        assert d.retry_count == 3
        assert d.next_attempt_at is None
        assert "exhausted" in d.reason

    def test_permanent_never_retries(self):
        d = decide(0, 3, ErrorClass.PERMANENT, NOW, policy=POLICY)
        assert d.retry is False
        assert d.retry_count == 0

    def test_cancel_requested_never_retries(self):
        d = decide(0, 3, ErrorClass.TRANSIENT, NOW, policy=POLICY, cancel_requested=True)
        assert d.retry is False

    def test_zero_budget(self):
        assert decide(0, 0, ErrorClass.TRANSIENT, NOW, policy=POLICY).retry is False

"""Retry scheduling -- the single authority on retry vs. terminal failure.

:func:`decide` is a pure function of the attempt counters and the
error class; it never touches the store.  Workers call it after a
failed send and hand the resulting :class:`RetryDecision` to the
store, which records the failure and the decision atomically.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from courier.core.types import ErrorClass


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff parameters (seconds)."""

    base_delay_seconds: float = 60.0
    max_delay_seconds: float = 3600.0


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of :func:`decide`.

    ``retry`` is ``False`` for terminal decisions, in which case
    ``retry_count`` is unchanged and ``next_attempt_at`` is ``None``.
    """

    retry: bool
    retry_count: int
    next_attempt_at: datetime | None = None
    reason: str = ""


def backoff(n: int, policy: RetryPolicy) -> float:
    """Return the delay in seconds before retry number *n*.

    ``min(base * 2**n, cap)`` -- non-decreasing in *n*.
    """
    if n < 0:
        msg = f"retry number must be >= 0, got {n}"
        raise ValueError(msg)
    # 2**n overflows float conversion for very large n; the cap wins anyway
    if n >= 64:  # noqa: PLR2004
        return float(policy.max_delay_seconds)
    return float(min(policy.base_delay_seconds * (2**n), policy.max_delay_seconds))


def decide(
    retry_count: int,
    max_retries: int,
    error_class: ErrorClass,
    now: datetime,
    *,
    policy: RetryPolicy,
    cancel_requested: bool = False,
) -> RetryDecision:
    """Decide whether a failed attempt is retried.

    Parameters
    ----------
    retry_count:
        Retries already performed for the notification.
    max_retries:
        Retry budget.
    error_class:
        Whether the failure was transient or permanent.
    now:
        Reference time for ``next_attempt_at``.
    policy:
        Backoff parameters.
    cancel_requested:
        A cancel arrived while the send was in flight; never retry.

    Returns
    -------
    RetryDecision

    """
    if error_class == ErrorClass.PERMANENT:
        return RetryDecision(False, retry_count, reason="permanent error")
    if cancel_requested:
        return RetryDecision(False, retry_count, reason="cancel requested")
    if retry_count >= max_retries:
        return RetryDecision(
            False,
            retry_count,
            reason=f"retry budget exhausted ({retry_count}/{max_retries})",
        )
    delay = backoff(retry_count, policy)
    next_count = retry_count + 1
    return RetryDecision(
        True,
        next_count,
        next_attempt_at=now + timedelta(seconds=delay),
        reason=f"retry {next_count}/{max_retries} in {delay:.0f}s",
    )

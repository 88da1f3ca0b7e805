"""Domain exceptions for the delivery engine.

Send failures are split into two families so that the retry scheduler
can decide without inspecting messages:

* :class:`TransientSendError` -- network trouble, timeouts, provider
  5xx / 429.  Retried while budget remains.
* :class:`PermanentSendError` -- invalid recipient, rejected content,
  render failures.  Never retried.

The remaining classes describe store-level outcomes that callers
react to (skip, 404, 409) rather than failures of the engine itself.
"""

from __future__ import annotations

from courier.core.types import ErrorClass


class DeliveryError(Exception):
    """Base class for all courier domain errors."""


# ---------------------------------------------------------------------------
# Send path
# ---------------------------------------------------------------------------


class SendError(DeliveryError):
    """A channel adapter could not hand the message to its provider.

    Parameters
    ----------
    message:
        Human-readable description, persisted on the notification.
    provider:
        Provider name the error originated from, when known.
    status_code:
        Upstream HTTP / SMTP status code, when known.

    """

    error_class: ErrorClass = ErrorClass.TRANSIENT

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


class TransientSendError(SendError):
    """Retryable send failure (network, timeout, provider 5xx)."""

    error_class = ErrorClass.TRANSIENT


class PermanentSendError(SendError):
    """Non-retryable send failure (invalid recipient, content rejected)."""

    error_class = ErrorClass.PERMANENT


class RenderError(PermanentSendError):
    """Template rendering failed; retrying cannot fix missing input."""

    def __init__(self, message: str, *, missing: tuple[str, ...] = ()) -> None:
        self.missing = missing
        super().__init__(message)


# ---------------------------------------------------------------------------
# Store / queue outcomes
# ---------------------------------------------------------------------------


class ClaimConflict(DeliveryError):
    """Another worker already claimed the queue entry."""


class DuplicateActiveEntry(DeliveryError):
    """A second queued/processing entry was requested for one notification."""


class InvalidTransition(DeliveryError, ValueError):
    """The requested status change is not in the transition table."""


class NotFound(DeliveryError):
    """The referenced notification, template or campaign does not exist."""


class NotCancelable(DeliveryError):
    """The notification is past the point where it can be cancelled."""


class ReconciliationOrphan(DeliveryError):
    """A webhook event matched no notification after bounded lookups.

    Never raised to callers; instances are built only to be logged.
    """

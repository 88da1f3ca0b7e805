"""Producer-facing notification service.

Validates send requests, writes notifications to the store and puts
them on the dispatch queue.  Content is rendered by the worker at send
time; here a template is only checked for existence, channel and
required variables so that obviously bad requests fail with a 400
instead of a ``failed_final`` notification later.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from courier.app.errors import VALIDATION, ApiProblem
from courier.core.errors import NotFound
from courier.core.types import CampaignStatus, Channel
from courier.models import Campaign, Notification

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

    from courier.config.settings import CourierSettings
    from courier.metrics.collector import MetricsCollector
    from courier.models import CampaignRecipient, Template
    from courier.store.base import DeliveryStore, NotificationFilter

log = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_NON_DIGITS = re.compile(r"\D")
_MIN_PHONE_DIGITS = 8
_MAX_PHONE_DIGITS = 15
_MAX_RECIPIENT_LENGTH = 512
_MAX_ATTACHMENTS = 10
_MIN_PRIORITY = 1
_MAX_PRIORITY = 10
_MAX_LIST_LIMIT = 500

# Keyword arguments accepted by :meth:`NotificationService.enqueue`.
SEND_FIELDS = frozenset(
    {
        "channel",
        "recipient",
        "template_id",
        "variables",
        "subject",
        "body",
        "priority",
        "max_retries",
        "related_entity",
        "related_id",
        "attachments",
        "created_by",
        "scheduled_at",
    }
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _invalid(detail: str, field: str | None = None) -> ApiProblem:
    errors = [{"field": field, "detail": detail}] if field else None
    return ApiProblem(VALIDATION, detail, 400, errors=errors)


def validate_recipient(channel: Channel, recipient: str) -> str:
    """Return the stripped recipient or raise a 400 problem."""
    value = (recipient or "").strip()
    if not value:
        raise _invalid("recipient is required", "recipient")
    if len(value) > _MAX_RECIPIENT_LENGTH:
        raise _invalid("recipient is too long", "recipient")
    if channel == Channel.EMAIL and not _EMAIL_RE.match(value):
        raise _invalid(f"'{value}' is not a valid email address", "recipient")
    if channel in (Channel.SMS, Channel.WHATSAPP):
        digits = _NON_DIGITS.sub("", value)
        if not _MIN_PHONE_DIGITS <= len(digits) <= _MAX_PHONE_DIGITS:
            raise _invalid(f"'{value}' is not a valid phone number", "recipient")
    return value


def _parse_channel(value: Any) -> Channel:  # noqa: ANN401
    try:
        return Channel(value)
    except ValueError:
        msg = f"channel must be one of {[c.value for c in Channel]}"
        raise _invalid(msg, "channel") from None


def _is_int(value: Any) -> bool:  # noqa: ANN401
    # JSON true/false arrive as bool, which is an int subclass
    return isinstance(value, int) and not isinstance(value, bool)


def _parse_uuid(value: Any, field: str) -> UUID:  # noqa: ANN401
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise _invalid(f"{field} must be a UUID", field) from None


def parse_datetime(value: Any, field: str) -> datetime | None:  # noqa: ANN401
    """Accept ``None``, an aware/naive ``datetime`` or an ISO 8601 string.

    Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise _invalid(f"{field} must be an ISO 8601 timestamp", field) from None
    if not isinstance(value, datetime):
        raise _invalid(f"{field} must be an ISO 8601 timestamp", field)
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def _check_attachments(attachments: Sequence[Mapping[str, Any]]) -> tuple[dict[str, Any], ...]:
    if len(attachments) > _MAX_ATTACHMENTS:
        raise _invalid(f"at most {_MAX_ATTACHMENTS} attachments are allowed", "attachments")
    checked = []
    for idx, item in enumerate(attachments):
        if not isinstance(item, dict) or not item.get("filename"):
            raise _invalid(f"attachments[{idx}] needs a filename", "attachments")
        if not item.get("url") and not item.get("content"):
            raise _invalid(f"attachments[{idx}] needs a url or content", "attachments")
        checked.append(dict(item))
    return tuple(checked)


class NotificationService:
    """Enqueue, inspect, cancel and retry notifications.

    Parameters
    ----------
    store:
        Notification store and dispatch queue.
    settings:
        Full settings; ``queue``, ``api`` and ``campaigns`` are read.
    metrics:
        Optional collector for ``courier_notifications_enqueued_total``.
    clock:
        Source of "now"; injectable for tests.

    """

    def __init__(
        self,
        store: DeliveryStore,
        settings: CourierSettings,
        *,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._metrics = metrics
        self._clock = clock

    # -- building -----------------------------------------------------------

    def _template_for(self, template_id: Any, channel: Channel) -> Template:  # noqa: ANN401
        tid = _parse_uuid(template_id, "template_id")
        template = self._store.get_template(tid)
        if template is None:
            raise _invalid(f"template {tid} does not exist", "template_id")
        if not template.is_active:
            raise _invalid(f"template '{template.name}' is inactive", "template_id")
        if template.channel != channel:
            msg = (
                f"template '{template.name}' is for channel '{template.channel.value}', "
                f"not '{channel.value}'"
            )
            raise _invalid(msg, "template_id")
        return template

    @staticmethod
    def _check_variables(template: Template, variables: Mapping[str, Any]) -> None:
        missing = sorted(v for v in template.required_variables if v not in variables)
        if missing:
            raise ApiProblem(
                VALIDATION,
                f"Template '{template.name}' is missing required variables: {', '.join(missing)}",
                400,
                errors=[{"field": f"variables.{name}", "detail": "missing"} for name in missing],
            )

    def prepare(  # noqa: C901, PLR0913
        self,
        channel: Channel | str,
        recipient: str,
        *,
        template_id: UUID | str | None = None,
        variables: Mapping[str, Any] | None = None,
        subject: str | None = None,
        body: str | None = None,
        priority: int | None = None,
        max_retries: int | None = None,
        related_entity: str | None = None,
        related_id: str | None = None,
        attachments: Sequence[Mapping[str, Any]] | None = None,
        created_by: str | None = None,
        scheduled_at: datetime | str | None = None,
        now: datetime | None = None,
    ) -> Notification:
        """Validate one send request and build its pending notification.

        Raises
        ------
        ApiProblem
            400 for any invalid field.

        """
        now = now or self._clock()
        queue = self._settings.queue
        ch = _parse_channel(channel)
        to = validate_recipient(ch, recipient)
        parse_datetime(scheduled_at, "scheduled_at")

        variables = dict(variables or {})
        if template_id is not None:
            template = self._template_for(template_id, ch)
            self._check_variables(template, variables)
            tid: UUID | None = template.id
            body = ""
            subject = None
        else:
            if not body or not str(body).strip():
                raise _invalid("either template_id or body is required", "body")
            tid = None

        prio = queue.default_priority if priority is None else priority
        if not _is_int(prio) or not _MIN_PRIORITY <= prio <= _MAX_PRIORITY:
            raise _invalid(
                f"priority must be an integer between {_MIN_PRIORITY} and {_MAX_PRIORITY}",
                "priority",
            )
        retries = queue.default_max_retries if max_retries is None else max_retries
        if not _is_int(retries) or retries < 0:
            raise _invalid("max_retries must be a non-negative integer", "max_retries")

        return Notification(
            id=uuid.uuid4(),
            channel=ch,
            recipient=to,
            subject=subject,
            body=str(body),
            priority=prio,
            max_retries=retries,
            template_id=tid,
            template_variables=variables,
            attachments=_check_attachments(attachments or ()),
            related_entity=related_entity,
            related_id=str(related_id) if related_id is not None else None,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )

    def _record_enqueued(self, notifications: Sequence[Notification]) -> None:
        if self._metrics is None:
            return
        for n in notifications:
            self._metrics.increment(
                "courier_notifications_enqueued_total",
                labels={"channel": n.channel.value},
            )

    # -- producer API -------------------------------------------------------

    def enqueue(self, channel: Channel | str, recipient: str, **kwargs: Any) -> Notification:
        """Create one notification and queue it for delivery.

        Accepts the keyword arguments of :meth:`prepare`.  The
        notification becomes claimable at ``scheduled_at`` (default:
        immediately).
        """
        now = self._clock()
        notification = self.prepare(channel, recipient, now=now, **kwargs)
        enqueue_at = max(parse_datetime(kwargs.get("scheduled_at"), "scheduled_at") or now, now)
        (stored,) = self._store.add_notifications(
            [notification],
            enqueue_at=enqueue_at,
            now=now,
        )
        self._record_enqueued([stored])
        log.info(
            "Enqueued %s notification %s for %s",
            stored.channel.value,
            stored.id,
            stored.recipient,
            extra={"notification_id": str(stored.id), "channel": stored.channel.value},
        )
        return stored

    def enqueue_many(
        self,
        requests: Sequence[Mapping[str, Any]],
    ) -> list[Notification | ApiProblem]:
        """Validate each request independently and enqueue the valid ones.

        Returns one result per request, in order: the stored
        notification, or the :class:`ApiProblem` explaining why that
        request was rejected.
        """
        max_bulk = self._settings.api.max_bulk_size
        if len(requests) > max_bulk:
            raise _invalid(f"at most {max_bulk} notifications per bulk request", "notifications")

        now = self._clock()
        results: list[Notification | ApiProblem] = []
        by_time: dict[datetime, list[tuple[int, Notification]]] = {}
        for idx, req in enumerate(requests):
            unknown = set(req) - SEND_FIELDS
            if unknown:
                results.append(_invalid(f"unknown fields: {sorted(unknown)}"))
                continue
            fields = dict(req)
            try:
                n = self.prepare(
                    fields.pop("channel", None),
                    fields.pop("recipient", ""),
                    now=now,
                    **fields,
                )
            except ApiProblem as problem:
                results.append(problem)
                continue
            results.append(n)
            enqueue_at = max(parse_datetime(req.get("scheduled_at"), "scheduled_at") or now, now)
            by_time.setdefault(enqueue_at, []).append((idx, n))

        for enqueue_at, batch in by_time.items():
            stored = self._store.add_notifications(
                [n for _, n in batch],
                enqueue_at=enqueue_at,
                now=now,
            )
            for (idx, _), n in zip(batch, stored, strict=True):
                results[idx] = n
            self._record_enqueued(stored)

        accepted = sum(1 for r in results if isinstance(r, Notification))
        log.info("Bulk enqueue: %d accepted, %d rejected", accepted, len(results) - accepted)
        return results

    def enqueue_campaign(  # noqa: PLR0913
        self,
        template_id: UUID | str,
        recipients: Sequence[CampaignRecipient],
        *,
        name: str,
        priority: int | None = None,
        description: str | None = None,
        variables: Mapping[str, Any] | None = None,
        scheduled_at: datetime | str | None = None,
        start: bool = True,
        created_by: str | None = None,
    ) -> Campaign:
        """Create a campaign and one pending notification per recipient.

        The notifications are related to ``("campaign", <id>)`` and are
        queued later by the campaign enqueuer, at a throttled rate,
        once the campaign is due.  With ``start=False`` the campaign
        stays a draft until started.
        """
        if not name or not name.strip():
            raise _invalid("name is required", "name")
        if not recipients:
            raise _invalid("at least one recipient is required", "recipients")
        limit = self._settings.campaigns.max_recipients
        if len(recipients) > limit:
            raise _invalid(f"a campaign may have at most {limit} recipients", "recipients")

        scheduled_at = parse_datetime(scheduled_at, "scheduled_at")
        now = self._clock()
        tid = _parse_uuid(template_id, "template_id")
        template = self._store.get_template(tid)
        if template is None:
            raise _invalid(f"template {tid} does not exist", "template_id")
        prio = self._settings.queue.default_priority if priority is None else priority
        if not _is_int(prio) or not _MIN_PRIORITY <= prio <= _MAX_PRIORITY:
            raise _invalid(
                f"priority must be an integer between {_MIN_PRIORITY} and {_MAX_PRIORITY}",
                "priority",
            )
        shared = dict(variables or {})
        campaign = Campaign(
            id=uuid.uuid4(),
            name=name.strip(),
            description=description,
            channel=template.channel,
            template_id=template.id,
            priority=prio,
            status=CampaignStatus.DRAFT,
            variables=shared,
            scheduled_at=scheduled_at,
            total_recipients=len(recipients),
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )

        notifications: list[Notification] = []
        errors: list[dict[str, Any]] = []
        for idx, r in enumerate(recipients):
            try:
                notifications.append(
                    self.prepare(
                        template.channel,
                        r.recipient,
                        template_id=template.id,
                        variables={**shared, **r.variables},
                        priority=campaign.priority,
                        related_entity="campaign",
                        related_id=str(campaign.id),
                        created_by=created_by,
                        now=now,
                    )
                )
            except ApiProblem as problem:
                errors.append({"index": idx, "recipient": r.recipient, "detail": problem.detail})
        if errors:
            raise ApiProblem(
                VALIDATION,
                f"{len(errors)} of {len(recipients)} recipients are invalid",
                400,
                errors=errors,
            )

        self._store.add_campaign(campaign)
        self._store.add_notifications(notifications, enqueue_at=None, now=now)
        log.info(
            "Created campaign %s (%s) with %d recipients",
            campaign.id,
            campaign.name,
            len(notifications),
            extra={"campaign_id": str(campaign.id)},
        )
        if not start:
            return campaign

        started = self._store.update_campaign(
            campaign.id,
            {
                "status": CampaignStatus.SCHEDULED,
                "scheduled_at": scheduled_at or now,
                "updated_at": now,
            },
            expected_status=CampaignStatus.DRAFT,
        )
        return started or campaign

    def get_status(self, notification_id: UUID) -> Notification:
        n = self._store.get_notification(notification_id)
        if n is None:
            msg = f"Notification {notification_id} not found"
            raise NotFound(msg)
        return n

    def cancel(self, notification_id: UUID) -> Notification:
        """Cancel a pending or queued notification.

        Raises :class:`NotFound` or :class:`NotCancelable`.
        """
        n = self._store.cancel(notification_id, now=self._clock())
        log.info("Cancelled notification %s", notification_id)
        return n

    def retry(self, notification_id: UUID) -> Notification:
        """Re-queue a ``failed_final`` notification with a fresh retry budget."""
        n = self._store.retry(notification_id, now=self._clock())
        log.info("Manual retry of notification %s", notification_id)
        return n

    def list(
        self,
        filters: NotificationFilter | None = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Notification]:
        limit = max(1, min(limit, _MAX_LIST_LIMIT))
        return self._store.list_notifications(filters, limit=limit, offset=max(offset, 0))

    def stats(self, filters: NotificationFilter | None = None) -> dict[str, Any]:
        """Counts by channel and status, plus current queue depth."""
        counts = self._store.count_notifications(filters)
        by_channel: dict[str, dict[str, int]] = {}
        by_status: dict[str, int] = {}
        for (channel, status), n in sorted(counts.items()):
            by_channel.setdefault(channel, {})[status] = n
            by_status[status] = by_status.get(status, 0) + n
        return {
            "total": sum(counts.values()),
            "by_channel": by_channel,
            "by_status": by_status,
            "queue": self._store.queue_depth(now=self._clock()),
        }

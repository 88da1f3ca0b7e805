"""Notification endpoints: send, bulk send, inspect, cancel and retry."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from flask import Blueprint, jsonify, request, url_for

from courier.api.decorators import int_arg, json_body, tracked, uuid_arg
from courier.api.serializers import serialize_bulk_result, serialize_notification
from courier.app.context import get_container
from courier.app.errors import VALIDATION, ApiProblem
from courier.core.types import Channel, NotificationStatus
from courier.models import Notification
from courier.services.notification import SEND_FIELDS, parse_datetime
from courier.store.base import NotificationFilter

if TYPE_CHECKING:
    from flask.typing import ResponseReturnValue

log = logging.getLogger(__name__)

notifications_bp = Blueprint("notifications", __name__)


def _enum_arg(name: str, enum_cls):
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = [e.value for e in enum_cls]
        raise ApiProblem(
            VALIDATION,
            f"'{name}' must be one of {allowed}",
            400,
            errors=[{"field": name, "detail": f"unknown value '{raw}'"}],
        ) from None


def _filters_from_args() -> NotificationFilter:
    return NotificationFilter(
        channel=_enum_arg("channel", Channel),
        status=_enum_arg("status", NotificationStatus),
        related_entity=request.args.get("related_entity") or None,
        related_id=request.args.get("related_id") or None,
        created_from=parse_datetime(request.args.get("from"), "from"),
        created_to=parse_datetime(request.args.get("to"), "to"),
    )


@notifications_bp.route("/send", methods=["POST"])
@tracked("send")
def send() -> ResponseReturnValue:
    """Validate and enqueue one notification."""
    data = json_body()
    unknown = set(data) - SEND_FIELDS
    if unknown:
        raise ApiProblem(VALIDATION, f"Unknown fields: {sorted(unknown)}", 400)
    fields = dict(data)
    notification = get_container().notifications.enqueue(
        fields.pop("channel", None),
        fields.pop("recipient", ""),
        **fields,
    )
    response = jsonify(serialize_notification(notification))
    response.status_code = 201
    response.headers["Location"] = url_for(".get_notification", notification_id=str(notification.id))
    return response


@notifications_bp.route("/send-bulk", methods=["POST"])
@tracked("send_bulk")
def send_bulk() -> ResponseReturnValue:
    """Enqueue many notifications; each is validated independently.

    Accepts either a JSON array or ``{"notifications": [...]}``.
    """
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        data = data.get("notifications")
    if not isinstance(data, list) or not data:
        raise ApiProblem(VALIDATION, "Request body must contain a non-empty notifications array", 400)
    if not all(isinstance(item, dict) for item in data):
        raise ApiProblem(VALIDATION, "Every notification must be a JSON object", 400)

    results = get_container().notifications.enqueue_many(data)
    accepted = sum(1 for r in results if isinstance(r, Notification))
    return jsonify(
        {
            "accepted": accepted,
            "rejected": len(results) - accepted,
            "results": [serialize_bulk_result(i, r) for i, r in enumerate(results)],
        }
    ), 200


@notifications_bp.route("", methods=["GET"])
def list_notifications() -> ResponseReturnValue:
    """List notifications, newest first, with optional filters."""
    limit = int_arg("limit", 50)
    offset = int_arg("offset", 0)
    notifications = get_container().notifications.list(
        _filters_from_args(),
        limit=limit,
        offset=offset,
    )
    return jsonify(
        {
            "notifications": [serialize_notification(n) for n in notifications],
            "limit": limit,
            "offset": offset,
        }
    )


@notifications_bp.route("/stats/summary", methods=["GET"])
def stats_summary() -> ResponseReturnValue:
    """Counts by channel and status plus queue depth."""
    return jsonify(get_container().notifications.stats(_filters_from_args()))


@notifications_bp.route("/<notification_id>", methods=["GET"])
def get_notification(notification_id: str) -> ResponseReturnValue:
    nid = uuid_arg(notification_id, "Notification")
    return jsonify(serialize_notification(get_container().notifications.get_status(nid)))


@notifications_bp.route("/<notification_id>/cancel", methods=["POST"])
@tracked("cancel")
def cancel_notification(notification_id: str) -> ResponseReturnValue:
    """Cancel a pending or queued notification (409 otherwise)."""
    nid = uuid_arg(notification_id, "Notification")
    return jsonify(serialize_notification(get_container().notifications.cancel(nid)))


@notifications_bp.route("/<notification_id>/retry", methods=["PUT"])
@tracked("retry")
def retry_notification(notification_id: str) -> ResponseReturnValue:
    """Re-queue a ``failed_final`` notification (409 otherwise)."""
    nid = uuid_arg(notification_id, "Notification")
    return jsonify(serialize_notification(get_container().notifications.retry(nid)))

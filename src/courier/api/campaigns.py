"""Campaign endpoints: create, inspect, start and cancel."""

from __future__ import annotations

from typing import TYPE_CHECKING

from flask import Blueprint, jsonify, request, url_for

from courier.api.decorators import int_arg, json_body, tracked, uuid_arg
from courier.api.serializers import serialize_campaign
from courier.app.context import get_container
from courier.app.errors import VALIDATION, ApiProblem
from courier.core.types import CampaignStatus
from courier.models import CampaignRecipient

if TYPE_CHECKING:
    from flask.typing import ResponseReturnValue

campaigns_bp = Blueprint("campaigns", __name__)


def _recipients(raw: object) -> list[CampaignRecipient]:
    """Accept plain recipient strings or ``{recipient, variables}`` objects."""
    if not isinstance(raw, list):
        raise ApiProblem(VALIDATION, "recipients must be an array", 400)
    recipients = []
    for idx, item in enumerate(raw):
        if isinstance(item, str):
            recipients.append(CampaignRecipient(recipient=item))
        elif isinstance(item, dict) and isinstance(item.get("recipient"), str):
            variables = item.get("variables") or {}
            if not isinstance(variables, dict):
                raise ApiProblem(VALIDATION, f"recipients[{idx}].variables must be an object", 400)
            recipients.append(CampaignRecipient(recipient=item["recipient"], variables=variables))
        else:
            raise ApiProblem(VALIDATION, f"recipients[{idx}] is not a recipient", 400)
    return recipients


@campaigns_bp.route("", methods=["GET"])
def list_campaigns() -> ResponseReturnValue:
    statuses = None
    raw = request.args.get("status")
    if raw:
        try:
            statuses = [CampaignStatus(s) for s in raw.split(",")]
        except ValueError:
            raise ApiProblem(VALIDATION, f"Unknown campaign status in '{raw}'", 400) from None
    limit = max(1, min(int_arg("limit", 50), 500))
    offset = max(int_arg("offset", 0), 0)
    campaigns = get_container().campaigns.list(statuses=statuses, limit=limit, offset=offset)
    return jsonify({"campaigns": [serialize_campaign(c) for c in campaigns]})


@campaigns_bp.route("", methods=["POST"])
@tracked("create_campaign")
def create_campaign() -> ResponseReturnValue:
    """Create a campaign with one pending notification per recipient.

    ``"start": false`` keeps it a draft until ``PUT /<id>/start``.
    """
    data = json_body()
    start = data.get("start", True)
    if not isinstance(start, bool):
        raise ApiProblem(VALIDATION, "start must be a boolean", 400)
    variables = data.get("variables")
    if variables is not None and not isinstance(variables, dict):
        raise ApiProblem(VALIDATION, "variables must be an object", 400)
    campaign = get_container().notifications.enqueue_campaign(
        data.get("template_id"),
        _recipients(data.get("recipients")),
        name=data.get("name") or "",
        priority=data.get("priority"),
        description=data.get("description"),
        variables=variables,
        scheduled_at=data.get("scheduled_at"),
        start=start,
        created_by=data.get("created_by"),
    )
    response = jsonify(serialize_campaign(campaign))
    response.status_code = 201
    response.headers["Location"] = url_for(".get_campaign", campaign_id=str(campaign.id))
    return response


@campaigns_bp.route("/<campaign_id>", methods=["GET"])
def get_campaign(campaign_id: str) -> ResponseReturnValue:
    """Campaign with freshly computed summary counts."""
    cid = uuid_arg(campaign_id, "Campaign")
    service = get_container().campaigns
    return jsonify(serialize_campaign(service.summarize(service.get(cid))))


@campaigns_bp.route("/<campaign_id>/start", methods=["PUT"])
def start_campaign(campaign_id: str) -> ResponseReturnValue:
    cid = uuid_arg(campaign_id, "Campaign")
    return jsonify(serialize_campaign(get_container().campaigns.start(cid)))


@campaigns_bp.route("/<campaign_id>/cancel", methods=["PUT"])
@tracked("cancel_campaign")
def cancel_campaign(campaign_id: str) -> ResponseReturnValue:
    cid = uuid_arg(campaign_id, "Campaign")
    return jsonify(serialize_campaign(get_container().campaigns.cancel(cid)))

"""Template management endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

from flask import Blueprint, jsonify, request, url_for

from courier.api.decorators import json_body, uuid_arg
from courier.api.serializers import serialize_template
from courier.app.context import get_container
from courier.app.errors import VALIDATION, ApiProblem
from courier.core.types import Channel

if TYPE_CHECKING:
    from flask.typing import ResponseReturnValue

templates_bp = Blueprint("templates", __name__)

_CREATE_FIELDS = frozenset(
    {"name", "channel", "subject_template", "body_template", "required_variables", "created_by"},
)


@templates_bp.route("", methods=["GET"])
def list_templates() -> ResponseReturnValue:
    """List templates; ``?channel=`` filters, ``?include_inactive=true`` shows all."""
    channel = None
    raw = request.args.get("channel")
    if raw:
        try:
            channel = Channel(raw)
        except ValueError:
            raise ApiProblem(VALIDATION, f"Unknown channel '{raw}'", 400) from None
    include_inactive = request.args.get("include_inactive", "").lower() in ("1", "true", "yes")
    templates = get_container().templates.list(channel=channel, include_inactive=include_inactive)
    return jsonify({"templates": [serialize_template(t) for t in templates]})


@templates_bp.route("", methods=["POST"])
def create_template() -> ResponseReturnValue:
    data = json_body()
    unknown = set(data) - _CREATE_FIELDS
    if unknown:
        raise ApiProblem(VALIDATION, f"Unknown fields: {sorted(unknown)}", 400)
    template = get_container().templates.create(
        data.get("name", ""),
        data.get("channel"),
        data.get("body_template", ""),
        subject_template=data.get("subject_template"),
        required_variables=data.get("required_variables"),
        created_by=data.get("created_by"),
    )
    response = jsonify(serialize_template(template))
    response.status_code = 201
    response.headers["Location"] = url_for(".get_template", template_id=str(template.id))
    return response


@templates_bp.route("/<template_id>", methods=["GET"])
def get_template(template_id: str) -> ResponseReturnValue:
    tid = uuid_arg(template_id, "Template")
    return jsonify(serialize_template(get_container().templates.get(tid)))


@templates_bp.route("/<template_id>", methods=["PUT"])
def update_template(template_id: str) -> ResponseReturnValue:
    """Partial update of name, content, required variables or is_active."""
    tid = uuid_arg(template_id, "Template")
    data = json_body()
    if not data:
        raise ApiProblem(VALIDATION, "Nothing to update", 400)
    return jsonify(serialize_template(get_container().templates.update(tid, data)))


@templates_bp.route("/<template_id>", methods=["DELETE"])
def deactivate_template(template_id: str) -> ResponseReturnValue:
    """Deactivate; the record is kept for the notifications that used it."""
    tid = uuid_arg(template_id, "Template")
    return jsonify(serialize_template(get_container().templates.deactivate(tid)))

"""Configured provider bindings (read-only)."""

from __future__ import annotations

from typing import TYPE_CHECKING

from flask import Blueprint, jsonify

from courier.api.serializers import serialize_binding
from courier.app.context import get_container

if TYPE_CHECKING:
    from flask.typing import ResponseReturnValue

providers_bp = Blueprint("providers", __name__)


@providers_bp.route("", methods=["GET"])
def list_providers() -> ResponseReturnValue:
    """Every channel binding, credentials redacted."""
    bindings = get_container().channels.bindings()
    return jsonify({"providers": [serialize_binding(b) for b in bindings]})

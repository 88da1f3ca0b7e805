"""Inbound provider callbacks.

``POST /webhooks/<provider>`` accepts the provider's native payload,
normalises it and hands each event to the reconciler.  Any well-formed
request gets a 200, including events that were ignored or matched no
notification: a non-2xx would only make the provider retry a callback
that can never succeed.
"""

from __future__ import annotations

import hmac
import logging
from typing import TYPE_CHECKING

from flask import Blueprint, jsonify, request

from courier.api.decorators import tracked
from courier.app.context import get_container
from courier.app.errors import NOT_FOUND, UNAUTHORIZED, VALIDATION, ApiProblem
from courier.webhooks import MalformedWebhook, normalize

if TYPE_CHECKING:
    from flask.typing import ResponseReturnValue

log = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__)


def _check_secret(provider: str) -> None:
    settings = get_container().settings.webhooks
    expected = settings.secrets.get(provider)
    if not expected:
        return
    presented = request.headers.get(settings.secret_header, "")
    if not hmac.compare_digest(presented.encode(), expected.encode()):
        log.warning("Rejected %s webhook with a bad secret from %s", provider, request.remote_addr)
        raise ApiProblem(UNAUTHORIZED, "Invalid webhook secret", 401)


@webhooks_bp.route("/<provider>", methods=["POST"])
@tracked("webhook")
def receive(provider: str) -> ResponseReturnValue:
    container = get_container()
    binding = container.channels.binding(provider)
    if binding is None:
        raise ApiProblem(NOT_FOUND, f"Unknown provider '{provider}'", 404)
    _check_secret(provider)

    payload = request.get_json(silent=True) if request.is_json else None
    try:
        events = normalize(provider, binding.kind, payload, request.form)
    except MalformedWebhook as exc:
        raise ApiProblem(VALIDATION, str(exc), 400) from exc

    outcomes: dict[str, int] = {}
    for outcome in container.reconciler.reconcile_all(events):
        outcomes[outcome.value] = outcomes.get(outcome.value, 0) + 1

    log.debug("Webhook from %s: %d events %s", provider, len(events), outcomes)
    return jsonify({"received": len(events), "outcomes": outcomes}), 200

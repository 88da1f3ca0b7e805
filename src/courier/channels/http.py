"""Minimal HTTPS client for provider REST APIs.

Maps transport outcomes onto the send-error taxonomy:

* 2xx            -> :class:`HttpResponse`
* 408, 429, 5xx  -> :class:`TransientSendError`
* other 4xx      -> :class:`PermanentSendError`
* network errors and timeouts -> :class:`TransientSendError`
"""

from __future__ import annotations

import base64
import contextlib
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

from courier.core.errors import PermanentSendError, TransientSendError

log = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({408, 425, 429})


@dataclass(frozen=True)
class HttpResponse:
    status: int
    headers: dict[str, str]
    body: bytes

    def json(self) -> Any:  # noqa: ANN401
        if not self.body:
            return {}
        return json.loads(self.body.decode("utf-8"))


def basic_auth(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
    return f"Basic {token}"


def post(
    url: str,
    *,
    provider: str,
    timeout: float,
    headers: dict[str, str] | None = None,
    json_body: Any = None,  # noqa: ANN401
    form: dict[str, Any] | list[tuple[str, Any]] | None = None,
) -> HttpResponse:
    """POST *json_body* or *form* to *url* and classify the outcome."""
    req_headers = {"Accept": "application/json", **(headers or {})}
    if json_body is not None:
        data = json.dumps(json_body).encode("utf-8")
        req_headers["Content-Type"] = "application/json"
    else:
        data = urllib.parse.urlencode(form or {}, doseq=True).encode("utf-8")
        req_headers["Content-Type"] = "application/x-www-form-urlencoded"

    req = urllib.request.Request(url, data=data, method="POST", headers=req_headers)  # noqa: S310

    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:  # noqa: S310
            return HttpResponse(
                status=resp.status,
                headers={k.lower(): v for k, v in resp.headers.items()},
                body=resp.read(),
            )
    except urllib.error.HTTPError as exc:
        body = ""
        with contextlib.suppress(Exception):
            body = exc.read().decode("utf-8", errors="replace")[:300]
        detail = f"{provider} returned HTTP {exc.code}: {body}".rstrip(": ")
        log.warning("%s", detail)
        if exc.code >= 500 or exc.code in _RETRYABLE_STATUS:  # noqa: PLR2004
            raise TransientSendError(detail, provider=provider, status_code=exc.code) from exc
        raise PermanentSendError(detail, provider=provider, status_code=exc.code) from exc
    except (urllib.error.URLError, TimeoutError, OSError) as exc:
        reason = getattr(exc, "reason", exc)
        msg = f"{provider} unreachable: {reason}"
        raise TransientSendError(msg, provider=provider) from exc

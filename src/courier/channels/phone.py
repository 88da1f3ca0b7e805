"""Phone number normalisation for SMS and WhatsApp providers."""

from __future__ import annotations

import re

from courier.core.errors import PermanentSendError

_NON_DIGITS = re.compile(r"\D")

_E164_MIN_DIGITS = 8
_E164_MAX_DIGITS = 15

WHATSAPP_MAX_BODY = 1600

_WHATSAPP_MARKUP = (
    (re.compile(r"\*\*(.+?)\*\*"), r"*\1*"),
    (re.compile(r"__(.+?)__"), r"_\1_"),
    (re.compile(r"~~(.+?)~~"), r"~\1~"),
)


def to_e164(number: str, default_country_code: str | None = None) -> str:
    """Return *number* as ``+<digits>``.

    An explicit ``+`` or ``00`` prefix is taken as international.  A
    leading ``0`` (trunk prefix) is replaced by *default_country_code*
    when one is configured; numbers without any prefix get it prepended.

    Raises
    ------
    PermanentSendError
        The result is not a plausible E.164 number.

    """
    raw = number.strip()
    if raw.lower().startswith("whatsapp:"):
        raw = raw[len("whatsapp:") :]
    digits = _NON_DIGITS.sub("", raw)
    cc = _NON_DIGITS.sub("", default_country_code or "")

    if raw.startswith("+"):
        pass
    elif digits.startswith("00"):
        digits = digits[2:]
    elif cc and digits.startswith("0"):
        digits = cc + digits[1:]
    elif cc and not digits.startswith(cc):
        digits = cc + digits

    if not _E164_MIN_DIGITS <= len(digits) <= _E164_MAX_DIGITS:
        msg = f"Invalid phone number {number!r}"
        raise PermanentSendError(msg)
    return f"+{digits}"


def whatsapp_address(number: str, default_country_code: str | None = None) -> str:
    return f"whatsapp:{to_e164(number, default_country_code)}"


def format_whatsapp_body(body: str) -> str:
    """Convert Markdown-style emphasis and enforce the length limit."""
    for pattern, repl in _WHATSAPP_MARKUP:
        body = pattern.sub(repl, body)
    if len(body) > WHATSAPP_MAX_BODY:
        body = body[: WHATSAPP_MAX_BODY - 3] + "..."
    return body

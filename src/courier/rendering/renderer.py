"""Jinja2 renderer for stored notification templates.

Rendering fails closed: a template declares ``required_variables`` and
every one of them must be present, and any other undefined name used
by the template raises instead of rendering as an empty string
(:class:`jinja2.StrictUndefined`).  All failures surface as
:class:`~courier.core.errors.RenderError`, which the worker treats as a
permanent send error.

Email bodies are rendered with HTML autoescaping; SMS, WhatsApp and
push are plain text.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from jinja2 import Environment, StrictUndefined, TemplateError, UndefinedError

from courier.core.errors import RenderError
from courier.core.types import Channel

if TYPE_CHECKING:
    from jinja2 import Template as JinjaTemplate

    from courier.models import Template

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenderedContent:
    subject: str | None
    body: str


class TemplateRenderer:
    """Renders :class:`~courier.models.Template` records.

    Compiled templates are cached per ``(template id, updated_at)`` so
    an edited template is recompiled on first use.  The renderer is
    safe to share between worker threads.
    """

    def __init__(self) -> None:
        common = {
            "undefined": StrictUndefined,
            "keep_trailing_newline": False,
            "trim_blocks": True,
            "lstrip_blocks": True,
        }
        self._html_env = Environment(autoescape=True, **common)  # noqa: S701
        self._text_env = Environment(autoescape=False, **common)  # noqa: S701
        self._cache: dict[tuple, JinjaTemplate] = {}
        self._lock = threading.Lock()

    def _compile(self, template: Template, part: str, source: str) -> JinjaTemplate:
        key = (template.id, template.updated_at, part)
        with self._lock:
            compiled = self._cache.get(key)
        if compiled is not None:
            return compiled
        html = template.channel == Channel.EMAIL and part == "body"
        env = self._html_env if html else self._text_env
        compiled = env.from_string(source)
        with self._lock:
            self._cache[key] = compiled
        return compiled

    def render(self, template: Template, variables: dict[str, Any]) -> RenderedContent:
        """Render *template* with *variables*.

        Raises
        ------
        RenderError
            The template is inactive, a required variable is missing,
            the template references an undefined name, or it does not
            compile.

        """
        if not template.is_active:
            msg = f"Template {template.name!r} ({template.id}) is inactive"
            raise RenderError(msg)

        missing = tuple(sorted(v for v in template.required_variables if v not in variables))
        if missing:
            msg = f"Template {template.name!r} is missing required variables: {', '.join(missing)}"
            raise RenderError(msg, missing=missing)

        try:
            subject = None
            if template.subject_template:
                subject = (
                    self._compile(template, "subject", template.subject_template)
                    .render(**variables)
                    .strip()
                )
            body = self._compile(template, "body", template.body_template).render(**variables)
        except UndefinedError as exc:
            msg = f"Template {template.name!r} references an undefined variable: {exc.message}"
            raise RenderError(msg) from exc
        except TemplateError as exc:
            msg = f"Template {template.name!r} failed to render: {exc}"
            raise RenderError(msg) from exc

        return RenderedContent(subject=subject, body=body)

    def validate(self, subject_template: str | None, body_template: str) -> None:
        """Compile both parts; raise :class:`RenderError` on syntax errors.

        Used when templates are created or edited through the API.
        """
        try:
            if subject_template:
                self._text_env.parse(subject_template)
            self._text_env.parse(body_template)
        except TemplateError as exc:
            msg = f"Template syntax error: {exc}"
            raise RenderError(msg) from exc

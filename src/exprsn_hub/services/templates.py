"""HTML rendering for the login, consent, profile and maintenance pages.

Presentation is pluggable: anything implementing ``TemplateRenderer`` can be
handed to the hub instead.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from jinja2 import Environment, PackageLoader, StrictUndefined, TemplateNotFound, select_autoescape


class TemplateRenderer(Protocol):
    def render(self, template: str, context: Mapping[str, Any]) -> bytes: ...


class TemplateNotFoundError(LookupError):
    """Raised when a template name is unknown."""


# Optional context keys each page may omit.
_DEFAULTS: dict[str, Any] = {"error": None, "bio": None, "next": "/", "scope_items": ()}


class HTMLRenderer:
    """Render the packaged Jinja2 templates with autoescaping on."""

    def __init__(self, environment: Environment | None = None) -> None:
        self.environment = environment or Environment(
            loader=PackageLoader("exprsn_hub", "templates"),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(self, template: str, context: Mapping[str, Any]) -> bytes:
        try:
            page = self.environment.get_template(f"{template}.html")
        except TemplateNotFound as exc:
            raise TemplateNotFoundError(template) from exc
        values = {**_DEFAULTS, "title": template.title(), **context}
        return page.render(values).encode("utf-8")

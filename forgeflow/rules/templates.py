"""Jinja2 rendering for ``use-template`` actions.

Templates live under the engine's templates directory and use ``{{KEY}}``
placeholders filled from the rule context. Placeholders with no matching
scalar in the context are written back verbatim, so a partially rendered
template can still be completed by a later step.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from jinja2 import DebugUndefined, Environment, FileSystemLoader, TemplateError, TemplateNotFound


class _KeepPlaceholder(DebugUndefined):
    """Renders an unknown ``{{NAME}}`` back as ``{{NAME}}``."""

    def __str__(self) -> str:
        if self._undefined_name is None:
            return super().__str__()
        return "{{" + str(self._undefined_name) + "}}"


def scalar_context(context: Mapping[str, Any]) -> dict[str, Any]:
    """The entries of *context* that can be substituted into a template."""
    return {
        str(key): "" if value is None else value
        for key, value in context.items()
        if value is None or isinstance(value, (str, int, float, bool))
    }


class TemplateRenderer:
    """Loads and renders rule templates from *template_dir*."""

    def __init__(self, template_dir: str | Path) -> None:
        self.template_dir = Path(template_dir)
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=False,
            keep_trailing_newline=True,
            undefined=_KeepPlaceholder,
        )

    def render(self, template_path: str, context: Mapping[str, Any]) -> str:
        """Render *template_path* (relative to the template dir).

        Raises:
            FileNotFoundError: If the template does not exist.
            ValueError: If the template is not valid Jinja2.
        """
        try:
            template = self.env.get_template(template_path)
            return template.render(scalar_context(context))
        except TemplateNotFound as exc:
            raise FileNotFoundError(f"Template not found: {template_path}") from exc
        except TemplateError as exc:
            raise ValueError(f"Template {template_path} is invalid: {exc}") from exc

"""Strict Jinja2 environment shared by the markdown the engine hands to backends and humans."""

from __future__ import annotations

from collections.abc import Mapping
from functools import lru_cache

from jinja2 import Environment, StrictUndefined, Template


class TemplateRenderError(RuntimeError):
    """Raised when a built-in template cannot be rendered."""


@lru_cache(maxsize=1)
def _environment() -> Environment:
    return Environment(
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        newline_sequence="\n",
        keep_trailing_newline=True,
    )


@lru_cache(maxsize=32)
def _compile(source: str) -> Template:
    return _environment().from_string(source)


def render(source: str, variables: Mapping[str, object]) -> str:
    try:
        return _compile(source).render(**variables)
    except Exception as exc:
        raise TemplateRenderError(f"failed to render template: {exc}") from exc


__all__ = ["TemplateRenderError", "render"]

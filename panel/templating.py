"""Jinja2 rendering for generated configuration files."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List

from jinja2 import Environment, FileSystemLoader, StrictUndefined

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"


@lru_cache(maxsize=1)
def _environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
        autoescape=False,
    )


def render(name: str, **context: object) -> str:
    return _environment().get_template(name).render(**context)


def list_templates(prefix: str) -> List[str]:
    """Template names below ``prefix`` (for example ``apps/nodejs/``)."""

    return sorted(_environment().list_templates(filter_func=lambda name: name.startswith(prefix)))


__all__ = ["TEMPLATE_DIR", "list_templates", "render"]

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from jinja2 import Environment, StrictUndefined, Template

_DOCUMENT_SEPARATOR = re.compile(r"^---[ \t]*$", re.MULTILINE)

BUILTIN_TEMPLATE_NAMES = ("kube-gateway", "waypoint")


def _to_yaml(value: Any) -> str:
    return yaml.safe_dump(value, default_flow_style=False, sort_keys=True).rstrip("\n")


def _to_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _environment() -> Environment:
    env = Environment(
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
        autoescape=False,  # noqa: S701 - renders YAML, not HTML
    )
    env.filters["to_yaml"] = _to_yaml
    env.filters["to_json"] = _to_json
    return env


ENVIRONMENT = _environment()


def compile_template(source: str) -> Template:
    """Compile *source* with the controller's Jinja2 environment.

    Undefined variables raise at execution time instead of silently rendering
    empty strings into a manifest.
    """
    return ENVIRONMENT.from_string(source)


def execute(template: Template, context: Mapping[str, Any]) -> str:
    return template.render(**context)


def split_documents(text: str) -> list[str]:
    """Split a multi-document YAML string into its non-empty documents."""
    documents = []
    for chunk in _DOCUMENT_SEPARATOR.split(text):
        stripped = chunk.strip()
        if stripped:
            documents.append(stripped)
    return documents


def load_builtin_templates() -> dict[str, str]:
    """Return the template sources shipped with the package, keyed by name."""
    package = Path(__file__).resolve().parent / "templates"
    return {
        name: (package / f"{name}.yaml.j2").read_text(encoding="utf-8")
        for name in BUILTIN_TEMPLATE_NAMES
    }

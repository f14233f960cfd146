from __future__ import annotations

import pytest
from jinja2 import TemplateSyntaxError, UndefinedError

from gateway_deployer.src.templating import (
    BUILTIN_TEMPLATE_NAMES,
    compile_template,
    execute,
    load_builtin_templates,
    split_documents,
)


def test_execute_renders_context() -> None:
    template = compile_template("name: {{ name | to_json }}\n")

    assert execute(template, {"name": "gw"}) == 'name: "gw"\n'


def test_to_yaml_filter() -> None:
    template = compile_template("{{ labels | to_yaml }}")

    assert execute(template, {"labels": {"b": "2", "a": "1"}}) == "a: '1'\nb: '2'"


def test_undefined_variable_raises() -> None:
    template = compile_template("{{ missing }}")

    with pytest.raises(UndefinedError):
        execute(template, {})


def test_syntax_error_raises_at_compile_time() -> None:
    with pytest.raises(TemplateSyntaxError):
        compile_template("{% if %}")


def test_split_documents_drops_empty_chunks() -> None:
    text = "---\na: 1\n---\n\n---   \nb: 2\n"

    assert split_documents(text) == ["a: 1", "b: 2"]


def test_split_documents_ignores_inline_dashes() -> None:
    text = "a: '---'\n---\nb: 2"

    assert split_documents(text) == ["a: '---'", "b: 2"]


def test_split_documents_empty_text() -> None:
    assert split_documents("\n\n") == []


def test_builtin_templates_load_and_compile() -> None:
    templates = load_builtin_templates()

    assert set(templates) == set(BUILTIN_TEMPLATE_NAMES)
    for source in templates.values():
        compile_template(source)

"""Path lookup, decision conditions, and ``{{ }}`` templates.

Paths are dotted with optional list indexes: ``items``, ``$.result.items``,
``rows[0].id``. A leading ``$name`` selects a named root instead of the
default data (``$input.customer``, ``$steps.review.approved``).

Conditions (all evaluated against the previous step's output):

- ``status:approved,auto`` value at ``status`` is one of the listed values
- ``score >= 80`` / ``==`` / ``!=`` / ``>`` / ``<`` / ``<=`` comparisons
- ``!flagged`` falsy, ``approved`` truthy
- empty, ``else``, ``default`` and ``otherwise`` are unconditional
- ``yes``/``true`` and ``no``/``false`` are branch labels, see :func:`branch_value`
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

_MISSING = object()

_SEGMENT_RE = re.compile(r"([^.\[\]]+)|\[(\d+)\]")
_ROOT_RE = re.compile(r"^\$([A-Za-z_][A-Za-z0-9_]*)(?=$|[.\[])")
_COMPARISON_RE = re.compile(r"^(?P<path>.+?)\s*(?P<op>==|!=|>=|<=|>|<)\s*(?P<value>.+)$")
_TEMPLATE_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

DEFAULT_CONDITION_WORDS = frozenset({"else", "default", "otherwise", "*"})

# Edge labels that follow the truth value of a decision's own condition.
BRANCH_WORDS: dict[str, bool] = {"yes": True, "true": True, "no": False, "false": False}


def _split_path(path: str) -> list[str | int]:
    out: list[str | int] = []
    for match in _SEGMENT_RE.finditer(path):
        key, index = match.groups()
        out.append(int(index) if index is not None else key)
    return out


def _step_into(current: Any, segment: str | int) -> Any:
    if isinstance(current, Mapping):
        if segment in current:
            return current[segment]
        if isinstance(segment, int) and str(segment) in current:
            return current[str(segment)]
        return _MISSING
    if isinstance(current, (list, tuple)):
        try:
            index = int(segment)
        except ValueError:
            return _MISSING
        if -len(current) <= index < len(current):
            return current[index]
        return _MISSING
    return _MISSING


def get_value_by_path(
    data: Any,
    path: str | None,
    *,
    roots: Mapping[str, Any] | None = None,
    default: Any = None,
) -> Any:
    if path is None:
        return default
    expr = path.strip()
    if not expr or expr == "$":
        return data

    current = data
    root_match = _ROOT_RE.match(expr)
    if root_match and roots is not None and root_match.group(1) in roots:
        current = roots[root_match.group(1)]
        expr = expr[root_match.end() :]
    elif expr.startswith("$"):
        expr = expr[1:]

    for segment in _split_path(expr):
        current = _step_into(current, segment)
        if current is _MISSING:
            return default
    return current


def _parse_literal(raw: str) -> Any:
    text = raw.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {"'", '"'}:
        return text[1:-1]
    lowered = text.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered in {"null", "none"}:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return text


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _equals(left: Any, right: Any) -> bool:
    if left == right:
        return True
    left_num, right_num = _as_number(left), _as_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return _as_text(left) == _as_text(right)


def is_default_condition(condition: str | None) -> bool:
    return condition is None or condition.strip().lower() in DEFAULT_CONDITION_WORDS | {""}


def branch_value(condition: str | None) -> bool | None:
    """Truth value a yes/no edge label stands for, or None for other conditions."""

    if condition is None:
        return None
    return BRANCH_WORDS.get(condition.strip().lower())


def evaluate_condition(
    condition: str | None, data: Any, *, roots: Mapping[str, Any] | None = None
) -> bool:
    if condition is None or is_default_condition(condition):
        return True
    expr = condition.strip()

    comparison = _COMPARISON_RE.match(expr)
    if comparison:
        value = get_value_by_path(data, comparison.group("path"), roots=roots)
        literal = _parse_literal(comparison.group("value"))
        op = comparison.group("op")
        if op == "==":
            return _equals(value, literal)
        if op == "!=":
            return not _equals(value, literal)
        left, right = _as_number(value), _as_number(literal)
        if left is None or right is None:
            return False
        if op == ">":
            return left > right
        if op == "<":
            return left < right
        if op == ">=":
            return left >= right
        return left <= right

    if ":" in expr:
        path, _, raw_values = expr.partition(":")
        value = get_value_by_path(data, path.strip(), roots=roots)
        candidates = [_parse_literal(v) for v in raw_values.split(",") if v.strip()]
        return any(_equals(value, candidate) for candidate in candidates)

    if expr.startswith("!"):
        return not bool(get_value_by_path(data, expr[1:].strip(), roots=roots))
    return bool(get_value_by_path(data, expr, roots=roots))


def render_template(
    template: Any, data: Any, *, roots: Mapping[str, Any] | None = None
) -> Any:
    """Interpolate ``{{ path }}`` placeholders.

    A string that is exactly one placeholder is replaced by the raw value (so
    JSON bodies can carry objects); placeholders inside longer strings are
    rendered as text.
    """

    if isinstance(template, str):
        whole = _TEMPLATE_RE.fullmatch(template.strip())
        if whole:
            return get_value_by_path(data, whole.group(1), roots=roots)

        def _replace(match: re.Match[str]) -> str:
            value = get_value_by_path(data, match.group(1), roots=roots)
            if value is None:
                return ""
            if isinstance(value, (dict, list)):
                return json.dumps(value, ensure_ascii=False)
            return _as_text(value) if isinstance(value, bool) else str(value)

        return _TEMPLATE_RE.sub(_replace, template)
    if isinstance(template, Mapping):
        return {key: render_template(value, data, roots=roots) for key, value in template.items()}
    if isinstance(template, list):
        return [render_template(value, data, roots=roots) for value in template]
    return template

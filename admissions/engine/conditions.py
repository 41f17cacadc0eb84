"""
Transition condition evaluation.

A condition is evaluated against a read-only fact snapshot (a mapping of
names to booleans or values) supplied by the caller. Two shapes are accepted:

    "decision_recorded"                         named predicate
    {"name": "decision_recorded"}               same, object form
    {"field": "gpa", "operator": ">=", "value": 3.0, "name"?: "min_gpa"}

A named predicate holds only for ``True`` or a non-zero number; any other
value fails, so the string ``"false"`` cannot pass. A
missing fact, an unknown operator, or an incomparable value evaluates to
False. Evaluation never raises.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

logger = logging.getLogger(__name__)

OPERATORS = frozenset({
    "=", "==", "!=", "<>", "<", "<=", ">", ">=",
    "in", "not_in", "contains", "not_contains",
    "starts_with", "ends_with",
})

_MISSING = object()


def _holds(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return isinstance(value, (int, float)) and value != 0


def condition_name(condition: Any) -> str:
    """Human-readable name used in rejection details."""
    if isinstance(condition, str):
        return condition
    if isinstance(condition, Mapping):
        name = condition.get("name")
        if name:
            return str(name)
        if condition.get("field"):
            return f"{condition['field']} {condition.get('operator', '?')} {condition.get('value')!r}"
    return repr(condition)


def _lookup(facts: Mapping, path: str) -> Any:
    """Resolve a dotted path (``documents.transcript``) in nested mappings."""
    current: Any = facts
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _compare(actual: Any, operator: str, expected: Any) -> bool:
    if operator in ("=", "=="):
        return actual == expected
    if operator in ("!=", "<>"):
        return actual != expected
    if operator == "<":
        return actual < expected
    if operator == "<=":
        return actual <= expected
    if operator == ">":
        return actual > expected
    if operator == ">=":
        return actual >= expected
    if operator == "in":
        values = expected if isinstance(expected, (list, tuple, set, frozenset)) else [expected]
        return actual in values
    if operator == "not_in":
        values = expected if isinstance(expected, (list, tuple, set, frozenset)) else [expected]
        return actual not in values
    if operator == "contains":
        return isinstance(actual, (list, tuple, set, frozenset)) and expected in actual
    if operator == "not_contains":
        return isinstance(actual, (list, tuple, set, frozenset)) and expected not in actual
    if operator == "starts_with":
        return isinstance(actual, str) and isinstance(expected, str) and actual.startswith(expected)
    if operator == "ends_with":
        return isinstance(actual, str) and isinstance(expected, str) and actual.endswith(expected)
    return False


def evaluate_condition(condition: Any, facts: Mapping) -> bool:
    """Return True when *condition* holds for *facts*."""
    if isinstance(condition, str):
        return _holds(facts.get(condition))

    if not isinstance(condition, Mapping):
        return False

    field = condition.get("field")
    if not field:
        name = condition.get("name")
        return bool(name) and _holds(facts.get(name))

    operator = condition.get("operator", "==")
    if operator not in OPERATORS or "value" not in condition:
        return False

    actual = _lookup(facts, str(field))
    if actual is _MISSING:
        return False
    try:
        return _compare(actual, operator, condition["value"])
    except TypeError:
        logger.debug("Incomparable condition operands field=%s operator=%s", field, operator)
        return False


def failing_conditions(conditions, facts: Mapping) -> list[str]:
    """Names of every condition that does not hold, in declaration order."""
    return [condition_name(c) for c in conditions if not evaluate_condition(c, facts)]


def is_valid_condition(condition: Any) -> bool:
    """Structural check used when a workflow is submitted."""
    if isinstance(condition, str):
        return bool(condition.strip())
    if not isinstance(condition, Mapping):
        return False
    if condition.get("field"):
        return condition.get("operator", "==") in OPERATORS and "value" in condition
    return bool(condition.get("name"))


def canonical(condition: Any) -> Any:
    """Comparable form: a bare name and ``{"name": x}`` are the same condition."""
    if isinstance(condition, str):
        return ("name", condition)
    if isinstance(condition, Mapping):
        if not condition.get("field"):
            return ("name", condition.get("name"))
        value = condition.get("value")
        if isinstance(value, list):
            value = tuple(value)
        return ("field", condition.get("field"), condition.get("operator", "=="), repr(value))
    return ("raw", repr(condition))

"""
Condition evaluator for event rules.

An event rule's `conditions` is a mapping from payload field (dot notation
for nested values) to the expected value:

    {"source": "gsc_daily_digest"}                            # equality
    {"data.clicks": {"operator": "gte", "value": 100}}       # explicit operator

All conditions must hold (AND). An empty mapping always matches.
"""
from __future__ import annotations

import re
import operator as op
from typing import Any

from models.schemas import RuleCondition


OPERATORS: dict[str, Any] = {
    "eq": op.eq,
    "neq": op.ne,
    "gt": op.gt,
    "gte": op.ge,
    "lt": op.lt,
    "lte": op.le,
    "in": lambda a, b: a in b,
    "contains": lambda a, b: b in str(a),
    "regex": lambda a, b: bool(re.search(str(b), str(a))),
    "exists": lambda a, b: a is not None,
    "not_exists": lambda a, b: a is None,
}


def get_nested_value(data: dict, field: str) -> Any:
    """Get a value from nested dict using dot notation. e.g. 'data.clicks'"""
    current = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def conditions_from_mapping(mapping: dict[str, Any]) -> list[RuleCondition]:
    """Turn a stored rule mapping into RuleCondition objects."""
    conditions = []
    for field, expected in (mapping or {}).items():
        if isinstance(expected, dict) and "operator" in expected:
            conditions.append(RuleCondition(
                field=field,
                operator=expected["operator"],
                value=expected.get("value"),
            ))
        else:
            conditions.append(RuleCondition(field=field, value=expected))
    return conditions


def evaluate_condition(condition: RuleCondition, data: dict[str, Any]) -> bool:
    """Evaluate a single condition against data. Unknown operators never match."""
    val = get_nested_value(data, condition.field)
    fn = OPERATORS.get(condition.operator)
    if fn is None:
        return False
    try:
        if isinstance(condition.value, (int, float)) and not isinstance(condition.value, bool) and isinstance(val, str):
            val = float(val)
        return fn(val, condition.value)
    except (TypeError, ValueError):
        return False


def evaluate_conditions(conditions: list[RuleCondition], data: dict[str, Any]) -> bool:
    if not conditions:
        return True
    return all(evaluate_condition(c, data) for c in conditions)


def matches_conditions(mapping: dict[str, Any], payload: dict[str, Any]) -> bool:
    """True when every condition in a rule mapping holds against the event payload."""
    return evaluate_conditions(conditions_from_mapping(mapping), payload)

"""Condition evaluation for runtime conditional branching.

The condition node evaluates one field/operator/value triple against the
accumulated node input. Its output carries a decision value that the graph
walker reads to pick the "true" or "false" edge.

Supported operators (with aliases):
- equals
- not_equals (not-equals)
- contains: case-insensitive substring or list membership
- not_contains (not-contains)
- greater_than (greater-than, greater)
- less_than (less-than, less)
- exists / not_exists (not-exists)
- is_true / is_false
"""

from typing import Dict, Any, Optional

from core.logging import get_logger

logger = get_logger(__name__)


# Type alias for condition dict
ConditionDict = Dict[str, Any]

OPERATOR_ALIASES = {
    "not-equals": "not_equals",
    "not-contains": "not_contains",
    "greater-than": "greater_than",
    "greater": "greater_than",
    "less-than": "less_than",
    "less": "less_than",
    "not-exists": "not_exists",
    "is-true": "is_true",
    "is-false": "is_false",
}

# Output keys holding a conditional node's decision, in lookup order
DECISION_KEYS = ("decision", "passed", "conditionMet", "result", "branch")

_TRUE_STRINGS = frozenset({"true", "yes", "1"})
_FALSE_STRINGS = frozenset({"false", "no", "0"})


def normalize_operator(operator: str) -> str:
    op = (operator or "").strip().lower()
    return OPERATOR_ALIASES.get(op, op)


def get_nested_value(data: Dict[str, Any], field_path: str) -> Any:
    """Get a nested value from a dictionary using dot notation.

    Args:
        data: Dictionary to extract value from
        field_path: Dot-separated path (e.g., "payload.ok", "items.0.name")

    Returns:
        Value at path or None if not found

    Examples:
        >>> get_nested_value({"result": {"status": "ok"}}, "result.status")
        "ok"
        >>> get_nested_value({"items": [{"name": "a"}]}, "items.0.name")
        "a"
    """
    if not data or not field_path:
        return None

    parts = field_path.split('.')
    current = data

    for part in parts:
        if current is None:
            return None

        # Handle array index
        if part.isdigit() and isinstance(current, (list, tuple)):
            index = int(part)
            if 0 <= index < len(current):
                current = current[index]
            else:
                return None
        # Handle dict key
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            return None

    return current


def evaluate_condition(condition: ConditionDict, data: Dict[str, Any]) -> bool:
    """Evaluate a field/operator/value condition against data.

    Args:
        condition: {"field": "payload.ok", "operator": "equals", "value": True}
        data: Accumulated node input

    Returns:
        True if the condition matches, False otherwise
    """
    field = condition.get("field", "")
    operator = normalize_operator(condition.get("operator", "equals"))
    target_value = condition.get("value")

    actual_value = get_nested_value(data, field)

    logger.debug("Evaluating condition",
                 field=field,
                 operator=operator,
                 target=target_value,
                 actual=actual_value)

    return evaluate_operator(operator, actual_value, target_value)


def evaluate_operator(operator: str, actual: Any, target: Any) -> bool:
    """Evaluate a single (already normalized) operator.

    Raises:
        ValueError: unknown operator
    """
    if operator == "equals":
        return actual == target

    elif operator == "not_equals":
        return actual != target

    elif operator == "contains":
        return _contains(actual, target)

    elif operator == "not_contains":
        return not _contains(actual, target)

    elif operator == "greater_than":
        return _safe_compare(actual, target, lambda a, b: a > b)

    elif operator == "less_than":
        return _safe_compare(actual, target, lambda a, b: a < b)

    elif operator == "exists":
        return actual is not None

    elif operator == "not_exists":
        return actual is None

    elif operator == "is_true":
        return to_decision(actual) is True

    elif operator == "is_false":
        return to_decision(actual) is False

    raise ValueError(f"Invalid operator: {operator}")


def _contains(actual: Any, target: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, (list, tuple)):
        return target in actual
    if isinstance(actual, dict):
        return target in actual
    return str(target).lower() in str(actual).lower()


def _safe_compare(actual: Any, target: Any, comparator) -> bool:
    """Numeric comparison; False when either side is not a number."""
    if actual is None or target is None or isinstance(actual, bool):
        return False
    try:
        return comparator(float(actual), float(target))
    except (ValueError, TypeError):
        return False


def to_decision(value: Any) -> Optional[bool]:
    """Coerce a boolean-like value; None when it is not boolean-like."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    return None


def extract_decision(output: Any) -> Optional[bool]:
    """Read the branch decision from a conditional node's output.

    The first decision key present with a boolean-like value wins. A bare
    boolean output is accepted as the decision itself.
    """
    if isinstance(output, bool):
        return output
    if not isinstance(output, dict):
        return None

    for key in DECISION_KEYS:
        if key in output:
            decision = to_decision(output[key])
            if decision is not None:
                return decision
    return None

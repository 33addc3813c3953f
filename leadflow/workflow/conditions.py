from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any, Callable

from leadflow.workflow.errors import NodeConfigError
from leadflow.workflow.templating import resolve_path


OPERATOR_ALIASES = {
    "eq": "equals",
    "ne": "not_equals",
    "gt": "greater_than",
    "gte": "greater_or_equal",
    "lt": "less_than",
    "lte": "less_or_equal",
}


def canonical_operator(operator: str) -> str:
    key = operator.strip().lower()
    return OPERATOR_ALIASES.get(key, key)


def resolve_field(data: Mapping[str, Any], path: str) -> object:
    """Look up ``path`` in a record, trying the literal key before dot segments."""
    if path in data:
        return data[path]
    return resolve_path(path, data)


def to_number(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if math.isnan(value) else float(value)
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return None if math.isnan(parsed) else parsed
    return None


def is_empty(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (Mapping, list, tuple, set, frozenset)):
        return len(value) == 0
    return False


def _fold(value: str, case_sensitive: bool) -> str:
    return value if case_sensitive else value.casefold()


def _equals(actual: object, expected: object, case_sensitive: bool) -> bool:
    if actual is None or expected is None:
        return actual is None and expected is None
    if isinstance(actual, str) and isinstance(expected, str):
        return _fold(actual, case_sensitive) == _fold(expected, case_sensitive)
    # True and 1 are different values.
    if isinstance(actual, bool) != isinstance(expected, bool):
        return False
    return actual == expected


def _string_test(test: Callable[[str, str], bool]) -> Callable[[object, object, bool], bool]:
    def _evaluate(actual: object, expected: object, case_sensitive: bool) -> bool:
        if not isinstance(actual, str) or not isinstance(expected, str):
            return False
        return test(_fold(actual, case_sensitive), _fold(expected, case_sensitive))

    return _evaluate


def _numeric_test(test: Callable[[float, float], bool]) -> Callable[[object, object, bool], bool]:
    def _evaluate(actual: object, expected: object, case_sensitive: bool) -> bool:
        left = to_number(actual)
        right = to_number(expected)
        if left is None or right is None:
            return False
        return test(left, right)

    return _evaluate


def _in_array(actual: object, expected: object, case_sensitive: bool) -> bool:
    if not isinstance(expected, (list, tuple, set, frozenset)):
        return False
    return any(_equals(actual, candidate, case_sensitive=True) for candidate in expected)


_contains = _string_test(lambda actual, expected: expected in actual)

_OPERATORS: dict[str, Callable[[object, object, bool], bool]] = {
    "equals": _equals,
    "not_equals": lambda a, e, cs: not _equals(a, e, cs),
    "contains": _contains,
    "not_contains": lambda a, e, cs: not _contains(a, e, cs),
    "starts_with": _string_test(lambda actual, expected: actual.startswith(expected)),
    "ends_with": _string_test(lambda actual, expected: actual.endswith(expected)),
    "greater_than": _numeric_test(lambda left, right: left > right),
    "greater_or_equal": _numeric_test(lambda left, right: left >= right),
    "less_than": _numeric_test(lambda left, right: left < right),
    "less_or_equal": _numeric_test(lambda left, right: left <= right),
    "is_empty": lambda a, e, cs: is_empty(a),
    "is_not_empty": lambda a, e, cs: not is_empty(a),
    "in_array": _in_array,
    "not_in_array": lambda a, e, cs: not _in_array(a, e, cs),
}

SUPPORTED_OPERATORS = frozenset(_OPERATORS) | frozenset(OPERATOR_ALIASES)


def evaluate_operator(operator: str, actual: object, expected: object, case_sensitive: bool = False) -> bool:
    handler = _OPERATORS.get(canonical_operator(operator))
    if handler is None:
        raise NodeConfigError(f"Unknown condition operator: {operator}")
    return bool(handler(actual, expected, case_sensitive))

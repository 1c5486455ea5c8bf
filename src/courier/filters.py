"""Structured payload predicates for webhook subscriptions.

A filter is a map from dotted payload paths to conditions. A plain value
means equality; a map whose keys all start with ``$`` is an operator block.
Every key must match.

Example:
    >>> filters = {"mimeType": "application/pdf", "file.size": {"$lt": 1048576}}
    >>> matches_filters(filters, {"mimeType": "application/pdf", "file": {"size": 10}})
    True
"""

from __future__ import annotations

from typing import Any

from courier.security import ValidationResult

__all__ = [
    "OPERATORS",
    "matches_filters",
    "resolve_path",
    "validate_filters",
]

_MISSING = object()

OPERATORS = frozenset(
    {"$eq", "$ne", "$in", "$nin", "$exists", "$gt", "$gte", "$lt", "$lte", "$contains"}
)


def resolve_path(data: Any, path: str) -> Any:
    """Look up a dotted path in nested maps and lists.

    Returns the sentinel ``_MISSING`` when any segment is absent.
    """
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _is_operator_block(condition: Any) -> bool:
    return (
        isinstance(condition, dict)
        and bool(condition)
        and all(isinstance(key, str) and key.startswith("$") for key in condition)
    )


def _compare(value: Any, operand: Any, op: str) -> bool:
    if value is _MISSING or value is None or operand is None:
        return False
    try:
        if op == "$gt":
            return bool(value > operand)
        if op == "$gte":
            return bool(value >= operand)
        if op == "$lt":
            return bool(value < operand)
        return bool(value <= operand)
    except TypeError:
        return False


def _apply_operator(op: str, operand: Any, value: Any) -> bool:
    if op == "$eq":
        return value is not _MISSING and value == operand
    if op == "$ne":
        return value is _MISSING or value != operand
    if op == "$in":
        return value is not _MISSING and value in operand
    if op == "$nin":
        return value is _MISSING or value not in operand
    if op == "$exists":
        return (value is not _MISSING) == bool(operand)
    if op == "$contains":
        if isinstance(value, str) and isinstance(operand, str):
            return operand in value
        if isinstance(value, list):
            return operand in value
        return False
    return _compare(value, operand, op)


def matches_filters(filters: dict[str, Any] | None, payload: dict[str, Any]) -> bool:
    """Check whether an event payload satisfies a subscription filter.

    Args:
        filters: Filter map (None or empty matches everything)
        payload: Event payload

    Returns:
        True if every condition holds
    """
    if not filters:
        return True

    for path, condition in filters.items():
        value = resolve_path(payload, path)
        if _is_operator_block(condition):
            for op, operand in condition.items():
                if op not in OPERATORS:
                    return False
                if not _apply_operator(op, operand, value):
                    return False
        elif value is _MISSING or value != condition:
            return False
    return True


def validate_filters(filters: dict[str, Any] | None) -> ValidationResult:
    """Check a filter map is well formed before it is stored."""
    if not filters:
        return ValidationResult.ok()

    for path, condition in filters.items():
        if not path or any(not part for part in path.split(".")):
            return ValidationResult.fail(
                f"Invalid filter path: {path!r}",
                "invalid_filter_path",
                path=path,
            )
        if not isinstance(condition, dict):
            continue
        if not any(isinstance(key, str) and key.startswith("$") for key in condition):
            continue
        if not _is_operator_block(condition):
            return ValidationResult.fail(
                f"Filter on {path} mixes operators and plain keys",
                "invalid_filter_block",
                path=path,
            )
        for op, operand in condition.items():
            if op not in OPERATORS:
                return ValidationResult.fail(
                    f"Unknown filter operator: {op}",
                    "unknown_filter_operator",
                    path=path,
                    operator=op,
                )
            if op in ("$in", "$nin") and not isinstance(operand, list):
                return ValidationResult.fail(
                    f"Operator {op} requires a list",
                    "invalid_filter_operand",
                    path=path,
                    operator=op,
                )
    return ValidationResult.ok()

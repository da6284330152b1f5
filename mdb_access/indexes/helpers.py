"""
Helper functions for index handling.

Key normalisation shared by index definitions and sort clauses, plus the
implication check that decides whether a query stays inside a partial
index's filter.
"""

import logging
from collections.abc import Mapping
from typing import Any

from ..constants import ID_FIELD

logger = logging.getLogger(__name__)

_LOWER_BOUNDS = ("$gt", "$gte")
_UPPER_BOUNDS = ("$lt", "$lte")


def normalize_keys(
    keys: Mapping[str, Any] | list[tuple[str, Any]] | tuple[tuple[str, Any], ...],
) -> list[tuple[str, Any]]:
    """
    Normalize index or sort keys to a consistent format.

    Args:
        keys: Keys as dict or sequence of (field, direction) pairs

    Returns:
        List of (field_name, direction) tuples
    """
    if isinstance(keys, Mapping):
        return [(k, v) for k, v in keys.items()]
    return [(k, v) for k, v in keys]


def is_id_index(keys: Mapping[str, Any] | list[tuple[str, Any]]) -> bool:
    """
    Check if index keys target only the _id field (which MongoDB creates automatically).

    Args:
        keys: Index keys to check

    Returns:
        True if this is an _id index
    """
    normalized = normalize_keys(keys)
    return len(normalized) == 1 and normalized[0][0] == ID_FIELD


def default_index_name(keys: list[tuple[str, Any]] | tuple[tuple[str, Any], ...]) -> str:
    """Build the name MongoDB would give an index, e.g. ``status_1_created_at_-1``."""
    return "_".join(f"{field}_{direction}" for field, direction in keys)


def is_operator_document(value: Any) -> bool:
    """True for documents like ``{"$gt": 5}`` whose keys are all query operators."""
    return (
        isinstance(value, Mapping)
        and len(value) > 0
        and all(isinstance(k, str) and k.startswith("$") for k in value)
    )


def _compare(op: str, value: Any, bound: Any) -> bool:
    try:
        if op == "$gt":
            return value > bound
        if op == "$gte":
            return value >= bound
        if op == "$lt":
            return value < bound
        if op == "$lte":
            return value <= bound
    except TypeError:
        return False
    return False


def value_satisfies(value: Any, predicate: Any) -> bool:
    """
    Check whether a fixed value satisfies a partial-filter predicate.

    Args:
        value: Value the query pins the field to
        predicate: Literal value or operator document from a partial filter

    Returns:
        True if every document the query can match passes the predicate
    """
    if not is_operator_document(predicate):
        return value == predicate

    for op, bound in predicate.items():
        if op == "$exists":
            if bool(bound) != (value is not None):
                return False
        elif op == "$eq":
            if value != bound:
                return False
        elif op in _LOWER_BOUNDS or op in _UPPER_BOUNDS:
            if not _compare(op, value, bound):
                return False
        elif op == "$in":
            if value not in bound:
                return False
        else:
            # Unknown operator: cannot prove implication
            return False
    return True


def range_satisfies(query_ops: Mapping[str, Any], predicate: Any) -> bool:
    """
    Check whether a range condition implies a partial-filter predicate.

    ``{"$gte": 10}`` implies ``{"$gt": 5}`` and ``{"$exists": True}``; a range
    never implies a literal equality.
    """
    if not isinstance(predicate, Mapping):
        return False

    for op, bound in predicate.items():
        if op == "$exists":
            implies_existence = any(q in _LOWER_BOUNDS + _UPPER_BOUNDS for q in query_ops)
            if bool(bound) != implies_existence:
                return False
        elif op in _LOWER_BOUNDS:
            if not _bound_implied(query_ops, op, bound, _LOWER_BOUNDS, "$gt", "$gte"):
                return False
        elif op in _UPPER_BOUNDS:
            if not _bound_implied(query_ops, op, bound, _UPPER_BOUNDS, "$lt", "$lte"):
                return False
        else:
            return False
    return True


def _bound_implied(
    query_ops: Mapping[str, Any],
    pred_op: str,
    pred_bound: Any,
    family: tuple[str, str],
    strict: str,
    inclusive: str,
) -> bool:
    for q_op in family:
        if q_op not in query_ops:
            continue
        q_bound = query_ops[q_op]
        # A strict query bound implies any predicate at or inside it;
        # an inclusive one needs a strictly tighter bound for a strict predicate.
        if q_op == strict or pred_op == inclusive:
            cmp_op = "$gte" if strict == "$gt" else "$lte"
        else:
            cmp_op = "$gt" if strict == "$gt" else "$lt"
        if _compare(cmp_op, q_bound, pred_bound):
            return True
    return False


def partial_filter_implied(
    partial_filter: Mapping[str, Any] | None,
    equality: Mapping[str, Any],
    ranges: Mapping[str, Mapping[str, Any]],
) -> bool:
    """
    Decide whether a query only touches documents a partial index covers.

    Args:
        partial_filter: The index's partialFilterExpression (None = full index)
        equality: Query equality conditions
        ranges: Query range conditions

    Returns:
        True if the query is guaranteed to stay inside the partial filter
    """
    if not partial_filter:
        return True

    for field, predicate in partial_filter.items():
        if field == "$and":
            if not all(partial_filter_implied(sub, equality, ranges) for sub in predicate):
                return False
        elif field in equality:
            if not value_satisfies(equality[field], predicate):
                return False
        elif field in ranges:
            if not range_satisfies(ranges[field], predicate):
                return False
        else:
            logger.debug(f"Partial filter field '{field}' not constrained by query")
            return False
    return True

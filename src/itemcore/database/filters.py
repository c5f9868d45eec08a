"""Filter language: operator parsing, SQL predicates and in-memory matching.

A filter is a dict keyed by field (or ``_and`` / ``_or``), each field mapping
to ``{operator: value}``::

    {"_or": [{"status": {"_eq": "published"}}, {"views": {"_gt": 100}}]}

Every operator is a positive base (``_eq``, ``_contains`` ...), optionally
case-insensitive (``_icontains``) and optionally negated (``_ncontains``,
``_nicontains``).
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from itemcore.exceptions import InvalidQueryError

if TYPE_CHECKING:
    from itemcore.database.query import Bindings
    from itemcore.types import Accountability

LOGICAL_OPERATORS = ("_and", "_or")

_BASE_OPERATORS = {
    "_eq",
    "_lt",
    "_lte",
    "_gt",
    "_gte",
    "_in",
    "_null",
    "_empty",
    "_contains",
    "_starts_with",
    "_ends_with",
    "_between",
}
_CASE_INSENSITIVE = {"_eq", "_contains", "_starts_with", "_ends_with"}
_COMPARISONS = {"_lt": "<", "_lte": "<=", "_gt": ">", "_gte": ">="}
_LIKE_PATTERNS = {"_contains": "%{}%", "_starts_with": "{}%", "_ends_with": "%{}"}


def _parse_positive(operator: str) -> tuple[str, bool] | None:
    if operator in _BASE_OPERATORS:
        return operator, False
    if operator.startswith("_i") and f"_{operator[2:]}" in _CASE_INSENSITIVE:
        return f"_{operator[2:]}", True
    return None


def parse_operator(operator: str) -> tuple[str, bool, bool]:
    """Split *operator* into ``(base, negated, case_insensitive)``.

    Raises:
        InvalidQueryError: If the operator is not part of the filter language.
    """
    positive = _parse_positive(operator)
    if positive is not None:
        return positive[0], False, positive[1]
    if operator.startswith("_n"):
        positive = _parse_positive(f"_{operator[2:]}")
        if positive is not None:
            return positive[0], True, positive[1]
    raise InvalidQueryError(f"Unknown filter operator: {operator!r}")


def get_operation(key: str, raw: Any) -> tuple[str, Any]:
    """Normalize one filter entry to ``(operator, value)``.

    ``get_operation("_gt", 3)`` and ``get_operation("price", {"_gt": 3})``
    both give ``("_gt", 3)``; a bare value means equality.
    """
    if key.startswith("_") and key not in LOGICAL_OPERATORS:
        return key, raw
    if isinstance(raw, dict) and raw:
        operator = next(iter(raw))
        return operator, raw[operator]
    return "_eq", raw


def _between_bounds(value: Any) -> tuple[Any, Any]:
    if isinstance(value, str):
        value = [part.strip() for part in value.split(",")]
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise InvalidQueryError(f"_between expects two bounds, got {value!r}")
    return value[0], value[1]


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


# ---------------------------------------------------------------------------
# SQL predicates
# ---------------------------------------------------------------------------


def _positive_predicate(
    lhs: str, base: str, value: Any, insensitive: bool, bindings: Bindings
) -> str:
    if base == "_eq":
        if value is None:
            return f"{lhs} IS NULL"
        if insensitive:
            return f"LOWER({lhs}) = LOWER({bindings.add(str(value))})"
        return f"{lhs} = {bindings.add(value)}"
    if base in _COMPARISONS:
        return f"{lhs} {_COMPARISONS[base]} {bindings.add(value)}"
    if base == "_in":
        values = _as_list(value)
        if not values:
            return "1 = 0"
        return f"{lhs} IN ({bindings.add_many(values)})"
    if base == "_null":
        return f"{lhs} IS NULL" if value not in (False, "false") else f"{lhs} IS NOT NULL"
    if base == "_empty":
        predicate = f"({lhs} IS NULL OR {lhs} = '')"
        return predicate if value not in (False, "false") else f"NOT {predicate}"
    if base in _LIKE_PATTERNS:
        pattern = _LIKE_PATTERNS[base].format(value)
        if insensitive:
            return f"LOWER({lhs}) LIKE LOWER({bindings.add(pattern)})"
        return f"{lhs} LIKE {bindings.add(pattern)}"
    if base == "_between":
        low, high = _between_bounds(value)
        return f"{lhs} BETWEEN {bindings.add(low)} AND {bindings.add(high)}"
    raise InvalidQueryError(f"Unknown filter operator: {base!r}")


def apply_operator(lhs: str, operator: str, value: Any, bindings: Bindings) -> str:
    """Render ``lhs <operator> value`` as a SQL predicate, binding *value*."""
    base, negated, insensitive = parse_operator(operator)
    predicate = _positive_predicate(lhs, base, value, insensitive, bindings)
    return f"NOT ({predicate})" if negated else predicate


def compile_filter(
    filter_: dict[str, Any] | None,
    resolve: Callable[[str, str], str],
    bindings: Bindings,
) -> str | None:
    """Compile a filter tree into one SQL condition.

    *resolve* maps a filter key and the operator applied to it to the SQL
    expression that operator compares against.
    Returns ``None`` for an empty filter.
    """
    if not filter_:
        return None
    clauses: list[str] = []
    for key, raw in filter_.items():
        if key in LOGICAL_OPERATORS:
            if not isinstance(raw, list):
                raise InvalidQueryError(f"{key} expects a list of filters, got {raw!r}")
            parts = [p for p in (compile_filter(sub, resolve, bindings) for sub in raw) if p]
            if parts:
                joiner = " AND " if key == "_and" else " OR "
                clauses.append("(" + joiner.join(parts) + ")")
            continue
        operations = raw.items() if isinstance(raw, dict) and raw else [get_operation(key, raw)]
        for operator, value in operations:
            clauses.append(apply_operator(resolve(key, operator), operator, value, bindings))
    if not clauses:
        return None
    return " AND ".join(clauses)


def and_filters(*filters: dict[str, Any] | None) -> dict[str, Any] | None:
    """Combine filters with a logical AND, dropping empty ones."""
    present = [f for f in filters if f]
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return {"_and": present}


def parse_filter(filter_: Any, accountability: Accountability | None) -> Any:
    """Substitute ``$CURRENT_USER`` and ``$CURRENT_ROLE`` placeholders."""
    if isinstance(filter_, dict):
        return {k: parse_filter(v, accountability) for k, v in filter_.items()}
    if isinstance(filter_, list):
        return [parse_filter(v, accountability) for v in filter_]
    if filter_ == "$CURRENT_USER":
        return accountability.user if accountability else None
    if filter_ == "$CURRENT_ROLE":
        return accountability.role if accountability else None
    return filter_


# ---------------------------------------------------------------------------
# In-memory matching
# ---------------------------------------------------------------------------


def _compare(actual: Any, base: str, value: Any, insensitive: bool) -> bool:
    if base == "_null":
        return (actual is None) == (value not in (False, "false"))
    if base == "_empty":
        return (actual in (None, "", [], {})) == (value not in (False, "false"))
    if base == "_in":
        return actual in _as_list(value)
    if actual is None:
        return base == "_eq" and value is None
    if base == "_eq":
        if insensitive:
            return str(actual).lower() == str(value).lower()
        return actual == value
    if base == "_between":
        low, high = _between_bounds(value)
        return low <= actual <= high
    if base in _COMPARISONS:
        return {
            "_lt": actual < value,
            "_lte": actual <= value,
            "_gt": actual > value,
            "_gte": actual >= value,
        }[base]
    haystack, needle = str(actual), str(value)
    if insensitive:
        haystack, needle = haystack.lower(), needle.lower()
    if base == "_contains":
        return needle in haystack
    if base == "_starts_with":
        return haystack.startswith(needle)
    return haystack.endswith(needle)


def matches_filter(item: dict[str, Any], filter_: dict[str, Any] | None) -> bool:
    """Evaluate *filter_* against a single in-memory item."""
    if not filter_:
        return True
    for key, raw in filter_.items():
        if key == "_and":
            if not all(matches_filter(item, sub) for sub in raw):
                return False
            continue
        if key == "_or":
            if not any(matches_filter(item, sub) for sub in raw):
                return False
            continue
        operations = raw.items() if isinstance(raw, dict) and raw else [get_operation(key, raw)]
        for operator, value in operations:
            base, negated, insensitive = parse_operator(operator)
            try:
                result = _compare(item.get(key), base, value, insensitive)
            except TypeError:
                result = False
            if result == negated:
                return False
    return True

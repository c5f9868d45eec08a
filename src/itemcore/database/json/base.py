"""Dialect-independent part of the JSON path compiler.

A :class:`JsonHelper` receives the JSON path nodes of one statement and
rewrites the statement so that each node's output key carries the selected
value.  Nodes without wildcards and without a nested filter are read with a
plain extraction function in the select list ("select-only").  Everything
else ("join-required") can produce several values per row, so it is
aggregated into a JSON array per primary key inside a CTE that is then
LEFT JOINed back onto the collection.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from itemcore.database.filters import LOGICAL_OPERATORS, get_operation
from itemcore.exceptions import InvalidQueryError, JsonPathError

if TYPE_CHECKING:
    from itemcore.database.query import Bindings, Dialect, SelectQuery
    from itemcore.types import Item, JsonFieldNode

logger = logging.getLogger(__name__)

ARRAY_WILDCARD = "[*]"
OBJECT_WILDCARD = ".*"

_PATH_SEGMENT = re.compile(r'\.(?:[A-Za-z_][A-Za-z0-9_$-]*|"(?:[^"\\]|\\.)*"|\*)|\[(?:\d+|\*)\]')

_TEXT_OPERATORS = {
    "_eq",
    "_neq",
    "_ieq",
    "_nieq",
    "_contains",
    "_ncontains",
    "_icontains",
    "_nicontains",
    "_starts_with",
    "_nstarts_with",
    "_istarts_with",
    "_nistarts_with",
    "_ends_with",
    "_nends_with",
    "_iends_with",
    "_niends_with",
    "_in",
    "_nin",
}
_NUMERIC_OPERATORS = {"_gt", "_gte", "_lt", "_lte", "_between", "_nbetween"}


def normalize_json_path(path: str) -> str:
    """Validate *path* and return it rooted at ``$``.

    ``a.b``, ``.a.b`` and ``$.a.b`` are all accepted and normalized to
    ``$.a.b``.

    Raises:
        JsonPathError: If the path contains anything other than member
            access, array indexes, or the ``[*]`` / ``.*`` wildcards.
    """
    stripped = path.strip()
    if not stripped:
        raise JsonPathError(path, "path is empty")
    if stripped.startswith("$"):
        body = stripped[1:]
    elif stripped[0] in ".[":
        body = stripped
    else:
        body = "." + stripped

    position = 0
    while position < len(body):
        match = _PATH_SEGMENT.match(body, position)
        if match is None:
            raise JsonPathError(path, f"unexpected {body[position:]!r} at offset {position}")
        position = match.end()
    return "$" + body


def split_json_path(path: str) -> list[str]:
    """Split *path* after every wildcard, rooting each part at ``$``.

    ``$.a[*].b[*].c`` becomes ``["$.a[*]", "$.b[*]", "$.c"]``.  A path without
    wildcards yields a single part.
    """
    parts = path.split(ARRAY_WILDCARD)
    for i in range(len(parts) - 1):
        parts[i] += ARRAY_WILDCARD

    split: list[str] = []
    for part in parts:
        sub_parts = part.split(OBJECT_WILDCARD)
        for i in range(len(sub_parts) - 1):
            sub_parts[i] += OBJECT_WILDCARD
        split.extend(sub_parts)
    return [p if p.startswith("$") else "$" + p for p in split]


def get_filter_type(operator: str) -> str | None:
    """Column type a JSON filter condition is extracted as.

    String-matching and equality operators compare text, ordering operators
    compare numbers, anything else is left untyped.
    """
    if operator in _TEXT_OPERATORS:
        return "text"
    if operator in _NUMERIC_OPERATORS:
        return "numeric"
    return None


def is_join_required(node: JsonFieldNode) -> bool:
    return (
        ARRAY_WILDCARD in node.json_path
        or OBJECT_WILDCARD in node.json_path
        or bool(node.query.get("filter"))
    )


@dataclass
class FilterCondition:
    """One nested-filter entry, bound to the alias of its extracted column."""

    alias: str
    path: str
    operator: str
    value: Any
    filter_type: str | None


class JsonHelper:
    """Base JSON path compiler.

    Subclasses provide the dialect-specific SQL; this class owns node
    classification, path splitting, nested-filter parsing and the
    post-processing of raw driver output.
    """

    dialect: Dialect

    def __init__(self, nodes: list[JsonFieldNode], primary_key: str) -> None:
        self.nodes = [
            replace(node, json_path=normalize_json_path(node.json_path)) for node in nodes
        ]
        self.primary_key = primary_key

    @property
    def select_nodes(self) -> list[JsonFieldNode]:
        return [node for node in self.nodes if not is_join_required(node)]

    @property
    def join_nodes(self) -> list[JsonFieldNode]:
        return [node for node in self.nodes if is_join_required(node)]

    def pre_process(self, query: SelectQuery, table: str) -> None:
        """Add the select-list entries, CTEs and joins for every node."""
        for node in self.join_nodes:
            alias = query.aliases()
            self.build_with_json(query, node, table, alias)
        for node in self.select_nodes:
            query.select(self.select_column(node, table, query.bindings))
        if self.nodes:
            logger.debug(
                "Compiled %d JSON node(s) for %s (%d joined)",
                len(self.nodes),
                table,
                len(self.join_nodes),
            )

    def post_process(self, items: list[Item]) -> None:
        self.post_process_parse_json(items)

    def post_process_parse_json(self, items: list[Item]) -> None:
        """Parse JSON text returned by the driver back into Python values."""
        keys = [node.field_key for node in self.nodes]
        for item in items:
            for key in keys:
                value = item.get(key)
                if not isinstance(value, str):
                    continue
                try:
                    item[key] = json.loads(value)
                except ValueError:
                    pass

    def parts_for(self, node: JsonFieldNode) -> list[str]:
        """Split a node's path; a path without wildcards is its own row context."""
        parts = split_json_path(node.json_path)
        if len(parts) == 1:
            parts.append("$")
        return parts

    def filter_conditions(self, node: JsonFieldNode, query: SelectQuery) -> list[FilterCondition]:
        """Turn ``node.query["filter"]`` into aliased, typed conditions.

        Filter keys are paths relative to the innermost matched element.
        """
        conditions: list[FilterCondition] = []
        for key, raw in (node.query.get("filter") or {}).items():
            if key in LOGICAL_OPERATORS:
                raise InvalidQueryError(
                    f"{key} is not supported inside a JSON path filter ({node.field_key!r})"
                )
            operator, value = get_operation(key, raw)
            conditions.append(
                FilterCondition(
                    alias=query.aliases(),
                    path=normalize_json_path(key),
                    operator=operator,
                    value=value,
                    filter_type=get_filter_type(operator),
                )
            )
        return conditions

    def filter_value(self, operator: str, value: Any) -> Any:  # noqa: ARG002
        """Adapt a value that *operator* compares against :meth:`filter_query` output."""
        return value

    # -- dialect hooks -------------------------------------------------------

    def select_column(self, node: JsonFieldNode, table: str, bindings: Bindings) -> str:
        raise NotImplementedError

    def build_with_json(
        self, query: SelectQuery, node: JsonFieldNode, table: str, alias: str
    ) -> SelectQuery:
        raise NotImplementedError

    def filter_query(
        self,
        collection: str,
        node: JsonFieldNode,
        bindings: Bindings,
        filter_type: str | None = None,
    ) -> str:
        """SQL expression for a top-level ``json(column, path)`` filter key.

        *filter_type* comes from :func:`get_filter_type` for the operator
        applied to the key; ``"numeric"`` asks for a number-typed value.
        """
        raise NotImplementedError

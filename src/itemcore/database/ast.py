"""Flat query AST: build it from a :class:`Query`, compile it, run it.

Only the collection's own columns and JSON path selections are supported;
relational nesting of reads is left to a richer AST implementation behind
the same two entry points, :func:`get_ast_from_query` and :func:`run_ast`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from itemcore.database.filters import LOGICAL_OPERATORS, compile_filter
from itemcore.database.json import (
    JsonHelper,
    get_filter_type,
    get_json_helper,
    normalize_json_path,
)
from itemcore.database.query import SelectQuery, get_dialect, quote_ident
from itemcore.exceptions import InvalidQueryError
from itemcore.schema import SchemaInspector
from itemcore.types import JsonFieldNode, Query

if TYPE_CHECKING:
    from itemcore.db import Executor
    from itemcore.types import Accountability, Item

logger = logging.getLogger(__name__)

_JSON_FIELD = re.compile(r"^json\(\s*(?P<column>[A-Za-z_][A-Za-z0-9_]*)\s*,\s*(?P<path>.+?)\s*\)$")


def parse_json_field(expression: str) -> tuple[str, str] | None:
    """Split ``json(column, path)`` into ``(column, path)``."""
    match = _JSON_FIELD.match(expression.strip())
    if match is None:
        return None
    return match.group("column"), match.group("path")


@dataclass
class AST:
    """What to read from one collection."""

    collection: str
    primary_key: str
    columns: list[str]
    fields: list[str]
    json_nodes: list[JsonFieldNode] = field(default_factory=list)
    query: Query = field(default_factory=Query)
    operation: str = "read"
    accountability: Accountability | None = None


async def get_ast_from_query(
    collection: str,
    query: Query,
    accountability: Accountability | None,
    operation: str = "read",
    *,
    conn: Executor,
) -> AST:
    """Resolve a query's field list against the collection schema."""
    schema = SchemaInspector(conn)
    primary_key = await schema.primary(collection)
    columns = [c["column"] for c in await schema.columns(collection)]

    fields: list[str] = []
    nodes: list[JsonFieldNode] = []
    for entry in query.fields or ["*"]:
        if entry == "*":
            fields.extend(c for c in columns if c not in fields)
            continue
        expression = query.alias.get(entry, entry)
        parsed = parse_json_field(expression)
        if parsed is not None:
            name, path = parsed
            if name not in columns:
                raise InvalidQueryError(f"Field {name!r} does not exist in {collection!r}")
            nodes.append(
                JsonFieldNode(
                    name=name,
                    field_key=entry,
                    json_path=path,
                    query=dict(query.deep.get(entry, {})),
                )
            )
        elif expression in columns:
            if expression not in fields:
                fields.append(expression)
        else:
            raise InvalidQueryError(f"Field {entry!r} does not exist in {collection!r}")

    return AST(
        collection=collection,
        primary_key=primary_key,
        columns=columns,
        fields=fields,
        json_nodes=nodes,
        query=query,
        operation=operation,
        accountability=accountability,
    )


def _prepare_filter(filter_: Any, helper: JsonHelper) -> Any:
    """Adapt the values compared against ``json(column, path)`` keys to their operators."""
    if isinstance(filter_, list):
        return [_prepare_filter(sub, helper) for sub in filter_]
    if not isinstance(filter_, dict):
        return filter_
    prepared: dict[str, Any] = {}
    for key, raw in filter_.items():
        if key in LOGICAL_OPERATORS:
            prepared[key] = _prepare_filter(raw, helper)
        elif parse_json_field(key) is not None and isinstance(raw, dict):
            prepared[key] = {op: helper.filter_value(op, value) for op, value in raw.items()}
        elif parse_json_field(key) is not None:
            prepared[key] = helper.filter_value("_eq", raw)
        else:
            prepared[key] = raw
    return prepared


def compile_ast(ast: AST, dialect: str = "postgres") -> tuple[SelectQuery, JsonHelper]:
    """Render *ast* into a :class:`SelectQuery` for *dialect*."""
    table = ast.collection
    query = SelectQuery(table=table, dialect=get_dialect(dialect))
    query.select(*(quote_ident(table, f) for f in ast.fields))

    helper = get_json_helper(dialect, ast.json_nodes, ast.primary_key)
    helper.pre_process(query, table)

    def resolve(key: str, operator: str) -> str:
        parsed = parse_json_field(key)
        if parsed is not None:
            name, path = parsed
            if name not in ast.columns:
                raise InvalidQueryError(f"Field {name!r} does not exist in {table!r}")
            node = JsonFieldNode(name=name, field_key=key, json_path=normalize_json_path(path))
            return helper.filter_query(table, node, query.bindings, get_filter_type(operator))
        if key not in ast.columns:
            raise InvalidQueryError(f"Cannot filter on unknown field {key!r} of {table!r}")
        return quote_ident(table, key)

    condition = compile_filter(_prepare_filter(ast.query.filter, helper), resolve, query.bindings)
    if condition:
        query.where.append(condition)

    for entry in ast.query.sort or []:
        column, direction = (entry[1:], "DESC") if entry.startswith("-") else (entry, "ASC")
        if column not in ast.columns:
            raise InvalidQueryError(f"Cannot sort on unknown field {column!r} of {table!r}")
        query.order_by.append(f"{quote_ident(table, column)} {direction}")

    query.limit = ast.query.limit if ast.query.limit not in (None, -1) else None
    query.offset = ast.query.offset
    return query, helper


async def run_ast(ast: AST, *, conn: Executor, dialect: str = "postgres") -> list[Item]:
    """Execute *ast* and return plain dict items in storage order."""
    query, helper = compile_ast(ast, dialect)
    sql = query.to_sql()
    logger.debug("Running read on %s: %s", ast.collection, sql)
    rows = await conn.fetch(sql, *query.params())
    items = [dict(row) for row in rows]
    helper.post_process(items)
    return items

"""JSON path support for PostgreSQL 12 and later (SQL/JSON path language).

Each path segment becomes one ``jsonb_path_query`` lateral, the innermost
values and filter conditions are extracted by a lateral sub-select, and
matches are aggregated with ``jsonb_agg`` per primary key.  Paths travel as
bind parameters cast to ``jsonpath``.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from itemcore.database.filters import apply_operator
from itemcore.database.json.base import JsonHelper, get_filter_type
from itemcore.database.query import POSTGRES, quote_ident
from itemcore.exceptions import InvalidQueryError

if TYPE_CHECKING:
    from itemcore.database.json.base import FilterCondition
    from itemcore.database.query import Bindings, SelectQuery
    from itemcore.types import JsonFieldNode


def _jsonpath(bindings: Bindings, path: str) -> str:
    return f"CAST(CAST({bindings.add(path)} AS text) AS jsonpath)"


def _document(table: str, column: str) -> str:
    return f"CAST({quote_ident(table, column)} AS jsonb)"


def _extract(value: str, filter_type: str | None) -> str:
    """Unwrap a jsonb scalar as text, or as numeric for ordering comparisons.

    Non-number values extract as NULL under ``numeric`` so they never match.
    """
    if filter_type == "numeric":
        return (
            f"CASE WHEN jsonb_typeof({value}) = 'number' "
            f"THEN CAST({value} #>> '{{}}' AS numeric) END"
        )
    return f"{value} #>> '{{}}'"


class PostgresJsonHelper(JsonHelper):
    dialect = POSTGRES

    def select_column(self, node: JsonFieldNode, table: str, bindings: Bindings) -> str:
        return (
            f"jsonb_path_query_first({_document(table, node.name)}, "
            f"{_jsonpath(bindings, node.json_path)}) AS {quote_ident(node.field_key)}"
        )

    def build_with_json(
        self, query: SelectQuery, node: JsonFieldNode, table: str, alias: str
    ) -> SelectQuery:
        primary = quote_ident(table, self.primary_key)
        table_alias, field_alias = query.aliases(), query.aliases()
        found = query.aliases()
        conditions = self.filter_conditions(node, query)
        parts = self.parts_for(node)

        sub = query.subquery(table)
        context = _document(table, node.name)
        for part in parts[:-1]:
            segment_alias = query.aliases()
            sub.from_items.append(
                f"LATERAL jsonb_path_query({context}, {_jsonpath(sub.bindings, part)})"
                f" AS {quote_ident(segment_alias)}(value)"
            )
            context = quote_ident(segment_alias, "value")

        columns = [
            f"jsonb_path_query_first({context}, {_jsonpath(sub.bindings, parts[-1])})"
            f" AS {quote_ident(found)}"
        ]
        for condition in conditions:
            columns.append(self._condition_column(context, condition, sub.bindings))
        sub.from_items.append(
            f"LATERAL (SELECT {', '.join(columns)}) AS {quote_ident(table_alias)}"
        )

        found_col = quote_ident(table_alias, found)
        sub.select(f"{primary} AS {quote_ident(self.primary_key)}")
        sub.select(
            f"COALESCE(jsonb_agg({found_col}) FILTER (WHERE {found_col} IS NOT NULL), '[]'::jsonb)"
            f" AS {quote_ident(field_alias)}"
        )
        for condition in conditions:
            sub.where.append(
                apply_operator(
                    quote_ident(table_alias, condition.alias),
                    condition.operator,
                    self._coerce(condition.filter_type, condition.value),
                    sub.bindings,
                )
            )
        sub.group_by.append(primary)

        query.with_(alias, sub)
        query.left_join(alias, primary, quote_ident(alias, self.primary_key))
        if node.query.get("filter"):
            query.select(
                f"COALESCE({quote_ident(alias, field_alias)}, '[]'::jsonb)"
                f" AS {quote_ident(node.field_key)}"
            )
        else:
            query.select(f"{quote_ident(alias, field_alias)} AS {quote_ident(node.field_key)}")
        return query

    def _condition_column(
        self, context: str, condition: FilterCondition, bindings: Bindings
    ) -> str:
        value = f"jsonb_path_query_first({context}, {_jsonpath(bindings, condition.path)})"
        return f"{_extract(value, condition.filter_type)} AS {quote_ident(condition.alias)}"

    @staticmethod
    def _coerce(filter_type: str | None, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, (list, tuple)):
            return [PostgresJsonHelper._coerce(filter_type, v) for v in value]
        if filter_type == "numeric":
            if isinstance(value, str) and "," in value:
                return [PostgresJsonHelper._coerce(filter_type, v) for v in value.split(",")]
            if isinstance(value, bool):
                return value
            try:
                return Decimal(str(value).strip())
            except InvalidOperation:
                raise InvalidQueryError(
                    f"Expected a number to compare with, got {value!r}"
                ) from None
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def filter_value(self, operator: str, value: Any) -> Any:
        return self._coerce(get_filter_type(operator) or "text", value)

    def filter_query(
        self,
        collection: str,
        node: JsonFieldNode,
        bindings: Bindings,
        filter_type: str | None = None,
    ) -> str:
        value = (
            f"jsonb_path_query_first({_document(collection, node.name)}, "
            f"{_jsonpath(bindings, node.json_path)})"
        )
        return f"({_extract(value, filter_type)})"

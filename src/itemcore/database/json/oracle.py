"""JSON path support for Oracle 12c and later.

Oracle only accepts JSON paths as string literals, so paths are inlined
through :func:`quote_literal`; filter values are still bound.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from itemcore.database.filters import apply_operator
from itemcore.database.json.base import FilterCondition, JsonHelper
from itemcore.database.query import ORACLE, quote_ident, quote_literal

if TYPE_CHECKING:
    from itemcore.database.query import Bindings, SelectQuery
    from itemcore.types import JsonFieldNode

_COLUMN_TYPES = {"text": "VARCHAR2", "numeric": "NUMBER", None: ""}


class Oracle12JsonHelper(JsonHelper):
    dialect = ORACLE

    def select_column(self, node: JsonFieldNode, table: str, bindings: Bindings) -> str:
        column = quote_ident(table, node.name)
        path = quote_literal(node.json_path)
        return (
            f"COALESCE(json_query({column}, {path}), json_value({column}, {path}))"
            f" AS {quote_ident(node.field_key)}"
        )

    def build_with_json(
        self, query: SelectQuery, node: JsonFieldNode, table: str, alias: str
    ) -> SelectQuery:
        primary = quote_ident(table, self.primary_key)
        table_alias, field_alias = query.aliases(), query.aliases()
        found, raw = query.aliases(), query.aliases()
        conditions = self.filter_conditions(node, query)
        parts = self.parts_for(node)

        sub = query.subquery(table)
        sub.select(f"{primary} AS {quote_ident(self.primary_key)}")
        sub.select(self._aggregate(table_alias, field_alias, found, raw))
        sub.from_items.append(
            self._json_table(table, node, parts, table_alias, (found, raw), conditions, query)
        )
        for condition in conditions:
            sub.where.append(
                apply_operator(
                    quote_ident(table_alias, condition.alias),
                    condition.operator,
                    condition.value,
                    sub.bindings,
                )
            )
        sub.group_by.append(primary)

        query.with_(alias, sub)
        query.left_join(alias, primary, quote_ident(alias, self.primary_key))
        if node.query.get("filter"):
            query.select(
                f"COALESCE({quote_ident(alias, field_alias)}, '[]')"
                f" AS {quote_ident(node.field_key)}"
            )
        else:
            query.select(f"{quote_ident(alias, field_alias)} AS {quote_ident(node.field_key)}")
        return query

    def _aggregate(self, table_alias: str, field_alias: str, found: str, raw: str) -> str:
        found_col = quote_ident(table_alias, found)
        raw_col = quote_ident(table_alias, raw)
        return (
            f"CASE WHEN json_arrayagg({found_col}) = '[]'"
            f" THEN json_arrayagg({raw_col} FORMAT JSON)"
            f" ELSE json_arrayagg({found_col}) END AS {quote_ident(field_alias)}"
        )

    def _json_table(
        self,
        table: str,
        node: JsonFieldNode,
        parts: list[str],
        table_alias: str,
        pair: tuple[str, str],
        conditions: list[FilterCondition],
        query: SelectQuery,
    ) -> str:
        found, raw = pair
        leaf = quote_literal(parts[-1])
        columns = f"{quote_ident(found)} PATH {leaf}, {quote_ident(raw)} FORMAT JSON PATH {leaf}"
        for condition in conditions:
            column_type = _COLUMN_TYPES[condition.filter_type]
            typed = f" {column_type}" if column_type else ""
            columns += (
                f", {quote_ident(condition.alias)}{typed} PATH {quote_literal(condition.path)}"
            )

        for part in reversed(parts[1:-1]):
            columns = f"NESTED PATH {quote_literal(part)} COLUMNS ({columns})"

        source = (
            f"json_table({quote_ident(table, node.name)}, {quote_literal(parts[0])}"
            f" COLUMNS ({columns}))"
        )
        return query.dialect.table_alias(source, table_alias)

    def filter_query(
        self,
        collection: str,
        node: JsonFieldNode,
        bindings: Bindings,  # noqa: ARG002
        filter_type: str | None = None,
    ) -> str:
        column, path = quote_ident(collection, node.name), quote_literal(node.json_path)
        if filter_type == "numeric":
            return f"JSON_VALUE({column}, {path} RETURNING NUMBER)"
        return f"JSON_VALUE({column}, {path})"

"""Unit tests for the Oracle 12c JSON path compiler.

Only the generated SQL is checked; nothing here talks to an Oracle server.
"""

from __future__ import annotations

import re

import pytest

from itemcore.database.json import Oracle12JsonHelper
from itemcore.database.query import ORACLE, SelectQuery, quote_ident
from itemcore.exceptions import InvalidQueryError
from itemcore.types import JsonFieldNode

pytestmark = pytest.mark.unit


def _compile(*nodes: JsonFieldNode) -> SelectQuery:
    query = SelectQuery(table="t", dialect=ORACLE)
    query.select(quote_ident("t", "id"))
    Oracle12JsonHelper(list(nodes), "id").pre_process(query, "t")
    return query


class TestSelectOnly:
    def test_coalesces_json_query_and_json_value(self) -> None:
        query = _compile(JsonFieldNode("data", "first", "$.a[0].b"))
        assert query.to_sql() == (
            'SELECT "t"."id", '
            "COALESCE(json_query(\"t\".\"data\", '$.a[0].b'), "
            "json_value(\"t\".\"data\", '$.a[0].b')) AS \"first\" "
            'FROM "t"'
        )
        assert query.ctes == []
        assert query.params() == ({},)

    def test_path_literal_is_escaped(self) -> None:
        query = _compile(JsonFieldNode("data", "k", "$.\"it's\""))
        assert "'$.\"it''s\"'" in query.to_sql()


class TestJoined:
    def test_wildcard_path_builds_json_table_cte(self) -> None:
        query = _compile(JsonFieldNode("data", "items", "$.a[*].b"))
        assert query.to_sql() == (
            'WITH "A1" AS (SELECT "t"."id" AS "id", '
            'CASE WHEN json_arrayagg("A2"."A4") = \'[]\' '
            'THEN json_arrayagg("A2"."A5" FORMAT JSON) '
            'ELSE json_arrayagg("A2"."A4") END AS "A3" '
            'FROM "t", json_table("t"."data", \'$.a[*]\' COLUMNS '
            '("A4" PATH \'$.b\', "A5" FORMAT JSON PATH \'$.b\')) "A2" '
            'GROUP BY "t"."id") '
            'SELECT "t"."id", "A1"."A3" AS "items" '
            'FROM "t" LEFT JOIN "A1" ON "t"."id" = "A1"."id"'
        )

    def test_nested_wildcards_use_nested_path(self) -> None:
        query = _compile(JsonFieldNode("data", "items", "$.a[*].b[*].c"))
        sql = query.to_sql()
        assert (
            "json_table(\"t\".\"data\", '$.a[*]' COLUMNS (NESTED PATH '$.b[*]' COLUMNS "
            "(\"A4\" PATH '$.c', \"A5\" FORMAT JSON PATH '$.c'))) \"A2\""
        ) in sql

    def test_filter_adds_typed_column_bound_condition_and_coalesce(self) -> None:
        node = JsonFieldNode(
            "data", "items", "$.a[*].b", query={"filter": {"n": {"_gt": 2}, "s": "x"}}
        )
        query = _compile(node)
        sql = query.to_sql()
        assert "\"A6\" NUMBER PATH '$.n'" in sql
        assert "\"A7\" VARCHAR2 PATH '$.s'" in sql
        assert 'WHERE "A2"."A6" > :p1 AND "A2"."A7" = :p2' in sql
        assert 'COALESCE("A1"."A3", \'[]\') AS "items"' in sql
        assert query.params() == ({"p1": 2, "p2": "x"},)

    def test_untyped_condition_column(self) -> None:
        node = JsonFieldNode("data", "items", "$.a[*]", query={"filter": {"b": {"_null": True}}})
        sql = _compile(node).to_sql()
        assert "\"A6\" PATH '$.b'" in sql
        assert 'WHERE "A2"."A6" IS NULL' in sql

    def test_non_wildcard_path_with_filter_uses_root_leaf(self) -> None:
        node = JsonFieldNode("data", "items", "$.a", query={"filter": {"b": 1}})
        sql = _compile(node).to_sql()
        assert "json_table(\"t\".\"data\", '$.a' COLUMNS (\"A4\" PATH '$'" in sql

    def test_logical_operators_are_rejected_inside_node_filters(self) -> None:
        node = JsonFieldNode("data", "items", "$.a[*]", query={"filter": {"_or": []}})
        with pytest.raises(InvalidQueryError, match="_or"):
            _compile(node)


class TestAliases:
    def test_aliases_are_unique_per_statement(self) -> None:
        query = _compile(
            JsonFieldNode("data", "one", "$.a[*].b", query={"filter": {"c": 1}}),
            JsonFieldNode("data", "two", "$.x[*]"),
            JsonFieldNode("data", "three", "$.y"),
        )
        sql = query.to_sql()
        defined = re.findall(r'(?:WITH |, )"(A\d+)" AS \(', sql)
        assert defined == ["A1", "A7"]
        assert query.aliases.issued == 11

    def test_each_statement_starts_its_own_counter(self) -> None:
        first = _compile(JsonFieldNode("data", "k", "$.a[*]"))
        second = _compile(JsonFieldNode("data", "k", "$.a[*]"))
        assert first.to_sql() == second.to_sql()


class TestFilterQuery:
    def test_json_value_with_literal_path(self) -> None:
        helper = Oracle12JsonHelper([], "id")
        query = SelectQuery(table="t", dialect=ORACLE)
        node = JsonFieldNode("data", "json(data, $.a)", "$.a")
        assert helper.filter_query("t", node, query.bindings) == (
            "JSON_VALUE(\"t\".\"data\", '$.a')"
        )

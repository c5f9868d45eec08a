"""Unit tests for itemcore.database.filters."""

from __future__ import annotations

import pytest

from itemcore.database.filters import (
    and_filters,
    apply_operator,
    compile_filter,
    get_operation,
    matches_filter,
    parse_filter,
    parse_operator,
)
from itemcore.database.query import ORACLE, POSTGRES, Bindings, quote_ident
from itemcore.exceptions import InvalidQueryError
from itemcore.types import Accountability

pytestmark = pytest.mark.unit


def _resolve(key: str, _operator: str) -> str:
    return quote_ident("articles", key)


class TestParseOperator:
    @pytest.mark.parametrize(
        ("operator", "expected"),
        [
            ("_eq", ("_eq", False, False)),
            ("_neq", ("_eq", True, False)),
            ("_ieq", ("_eq", False, True)),
            ("_nieq", ("_eq", True, True)),
            ("_icontains", ("_contains", False, True)),
            ("_nicontains", ("_contains", True, True)),
            ("_nbetween", ("_between", True, False)),
            ("_nnull", ("_null", True, False)),
            ("_nempty", ("_empty", True, False)),
            ("_niends_with", ("_ends_with", True, True)),
        ],
    )
    def test_known_operators(self, operator, expected) -> None:
        assert parse_operator(operator) == expected

    @pytest.mark.parametrize("operator", ["_regex", "_ilt", "eq", "_nn"])
    def test_unknown_operator_raises(self, operator) -> None:
        with pytest.raises(InvalidQueryError, match="Unknown filter operator"):
            parse_operator(operator)


class TestGetOperation:
    def test_operator_key(self) -> None:
        assert get_operation("_gt", 3) == ("_gt", 3)

    def test_field_key_with_operator(self) -> None:
        assert get_operation("price", {"_gt": 3}) == ("_gt", 3)

    def test_bare_value_means_equality(self) -> None:
        assert get_operation("status", "draft") == ("_eq", "draft")


class TestApplyOperator:
    def test_eq_binds_value(self) -> None:
        bindings = Bindings(POSTGRES)
        assert apply_operator('"t"."a"', "_eq", 5, bindings) == '"t"."a" = $1'
        assert bindings.as_args() == [5]

    def test_eq_none_is_null_check(self) -> None:
        bindings = Bindings(POSTGRES)
        assert apply_operator('"t"."a"', "_eq", None, bindings) == '"t"."a" IS NULL'
        assert bindings.as_args() == []

    def test_negated_operator_wraps_in_not(self) -> None:
        bindings = Bindings(POSTGRES)
        assert apply_operator('"t"."a"', "_neq", "x", bindings) == 'NOT ("t"."a" = $1)'

    def test_in_with_list(self) -> None:
        bindings = Bindings(POSTGRES)
        assert apply_operator('"t"."a"', "_in", [1, 2, 3], bindings) == '"t"."a" IN ($1, $2, $3)'

    def test_in_with_csv_string(self) -> None:
        bindings = Bindings(POSTGRES)
        apply_operator('"t"."a"', "_in", "x, y", bindings)
        assert bindings.as_args() == ["x", "y"]

    def test_empty_in_matches_nothing(self) -> None:
        bindings = Bindings(POSTGRES)
        assert apply_operator('"t"."a"', "_in", [], bindings) == "1 = 0"

    def test_icontains_lowers_both_sides(self) -> None:
        bindings = Bindings(POSTGRES)
        sql = apply_operator('"t"."a"', "_icontains", "Foo", bindings)
        assert sql == 'LOWER("t"."a") LIKE LOWER($1)'
        assert bindings.as_args() == ["%Foo%"]

    def test_starts_with_pattern(self) -> None:
        bindings = Bindings(POSTGRES)
        apply_operator('"t"."a"', "_starts_with", "ab", bindings)
        assert bindings.as_args() == ["ab%"]

    def test_between(self) -> None:
        bindings = Bindings(POSTGRES)
        assert apply_operator('"t"."a"', "_between", [1, 9], bindings) == (
            '"t"."a" BETWEEN $1 AND $2'
        )

    def test_between_needs_two_bounds(self) -> None:
        with pytest.raises(InvalidQueryError, match="two bounds"):
            apply_operator('"t"."a"', "_between", [1], Bindings(POSTGRES))

    def test_null_false_means_not_null(self) -> None:
        assert apply_operator('"t"."a"', "_null", False, Bindings(POSTGRES)) == (
            '"t"."a" IS NOT NULL'
        )

    def test_oracle_named_markers(self) -> None:
        bindings = Bindings(ORACLE)
        assert apply_operator('"T"."a"', "_gt", 2, bindings) == '"T"."a" > :p1'
        assert bindings.as_named() == {"p1": 2}


class TestCompileFilter:
    def test_empty_filter_compiles_to_none(self) -> None:
        assert compile_filter(None, _resolve, Bindings(POSTGRES)) is None
        assert compile_filter({}, _resolve, Bindings(POSTGRES)) is None

    def test_fields_are_and_joined(self) -> None:
        bindings = Bindings(POSTGRES)
        sql = compile_filter({"status": "published", "views": {"_gt": 10}}, _resolve, bindings)
        assert sql == '"articles"."status" = $1 AND "articles"."views" > $2'
        assert bindings.as_args() == ["published", 10]

    def test_or_group(self) -> None:
        bindings = Bindings(POSTGRES)
        sql = compile_filter(
            {"_or": [{"status": {"_eq": "a"}}, {"status": {"_eq": "b"}}]}, _resolve, bindings
        )
        assert sql == '("articles"."status" = $1 OR "articles"."status" = $2)'

    def test_logical_operator_requires_list(self) -> None:
        with pytest.raises(InvalidQueryError, match="expects a list"):
            compile_filter({"_and": {"a": 1}}, _resolve, Bindings(POSTGRES))

    def test_resolver_sees_each_operator(self) -> None:
        seen: list[tuple[str, str]] = []

        def record(key: str, operator: str) -> str:
            seen.append((key, operator))
            return quote_ident("articles", key)

        filter_ = {"views": {"_gt": 1, "_lt": 9}, "status": "draft"}
        compile_filter(filter_, record, Bindings(POSTGRES))
        assert seen == [("views", "_gt"), ("views", "_lt"), ("status", "_eq")]

    def test_resolver_errors_propagate(self) -> None:
        def refuse(key: str, _operator: str) -> str:
            raise InvalidQueryError(f"no field {key}")

        with pytest.raises(InvalidQueryError, match="no field secret"):
            compile_filter({"secret": 1}, refuse, Bindings(POSTGRES))


class TestAndFilters:
    def test_drops_empty_filters(self) -> None:
        assert and_filters(None, {}, None) is None

    def test_single_filter_is_returned_as_is(self) -> None:
        assert and_filters(None, {"a": 1}) == {"a": 1}

    def test_multiple_filters_are_wrapped(self) -> None:
        assert and_filters({"a": 1}, {"b": 2}) == {"_and": [{"a": 1}, {"b": 2}]}


class TestParseFilter:
    def test_substitutes_current_user_and_role(self) -> None:
        accountability = Accountability(user="u1", role="editor")
        parsed = parse_filter(
            {"_or": [{"owner": {"_eq": "$CURRENT_USER"}}, {"role": "$CURRENT_ROLE"}]},
            accountability,
        )
        assert parsed == {"_or": [{"owner": {"_eq": "u1"}}, {"role": "editor"}]}

    def test_without_accountability_placeholders_become_none(self) -> None:
        assert parse_filter({"owner": "$CURRENT_USER"}, None) == {"owner": None}


class TestMatchesFilter:
    def test_empty_filter_matches(self) -> None:
        assert matches_filter({"a": 1}, None)

    def test_comparison(self) -> None:
        assert matches_filter({"price": 5}, {"price": {"_gte": 5}})
        assert not matches_filter({"price": 4}, {"price": {"_gte": 5}})

    def test_negation(self) -> None:
        assert matches_filter({"status": "draft"}, {"status": {"_neq": "published"}})
        assert not matches_filter({"status": "draft"}, {"status": {"_neq": "draft"}})

    def test_case_insensitive_contains(self) -> None:
        assert matches_filter({"title": "Hello World"}, {"title": {"_icontains": "world"}})
        assert not matches_filter({"title": "Hello World"}, {"title": {"_contains": "world"}})

    def test_logical_groups(self) -> None:
        rule = {"_or": [{"a": {"_eq": 1}}, {"_and": [{"b": {"_null": True}}, {"c": 3}]}]}
        assert matches_filter({"a": 1}, rule)
        assert matches_filter({"a": 2, "c": 3}, rule)
        assert not matches_filter({"a": 2, "b": 0, "c": 3}, rule)

    def test_incomparable_types_do_not_match(self) -> None:
        assert not matches_filter({"price": "cheap"}, {"price": {"_gt": 5}})

    def test_missing_field_compares_as_none(self) -> None:
        assert matches_filter({}, {"deleted_at": {"_null": True}})
        assert not matches_filter({}, {"title": {"_nnull": True}})

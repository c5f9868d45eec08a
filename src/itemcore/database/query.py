"""Plain-SQL statement model shared by the AST runner and the JSON helpers.

Statements are assembled as strings.  Values always travel as bind
parameters through :class:`Bindings`; identifiers go through
:func:`quote_ident`.  The only inlined literals are Oracle JSON paths, which
Oracle refuses to accept as binds, and those go through
:func:`quote_literal`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from itemcore.database.aliases import AliasGenerator


def quote_ident(*parts: str) -> str:
    """Quote (and dot-join) one or more SQL identifiers."""
    return ".".join('"' + part.replace('"', '""') + '"' for part in parts)


def quote_literal(value: str) -> str:
    """Render *value* as a single-quoted SQL string literal."""
    return "'" + value.replace("'", "''") + "'"


@dataclass(frozen=True)
class Dialect:
    """Syntax differences between the supported SQL engines."""

    name: str
    placeholder: str
    table_alias_keyword: str

    @property
    def named_binds(self) -> bool:
        return self.placeholder.startswith(":")

    def bind_marker(self, position: int) -> str:
        return self.placeholder.format(n=position)

    def limit_clause(self, limit: int | None, offset: int | None) -> str:
        if self.name == "oracle":
            parts = []
            if offset:
                parts.append(f"OFFSET {int(offset)} ROWS")
            if limit is not None:
                parts.append(f"FETCH NEXT {int(limit)} ROWS ONLY")
            return " ".join(parts)
        parts = []
        if limit is not None:
            parts.append(f"LIMIT {int(limit)}")
        if offset:
            parts.append(f"OFFSET {int(offset)}")
        return " ".join(parts)

    def table_alias(self, source: str, alias: str) -> str:
        keyword = f" {self.table_alias_keyword} " if self.table_alias_keyword else " "
        return f"{source}{keyword}{quote_ident(alias)}"


POSTGRES = Dialect(name="postgres", placeholder="${n}", table_alias_keyword="AS")
ORACLE = Dialect(name="oracle", placeholder=":p{n}", table_alias_keyword="")

DIALECTS: dict[str, Dialect] = {d.name: d for d in (POSTGRES, ORACLE)}


def get_dialect(name: str) -> Dialect:
    """Return the dialect registered under *name*."""
    try:
        return DIALECTS[name]
    except KeyError:
        raise ValueError(
            f"Unsupported dialect {name!r}. Expected one of: {', '.join(sorted(DIALECTS))}"
        ) from None


class Bindings:
    """Ordered bind values for one statement.

    Placeholders are numbered at bind time, so fragments may be rendered in
    any order without disturbing the value list.
    """

    def __init__(self, dialect: Dialect) -> None:
        self.dialect = dialect
        self.values: list[Any] = []

    def add(self, value: Any) -> str:
        self.values.append(value)
        return self.dialect.bind_marker(len(self.values))

    def add_many(self, values: list[Any]) -> str:
        return ", ".join(self.add(v) for v in values)

    def as_args(self) -> list[Any]:
        """Positional values (asyncpg ``$n`` style)."""
        return list(self.values)

    def as_named(self) -> dict[str, Any]:
        """Named values (Oracle ``:pN`` style)."""
        return {f"p{i}": v for i, v in enumerate(self.values, start=1)}


@dataclass
class SelectQuery:
    """A SELECT statement under construction.

    ``columns``, ``from_items``, ``joins``, ``where``, ``group_by`` and
    ``order_by`` hold already-rendered SQL fragments.  Sub-statements built
    for CTEs share the parent's bindings and alias generator.
    """

    table: str
    dialect: Dialect = POSTGRES
    bindings: Bindings | None = None
    aliases: AliasGenerator = field(default_factory=AliasGenerator)
    columns: list[str] = field(default_factory=list)
    from_items: list[str] = field(default_factory=list)
    ctes: list[tuple[str, SelectQuery]] = field(default_factory=list)
    joins: list[str] = field(default_factory=list)
    where: list[str] = field(default_factory=list)
    group_by: list[str] = field(default_factory=list)
    order_by: list[str] = field(default_factory=list)
    limit: int | None = None
    offset: int | None = None

    def __post_init__(self) -> None:
        if self.bindings is None:
            self.bindings = Bindings(self.dialect)

    def subquery(self, table: str) -> SelectQuery:
        """Start a statement that shares this one's bindings and aliases."""
        return SelectQuery(
            table=table, dialect=self.dialect, bindings=self.bindings, aliases=self.aliases
        )

    def select(self, *columns: str) -> SelectQuery:
        self.columns.extend(columns)
        return self

    def with_(self, alias: str, query: SelectQuery) -> SelectQuery:
        self.ctes.append((alias, query))
        return self

    def left_join(self, alias: str, left: str, right: str) -> SelectQuery:
        self.joins.append(f"LEFT JOIN {quote_ident(alias)} ON {left} = {right}")
        return self

    def params(self) -> tuple[Any, ...]:
        """Driver arguments: one mapping for named binds, else positional values."""
        if self.dialect.named_binds:
            return (self.bindings.as_named(),)
        return tuple(self.bindings.as_args())

    def to_sql(self) -> str:
        parts: list[str] = []
        if self.ctes:
            rendered = ", ".join(f"{quote_ident(a)} AS ({q.to_sql()})" for a, q in self.ctes)
            parts.append(f"WITH {rendered}")
        parts.append("SELECT " + (", ".join(self.columns) or "*"))
        parts.append("FROM " + ", ".join([quote_ident(self.table), *self.from_items]))
        parts.extend(self.joins)
        if self.where:
            parts.append("WHERE " + " AND ".join(self.where))
        if self.group_by:
            parts.append("GROUP BY " + ", ".join(self.group_by))
        if self.order_by:
            parts.append("ORDER BY " + ", ".join(self.order_by))
        limit = self.dialect.limit_clause(self.limit, self.offset)
        if limit:
            parts.append(limit)
        return " ".join(parts)

"""Collection introspection against PostgreSQL's information_schema.

Nothing is cached: every call reads the catalog again so that schema
changes made between operations are always observed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from itemcore.exceptions import UnknownCollectionError

if TYPE_CHECKING:
    from itemcore.db import Executor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnInfo:
    """Column metadata used to synthesize default items."""

    name: str
    table: str
    data_type: str
    default_value: str | None
    is_nullable: bool
    max_length: int | None = None


class SchemaInspector:
    """Reads primary keys and columns for a collection."""

    def __init__(self, conn: Executor) -> None:
        self.conn = conn

    async def primary(self, collection: str) -> str:
        """Return the primary-key column of *collection*.

        Raises:
            UnknownCollectionError: If the table has no primary key.
        """
        column = await self.conn.fetchval(
            """
            SELECT kcu.column_name
            FROM information_schema.table_constraints tc
            JOIN information_schema.key_column_usage kcu
              ON tc.constraint_name = kcu.constraint_name
             AND tc.table_schema = kcu.table_schema
             AND tc.table_name = kcu.table_name
            WHERE tc.constraint_type = 'PRIMARY KEY'
              AND tc.table_name = $1
              AND tc.table_schema = current_schema()
            ORDER BY kcu.ordinal_position
            LIMIT 1
            """,
            collection,
        )
        if column is None:
            raise UnknownCollectionError(collection)
        return column

    async def columns(self, collection: str) -> list[dict[str, str]]:
        """Return ``[{"table": ..., "column": ...}]`` in ordinal order."""
        rows = await self.conn.fetch(
            """
            SELECT table_name, column_name
            FROM information_schema.columns
            WHERE table_name = $1 AND table_schema = current_schema()
            ORDER BY ordinal_position
            """,
            collection,
        )
        if not rows:
            raise UnknownCollectionError(collection)
        return [{"table": row["table_name"], "column": row["column_name"]} for row in rows]

    async def column_info(self, collection: str) -> list[ColumnInfo]:
        """Return full column metadata, including the raw default expression."""
        rows = await self.conn.fetch(
            """
            SELECT table_name, column_name, data_type, column_default,
                   is_nullable, character_maximum_length
            FROM information_schema.columns
            WHERE table_name = $1 AND table_schema = current_schema()
            ORDER BY ordinal_position
            """,
            collection,
        )
        if not rows:
            raise UnknownCollectionError(collection)
        return [_column_info_from_row(row) for row in rows]


def _column_info_from_row(row: Any) -> ColumnInfo:
    return ColumnInfo(
        name=row["column_name"],
        table=row["table_name"],
        data_type=row["data_type"],
        default_value=row["column_default"],
        is_nullable=row["is_nullable"] == "YES",
        max_length=row["character_maximum_length"],
    )

"""Permission enforcement for non-admin accountability.

A permission row grants one role one action on one collection.  Its
``fields`` column restricts readable/writable fields (``*`` for all),
``permissions`` is a row filter, ``presets`` are default values merged
under incoming payloads and ``validation`` is a filter every written
payload must satisfy.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from itemcore.database.filters import (
    LOGICAL_OPERATORS,
    and_filters,
    compile_filter,
    matches_filter,
    parse_filter,
)
from itemcore.database.query import SelectQuery, get_dialect, quote_ident
from itemcore.db import executor_dialect
from itemcore.exceptions import ForbiddenError, UnprocessableFieldError
from itemcore.schema import SchemaInspector

if TYPE_CHECKING:
    from itemcore.database.ast import AST
    from itemcore.db import Database, Executor
    from itemcore.types import Accountability, Item, Operation, PrimaryKey

logger = logging.getLogger(__name__)

PERMISSIONS_TABLE = "itemcore_permissions"


def _json_column(value: Any) -> Any:
    # asyncpg hands jsonb back as text unless a codec is registered
    if isinstance(value, str):
        return json.loads(value)
    return value


@dataclass
class Permission:
    """One row of the permissions table."""

    collection: str
    action: str
    fields: list[str] = field(default_factory=lambda: ["*"])
    permissions: dict[str, Any] | None = None
    validation: dict[str, Any] | None = None
    presets: dict[str, Any] | None = None

    def allows_field(self, name: str) -> bool:
        return "*" in self.fields or name in self.fields


def _partial_filter(filter_: Any, payload: Item) -> Any:
    """Drop field conditions on keys the payload does not touch."""
    if not isinstance(filter_, dict):
        return filter_
    partial: dict[str, Any] = {}
    for key, raw in filter_.items():
        if key in LOGICAL_OPERATORS:
            subs = [s for s in (_partial_filter(sub, payload) for sub in raw) if s]
            if subs:
                partial[key] = subs
        elif key in payload:
            partial[key] = raw
    return partial


class AuthorizationService:
    """Checks and rewrites operations against the permissions table."""

    def __init__(
        self,
        *,
        conn: Database | Executor,
        accountability: Accountability | None,
        dialect: str | None = None,
    ) -> None:
        self.conn = conn
        self.accountability = accountability
        self.dialect = executor_dialect(conn, dialect)

    async def get_permission(self, collection: str, action: str) -> Permission:
        """Fetch the permission row for the current role.

        Raises:
            ForbiddenError: If the role holds no permission for *action*.
        """
        role = self.accountability.role if self.accountability else None
        row = await self.conn.fetchrow(
            f"SELECT fields, permissions, validation, presets FROM {PERMISSIONS_TABLE} "
            "WHERE role IS NOT DISTINCT FROM $1 AND collection = $2 AND action = $3",
            role,
            collection,
            action,
        )
        if row is None:
            logger.info("Denied %s on %s for role %s", action, collection, role)
            raise ForbiddenError(f"You don't have permission to {action} {collection!r}")
        fields = row["fields"] or "*"
        return Permission(
            collection=collection,
            action=action,
            fields=[f.strip() for f in fields.split(",") if f.strip()],
            permissions=parse_filter(_json_column(row["permissions"]), self.accountability),
            validation=parse_filter(_json_column(row["validation"]), self.accountability),
            presets=_json_column(row["presets"]),
        )

    async def process_ast(self, ast: AST, operation: Operation = "read") -> AST:
        """Restrict an AST to the permitted fields and rows.

        Fields pulled in by ``*`` are silently narrowed; fields requested by
        name that the role may not see raise :class:`ForbiddenError`.
        """
        permission = await self.get_permission(ast.collection, operation)
        requested = {ast.query.alias.get(entry, entry) for entry in ast.query.fields or []}

        allowed_fields = []
        for name in ast.fields:
            if permission.allows_field(name):
                allowed_fields.append(name)
            elif name in requested:
                raise ForbiddenError(f"You don't have permission to access {ast.collection}.{name}")
        for node in ast.json_nodes:
            if not permission.allows_field(node.name):
                raise ForbiddenError(
                    f"You don't have permission to access {ast.collection}.{node.name}"
                )
        ast.fields = allowed_fields

        if permission.permissions:
            ast.query = ast.query.model_copy(
                update={"filter": and_filters(ast.query.filter, permission.permissions)}
            )
        return ast

    async def process_values(
        self,
        phase: Operation,
        collection: str,
        payload: Item | list[Item],
    ) -> Item | list[Item]:
        """Enforce field access, merge presets and validate *payload*.

        Returns the same shape it was given, with presets applied.
        """
        single = not isinstance(payload, list)
        items = [payload] if single else payload
        permission = await self.get_permission(collection, phase)

        processed = []
        for item in items:
            denied = [key for key in item if not permission.allows_field(key)]
            if denied:
                raise ForbiddenError(
                    f"You don't have permission to write {', '.join(denied)} in {collection!r}"
                )
            merged = {**(permission.presets or {}), **item}
            validation = permission.validation
            if validation and phase == "update":
                validation = _partial_filter(validation, item)
            if validation and not matches_filter(merged, validation):
                raise UnprocessableFieldError(collection, validation)
            processed.append(merged)
        return processed[0] if single else processed

    async def check_access(
        self, action: Operation, collection: str, keys: PrimaryKey | list[PrimaryKey]
    ) -> None:
        """Verify every key exists and is reachable through the row filter.

        Raises:
            ForbiddenError: If the permission is missing or any key is
                outside the permitted rows.
        """
        permission = await self.get_permission(collection, action)
        keys = keys if isinstance(keys, list) else [keys]
        if not keys:
            return

        primary_key = await SchemaInspector(self.conn).primary(collection)
        query = SelectQuery(table=collection, dialect=get_dialect(self.dialect))
        query.select("COUNT(*)")
        condition = compile_filter(
            and_filters({primary_key: {"_in": keys}}, permission.permissions),
            lambda key, _operator: quote_ident(collection, key),
            query.bindings,
        )
        if condition:
            query.where.append(condition)
        count = await self.conn.fetchval(query.to_sql(), *query.params())
        if count != len(set(keys)):
            raise ForbiddenError(
                f"You don't have permission to {action} these items in {collection!r}"
            )

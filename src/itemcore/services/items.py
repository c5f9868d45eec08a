"""Item orchestrator: CRUD over one collection.

Every mutating operation runs in a single transaction.  Collaborator
services built inside an operation receive the transaction connection, so
nested writes (relations, batch updates) commit or roll back together with
the outer call.

Example::

    service = ItemsService("articles", conn=db, accountability=Accountability(role="editor"))
    key = await service.create({"title": "Hello"})
    article = await service.read_by_key(key)
"""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any

from opentelemetry import trace

from itemcore.core.activity import record_activity
from itemcore.database.ast import get_ast_from_query, run_ast
from itemcore.database.defaults import get_default_value
from itemcore.database.filters import and_filters
from itemcore.database.query import quote_ident
from itemcore.db import executor_dialect, transaction
from itemcore.exceptions import InvalidPayloadError
from itemcore.schema import SchemaInspector
from itemcore.services.authorization import AuthorizationService
from itemcore.services.payload import PayloadService
from itemcore.types import Action, Query

if TYPE_CHECKING:
    from itemcore.db import Database, Executor
    from itemcore.types import Accountability, Item, Operation, PrimaryKey

logger = logging.getLogger(__name__)


def _placeholders(start: int, count: int) -> str:
    return ", ".join(f"${i}" for i in range(start, start + count))


class ItemsService:
    """Create, read, update and delete items of one collection.

    Parameters
    ----------
    collection:
        Table name.
    conn:
        A :class:`~itemcore.db.Database` or an open connection.  Passing a
        connection that is already inside a transaction makes every
        operation a savepoint of that transaction.
    accountability:
        Acting principal.  ``None`` is a trusted system context; an
        accountability with ``admin=True`` skips every permission check.
    dialect:
        SQL dialect statements are rendered in.  Defaults to the dialect the
        :class:`~itemcore.db.Database` was configured with.  Only dialects
        asyncpg can execute are accepted; Oracle SQL is produced with
        :func:`~itemcore.database.ast.compile_ast` instead.
    """

    def __init__(
        self,
        collection: str,
        *,
        conn: Database | Executor,
        accountability: Accountability | None = None,
        dialect: str | None = None,
    ) -> None:
        self.collection = collection
        self.conn = conn
        self.accountability = accountability
        self.dialect = executor_dialect(conn, dialect)
        self._tracer = trace.get_tracer("itemcore")

    @property
    def restricted(self) -> bool:
        """True when permission checks apply."""
        return self.accountability is not None and not self.accountability.admin

    def _child(self, conn: Executor, collection: str | None = None) -> ItemsService:
        return type(self)(
            collection or self.collection,
            conn=conn,
            accountability=self.accountability,
            dialect=self.dialect,
        )

    def _payload_service(self, conn: Database | Executor) -> PayloadService:
        return PayloadService(
            self.collection,
            conn=conn,
            accountability=self.accountability,
            dialect=self.dialect,
        )

    def _authorization_service(self, conn: Database | Executor) -> AuthorizationService:
        return AuthorizationService(
            conn=conn, accountability=self.accountability, dialect=self.dialect
        )

    async def _columns(self, conn: Database | Executor) -> tuple[str, set[str]]:
        schema = SchemaInspector(conn)
        primary_key = await schema.primary(self.collection)
        columns = {c["column"] for c in await schema.columns(self.collection)}
        return primary_key, columns

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    async def create(self, data: Item | list[Item]) -> PrimaryKey | list[PrimaryKey]:
        """Insert one item or many; returns the key(s) in input order."""
        single = not isinstance(data, list)
        payloads = [data] if single else list(data)
        for payload in payloads:
            if not isinstance(payload, dict):
                raise InvalidPayloadError(f"Items of {self.collection!r} must be objects")

        with self._tracer.start_as_current_span("itemcore.items.create") as span:
            span.set_attribute("itemcore.collection", self.collection)
            span.set_attribute("itemcore.items.count", len(payloads))

            async with transaction(self.conn) as trx:
                primary_key, columns = await self._columns(trx)
                payload_service = self._payload_service(trx)

                with_m2o = [
                    await payload_service.process_m2o(copy.deepcopy(payload))
                    for payload in payloads
                ]
                if self.restricted:
                    with_m2o = await self._authorization_service(trx).process_values(
                        "create", self.collection, with_m2o
                    )

                stripped = [{k: v for k, v in p.items() if k in columns} for p in with_m2o]
                prepared = await payload_service.process_values("create", stripped)

                keys = [await self._insert(trx, row, primary_key) for row in prepared]

                await record_activity(
                    trx,
                    action=Action.CREATE,
                    accountability=self.accountability,
                    collection=self.collection,
                    keys=keys,
                )

                for payload, key in zip(with_m2o, keys, strict=True):
                    payload[primary_key] = key
                    await payload_service.process_o2m(payload, key)

        logger.info("Created %d item(s) in %s", len(keys), self.collection)
        return keys[0] if single else keys

    async def _insert(self, conn: Executor, row: Item, primary_key: str) -> PrimaryKey:
        table = quote_ident(self.collection)
        returning = f"RETURNING {quote_ident(primary_key)}"
        if not row:
            return await conn.fetchval(f"INSERT INTO {table} DEFAULT VALUES {returning}")
        columns = ", ".join(quote_ident(c) for c in row)
        return await conn.fetchval(
            f"INSERT INTO {table} ({columns}) VALUES ({_placeholders(1, len(row))}) {returning}",
            *row.values(),
        )

    # ------------------------------------------------------------------
    # read
    # ------------------------------------------------------------------

    async def read_by_query(self, query: Query, *, operation: Operation = "read") -> list[Item]:
        """Read the items matching *query*, in storage order."""
        with self._tracer.start_as_current_span("itemcore.items.read_by_query") as span:
            span.set_attribute("itemcore.collection", self.collection)

            ast = await get_ast_from_query(
                self.collection, query, self.accountability, operation, conn=self.conn
            )
            if self.restricted:
                ast = await self._authorization_service(self.conn).process_ast(ast, operation)

            records = await run_ast(ast, conn=self.conn, dialect=self.dialect)
            items = await self._payload_service(self.conn).process_values("read", records)
            span.set_attribute("itemcore.items.count", len(items))
            return items

    async def read_by_key(
        self,
        key: PrimaryKey | list[PrimaryKey],
        query: Query | None = None,
        *,
        operation: Operation = "read",
    ) -> Item | list[Item] | None:
        """Read by primary key.

        A single key returns the item or ``None``; a list of keys returns a
        (possibly shorter) list.
        """
        query = query or Query()
        single = not isinstance(key, list)
        keys = [key] if single else key

        primary_key = await SchemaInspector(self.conn).primary(self.collection)
        query = query.model_copy(
            update={"filter": and_filters(query.filter, {primary_key: {"_in": keys}})}
        )
        records = await self.read_by_query(query, operation=operation)
        if single:
            return records[0] if records else None
        return records

    # ------------------------------------------------------------------
    # update
    # ------------------------------------------------------------------

    async def update(
        self,
        data: Item | list[Item],
        key: PrimaryKey | list[PrimaryKey] | None = None,
    ) -> PrimaryKey | list[PrimaryKey]:
        """Update items.

        ``update(payload, key)`` and ``update(payload, [keys])`` apply one
        payload to every key.  ``update([payload, ...])`` updates each
        element by the primary key it carries.
        """
        if key is None:
            if not isinstance(data, list):
                raise InvalidPayloadError("A key is required to update a single payload")
            return await self._update_batch(data)
        if not isinstance(data, dict):
            raise InvalidPayloadError(f"Update payload for {self.collection!r} must be an object")

        single = not isinstance(key, list)
        keys = [key] if single else list(key)

        with self._tracer.start_as_current_span("itemcore.items.update") as span:
            span.set_attribute("itemcore.collection", self.collection)
            span.set_attribute("itemcore.items.count", len(keys))

            async with transaction(self.conn) as trx:
                primary_key, columns = await self._columns(trx)
                payload = copy.deepcopy(data)

                if self.restricted:
                    authorization = self._authorization_service(trx)
                    await authorization.check_access("update", self.collection, keys)
                    payload = await authorization.process_values(
                        "update", self.collection, payload
                    )

                payload_service = self._payload_service(trx)
                with_m2o = await payload_service.process_m2o(payload)
                prepared = await payload_service.process_values("update", with_m2o)
                stripped = {k: v for k, v in prepared.items() if k in columns}

                if stripped and keys:
                    assignments = ", ".join(
                        f"{quote_ident(c)} = ${i}" for i, c in enumerate(stripped, start=1)
                    )
                    await trx.execute(
                        f"UPDATE {quote_ident(self.collection)} SET {assignments} "
                        f"WHERE {quote_ident(primary_key)} IN "
                        f"({_placeholders(len(stripped) + 1, len(keys))})",
                        *stripped.values(),
                        *keys,
                    )

                await record_activity(
                    trx,
                    action=Action.UPDATE,
                    accountability=self.accountability,
                    collection=self.collection,
                    keys=keys,
                )

                for item_key in keys:
                    await payload_service.process_o2m(with_m2o, item_key)

        return key if single else keys

    async def _update_batch(self, data: list[Item]) -> list[PrimaryKey]:
        primary_key = await SchemaInspector(self.conn).primary(self.collection)
        for index, payload in enumerate(data):
            if not isinstance(payload, dict) or payload.get(primary_key) is None:
                raise InvalidPayloadError(
                    f"Item {index} of the batch update for {self.collection!r} "
                    f"is missing its primary key {primary_key!r}"
                )

        with self._tracer.start_as_current_span("itemcore.items.update_batch") as span:
            span.set_attribute("itemcore.collection", self.collection)
            span.set_attribute("itemcore.items.count", len(data))

            keys: list[PrimaryKey] = []
            async with transaction(self.conn) as trx:
                child = self._child(trx)
                for payload in data:
                    changes = {k: v for k, v in payload.items() if k != primary_key}
                    keys.append(await child.update(changes, payload[primary_key]))
        return keys

    # ------------------------------------------------------------------
    # delete
    # ------------------------------------------------------------------

    async def delete(self, key: PrimaryKey | list[PrimaryKey]) -> PrimaryKey | list[PrimaryKey]:
        """Delete by key; returns what it was given."""
        keys = key if isinstance(key, list) else [key]

        with self._tracer.start_as_current_span("itemcore.items.delete") as span:
            span.set_attribute("itemcore.collection", self.collection)
            span.set_attribute("itemcore.items.count", len(keys))

            async with transaction(self.conn) as trx:
                primary_key = await SchemaInspector(trx).primary(self.collection)
                if self.restricted:
                    await self._authorization_service(trx).check_access(
                        "delete", self.collection, keys
                    )
                if keys:
                    await trx.execute(
                        f"DELETE FROM {quote_ident(self.collection)} "
                        f"WHERE {quote_ident(primary_key)} IN ({_placeholders(1, len(keys))})",
                        *keys,
                    )
                await record_activity(
                    trx,
                    action=Action.DELETE,
                    accountability=self.accountability,
                    collection=self.collection,
                    keys=keys,
                )

        logger.info("Deleted %d item(s) from %s", len(keys), self.collection)
        return key

    # ------------------------------------------------------------------
    # singletons
    # ------------------------------------------------------------------

    async def read_singleton(self, query: Query | None = None) -> Item:
        """Read the only item of a singleton collection.

        When the collection is still empty, an item built from the column
        defaults is returned instead.
        """
        query = (query or Query()).model_copy(update={"limit": 1})
        records = await self.read_by_query(query)
        if records:
            return records[0]

        columns = await SchemaInspector(self.conn).column_info(self.collection)
        defaults: dict[str, Any] = {c.name: get_default_value(c) for c in columns}
        return defaults

    async def upsert_singleton(self, data: Item) -> PrimaryKey:
        """Update the singleton row if one exists, otherwise create it."""
        async with transaction(self.conn) as trx:
            primary_key = await SchemaInspector(trx).primary(self.collection)
            record = await trx.fetchrow(
                f"SELECT {quote_ident(primary_key)} FROM {quote_ident(self.collection)} LIMIT 1"
            )
            service = self._child(trx)
            if record is not None:
                return await service.update(data, record[primary_key])
            return await service.create(data)

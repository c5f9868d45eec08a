"""Value transforms and nested relational writes.

Field behaviour comes from ``itemcore_fields.special`` (comma separated when
a field carries several), relations from ``itemcore_relations``.  Both are
read on every call.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from itemcore.db import executor_dialect
from itemcore.exceptions import InvalidPayloadError

if TYPE_CHECKING:
    from itemcore.db import Database, Executor
    from itemcore.types import Accountability, Item, PrimaryKey

logger = logging.getLogger(__name__)

FIELDS_TABLE = "itemcore_fields"
RELATIONS_TABLE = "itemcore_relations"

CONCEALED = "**********"

PayloadAction = Literal["create", "read", "update"]

_TRUE_VALUES = {True, 1, "1", "true", "True", "TRUE", "t", "yes", "on"}


def _to_bool(value: Any) -> bool | None:
    if value is None:
        return None
    return isinstance(value, (bool, int, str)) and value in _TRUE_VALUES


def _now() -> datetime:
    return datetime.now(UTC)


class PayloadService:
    """Applies field specials and resolves nested M2O / O2M payloads."""

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

    async def _specials(self) -> dict[str, list[str]]:
        rows = await self.conn.fetch(
            f"SELECT field, special FROM {FIELDS_TABLE} "
            "WHERE collection = $1 AND special IS NOT NULL",
            self.collection,
        )
        return {
            row["field"]: [s.strip() for s in row["special"].split(",") if s.strip()]
            for row in rows
        }

    async def process_values(
        self, action: PayloadAction, payload: Item | list[Item]
    ) -> Item | list[Item]:
        """Transform values between API form and storage form.

        ``create`` and ``update`` go towards storage, ``read`` comes back
        from it.  Returns the same shape it was given; input dicts are not
        mutated.
        """
        single = not isinstance(payload, list)
        items = [payload] if single else payload
        specials = await self._specials()
        processed = [self._process_item(action, dict(item), specials) for item in items]
        return processed[0] if single else processed

    def _process_item(self, action: PayloadAction, item: Item, specials: dict) -> Item:
        user = self.accountability.user if self.accountability else None
        for field, kinds in specials.items():
            for special in kinds:
                if special == "uuid":
                    if action == "create" and item.get(field) is None:
                        item[field] = str(uuid.uuid4())
                elif special == "user-created":
                    if action == "create":
                        item[field] = user
                elif special == "user-updated":
                    if action == "update":
                        item[field] = user
                elif special == "date-created":
                    if action == "create":
                        item[field] = _now()
                elif special == "date-updated":
                    if action == "update":
                        item[field] = _now()
                elif field not in item:
                    continue
                elif special == "json":
                    item[field] = self._json(action, item[field])
                elif special == "boolean":
                    item[field] = _to_bool(item[field])
                elif special == "csv":
                    item[field] = self._csv(action, item[field])
                elif special == "conceal":
                    if action == "read":
                        if item[field] is not None:
                            item[field] = CONCEALED
                    elif item[field] == CONCEALED:
                        del item[field]
                else:
                    logger.debug(
                        "Ignoring unknown special %r on %s.%s", special, self.collection, field
                    )
        return item

    @staticmethod
    def _json(action: PayloadAction, value: Any) -> Any:
        if action == "read":
            if isinstance(value, str):
                try:
                    return json.loads(value)
                except ValueError:
                    return value
            return value
        if value is None or isinstance(value, str):
            return value
        return json.dumps(value)

    @staticmethod
    def _csv(action: PayloadAction, value: Any) -> Any:
        if action == "read":
            if isinstance(value, str):
                return [part for part in value.split(",") if part]
            return value
        if isinstance(value, (list, tuple)):
            return ",".join(str(part) for part in value)
        return value

    # -- relations -------------------------------------------------------------

    def _items(self, collection: str) -> Any:
        # Imported here; ItemsService builds PayloadService in turn.
        from itemcore.services.items import ItemsService

        return ItemsService(
            collection,
            conn=self.conn,
            accountability=self.accountability,
            dialect=self.dialect,
        )

    async def process_m2o(self, payload: Item) -> Item:
        """Write nested many-to-one objects first and replace them by their key."""
        relations = await self.conn.fetch(
            f"SELECT many_field, one_collection, one_primary FROM {RELATIONS_TABLE} "
            "WHERE many_collection = $1 AND one_collection IS NOT NULL",
            self.collection,
        )
        payload = dict(payload)
        for relation in relations:
            field = relation["many_field"]
            related = payload.get(field)
            if not isinstance(related, dict):
                continue
            service = self._items(relation["one_collection"])
            related_key = related.get(relation["one_primary"])
            if related_key is None:
                payload[field] = await service.create(related)
            else:
                changes = {k: v for k, v in related.items() if k != relation["one_primary"]}
                if changes:
                    await service.update(changes, related_key)
                payload[field] = related_key
        return payload

    async def process_o2m(self, payload: Item, parent_key: PrimaryKey) -> None:
        """Write one-to-many children once the parent's key is known.

        Objects without a key are created, objects with a key are updated,
        bare keys are re-parented.  Every child is pointed at *parent_key*.
        """
        relations = await self.conn.fetch(
            f"SELECT one_field, many_collection, many_field, many_primary FROM {RELATIONS_TABLE} "
            "WHERE one_collection = $1 AND one_field IS NOT NULL",
            self.collection,
        )
        for relation in relations:
            children = payload.get(relation["one_field"])
            if children is None:
                continue
            if not isinstance(children, list):
                raise InvalidPayloadError(
                    f"{self.collection}.{relation['one_field']} expects a list of related items"
                )
            service = self._items(relation["many_collection"])
            parent_field = relation["many_field"]
            child_pk = relation["many_primary"]
            for child in children:
                if not isinstance(child, dict):
                    await service.update({parent_field: parent_key}, child)
                elif child.get(child_pk) is None:
                    await service.create({**child, parent_field: parent_key})
                else:
                    changes = {k: v for k, v in child.items() if k != child_pk}
                    await service.update({**changes, parent_field: parent_key}, child[child_pk])

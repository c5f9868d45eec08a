"""ItemsService against a real PostgreSQL from testcontainers.

Covers what mocks cannot: generated SQL actually running, jsonpath
extraction, permission rows read back from the migrated tables, and
rollback of multi-row writes.
"""

from __future__ import annotations

import json
import shutil

import asyncpg
import pytest

from itemcore import Accountability, ForbiddenError, ItemsService, Query

docker_available = shutil.which("docker") is not None
pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not docker_available, reason="Docker not available"),
]

_DOCUMENT = {"a": [{"b": 1}, {"b": 2}]}


async def _create_articles(db) -> None:
    await db.execute(
        """
        CREATE TABLE articles (
            id SERIAL PRIMARY KEY,
            title TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'draft',
            data JSONB
        )
        """
    )


async def _grant(db, role, action, *, fields="*", permissions=None) -> None:
    await db.execute(
        "INSERT INTO itemcore_permissions (role, collection, action, fields, permissions) "
        "VALUES ($1, 'articles', $2, $3, $4::jsonb)",
        role,
        action,
        fields,
        json.dumps(permissions) if permissions is not None else None,
    )


async def test_crud_roundtrip(provisioned_database) -> None:
    async with provisioned_database() as db:
        await _create_articles(db)
        service = ItemsService("articles", conn=db)

        key = await service.create({"title": "hello", "computed": "dropped"})
        assert await service.read_by_key(key, Query(fields=["id", "title", "status"])) == {
            "id": key,
            "title": "hello",
            "status": "draft",
        }

        assert await service.update({"status": "published"}, key) == key
        item = await service.read_by_key(key, Query(fields=["status"]))
        assert item == {"status": "published"}

        assert await service.delete(key) == key
        assert await service.read_by_key(key) is None


async def test_json_paths(provisioned_database) -> None:
    async with provisioned_database() as db:
        await _create_articles(db)
        service = ItemsService("articles", conn=db)
        key = await service.create({"title": "doc", "data": json.dumps(_DOCUMENT)})

        query = Query(
            fields=["id", "bs", "first"],
            alias={"bs": "json(data, $.a[*].b)", "first": "json(data, $.a[0].b)"},
        )
        assert await service.read_by_key(key, query) == {"id": key, "bs": [1, 2], "first": 1}

        filtered = Query(
            fields=["bs"],
            alias={"bs": "json(data, $.a[*].b)"},
            deep={"bs": {"filter": {"b": {"_gt": 1}}}},
        )
        assert await service.read_by_key(key, filtered) == {"bs": [2]}

        nothing = filtered.model_copy(update={"deep": {"bs": {"filter": {"b": {"_gt": 5}}}}})
        assert await service.read_by_key(key, nothing) == {"bs": []}


async def test_json_filter_compares_numbers(provisioned_database) -> None:
    async with provisioned_database() as db:
        await _create_articles(db)
        service = ItemsService("articles", conn=db)
        nine, ten, text = await service.create(
            [
                {"title": "nine", "data": json.dumps({"n": 9})},
                {"title": "ten", "data": json.dumps({"n": 10})},
                {"title": "text", "data": json.dumps({"n": "11"})},
            ]
        )

        async def ids(filter_: dict) -> list[int]:
            items = await service.read_by_query(Query(fields=["id"], filter=filter_, sort=["id"]))
            return [item["id"] for item in items]

        assert await ids({"json(data, $.n)": {"_gt": 9}}) == [ten]
        assert await ids({"json(data, $.n)": {"_lte": 10}}) == [nine, ten]
        assert await ids({"json(data, $.n)": {"_between": [9, 10]}}) == [nine, ten]
        assert await ids({"json(data, $.n)": 10}) == [ten]
        assert await ids({"json(data, $.n)": {"_eq": "11"}}) == [text]


async def test_reading_one_key_matches_the_batch_read(provisioned_database) -> None:
    async with provisioned_database() as db:
        await _create_articles(db)
        service = ItemsService("articles", conn=db)
        first, second = await service.create(
            [
                {"title": "a", "data": json.dumps(_DOCUMENT)},
                {"title": "b", "status": "published"},
            ]
        )

        batch = await service.read_by_key([first, second])
        single = await service.read_by_key(first)
        assert single == next(item for item in batch if item["id"] == first)
        assert single == await service.read_by_key(first)


async def test_failed_batch_create_writes_nothing(provisioned_database) -> None:
    async with provisioned_database() as db:
        await _create_articles(db)
        service = ItemsService("articles", conn=db)

        with pytest.raises(asyncpg.exceptions.NotNullViolationError):
            await service.create([{"title": "ok"}, {"title": None}])
        assert await db.fetchval("SELECT COUNT(*) FROM articles") == 0


async def test_failed_batch_update_rolls_back(provisioned_database) -> None:
    async with provisioned_database() as db:
        await _create_articles(db)
        service = ItemsService("articles", conn=db)
        first, second = await service.create([{"title": "a"}, {"title": "b"}])

        with pytest.raises(asyncpg.exceptions.NotNullViolationError):
            await service.update(
                [{"id": first, "title": "changed"}, {"id": second, "title": None}]
            )
        titles = await db.fetch("SELECT title FROM articles ORDER BY id")
        assert [r["title"] for r in titles] == ["a", "b"]


async def test_permissions_narrow_reads(provisioned_database) -> None:
    async with provisioned_database() as db:
        await _create_articles(db)
        system = ItemsService("articles", conn=db)
        await system.create(
            [{"title": "public", "status": "published"}, {"title": "hidden", "status": "draft"}]
        )
        await _grant(
            db, "reader", "read", fields="id,title", permissions={"status": {"_eq": "published"}}
        )

        reader = ItemsService("articles", conn=db, accountability=Accountability(role="reader"))
        items = await reader.read_by_query(Query())
        assert [item["title"] for item in items] == ["public"]
        assert set(items[0]) == {"id", "title"}

        with pytest.raises(ForbiddenError):
            await reader.read_by_query(Query(fields=["status"]))
        with pytest.raises(ForbiddenError):
            await reader.create({"title": "nope"})


async def test_update_outside_row_filter_is_forbidden(provisioned_database) -> None:
    async with provisioned_database() as db:
        await _create_articles(db)
        key = await ItemsService("articles", conn=db).create({"title": "draft"})
        await _grant(db, "editor", "update", permissions={"status": {"_eq": "published"}})

        editor = ItemsService("articles", conn=db, accountability=Accountability(role="editor"))
        with pytest.raises(ForbiddenError):
            await editor.update({"title": "changed"}, key)
        assert await db.fetchval("SELECT title FROM articles WHERE id = $1", key) == "draft"


async def test_activity_rows_are_written(provisioned_database) -> None:
    async with provisioned_database() as db:
        await _create_articles(db)
        admin = Accountability(user="root", admin=True, ip="127.0.0.1")
        service = ItemsService("articles", conn=db, accountability=admin)

        keys = await service.create([{"title": "a"}, {"title": "b"}])
        await service.delete(keys[0])

        rows = await db.fetch(
            "SELECT action, action_by, ip, item FROM itemcore_activity ORDER BY id"
        )
        assert [tuple(r) for r in rows] == [
            ("create", "root", "127.0.0.1", str(keys[0])),
            ("create", "root", "127.0.0.1", str(keys[1])),
            ("delete", "root", "127.0.0.1", str(keys[0])),
        ]


async def test_singleton(provisioned_database) -> None:
    async with provisioned_database() as db:
        await _create_articles(db)
        service = ItemsService("articles", conn=db)

        assert await service.read_singleton() == {
            "id": None,
            "title": None,
            "status": "draft",
            "data": None,
        }
        key = await service.upsert_singleton({"title": "settings"})
        assert await service.upsert_singleton({"title": "updated"}) == key
        assert await db.fetchval("SELECT COUNT(*) FROM articles") == 1
        assert (await service.read_singleton(Query(fields=["title"]))) == {"title": "updated"}

"""Tests for the SQLite document store."""

import pytest

from bhasha.core.errors import NotFoundError
from bhasha.persistence.database import Database


@pytest.mark.asyncio
async def test_database_initialization(temp_dir):
    """Test database initialization."""
    db_path = temp_dir / "test.db"
    db = Database(db_path)

    await db.initialize()

    assert db_path.exists()


@pytest.mark.asyncio
async def test_insert_and_get(store):
    doc_id = await store.insert("things", {"name": "a", "user_id": "u1"})

    doc = await store.get(doc_id)

    assert doc["name"] == "a"
    assert doc["id"] == doc_id
    assert doc["created_at"] is not None


@pytest.mark.asyncio
async def test_get_checks_collection(store):
    doc_id = await store.insert("things", {"name": "a"})

    assert await store.get(doc_id, "things") is not None
    assert await store.get(doc_id, "other") is None


@pytest.mark.asyncio
async def test_reserved_keys_not_stored(store):
    doc_id = await store.insert("things", {"id": "forged", "name": "a"})

    doc = await store.get(doc_id)

    assert doc["id"] == doc_id


@pytest.mark.asyncio
async def test_patch_merges(store):
    doc_id = await store.insert("things", {"name": "a", "status": "new"})

    data = await store.patch(doc_id, {"status": "done", "extra": 1})

    assert data == {"name": "a", "status": "done", "extra": 1}
    assert len(await store.query("things", status="done")) == 1
    assert await store.query("things", status="new") == []


@pytest.mark.asyncio
async def test_patch_missing(store):
    await store.db.initialize()

    with pytest.raises(NotFoundError):
        await store.patch("missing", {"a": 1})


@pytest.mark.asyncio
async def test_delete(store):
    doc_id = await store.insert("things", {"name": "a"})

    assert await store.delete(doc_id) is True
    assert await store.delete(doc_id) is False
    assert await store.get(doc_id) is None


@pytest.mark.asyncio
async def test_query_filters_and_order(store):
    for i in range(5):
        await store.insert("things", {"n": i, "language": "hindi" if i % 2 else "tamil", "kind": "x" if i < 3 else "y"})

    hindi = await store.query("things", language="hindi")
    newest = await store.query("things", newest_first=True, limit=2)
    mixed = await store.query("things", language="tamil", kind="x")

    assert [d["n"] for d in hindi] == [1, 3]
    assert [d["n"] for d in newest] == [4, 3]
    assert [d["n"] for d in mixed] == [0, 2]


@pytest.mark.asyncio
async def test_query_null_indexed_field(store):
    await store.insert("things", {"n": 1, "status": None})
    await store.insert("things", {"n": 2, "status": "x"})

    assert [d["n"] for d in await store.query("things", status=None)] == [1]


@pytest.mark.asyncio
async def test_transaction_commits(store):
    async with store.transaction() as txn:
        first = await txn.insert("things", {"n": 1})
        await txn.patch(first, {"n": 2})

    assert (await store.get(first))["n"] == 2


@pytest.mark.asyncio
async def test_transaction_rolls_back(store):
    with pytest.raises(RuntimeError):
        async with store.transaction() as txn:
            await txn.insert("things", {"n": 1})
            raise RuntimeError("abort")

    assert await store.query("things") == []

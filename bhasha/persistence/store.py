"""Generic document store on top of the SQLite database.

Records are JSON documents grouped by collection. A handful of fields
(``user_id``, ``language``, ``status``, ``job_id``) are copied into indexed
columns so equality lookups on them don't scan the whole collection.
Every call is durable on return; ``transaction()`` groups several calls
under one write lock.
"""

import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional
import aiosqlite
import structlog

from bhasha.core.errors import NotFoundError
from bhasha.persistence.database import Database, INDEXED_FIELDS

log = structlog.get_logger()

_RESERVED_KEYS = ("id", "created_at", "updated_at")


def _index_values(record: dict[str, Any]) -> list[Optional[str]]:
    values = []
    for column in INDEXED_FIELDS:
        value = record.get(column)
        values.append(None if value is None else str(value))
    return values


def _row_to_document(row) -> dict[str, Any]:
    doc_id, data, created_at, updated_at = row
    document = json.loads(data)
    document["id"] = doc_id
    document["created_at"] = created_at
    document["updated_at"] = updated_at
    return document


class _Operations:
    """Store operations bound to a single open connection."""

    def __init__(self, conn: aiosqlite.Connection):
        self.conn = conn

    async def insert(self, collection: str, record: dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        now = datetime.now().isoformat()
        data = {k: v for k, v in record.items() if k not in _RESERVED_KEYS}
        await self.conn.execute(
            f"""
            INSERT INTO documents
            (id, collection, {", ".join(INDEXED_FIELDS)}, data, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (doc_id, collection, *_index_values(data), json.dumps(data), now, now),
        )
        return doc_id

    async def get(self, doc_id: str, collection: Optional[str] = None) -> Optional[dict[str, Any]]:
        query = "SELECT id, data, created_at, updated_at FROM documents WHERE id = ?"
        params: list[Any] = [doc_id]
        if collection is not None:
            query += " AND collection = ?"
            params.append(collection)

        async with self.conn.execute(query, params) as cursor:
            row = await cursor.fetchone()
        return _row_to_document(row) if row else None

    async def patch(self, doc_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        async with self.conn.execute(
            "SELECT data FROM documents WHERE id = ?", (doc_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            raise NotFoundError("Document", doc_id)

        data = json.loads(row[0])
        data.update({k: v for k, v in updates.items() if k not in _RESERVED_KEYS})
        await self.conn.execute(
            f"""
            UPDATE documents
            SET {", ".join(f"{c} = ?" for c in INDEXED_FIELDS)}, data = ?, updated_at = ?
            WHERE id = ?
            """,
            (*_index_values(data), json.dumps(data), datetime.now().isoformat(), doc_id),
        )
        return data

    async def delete(self, doc_id: str) -> bool:
        cursor = await self.conn.execute("DELETE FROM documents WHERE id = ?", (doc_id,))
        return cursor.rowcount > 0

    async def query(
        self,
        collection: str,
        limit: Optional[int] = None,
        newest_first: bool = False,
        **filters: Any,
    ) -> list[dict[str, Any]]:
        sql = "SELECT id, data, created_at, updated_at FROM documents WHERE collection = ?"
        params: list[Any] = [collection]
        remaining = {}

        for key, value in filters.items():
            if key in INDEXED_FIELDS:
                if value is None:
                    sql += f" AND {key} IS NULL"
                else:
                    sql += f" AND {key} = ?"
                    params.append(str(value))
            else:
                remaining[key] = value

        sql += " ORDER BY seq DESC" if newest_first else " ORDER BY seq"

        documents = []
        async with self.conn.execute(sql, params) as cursor:
            async for row in cursor:
                document = _row_to_document(row)
                if all(document.get(k) == v for k, v in remaining.items()):
                    documents.append(document)
                    if limit is not None and len(documents) >= limit:
                        break
        return documents


class DocumentStore:
    """Transactional document store with secondary indexes."""

    def __init__(self, database: Optional[Database] = None):
        """Initialize the store.

        Args:
            database: Database instance (uses default if not provided)
        """
        self.db = database or Database()

    async def insert(self, collection: str, record: dict[str, Any]) -> str:
        """Insert a record and return its new id."""
        await self.db.initialize()
        async with self.db.get_connection() as conn:
            doc_id = await _Operations(conn).insert(collection, record)
            await conn.commit()
        log.debug("document_inserted", collection=collection, doc_id=doc_id)
        return doc_id

    async def get(self, doc_id: str, collection: Optional[str] = None) -> Optional[dict[str, Any]]:
        """Fetch a record by id, optionally checking its collection."""
        await self.db.initialize()
        async with self.db.get_connection() as conn:
            return await _Operations(conn).get(doc_id, collection)

    async def patch(self, doc_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        """Merge ``updates`` into a record; raises NotFoundError if missing."""
        await self.db.initialize()
        async with self.db.get_connection() as conn:
            data = await _Operations(conn).patch(doc_id, updates)
            await conn.commit()
        return data

    async def delete(self, doc_id: str) -> bool:
        """Delete a record. Returns False if it did not exist."""
        await self.db.initialize()
        async with self.db.get_connection() as conn:
            deleted = await _Operations(conn).delete(doc_id)
            await conn.commit()
        return deleted

    async def query(
        self,
        collection: str,
        limit: Optional[int] = None,
        newest_first: bool = False,
        **filters: Any,
    ) -> list[dict[str, Any]]:
        """List records of a collection matching equality filters.

        Results come back in creation order unless ``newest_first``.
        """
        await self.db.initialize()
        async with self.db.get_connection() as conn:
            return await _Operations(conn).query(
                collection, limit=limit, newest_first=newest_first, **filters
            )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_Operations]:
        """Run several operations atomically under an immediate write lock.

        Example:
            async with store.transaction() as txn:
                existing = await txn.query("content", language="hindi")
                await txn.insert("content", record)
        """
        await self.db.initialize()
        async with self.db.get_connection() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield _Operations(conn)
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

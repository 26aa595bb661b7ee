"""SQLite database setup for Bhasha."""

import aiosqlite
from pathlib import Path
from typing import Optional
import structlog

log = structlog.get_logger()

# Version 1: documents table with indexed user/language/status/job columns
SCHEMA_VERSION = 1

# Columns lifted out of the JSON payload so lookups can use an index
INDEXED_FIELDS = ("user_id", "language", "status", "job_id")


class Database:
    """Manages the SQLite database file and its schema."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize database manager.

        Args:
            db_path: Path to the database file. Defaults to ~/.bhasha/bhasha.db
        """
        if db_path is None:
            db_path = Path.home() / ".bhasha" / "bhasha.db"

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False

    async def _get_schema_version(self, db: aiosqlite.Connection) -> int:
        async with db.execute("PRAGMA user_version") as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def initialize(self):
        """Create the schema if it doesn't exist."""
        if self._initialized:
            return

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT UNIQUE NOT NULL,
                    collection TEXT NOT NULL,
                    user_id TEXT,
                    language TEXT,
                    status TEXT,
                    job_id TEXT,
                    data TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """
            )

            for column in INDEXED_FIELDS:
                await db.execute(
                    f"""
                    CREATE INDEX IF NOT EXISTS idx_documents_{column}
                    ON documents(collection, {column})
                """
                )

            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_documents_collection
                ON documents(collection, seq)
            """
            )

            current = await self._get_schema_version(db)
            if current < SCHEMA_VERSION:
                await db.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

            await db.commit()

        self._initialized = True
        log.info("database_initialized", path=str(self.db_path))

    def get_connection(self):
        """Get an async database connection context manager."""
        return aiosqlite.connect(self.db_path, timeout=30.0)

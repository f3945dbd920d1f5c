"""SQLite storage backend for a sync node."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import aiosqlite

from racelog_sync.storage.base import SyncStorage
from racelog_sync.storage.sqlite_conflicts import SQLiteConflictMixin
from racelog_sync.storage.sqlite_fingerprints import SQLiteFingerprintMixin
from racelog_sync.storage.sqlite_nodes import SQLiteNodeMixin
from racelog_sync.storage.sqlite_queue import SQLiteQueueMixin
from racelog_sync.storage.sqlite_records import SQLiteRecordMixin
from racelog_sync.storage.sqlite_schema import SCHEMA, SCHEMA_VERSION, run_migrations

logger = logging.getLogger(__name__)


class SQLiteStorage(
    SQLiteRecordMixin,
    SQLiteFingerprintMixin,
    SQLiteQueueMixin,
    SQLiteConflictMixin,
    SQLiteNodeMixin,
    SyncStorage,
):
    """SQLite-based storage for one edge or hub node.

    A single writer connection in WAL mode. Every mutating call commits
    before returning, so a crash never loses an acknowledged write.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path).resolve()
        self._conn: aiosqlite.Connection | None = None

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def initialize(self) -> None:
        """Initialize database connection and schema.

        Existing databases run pending migrations before the full schema
        is applied so that indexes on new columns can be created safely.
        """
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row

        await self._conn.execute("PRAGMA foreign_keys = ON")
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA synchronous=NORMAL")

        # Ensure version table exists so we can read the current version
        await self._conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)"
        )
        await self._conn.commit()

        async with self._conn.execute("SELECT version FROM schema_version") as cursor:
            row = await cursor.fetchone()

        if row is not None and row["version"] < SCHEMA_VERSION:
            await run_migrations(self._conn, row["version"])

        await self._conn.executescript(SCHEMA)

        # Stamp version for brand-new databases
        async with self._conn.execute("SELECT version FROM schema_version") as cursor:
            row = await cursor.fetchone()
            if row is None:
                await self._conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
                )
                await self._conn.commit()

        logger.debug("Opened node database %s", self._db_path)

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _ensure_conn(self) -> aiosqlite.Connection:
        """Ensure writer connection is available."""
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    def _ensure_read_conn(self) -> aiosqlite.Connection:
        return self._ensure_conn()

    # ========== Statistics ==========

    async def get_stats(self) -> dict[str, Any]:
        """Aggregate counts for status displays."""
        return {
            "records": await self.count_records(),
            "queue": await self.get_queue_stats(),
            "conflicts": await self.count_conflicts(),
            "nodes": len(await self.list_nodes()),
            "db_size_bytes": self._db_path.stat().st_size if self._db_path.exists() else 0,
        }

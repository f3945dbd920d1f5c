"""SQLite schema definition for racelog-sync node storage."""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 2

# ── Migrations ──────────────────────────────────────────────────────
# Each entry maps (from_version -> to_version) with a list of SQL statements.
# Migrations run sequentially in initialize() when db version < SCHEMA_VERSION.

MIGRATIONS: dict[tuple[int, int], list[str]] = {
    (1, 2): [
        "ALTER TABLE sync_queue ADD COLUMN conflict_id TEXT",
        "ALTER TABLE nodes ADD COLUMN last_cycle_at TEXT",
    ],
}


async def run_migrations(conn: aiosqlite.Connection, current_version: int) -> int:
    """Apply all pending migrations from current_version to SCHEMA_VERSION.

    Returns the final schema version after all migrations.
    """
    version = current_version

    while version < SCHEMA_VERSION:
        next_version = version + 1
        statements = MIGRATIONS.get((version, next_version), [])

        for sql in statements:
            try:
                await conn.execute(sql)
            except sqlite3.OperationalError as e:
                # Column/index may already exist (partial migration or manual fix).
                message = str(e).lower()
                if "duplicate column" in message or "already exists" in message:
                    logger.debug("Migration already applied: %s", e)
                else:
                    logger.warning("Migration statement failed: %s - %s", sql[:80], e)

        version = next_version

    await conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
    await conn.commit()

    return version


SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Syncable records (local_id is node-local and never leaves the node)
CREATE TABLE IF NOT EXISTS records (
    local_id INTEGER PRIMARY KEY AUTOINCREMENT,
    global_id TEXT NOT NULL UNIQUE,
    kind TEXT NOT NULL,
    record_class TEXT NOT NULL,
    origin_node TEXT NOT NULL,
    revision INTEGER NOT NULL DEFAULT 1,
    payload TEXT NOT NULL DEFAULT '{}',  -- JSON
    parent_id TEXT,
    state TEXT NOT NULL DEFAULT 'active',  -- active | merged | held
    merged_into TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_records_kind ON records(kind, state);
CREATE INDEX IF NOT EXISTS idx_records_parent ON records(parent_id);
CREATE INDEX IF NOT EXISTS idx_records_merged ON records(merged_into);

-- Merged record id -> surviving record id
CREATE TABLE IF NOT EXISTS redirects (
    from_id TEXT PRIMARY KEY,
    to_id TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_redirects_to ON redirects(to_id);

-- Fingerprint index for duplicate lookup across global ids
CREATE TABLE IF NOT EXISTS fingerprints (
    global_id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    parent_id TEXT NOT NULL,
    key TEXT NOT NULL,
    location TEXT NOT NULL,
    time_bucket INTEGER NOT NULL,
    observed_at TEXT NOT NULL,
    digest TEXT NOT NULL,
    FOREIGN KEY (global_id) REFERENCES records(global_id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_fingerprints_digest ON fingerprints(digest);

-- Sync queue: one entry per record per target
CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    global_id TEXT NOT NULL,
    target TEXT NOT NULL,
    entry_type TEXT NOT NULL DEFAULT 'upload',  -- upload | resolution
    state TEXT NOT NULL DEFAULT 'pending',
    revision INTEGER NOT NULL DEFAULT 0,
    attempts INTEGER NOT NULL DEFAULT 0,
    next_attempt_at TEXT,
    last_error TEXT,
    conflict_id TEXT,
    payload TEXT DEFAULT '{}',  -- JSON
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_queue_target_state ON sync_queue(target, state, next_attempt_at);
CREATE INDEX IF NOT EXISTS idx_queue_global_id ON sync_queue(global_id, target);
CREATE INDEX IF NOT EXISTS idx_queue_conflict ON sync_queue(conflict_id);

-- Conflict store (never deleted; audit is appended)
CREATE TABLE IF NOT EXISTS conflicts (
    conflict_id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'open',
    data TEXT NOT NULL,  -- JSON
    created_at TEXT NOT NULL,
    resolved_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_conflicts_status ON conflicts(status, created_at);

CREATE TABLE IF NOT EXISTS conflict_members (
    conflict_id TEXT NOT NULL,
    global_id TEXT NOT NULL,
    PRIMARY KEY (conflict_id, global_id),
    FOREIGN KEY (conflict_id) REFERENCES conflicts(conflict_id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_conflict_members_gid ON conflict_members(global_id);

-- Per-record upload outcomes, queryable after a dropped connection
CREATE TABLE IF NOT EXISTS batch_outcomes (
    batch_id TEXT NOT NULL,
    global_id TEXT NOT NULL,
    node_id TEXT NOT NULL,
    outcome TEXT NOT NULL,
    canonical_id TEXT,
    conflict_id TEXT,
    reason TEXT DEFAULT '',
    recorded_at TEXT NOT NULL,
    PRIMARY KEY (batch_id, global_id)
);

-- Known nodes
CREATE TABLE IF NOT EXISTS nodes (
    node_id TEXT PRIMARY KEY,
    node_name TEXT DEFAULT '',
    last_sync_at TEXT,
    last_cycle_at TEXT,
    registered_at TEXT NOT NULL
);

-- Which nodes hold a version of which record
CREATE TABLE IF NOT EXISTS record_holders (
    global_id TEXT NOT NULL,
    node_id TEXT NOT NULL,
    revision INTEGER NOT NULL DEFAULT 0,
    seen_at TEXT NOT NULL,
    PRIMARY KEY (global_id, node_id)
);
CREATE INDEX IF NOT EXISTS idx_holders_node ON record_holders(node_id);
"""

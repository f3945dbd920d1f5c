"""SQLite conflict store operations mixin."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from racelog_sync.core.conflict import (
    ConflictRecord,
    ConflictStatus,
    conflict_from_dict,
    conflict_to_dict,
)
from racelog_sync.utils.timeutils import utcnow

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)


class SQLiteConflictMixin:
    """Mixin persisting conflict records. Rows are never deleted."""

    # ------------------------------------------------------------------
    # Protocol stubs, satisfied by SQLiteStorage at runtime.
    # ------------------------------------------------------------------

    def _ensure_conn(self) -> aiosqlite.Connection:
        raise NotImplementedError

    def _ensure_read_conn(self) -> aiosqlite.Connection:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def save_conflict(self, conflict: ConflictRecord) -> None:
        """Insert or overwrite a conflict and its member index."""
        conn = self._ensure_conn()
        resolved_at = utcnow().isoformat() if conflict.status == ConflictStatus.RESOLVED else None
        await conn.execute(
            """INSERT INTO conflicts (conflict_id, type, status, data, created_at, resolved_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(conflict_id) DO UPDATE SET
                   status = excluded.status, data = excluded.data,
                   resolved_at = COALESCE(conflicts.resolved_at, excluded.resolved_at)""",
            (
                conflict.conflict_id,
                conflict.type.value,
                conflict.status.value,
                json.dumps(conflict_to_dict(conflict)),
                conflict.created_at.isoformat(),
                resolved_at,
            ),
        )
        await conn.executemany(
            "INSERT OR IGNORE INTO conflict_members (conflict_id, global_id) VALUES (?, ?)",
            [(conflict.conflict_id, gid) for gid in conflict.global_ids],
        )
        await conn.commit()

    async def get_conflict(self, conflict_id: str) -> ConflictRecord | None:
        conn = self._ensure_read_conn()
        cursor = await conn.execute(
            "SELECT data FROM conflicts WHERE conflict_id = ?",
            (conflict_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return _decode(row[0])

    async def list_conflicts(
        self,
        status: ConflictStatus | None = None,
        limit: int = 100,
    ) -> list[ConflictRecord]:
        """List conflicts oldest first, optionally filtered by status."""
        safe_limit = min(limit, 1000)
        conn = self._ensure_read_conn()
        if status is None:
            cursor = await conn.execute(
                "SELECT data FROM conflicts ORDER BY created_at ASC LIMIT ?",
                (safe_limit,),
            )
        else:
            cursor = await conn.execute(
                "SELECT data FROM conflicts WHERE status = ? ORDER BY created_at ASC LIMIT ?",
                (status.value, safe_limit),
            )
        rows = await cursor.fetchall()
        return [_decode(r[0]) for r in rows]

    async def find_open_conflict(self, global_id: str) -> ConflictRecord | None:
        """Return the open conflict that involves *global_id*, if any."""
        conn = self._ensure_read_conn()
        cursor = await conn.execute(
            """SELECT c.data FROM conflicts c
               JOIN conflict_members m ON m.conflict_id = c.conflict_id
               WHERE m.global_id = ? AND c.status = ?
               ORDER BY c.created_at ASC LIMIT 1""",
            (global_id, ConflictStatus.OPEN.value),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return _decode(row[0])

    async def count_conflicts(self) -> dict[str, int]:
        conn = self._ensure_read_conn()
        cursor = await conn.execute("SELECT status, COUNT(*) FROM conflicts GROUP BY status")
        rows = await cursor.fetchall()
        counts = {status.value: 0 for status in ConflictStatus}
        for status, count in rows:
            counts[str(status)] = int(count)
        return counts


def _decode(raw: Any) -> ConflictRecord:
    return conflict_from_dict(json.loads(str(raw)))

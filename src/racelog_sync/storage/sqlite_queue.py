"""SQLite sync queue operations mixin."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from racelog_sync.utils.timeutils import utcnow

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)


class QueueState(StrEnum):
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    SYNCED = "synced"
    CONFLICTED = "conflicted"
    FAILED = "failed"


class QueueEntryKind(StrEnum):
    UPLOAD = "upload"  # Edge -> hub record version
    RESOLUTION = "resolution"  # Hub -> edge conflict or merge notice


# Fields that may be changed together with a state transition
_UPDATABLE = frozenset({"attempts", "next_attempt_at", "last_error", "conflict_id", "revision"})


@dataclass(frozen=True)
class QueueEntry:
    """A single sync queue entry."""

    id: int
    global_id: str
    target: str  # Node the entry is destined for
    kind: QueueEntryKind
    state: QueueState
    revision: int  # Record revision snapshot at enqueue time
    attempts: int
    next_attempt_at: datetime | None
    last_error: str | None
    conflict_id: str | None
    created_at: datetime
    updated_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)


class SQLiteQueueMixin:
    """Mixin providing durable queue rows.

    Only raw persistence lives here; transition rules are enforced by
    :class:`racelog_sync.sync.queue.SyncQueue`.
    """

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

    async def insert_queue_entry(
        self,
        global_id: str,
        target: str,
        revision: int,
        kind: QueueEntryKind = QueueEntryKind.UPLOAD,
        payload: dict[str, Any] | None = None,
        conflict_id: str | None = None,
    ) -> QueueEntry:
        """Append a new ``pending`` entry."""
        conn = self._ensure_conn()
        now = utcnow()
        cursor = await conn.execute(
            """INSERT INTO sync_queue
               (global_id, target, entry_type, state, revision, attempts,
                conflict_id, payload, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?)""",
            (
                global_id,
                target,
                kind.value,
                QueueState.PENDING.value,
                revision,
                conflict_id,
                json.dumps(payload or {}),
                now.isoformat(),
                now.isoformat(),
            ),
        )
        await conn.commit()
        return QueueEntry(
            id=cursor.lastrowid or 0,
            global_id=global_id,
            target=target,
            kind=kind,
            state=QueueState.PENDING,
            revision=revision,
            attempts=0,
            next_attempt_at=None,
            last_error=None,
            conflict_id=conflict_id,
            created_at=now,
            updated_at=now,
            payload=dict(payload or {}),
        )

    async def get_queue_entry(self, entry_id: int) -> QueueEntry | None:
        conn = self._ensure_read_conn()
        cursor = await conn.execute("SELECT * FROM sync_queue WHERE id = ?", (entry_id,))
        row = await cursor.fetchone()
        if row is None:
            return None
        col_names = [d[0] for d in (cursor.description or [])]
        return _row_to_queue_entry(dict(zip(col_names, row, strict=False)))

    async def find_queue_entries(
        self,
        global_id: str | None = None,
        target: str | None = None,
        states: tuple[QueueState, ...] | None = None,
        kind: QueueEntryKind | None = None,
        conflict_id: str | None = None,
        limit: int = 1000,
    ) -> list[QueueEntry]:
        """Query entries by any combination of filters, oldest first."""
        safe_limit = min(limit, 10000)
        conn = self._ensure_read_conn()

        clauses: list[str] = []
        params: list[Any] = []
        if global_id is not None:
            clauses.append("global_id = ?")
            params.append(global_id)
        if target is not None:
            clauses.append("target = ?")
            params.append(target)
        if states:
            clauses.append(f"state IN ({','.join('?' for _ in states)})")
            params.extend(s.value for s in states)
        if kind is not None:
            clauses.append("entry_type = ?")
            params.append(kind.value)
        if conflict_id is not None:
            clauses.append("conflict_id = ?")
            params.append(conflict_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(safe_limit)

        cursor = await conn.execute(
            f"SELECT * FROM sync_queue {where} ORDER BY id ASC LIMIT ?",  # noqa: S608
            tuple(params),
        )
        rows = await cursor.fetchall()
        col_names = [d[0] for d in (cursor.description or [])]
        return [_row_to_queue_entry(dict(zip(col_names, r, strict=False))) for r in rows]

    async def list_due_entries(
        self,
        target: str,
        kind: QueueEntryKind,
        now: datetime,
        limit: int = 100,
    ) -> list[QueueEntry]:
        """Pending entries whose backoff has elapsed, oldest first."""
        safe_limit = min(limit, 10000)
        conn = self._ensure_read_conn()
        cursor = await conn.execute(
            """SELECT * FROM sync_queue
               WHERE target = ? AND entry_type = ? AND state = ?
                 AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
               ORDER BY id ASC LIMIT ?""",
            (target, kind.value, QueueState.PENDING.value, now.isoformat(), safe_limit),
        )
        rows = await cursor.fetchall()
        col_names = [d[0] for d in (cursor.description or [])]
        return [_row_to_queue_entry(dict(zip(col_names, r, strict=False))) for r in rows]

    async def update_queue_entry(
        self,
        entry_id: int,
        expected_state: QueueState,
        new_state: QueueState,
        **fields: Any,
    ) -> bool:
        """Compare-and-set the state of an entry, updating extra columns.

        Returns:
            False when the entry is missing or no longer in *expected_state*.
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update queue columns: {sorted(unknown)}")

        assignments = ["state = ?", "updated_at = ?"]
        params: list[Any] = [new_state.value, utcnow().isoformat()]
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            params.append(value.isoformat() if isinstance(value, datetime) else value)
        params.extend([entry_id, expected_state.value])

        conn = self._ensure_conn()
        cursor = await conn.execute(
            f"UPDATE sync_queue SET {', '.join(assignments)} WHERE id = ? AND state = ?",  # noqa: S608
            tuple(params),
        )
        await conn.commit()
        return cursor.rowcount > 0

    async def reset_in_transit(self, target: str | None = None) -> int:
        """Revert every ``in_transit`` entry to ``pending``. Returns count."""
        conn = self._ensure_conn()
        now = utcnow().isoformat()
        if target is None:
            cursor = await conn.execute(
                "UPDATE sync_queue SET state = ?, updated_at = ? WHERE state = ?",
                (QueueState.PENDING.value, now, QueueState.IN_TRANSIT.value),
            )
        else:
            cursor = await conn.execute(
                "UPDATE sync_queue SET state = ?, updated_at = ? WHERE state = ? AND target = ?",
                (QueueState.PENDING.value, now, QueueState.IN_TRANSIT.value, target),
            )
        await conn.commit()
        return cursor.rowcount

    async def prune_queue(self, older_than_days: int = 30) -> int:
        """Delete synced entries older than N days. Returns count pruned."""
        conn = self._ensure_conn()
        cutoff = (utcnow() - timedelta(days=older_than_days)).isoformat()
        cursor = await conn.execute(
            "DELETE FROM sync_queue WHERE state = ? AND updated_at < ?",
            (QueueState.SYNCED.value, cutoff),
        )
        await conn.commit()
        return cursor.rowcount

    async def get_queue_stats(self, target: str | None = None) -> dict[str, int]:
        """Count entries per state."""
        conn = self._ensure_read_conn()
        if target is None:
            cursor = await conn.execute("SELECT state, COUNT(*) FROM sync_queue GROUP BY state")
        else:
            cursor = await conn.execute(
                "SELECT state, COUNT(*) FROM sync_queue WHERE target = ? GROUP BY state",
                (target,),
            )
        rows = await cursor.fetchall()
        stats = {state.value: 0 for state in QueueState}
        for state, count in rows:
            stats[str(state)] = int(count)
        stats["total"] = sum(stats[s.value] for s in QueueState)
        return stats


def _row_to_queue_entry(row: dict[str, Any]) -> QueueEntry:
    """Convert a database row dict to a QueueEntry."""
    return QueueEntry(
        id=int(row["id"]),
        global_id=str(row["global_id"]),
        target=str(row["target"]),
        kind=QueueEntryKind(row["entry_type"]),
        state=QueueState(row["state"]),
        revision=int(row["revision"] or 0),
        attempts=int(row["attempts"] or 0),
        next_attempt_at=(
            datetime.fromisoformat(str(row["next_attempt_at"])) if row["next_attempt_at"] else None
        ),
        last_error=str(row["last_error"]) if row["last_error"] else None,
        conflict_id=str(row["conflict_id"]) if row["conflict_id"] else None,
        created_at=datetime.fromisoformat(str(row["created_at"])),
        updated_at=datetime.fromisoformat(str(row["updated_at"])),
        payload=json.loads(str(row["payload"])) if row["payload"] else {},
    )

"""SQLite record and redirect operations mixin."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import TYPE_CHECKING, Any

from racelog_sync.core.record import (
    KIND_SPECS,
    RecordKind,
    RecordState,
    SyncableRecord,
)
from racelog_sync.utils.timeutils import utcnow

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)

# Guard against accidental redirect cycles
_MAX_REDIRECT_HOPS = 32


class SQLiteRecordMixin:
    """Mixin providing record rows, reference re-pointing and redirects."""

    # ------------------------------------------------------------------
    # Protocol stubs, satisfied by SQLiteStorage at runtime.
    # ------------------------------------------------------------------

    def _ensure_conn(self) -> aiosqlite.Connection:
        raise NotImplementedError

    def _ensure_read_conn(self) -> aiosqlite.Connection:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def add_record(self, record: SyncableRecord) -> SyncableRecord:
        """Insert a record row and return it with its local id.

        Raises:
            ValueError: If a record with the same global id already exists.
        """
        conn = self._ensure_conn()
        try:
            cursor = await conn.execute(
                """INSERT INTO records
                   (global_id, kind, record_class, origin_node, revision, payload,
                    parent_id, state, merged_into, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.global_id,
                    record.kind.value,
                    record.record_class.value,
                    record.origin_node,
                    record.revision,
                    json.dumps(record.payload),
                    record.parent_id,
                    record.state.value,
                    record.merged_into,
                    record.created_at.isoformat(),
                    record.updated_at.isoformat(),
                ),
            )
            await conn.commit()
        except sqlite3.IntegrityError:
            raise ValueError(f"Record {record.global_id} already exists") from None

        local_id = cursor.lastrowid or 0
        return SyncableRecord(
            global_id=record.global_id,
            kind=record.kind,
            origin_node=record.origin_node,
            revision=record.revision,
            payload=record.payload,
            created_at=record.created_at,
            updated_at=record.updated_at,
            local_id=local_id,
            state=record.state,
            merged_into=record.merged_into,
        )

    async def update_record(self, record: SyncableRecord) -> None:
        """Overwrite payload, revision and state of an existing row.

        Raises:
            ValueError: If the record does not exist.
        """
        conn = self._ensure_conn()
        cursor = await conn.execute(
            """UPDATE records SET revision = ?, payload = ?, parent_id = ?,
                      state = ?, merged_into = ?, updated_at = ?
               WHERE global_id = ?""",
            (
                record.revision,
                json.dumps(record.payload),
                record.parent_id,
                record.state.value,
                record.merged_into,
                utcnow().isoformat(),
                record.global_id,
            ),
        )
        await conn.commit()
        if cursor.rowcount == 0:
            raise ValueError(f"Record {record.global_id} does not exist")

    async def set_record_state(
        self,
        global_id: str,
        state: RecordState,
        merged_into: str | None = None,
    ) -> bool:
        """Change the lifecycle state of a row. Returns True if it existed."""
        conn = self._ensure_conn()
        cursor = await conn.execute(
            "UPDATE records SET state = ?, merged_into = ?, updated_at = ? WHERE global_id = ?",
            (state.value, merged_into, utcnow().isoformat(), global_id),
        )
        await conn.commit()
        return cursor.rowcount > 0

    async def get_record(self, global_id: str) -> SyncableRecord | None:
        conn = self._ensure_read_conn()
        cursor = await conn.execute("SELECT * FROM records WHERE global_id = ?", (global_id,))
        row = await cursor.fetchone()
        if row is None:
            return None
        col_names = [d[0] for d in (cursor.description or [])]
        return _row_to_record(dict(zip(col_names, row, strict=False)))

    async def get_records(self, global_ids: list[str]) -> dict[str, SyncableRecord]:
        """Get several records by global id in one query."""
        if not global_ids:
            return {}
        conn = self._ensure_read_conn()
        placeholders = ",".join("?" for _ in global_ids)
        cursor = await conn.execute(
            f"SELECT * FROM records WHERE global_id IN ({placeholders})",  # noqa: S608
            tuple(global_ids),
        )
        rows = await cursor.fetchall()
        col_names = [d[0] for d in (cursor.description or [])]
        records = [_row_to_record(dict(zip(col_names, r, strict=False))) for r in rows]
        return {r.global_id: r for r in records}

    async def list_records(
        self,
        kind: RecordKind | None = None,
        state: RecordState | None = None,
        parent_id: str | None = None,
        limit: int = 1000,
    ) -> list[SyncableRecord]:
        """List records filtered by kind, state and parent, oldest first."""
        safe_limit = min(limit, 10000)
        conn = self._ensure_read_conn()

        clauses: list[str] = []
        params: list[Any] = []
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind.value)
        if state is not None:
            clauses.append("state = ?")
            params.append(state.value)
        if parent_id is not None:
            clauses.append("parent_id = ?")
            params.append(parent_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(safe_limit)

        cursor = await conn.execute(
            f"SELECT * FROM records {where} ORDER BY created_at ASC, global_id ASC LIMIT ?",  # noqa: S608
            tuple(params),
        )
        rows = await cursor.fetchall()
        col_names = [d[0] for d in (cursor.description or [])]
        return [_row_to_record(dict(zip(col_names, r, strict=False))) for r in rows]

    async def count_records(self) -> dict[str, int]:
        """Count rows per state."""
        conn = self._ensure_read_conn()
        cursor = await conn.execute("SELECT state, COUNT(*) FROM records GROUP BY state")
        rows = await cursor.fetchall()
        counts = {state.value: 0 for state in RecordState}
        for state, count in rows:
            counts[str(state)] = int(count)
        return counts

    async def repoint_references(self, loser_id: str, winner_id: str) -> list[str]:
        """Rewrite every reference field pointing at *loser_id* to *winner_id*.

        Revisions are left untouched; a re-pointed reference is a local
        normalization that every node applies identically. Merged rows that
        redirected to the loser are chained on to the winner.

        Returns:
            Global ids of the rows whose payload changed.
        """
        conn = self._ensure_conn()
        cursor = await conn.execute(
            "SELECT global_id, kind, payload FROM records WHERE instr(payload, ?) > 0",
            (loser_id,),
        )
        rows = await cursor.fetchall()

        changed: list[str] = []
        for global_id, kind, payload_raw in rows:
            payload = json.loads(payload_raw) if payload_raw else {}
            spec = KIND_SPECS[RecordKind(kind)]
            touched = False
            for field_name in spec.reference_fields:
                if payload.get(field_name) == loser_id:
                    payload[field_name] = winner_id
                    touched = True
            if not touched:
                continue
            parent_id = payload.get(spec.parent_field) if spec.parent_field else None
            await conn.execute(
                "UPDATE records SET payload = ?, parent_id = ?, updated_at = ? WHERE global_id = ?",
                (json.dumps(payload), parent_id, utcnow().isoformat(), global_id),
            )
            changed.append(str(global_id))

        await conn.execute(
            "UPDATE records SET merged_into = ? WHERE merged_into = ?",
            (winner_id, loser_id),
        )
        await conn.commit()

        if changed:
            logger.debug("Re-pointed %d references from %s to %s", len(changed), loser_id, winner_id)
        return changed

    # ------------------------------------------------------------------
    # Redirects
    # ------------------------------------------------------------------

    async def add_redirect(self, from_id: str, to_id: str) -> None:
        """Record that *from_id* was merged into *to_id*.

        Existing redirects ending at *from_id* are collapsed onto *to_id* so
        lookups stay one hop deep.
        """
        if from_id == to_id:
            return
        conn = self._ensure_conn()
        now = utcnow().isoformat()
        await conn.execute(
            """INSERT INTO redirects (from_id, to_id, created_at) VALUES (?, ?, ?)
               ON CONFLICT(from_id) DO UPDATE SET to_id = excluded.to_id""",
            (from_id, to_id, now),
        )
        await conn.execute("UPDATE redirects SET to_id = ? WHERE to_id = ?", (to_id, from_id))
        await conn.commit()

    async def resolve_redirect(self, global_id: str) -> str:
        """Follow redirects from *global_id* to the surviving record id."""
        conn = self._ensure_read_conn()
        current = global_id
        for _ in range(_MAX_REDIRECT_HOPS):
            cursor = await conn.execute("SELECT to_id FROM redirects WHERE from_id = ?", (current,))
            row = await cursor.fetchone()
            if row is None or row[0] == current:
                return current
            current = str(row[0])
        logger.warning("Redirect chain from %s exceeded %d hops", global_id, _MAX_REDIRECT_HOPS)
        return current

    async def list_redirects(self, target_ids: list[str] | None = None) -> dict[str, str]:
        """Return redirects, optionally only those ending at *target_ids*."""
        conn = self._ensure_read_conn()
        if target_ids is None:
            cursor = await conn.execute("SELECT from_id, to_id FROM redirects ORDER BY from_id")
        elif not target_ids:
            return {}
        else:
            placeholders = ",".join("?" for _ in target_ids)
            cursor = await conn.execute(
                f"SELECT from_id, to_id FROM redirects WHERE to_id IN ({placeholders}) ORDER BY from_id",  # noqa: S608
                tuple(target_ids),
            )
        rows = await cursor.fetchall()
        return {str(r[0]): str(r[1]) for r in rows}


def _row_to_record(row: dict[str, Any]) -> SyncableRecord:
    """Convert a database row dict to a SyncableRecord."""
    return SyncableRecord(
        global_id=str(row["global_id"]),
        kind=RecordKind(row["kind"]),
        origin_node=str(row["origin_node"]),
        revision=int(row["revision"]),
        payload=json.loads(str(row["payload"])) if row["payload"] else {},
        created_at=datetime.fromisoformat(str(row["created_at"])),
        updated_at=datetime.fromisoformat(str(row["updated_at"])),
        local_id=int(row["local_id"]),
        state=RecordState(row["state"]),
        merged_into=str(row["merged_into"]) if row["merged_into"] else None,
    )

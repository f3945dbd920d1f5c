"""SQLite fingerprint index operations mixin."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from racelog_sync.core.fingerprint import Fingerprint
from racelog_sync.core.record import RecordKind

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)


class SQLiteFingerprintMixin:
    """Mixin providing the fingerprint index used for duplicate detection."""

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

    async def index_fingerprint(self, global_id: str, fingerprint: Fingerprint) -> None:
        """Insert or replace the fingerprint row of a record."""
        conn = self._ensure_conn()
        await conn.execute(
            """INSERT INTO fingerprints
               (global_id, kind, parent_id, key, location, time_bucket, observed_at, digest)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(global_id) DO UPDATE SET
                   kind = excluded.kind, parent_id = excluded.parent_id,
                   key = excluded.key, location = excluded.location,
                   time_bucket = excluded.time_bucket,
                   observed_at = excluded.observed_at, digest = excluded.digest""",
            (
                global_id,
                fingerprint.kind.value,
                fingerprint.parent_id,
                fingerprint.key,
                fingerprint.location,
                fingerprint.time_bucket,
                fingerprint.observed_at.isoformat(),
                fingerprint.digest,
            ),
        )
        await conn.commit()

    async def remove_fingerprint(self, global_id: str) -> bool:
        """Drop a record from the index. Returns True if a row was removed."""
        conn = self._ensure_conn()
        cursor = await conn.execute("DELETE FROM fingerprints WHERE global_id = ?", (global_id,))
        await conn.commit()
        return cursor.rowcount > 0

    async def get_fingerprint(self, global_id: str) -> Fingerprint | None:
        conn = self._ensure_read_conn()
        cursor = await conn.execute("SELECT * FROM fingerprints WHERE global_id = ?", (global_id,))
        row = await cursor.fetchone()
        if row is None:
            return None
        col_names = [d[0] for d in (cursor.description or [])]
        return _row_to_fingerprint(dict(zip(col_names, row, strict=False)))

    async def find_fingerprint_candidates(
        self,
        fingerprint: Fingerprint,
    ) -> list[tuple[str, Fingerprint]]:
        """Find indexed records in the same or a neighbouring time bucket.

        Callers still confirm candidates with :meth:`Fingerprint.matches`,
        since a neighbouring bucket may hold an event further than one
        window away.

        Returns:
            ``(global_id, fingerprint)`` pairs ordered by observation time.
        """
        conn = self._ensure_read_conn()
        digests = fingerprint.neighbour_digests()
        cursor = await conn.execute(
            """SELECT * FROM fingerprints WHERE digest IN (?, ?, ?)
               ORDER BY observed_at ASC, global_id ASC""",
            digests,
        )
        rows = await cursor.fetchall()
        col_names = [d[0] for d in (cursor.description or [])]
        results: list[tuple[str, Fingerprint]] = []
        for r in rows:
            data = dict(zip(col_names, r, strict=False))
            results.append((str(data["global_id"]), _row_to_fingerprint(data)))
        return results


def _row_to_fingerprint(row: dict[str, Any]) -> Fingerprint:
    """Convert a database row dict to a Fingerprint."""
    return Fingerprint(
        kind=RecordKind(row["kind"]),
        parent_id=str(row["parent_id"]),
        key=str(row["key"]),
        location=str(row["location"]),
        time_bucket=int(row["time_bucket"]),
        observed_at=datetime.fromisoformat(str(row["observed_at"])),
        digest=str(row["digest"]),
    )

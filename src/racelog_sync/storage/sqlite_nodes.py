"""SQLite node registry, record holder and batch outcome operations mixin."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from racelog_sync.utils.timeutils import utcnow

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeRecord:
    """A node known to the hub."""

    node_id: str
    node_name: str
    last_sync_at: datetime | None
    registered_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_name": self.node_name,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "registered_at": self.registered_at.isoformat(),
        }


class SQLiteNodeMixin:
    """Mixin providing the node registry and per-record holder tracking."""

    # ------------------------------------------------------------------
    # Protocol stubs, satisfied by SQLiteStorage at runtime.
    # ------------------------------------------------------------------

    def _ensure_conn(self) -> aiosqlite.Connection:
        raise NotImplementedError

    def _ensure_read_conn(self) -> aiosqlite.Connection:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def register_node(self, node_id: str, node_name: str = "") -> NodeRecord:
        """Register a node (upsert). An empty name keeps the stored one."""
        conn = self._ensure_conn()
        now = utcnow()

        await conn.execute(
            """INSERT INTO nodes (node_id, node_name, registered_at)
               VALUES (?, ?, ?)
               ON CONFLICT(node_id) DO UPDATE SET
                   node_name = CASE WHEN excluded.node_name = '' THEN nodes.node_name
                                    ELSE excluded.node_name END""",
            (node_id, node_name, now.isoformat()),
        )
        await conn.commit()

        node = await self.get_node(node_id)
        if node is None:
            raise RuntimeError(f"Node {node_id} vanished after registration")
        return node

    async def get_node(self, node_id: str) -> NodeRecord | None:
        conn = self._ensure_read_conn()
        cursor = await conn.execute("SELECT * FROM nodes WHERE node_id = ?", (node_id,))
        row = await cursor.fetchone()
        if row is None:
            return None
        col_names = [d[0] for d in (cursor.description or [])]
        return _row_to_node(dict(zip(col_names, row, strict=False)))

    async def list_nodes(self) -> list[NodeRecord]:
        conn = self._ensure_read_conn()
        cursor = await conn.execute("SELECT * FROM nodes ORDER BY registered_at ASC, node_id ASC")
        rows = await cursor.fetchall()
        col_names = [d[0] for d in (cursor.description or [])]
        return [_row_to_node(dict(zip(col_names, r, strict=False))) for r in rows]

    async def touch_node_sync(self, node_id: str) -> None:
        """Update the last sync timestamp of a node."""
        conn = self._ensure_conn()
        await conn.execute(
            "UPDATE nodes SET last_sync_at = ? WHERE node_id = ?",
            (utcnow().isoformat(), node_id),
        )
        await conn.commit()

    # ------------------------------------------------------------------
    # Record holders
    # ------------------------------------------------------------------

    async def add_holder(self, global_id: str, node_id: str, revision: int) -> None:
        """Record that *node_id* holds *revision* of a record."""
        conn = self._ensure_conn()
        await conn.execute(
            """INSERT INTO record_holders (global_id, node_id, revision, seen_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(global_id, node_id) DO UPDATE SET
                   revision = MAX(record_holders.revision, excluded.revision),
                   seen_at = excluded.seen_at""",
            (global_id, node_id, revision, utcnow().isoformat()),
        )
        await conn.commit()

    async def list_holders(self, global_ids: list[str] | tuple[str, ...]) -> list[str]:
        """Node ids holding any of *global_ids*, sorted."""
        if not global_ids:
            return []
        conn = self._ensure_read_conn()
        placeholders = ",".join("?" for _ in global_ids)
        cursor = await conn.execute(
            f"SELECT DISTINCT node_id FROM record_holders WHERE global_id IN ({placeholders}) ORDER BY node_id",  # noqa: S608
            tuple(global_ids),
        )
        rows = await cursor.fetchall()
        return [str(r[0]) for r in rows]

    # ------------------------------------------------------------------
    # Batch outcomes
    # ------------------------------------------------------------------

    async def save_batch_outcome(self, batch_id: str, node_id: str, outcome: dict[str, Any]) -> None:
        """Persist one record outcome of an upload batch."""
        conn = self._ensure_conn()
        await conn.execute(
            """INSERT INTO batch_outcomes
               (batch_id, global_id, node_id, outcome, canonical_id, conflict_id, reason, recorded_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(batch_id, global_id) DO UPDATE SET
                   outcome = excluded.outcome, canonical_id = excluded.canonical_id,
                   conflict_id = excluded.conflict_id, reason = excluded.reason""",
            (
                batch_id,
                outcome["global_id"],
                node_id,
                outcome["outcome"],
                outcome.get("canonical_id"),
                outcome.get("conflict_id"),
                outcome.get("reason", ""),
                utcnow().isoformat(),
            ),
        )
        await conn.commit()

    async def get_batch_outcomes(self, batch_id: str) -> list[dict[str, Any]]:
        """Outcomes recorded for a batch, in the order they were applied."""
        conn = self._ensure_read_conn()
        cursor = await conn.execute(
            """SELECT global_id, outcome, canonical_id, conflict_id, reason
               FROM batch_outcomes WHERE batch_id = ? ORDER BY rowid ASC""",
            (batch_id,),
        )
        rows = await cursor.fetchall()
        col_names = [d[0] for d in (cursor.description or [])]
        return [dict(zip(col_names, r, strict=False)) for r in rows]


def _row_to_node(row: dict[str, Any]) -> NodeRecord:
    """Convert a database row dict to a NodeRecord."""
    return NodeRecord(
        node_id=str(row["node_id"]),
        node_name=str(row["node_name"] or ""),
        last_sync_at=datetime.fromisoformat(str(row["last_sync_at"])) if row["last_sync_at"] else None,
        registered_at=datetime.fromisoformat(str(row["registered_at"])),
    )

"""Sync queue state machine.

Entries move through::

    pending -> in_transit -> synced
                          -> pending      (transport failure, with backoff)
                          -> conflicted -> synced   (resolution arrived)
                          -> failed       (receiver rejected the record)

Any other move raises :class:`InvalidTransitionError`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from racelog_sync.storage.sqlite_queue import QueueEntry, QueueEntryKind, QueueState
from racelog_sync.utils.timeutils import utcnow

if TYPE_CHECKING:
    from racelog_sync.storage.base import SyncStorage

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_BASE_SECONDS = 2.0
DEFAULT_BACKOFF_CAP_SECONDS = 300.0

ALLOWED_TRANSITIONS: dict[QueueState, frozenset[QueueState]] = {
    QueueState.PENDING: frozenset({QueueState.IN_TRANSIT}),
    QueueState.IN_TRANSIT: frozenset(
        {QueueState.SYNCED, QueueState.PENDING, QueueState.CONFLICTED, QueueState.FAILED}
    ),
    QueueState.CONFLICTED: frozenset({QueueState.SYNCED}),
    QueueState.SYNCED: frozenset(),
    QueueState.FAILED: frozenset(),
}


class InvalidTransitionError(Exception):
    """A queue entry was asked to make a move the state machine forbids."""

    def __init__(self, entry_id: int, current: QueueState, requested: QueueState) -> None:
        super().__init__(f"Queue entry {entry_id}: cannot move {current} -> {requested}")
        self.entry_id = entry_id
        self.current = current
        self.requested = requested


def backoff_delay(
    attempts: int,
    base: float = DEFAULT_BACKOFF_BASE_SECONDS,
    cap: float = DEFAULT_BACKOFF_CAP_SECONDS,
) -> float:
    """Exponential backoff: base * 2^(attempts-1), capped."""
    if attempts <= 0:
        return 0.0
    return float(min(base * (2 ** (attempts - 1)), cap))


class SyncQueue:
    """Durable per-target outbound queue with a strict state machine.

    At most one ``upload`` entry per ``(global_id, target)`` is ever
    ``in_transit``: :meth:`claim` skips records that already have one.
    """

    def __init__(
        self,
        storage: SyncStorage,
        backoff_base: float = DEFAULT_BACKOFF_BASE_SECONDS,
        backoff_cap: float = DEFAULT_BACKOFF_CAP_SECONDS,
    ) -> None:
        self._storage = storage
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap

    # ── Enqueue ─────────────────────────────────────────────────────

    async def enqueue(self, global_id: str, revision: int, target: str) -> QueueEntry:
        """Queue a record version for upload to *target*.

        An existing ``pending`` entry for the same record and target is
        refreshed to the newer revision instead of adding a second one.
        """
        pending = await self._storage.find_queue_entries(
            global_id=global_id,
            target=target,
            states=(QueueState.PENDING,),
            kind=QueueEntryKind.UPLOAD,
        )
        if pending:
            entry = pending[0]
            if revision > entry.revision:
                await self._storage.update_queue_entry(
                    entry.id,
                    QueueState.PENDING,
                    QueueState.PENDING,
                    revision=revision,
                )
                logger.debug("Refreshed queue entry %d to revision %d", entry.id, revision)
            refreshed = await self._storage.get_queue_entry(entry.id)
            return refreshed or entry

        entry = await self._storage.insert_queue_entry(
            global_id, target, revision, QueueEntryKind.UPLOAD
        )
        logger.debug("Enqueued %s rev %d for %s (entry %d)", global_id, revision, target, entry.id)
        return entry

    async def enqueue_notice(
        self,
        global_id: str,
        target: str,
        payload: dict[str, Any],
        conflict_id: str | None = None,
    ) -> QueueEntry:
        """Queue a resolution notice for delivery to node *target*."""
        entry = await self._storage.insert_queue_entry(
            global_id,
            target,
            0,
            QueueEntryKind.RESOLUTION,
            payload=payload,
            conflict_id=conflict_id,
        )
        logger.debug("Queued resolution notice %d for node %s", entry.id, target)
        return entry

    # ── Transitions ─────────────────────────────────────────────────

    async def transition(
        self,
        entry: QueueEntry,
        new_state: QueueState,
        **fields: Any,
    ) -> QueueEntry:
        """Move *entry* to *new_state*.

        Raises:
            InvalidTransitionError: If the move is not allowed or the stored
                entry is no longer in ``entry.state``.
        """
        if new_state not in ALLOWED_TRANSITIONS[entry.state]:
            raise InvalidTransitionError(entry.id, entry.state, new_state)

        applied = await self._storage.update_queue_entry(entry.id, entry.state, new_state, **fields)
        if not applied:
            current = await self._storage.get_queue_entry(entry.id)
            current_state = current.state if current else entry.state
            raise InvalidTransitionError(entry.id, current_state, new_state)

        updated = await self._storage.get_queue_entry(entry.id)
        if updated is None:
            raise InvalidTransitionError(entry.id, entry.state, new_state)
        return updated

    async def claim(
        self,
        target: str,
        limit: int = 100,
        kind: QueueEntryKind = QueueEntryKind.UPLOAD,
        now: datetime | None = None,
    ) -> list[QueueEntry]:
        """Move due ``pending`` entries to ``in_transit`` and return them.

        Counts the attempt. Records that already have an entry in transit
        to *target* are skipped.
        """
        now = now or utcnow()
        due = await self._storage.list_due_entries(target, kind, now, limit=limit)
        if not due:
            return []

        busy = {
            e.global_id
            for e in await self._storage.find_queue_entries(
                target=target,
                states=(QueueState.IN_TRANSIT,),
                kind=kind,
            )
        }

        claimed: list[QueueEntry] = []
        for entry in due:
            if entry.global_id in busy:
                continue
            try:
                moved = await self.transition(
                    entry,
                    QueueState.IN_TRANSIT,
                    attempts=entry.attempts + 1,
                )
            except InvalidTransitionError:
                logger.debug("Entry %d changed state before claim, skipping", entry.id)
                continue
            busy.add(entry.global_id)
            claimed.append(moved)
        return claimed

    async def mark_synced(self, entry: QueueEntry) -> QueueEntry:
        return await self.transition(entry, QueueState.SYNCED, last_error=None)

    async def mark_conflicted(self, entry: QueueEntry, conflict_id: str | None) -> QueueEntry:
        return await self.transition(entry, QueueState.CONFLICTED, conflict_id=conflict_id)

    async def mark_failed(self, entry: QueueEntry, reason: str) -> QueueEntry:
        return await self.transition(entry, QueueState.FAILED, last_error=reason)

    async def release(self, entry: QueueEntry, error: str, now: datetime | None = None) -> QueueEntry:
        """Return an in-transit entry to ``pending`` after a transport failure."""
        now = now or utcnow()
        delay = backoff_delay(entry.attempts, self._backoff_base, self._backoff_cap)
        return await self.transition(
            entry,
            QueueState.PENDING,
            last_error=error,
            next_attempt_at=now + timedelta(seconds=delay),
        )

    async def retire_conflict(self, conflict_id: str) -> int:
        """Mark every ``conflicted`` entry of *conflict_id* as synced."""
        entries = await self._storage.find_queue_entries(
            states=(QueueState.CONFLICTED,),
            conflict_id=conflict_id,
        )
        for entry in entries:
            await self.transition(entry, QueueState.SYNCED)
        return len(entries)

    async def retire_record(self, global_id: str) -> int:
        """Mark every ``conflicted`` upload entry of a record as synced."""
        entries = await self._storage.find_queue_entries(
            global_id=global_id,
            states=(QueueState.CONFLICTED,),
            kind=QueueEntryKind.UPLOAD,
        )
        for entry in entries:
            await self.transition(entry, QueueState.SYNCED)
        return len(entries)

    # ── Maintenance ─────────────────────────────────────────────────

    async def recover_in_transit(self, target: str | None = None) -> int:
        """Revert entries left ``in_transit`` by a crash. Returns count."""
        count = await self._storage.reset_in_transit(target)
        if count:
            logger.info("Recovered %d in-transit queue entries", count)
        return count

    async def has_pending_upload(self, global_id: str, target: str) -> bool:
        entries = await self._storage.find_queue_entries(
            global_id=global_id,
            target=target,
            states=(QueueState.PENDING, QueueState.IN_TRANSIT),
            kind=QueueEntryKind.UPLOAD,
            limit=1,
        )
        return bool(entries)

    async def stats(self, target: str | None = None) -> dict[str, int]:
        return await self._storage.get_queue_stats(target)

    async def list_entries(
        self,
        state: QueueState | None = None,
        target: str | None = None,
        limit: int = 100,
    ) -> list[QueueEntry]:
        return await self._storage.find_queue_entries(
            target=target,
            states=(state,) if state else None,
            limit=limit,
        )

    async def prune_synced(self, older_than_days: int = 30) -> int:
        return await self._storage.prune_queue(older_than_days)

"""Deduplication and merge resolver.

Every record version that reaches the hub passes through
:meth:`DeduplicationResolver.resolve`, which applies three layers in
strict order:

1. Identity match on ``global_id``.
2. Fingerprint match against other records (operational kinds only).
3. Insert.

Before layer 1, reference fields are rewritten through the redirect table
so a child that another node already re-pointed is not mistaken for a
divergent version.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING

from racelog_sync.core.conflict import (
    AuditEntry,
    ConflictRecord,
    FingerprintConflict,
    IdentityConflict,
    new_conflict_id,
    with_audit,
)
from racelog_sync.core.context import MergeTieBreak, NodeContext
from racelog_sync.core.fingerprint import compute_fingerprint, has_contradictory_decision
from racelog_sync.core.record import RecordState, SyncableRecord
from racelog_sync.sync.protocol import NoticeAction, RecordOutcome, SyncOutcome
from racelog_sync.sync.queue import SyncQueue
from racelog_sync.utils.timeutils import utcnow

if TYPE_CHECKING:
    from racelog_sync.storage.base import SyncStorage

logger = logging.getLogger(__name__)


def _sort_key(record: SyncableRecord, tie_break: MergeTieBreak) -> tuple[str, str, str]:
    created = record.created_at.isoformat()
    if tie_break == MergeTieBreak.EARLIEST_CREATED:
        return (created, record.origin_node, record.global_id)
    return (record.origin_node, created, record.global_id)


def choose_canonical(
    a: SyncableRecord,
    b: SyncableRecord,
    tie_break: MergeTieBreak,
) -> tuple[SyncableRecord, SyncableRecord]:
    """Return ``(winner, loser)`` for two fingerprint-equal records.

    Both rules are total orders over (origin node, creation time, global
    id), so every node picks the same winner regardless of arrival order.
    """
    if _sort_key(a, tie_break) <= _sort_key(b, tie_break):
        return a, b
    return b, a


def lock_keys(record: SyncableRecord, window_seconds: int) -> list[str]:
    """Keys the resolver holds while deciding about *record*."""
    keys = [record.global_id]
    fingerprint = compute_fingerprint(record, window_seconds)
    if fingerprint is not None:
        keys.append(fingerprint.lock_key)
    return keys


class DeduplicationResolver:
    """Decides whether an incoming version is new, an update, a duplicate or a conflict."""

    def __init__(self, storage: SyncStorage, context: NodeContext, queue: SyncQueue) -> None:
        self._storage = storage
        self._context = context
        self._queue = queue

    @property
    def context(self) -> NodeContext:
        return self._context

    async def resolve(self, incoming: SyncableRecord, from_node: str) -> RecordOutcome:
        """Run the layers for one validated record version.

        Acquires the record's global-id lock and fingerprint lock, so
        concurrent uploads of the same record or of fingerprint-equal
        records are serialized.
        """
        normalized = await self._normalize(incoming)
        keys = lock_keys(normalized, self._context.window_seconds)

        async with self._context.record_locks.hold_many(keys):
            outcome = await self._resolve_locked(normalized, from_node)

        await self._storage.add_holder(incoming.global_id, from_node, incoming.revision)
        logger.debug(
            "Resolved %s rev %d from %s: %s (canonical %s)",
            incoming.global_id,
            incoming.revision,
            from_node,
            outcome.outcome,
            outcome.canonical_id,
        )
        return outcome

    async def _normalize(self, incoming: SyncableRecord) -> SyncableRecord:
        payload = dict(incoming.payload)
        changed = False
        for field_name in incoming.spec.reference_fields:
            ref = payload.get(field_name)
            if not ref:
                continue
            target = await self._storage.resolve_redirect(str(ref))
            if target != ref:
                payload[field_name] = target
                changed = True
        if not changed:
            return incoming
        return replace(incoming, payload=payload)

    async def _resolve_locked(self, incoming: SyncableRecord, from_node: str) -> RecordOutcome:
        # ── Layer 1: identity ──
        existing = await self._storage.get_record(incoming.global_id)
        if existing is not None:
            return await self._resolve_identity(existing, incoming, from_node)

        # ── Layer 2: fingerprint ──
        if incoming.is_operational:
            outcome = await self._resolve_fingerprint(incoming, from_node)
            if outcome is not None:
                return outcome

        # ── Layer 3: insert ──
        await self._insert_active(incoming)
        return RecordOutcome(
            global_id=incoming.global_id,
            outcome=SyncOutcome.SYNCED,
            canonical_id=incoming.global_id,
        )

    # ── Layer 1 ─────────────────────────────────────────────────────

    async def _resolve_identity(
        self,
        existing: SyncableRecord,
        incoming: SyncableRecord,
        from_node: str,
    ) -> RecordOutcome:
        gid = incoming.global_id
        canonical = existing.merged_into if existing.state == RecordState.MERGED else gid

        open_conflict = await self._storage.find_open_conflict(gid)
        if open_conflict is not None:
            conflict = await self._absorb(open_conflict, incoming, from_node)
            return RecordOutcome(
                global_id=gid,
                outcome=SyncOutcome.CONFLICTED,
                canonical_id=canonical,
                conflict_id=conflict.conflict_id,
                reason="record is under review",
            )

        if incoming.revision > existing.revision:
            updated = existing.with_payload(incoming.payload, revision=incoming.revision)
            await self._storage.update_record(updated)
            if updated.state == RecordState.ACTIVE:
                await self.reindex(updated)
            return RecordOutcome(global_id=gid, outcome=SyncOutcome.SYNCED, canonical_id=canonical)

        # Not newer: only a divergent payload is a conflict.
        if incoming.canonical_payload() == existing.canonical_payload():
            return RecordOutcome(global_id=gid, outcome=SyncOutcome.SYNCED, canonical_id=canonical)

        conflict = IdentityConflict(
            conflict_id=new_conflict_id(),
            global_id=gid,
            versions=(existing, incoming),
            audit=(
                AuditEntry(
                    at=utcnow(),
                    actor_node=self._context.node_id,
                    action="flagged",
                    detail=(
                        f"stored rev {existing.revision} vs rev {incoming.revision} from {from_node}"
                    ),
                ),
            ),
        )
        await self._storage.save_conflict(conflict)
        logger.info("Identity conflict %s on %s", conflict.conflict_id, gid)
        return RecordOutcome(
            global_id=gid,
            outcome=SyncOutcome.CONFLICTED,
            canonical_id=canonical,
            conflict_id=conflict.conflict_id,
            reason="divergent versions",
        )

    async def _absorb(
        self,
        conflict: ConflictRecord,
        incoming: SyncableRecord,
        from_node: str,
    ) -> ConflictRecord:
        """Attach a newly arrived version to an open conflict."""
        if isinstance(conflict, IdentityConflict):
            if any(v.same_content(incoming) for v in conflict.versions):
                return conflict
            updated: ConflictRecord = replace(conflict, versions=(*conflict.versions, incoming))
        else:
            is_left = conflict.left.global_id == incoming.global_id
            side = conflict.left if is_left else conflict.right
            if incoming.revision <= side.revision:
                return conflict
            current = await self._storage.get_record(incoming.global_id)
            if current is not None:
                await self._storage.update_record(
                    current.with_payload(incoming.payload, revision=incoming.revision)
                )
            updated = replace(conflict, left=incoming) if is_left else replace(conflict, right=incoming)

        updated = with_audit(
            updated,
            AuditEntry(
                at=utcnow(),
                actor_node=self._context.node_id,
                action="version_added",
                detail=f"rev {incoming.revision} of {incoming.global_id} from {from_node}",
            ),
        )
        await self._storage.save_conflict(updated)
        return updated

    # ── Layer 2 ─────────────────────────────────────────────────────

    async def _find_duplicates(self, incoming: SyncableRecord) -> list[SyncableRecord]:
        """Active and held records sharing *incoming*'s fingerprint, oldest observation first."""
        fingerprint = compute_fingerprint(incoming, self._context.window_seconds)
        if fingerprint is None:
            return []

        candidates = [
            gid
            for gid, candidate in await self._storage.find_fingerprint_candidates(fingerprint)
            if gid != incoming.global_id
            and fingerprint.matches(candidate, self._context.window_seconds)
        ]
        if not candidates:
            return []

        records = await self._storage.get_records(candidates)
        return [
            record
            for gid in candidates
            if (record := records.get(gid)) is not None
            and record.state in (RecordState.ACTIVE, RecordState.HELD)
        ]

    async def _resolve_fingerprint(
        self,
        incoming: SyncableRecord,
        from_node: str,
    ) -> RecordOutcome | None:
        duplicates = await self._find_duplicates(incoming)
        existing = next((r for r in duplicates if r.state == RecordState.ACTIVE), None)

        # A group with an open conflict is never auto-merged; the reviewer
        # decides about the newcomer as well.
        for record in duplicates:
            if await self._storage.find_open_conflict(record.global_id) is not None:
                return await self._hold(
                    incoming, existing or record, from_node, reason="duplicate under review"
                )

        if existing is None:
            return None

        if has_contradictory_decision(existing, incoming):
            return await self._hold(incoming, existing, from_node, reason="contradictory decisions")

        winner, loser = choose_canonical(existing, incoming, self._context.tie_break)
        if winner.global_id == incoming.global_id:
            await self._insert_active(incoming)
        await self.merge_locked(winner, loser, extra_holders=(from_node,))
        logger.info("Merged duplicate %s into %s", loser.global_id, winner.global_id)
        return RecordOutcome(
            global_id=incoming.global_id,
            outcome=SyncOutcome.SYNCED,
            canonical_id=winner.global_id,
            reason="merged duplicate" if winner.global_id != incoming.global_id else "",
        )

    async def _hold(
        self,
        incoming: SyncableRecord,
        existing: SyncableRecord,
        from_node: str,
        reason: str,
    ) -> RecordOutcome:
        """Store *incoming* as held and open a fingerprint conflict against *existing*."""
        fingerprint = compute_fingerprint(incoming, self._context.window_seconds)
        held = await self._storage.add_record(replace(incoming, state=RecordState.HELD))
        if fingerprint is not None:
            await self._storage.index_fingerprint(held.global_id, fingerprint)
        conflict = FingerprintConflict(
            conflict_id=new_conflict_id(),
            fingerprint=fingerprint.digest if fingerprint else "",
            left=existing,
            right=held,
            reason=reason,
            audit=(
                AuditEntry(
                    at=utcnow(),
                    actor_node=self._context.node_id,
                    action="flagged",
                    detail=f"{incoming.global_id} from {from_node} duplicates {existing.global_id}",
                ),
            ),
        )
        await self._storage.save_conflict(conflict)
        logger.info(
            "Fingerprint conflict %s between %s and %s (%s)",
            conflict.conflict_id,
            existing.global_id,
            incoming.global_id,
            reason,
        )
        return RecordOutcome(
            global_id=incoming.global_id,
            outcome=SyncOutcome.CONFLICTED,
            canonical_id=incoming.global_id,
            conflict_id=conflict.conflict_id,
            reason=reason,
        )

    # ── Shared with review ──────────────────────────────────────────

    async def merge_locked(
        self,
        winner: SyncableRecord,
        loser: SyncableRecord,
        conflict_id: str | None = None,
        action: NoticeAction = NoticeAction.MERGED,
        extra_holders: tuple[str, ...] = (),
    ) -> None:
        """Fold *loser* into *winner*. Caller holds the locks of both records.

        The loser is kept as a ``merged`` row for audit, its fingerprint row
        is dropped, a redirect is stored, every reference is re-pointed and
        nodes holding the loser are sent a resolution notice.
        """
        stored = await self._storage.get_record(loser.global_id)
        if stored is None:
            await self._storage.add_record(
                replace(loser, state=RecordState.MERGED, merged_into=winner.global_id)
            )
        else:
            await self._storage.set_record_state(
                loser.global_id, RecordState.MERGED, merged_into=winner.global_id
            )
        await self._storage.remove_fingerprint(loser.global_id)
        await self._storage.add_redirect(loser.global_id, winner.global_id)
        await self._storage.repoint_references(loser.global_id, winner.global_id)

        holders = set(await self._storage.list_holders([loser.global_id]))
        holders.update(extra_holders)
        await self.notify(
            sorted(holders),
            winner.global_id,
            superseded=(loser.global_id,),
            action=action,
            conflict_id=conflict_id,
        )

    async def notify(
        self,
        node_ids: list[str],
        winner_id: str,
        superseded: tuple[str, ...] = (),
        action: NoticeAction = NoticeAction.RESOLVED,
        conflict_id: str | None = None,
    ) -> int:
        """Queue a resolution notice for every node except this one."""
        payload = {
            "action": action.value,
            "superseded": list(superseded),
            "conflict_id": conflict_id,
        }
        sent = 0
        for node_id in node_ids:
            if node_id == self._context.node_id:
                continue
            await self._queue.enqueue_notice(winner_id, node_id, payload, conflict_id=conflict_id)
            sent += 1
        return sent

    async def activate_locked(self, record: SyncableRecord) -> None:
        """Make a held or updated record active and index it. Caller holds the lock.

        Raises:
            ValueError: *record* was merged; its redirect target stands for it.
        """
        if record.state == RecordState.MERGED:
            raise ValueError(f"{record.global_id} is merged into {record.merged_into}")
        active = replace(record, state=RecordState.ACTIVE, merged_into=None)
        await self._storage.update_record(active)
        await self.reindex(active)

    async def _insert_active(self, record: SyncableRecord) -> SyncableRecord:
        stored = await self._storage.add_record(
            replace(record, state=RecordState.ACTIVE, merged_into=None, local_id=None)
        )
        await self.reindex(stored)
        return stored

    async def reindex(self, record: SyncableRecord) -> None:
        fingerprint = compute_fingerprint(record, self._context.window_seconds)
        if fingerprint is not None:
            await self._storage.index_fingerprint(record.global_id, fingerprint)

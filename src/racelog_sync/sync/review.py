"""Conflict store access and human review."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any, assert_never

from racelog_sync.core.conflict import (
    AuditEntry,
    ConflictRecord,
    ConflictStatus,
    FingerprintConflict,
    IdentityConflict,
    Resolution,
    ResolutionChoice,
    with_audit,
)
from racelog_sync.core.record import RecordState, SyncableRecord
from racelog_sync.core.schemas import validate_payload
from racelog_sync.sync.protocol import NoticeAction
from racelog_sync.sync.resolver import DeduplicationResolver, choose_canonical, lock_keys
from racelog_sync.utils.timeutils import utcnow

if TYPE_CHECKING:
    from racelog_sync.storage.base import SyncStorage

logger = logging.getLogger(__name__)


class ConflictNotFoundError(LookupError):
    def __init__(self, conflict_id: str) -> None:
        super().__init__(f"Conflict {conflict_id} not found")
        self.conflict_id = conflict_id


class ConflictAlreadyResolvedError(RuntimeError):
    def __init__(self, conflict_id: str) -> None:
        super().__init__(f"Conflict {conflict_id} is already resolved")
        self.conflict_id = conflict_id


class ConflictReviewService:
    """Lists, annotates and resolves conflicts on behalf of an operator."""

    def __init__(self, storage: SyncStorage, resolver: DeduplicationResolver) -> None:
        self._storage = storage
        self._resolver = resolver
        self._context = resolver.context

    async def list_open_conflicts(self, limit: int = 100) -> list[ConflictRecord]:
        return await self._storage.list_conflicts(ConflictStatus.OPEN, limit=limit)

    async def get_conflict(self, conflict_id: str) -> ConflictRecord:
        """Raises ConflictNotFoundError for an unknown id."""
        conflict = await self._storage.get_conflict(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(conflict_id)
        return conflict

    async def add_note(self, conflict_id: str, operator: str, text: str) -> ConflictRecord:
        """Append a note to the audit trail without resolving."""
        async with self._context.record_locks.hold(f"conflict:{conflict_id}"):
            conflict = await self.get_conflict(conflict_id)
            updated = with_audit(
                conflict,
                AuditEntry(
                    at=utcnow(),
                    actor_node=self._context.node_id,
                    operator=operator,
                    action="note",
                    detail=text,
                ),
            )
            await self._storage.save_conflict(updated)
        return updated

    async def resolve(
        self,
        conflict_id: str,
        resolution: Resolution,
        operator: str = "",
    ) -> ConflictRecord:
        """Apply a reviewer's decision.

        Raises:
            ConflictNotFoundError: Unknown conflict id.
            ConflictAlreadyResolvedError: The conflict was resolved before.
            SchemaValidationError: A merged payload failed validation.
        """
        conflict = await self.get_conflict(conflict_id)
        keys = [f"conflict:{conflict_id}"]
        for record in self._involved(conflict):
            keys.extend(lock_keys(record, self._context.window_seconds))

        async with self._context.record_locks.hold_many(keys):
            # Re-read under the lock; a concurrent resolver may have appended.
            conflict = await self.get_conflict(conflict_id)
            if conflict.status == ConflictStatus.RESOLVED:
                raise ConflictAlreadyResolvedError(conflict_id)

            if isinstance(conflict, IdentityConflict):
                winner_id, detail = await self._resolve_identity(conflict, resolution)
            elif isinstance(conflict, FingerprintConflict):
                winner_id, detail = await self._resolve_fingerprint(conflict, resolution)
            else:
                assert_never(conflict)

            resolved = with_audit(
                replace(conflict, status=ConflictStatus.RESOLVED, winner_id=winner_id),
                AuditEntry(
                    at=utcnow(),
                    actor_node=self._context.node_id,
                    operator=operator,
                    action=f"resolved:{resolution.choice.value}",
                    detail=detail,
                ),
            )
            await self._storage.save_conflict(resolved)

        logger.info(
            "Conflict %s resolved by %s with %s; winner %s",
            conflict_id,
            operator or self._context.node_id,
            resolution.choice.value,
            winner_id,
        )
        return resolved

    @staticmethod
    def _involved(conflict: ConflictRecord) -> tuple[SyncableRecord, ...]:
        if isinstance(conflict, IdentityConflict):
            return conflict.versions
        return (conflict.left, conflict.right)

    async def _holders(self, conflict: ConflictRecord) -> list[str]:
        holders = set(await self._storage.list_holders(conflict.global_ids))
        holders.update(conflict.origin_nodes)
        return sorted(holders)

    async def _resolve_identity(
        self,
        conflict: IdentityConflict,
        resolution: Resolution,
    ) -> tuple[str, str]:
        payload = self._chosen_payload(conflict.left, conflict.right, resolution)
        new_revision = max(v.revision for v in conflict.versions) + 1

        current = await self._storage.get_record(conflict.global_id)
        if current is None:
            base = conflict.left
            current = await self._storage.add_record(replace(base, state=RecordState.ACTIVE))
        chosen = current.with_payload(payload, revision=new_revision)
        await self._storage.update_record(chosen)
        if chosen.state == RecordState.ACTIVE:
            await self._resolver.reindex(chosen)

        await self._resolver.notify(
            await self._holders(conflict),
            conflict.global_id,
            action=NoticeAction.RESOLVED,
            conflict_id=conflict.conflict_id,
        )
        return conflict.global_id, f"revision {new_revision}"

    async def _resolve_fingerprint(
        self,
        conflict: FingerprintConflict,
        resolution: Resolution,
    ) -> tuple[str, str]:
        # Either side may have been folded into another record meanwhile;
        # decide between the records that currently stand for them.
        left_id = await self._storage.resolve_redirect(conflict.left.global_id)
        right_id = await self._storage.resolve_redirect(conflict.right.global_id)
        stored = await self._storage.get_records([left_id, right_id])
        left = stored.get(left_id, conflict.left)
        right = stored.get(right_id, conflict.right)

        if resolution.choice == ResolutionChoice.PICK_LEFT:
            winner, loser = left, right
        elif resolution.choice == ResolutionChoice.PICK_RIGHT:
            winner, loser = right, left
        else:
            winner, loser = choose_canonical(left, right, self._context.tie_break)
            payload = validate_payload(winner.kind, dict(resolution.payload or {}), winner.global_id)
            winner = winner.with_payload(payload, revision=max(left.revision, right.revision) + 1)
            await self._storage.update_record(winner)

        await self._resolver.activate_locked(winner)
        if loser.global_id == winner.global_id:
            await self._resolver.notify(
                await self._holders(conflict),
                winner.global_id,
                action=NoticeAction.RESOLVED,
                conflict_id=conflict.conflict_id,
            )
            return winner.global_id, f"both sides already merged into {winner.global_id}"

        await self._resolver.merge_locked(
            winner,
            loser,
            conflict_id=conflict.conflict_id,
            action=NoticeAction.RESOLVED,
            extra_holders=tuple(await self._holders(conflict)),
        )
        return winner.global_id, f"{loser.global_id} merged into {winner.global_id}"

    @staticmethod
    def _chosen_payload(
        left: SyncableRecord,
        right: SyncableRecord,
        resolution: Resolution,
    ) -> dict[str, Any]:
        if resolution.choice == ResolutionChoice.PICK_LEFT:
            return dict(left.payload)
        if resolution.choice == ResolutionChoice.PICK_RIGHT:
            return dict(right.payload)
        return validate_payload(left.kind, dict(resolution.payload or {}), left.global_id)

"""Local record writes.

On an edge every create or update is stored and queued for the hub in one
step. On the hub the write goes straight through the resolver, so local
entries are deduplicated against uploads like any other version.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from racelog_sync.core.context import NodeContext, NodeRole
from racelog_sync.core.identity import assign
from racelog_sync.core.record import RecordKind, RecordState, SyncableRecord
from racelog_sync.core.schemas import validate_payload
from racelog_sync.sync.queue import SyncQueue

if TYPE_CHECKING:
    from racelog_sync.storage.base import SyncStorage
    from racelog_sync.sync.resolver import DeduplicationResolver

logger = logging.getLogger(__name__)

# Queue target for the hub on edge nodes
HUB_TARGET = "hub"


class RecordNotFoundError(LookupError):
    def __init__(self, global_id: str) -> None:
        super().__init__(f"Record {global_id} not found")
        self.global_id = global_id


class RecordWriter:
    """Creates and updates records on behalf of local operators."""

    def __init__(
        self,
        storage: SyncStorage,
        context: NodeContext,
        queue: SyncQueue,
        resolver: DeduplicationResolver | None = None,
        hub_target: str = HUB_TARGET,
    ) -> None:
        if context.role == NodeRole.HUB and resolver is None:
            raise ValueError("A hub writer needs a resolver")
        self._storage = storage
        self._context = context
        self._queue = queue
        self._resolver = resolver
        self._hub_target = hub_target

    async def create(self, kind: RecordKind | str, payload: dict[str, Any]) -> SyncableRecord:
        """Validate, stamp a global id and store a new record.

        Raises:
            SchemaValidationError: If the payload is invalid.
        """
        record_kind = RecordKind(kind)
        global_id = assign()
        validated = validate_payload(record_kind, payload, global_id)
        record = SyncableRecord(
            global_id=global_id,
            kind=record_kind,
            origin_node=self._context.node_id,
            revision=1,
            payload=validated,
        )

        if self._resolver is not None and self._context.role == NodeRole.HUB:
            outcome = await self._resolver.resolve(record, self._context.node_id)
            stored = await self._storage.get_record(outcome.canonical_id or global_id)
            logger.info("Created %s %s on hub (%s)", record_kind.value, global_id, outcome.outcome)
            return stored or record

        async with self._context.record_locks.hold(global_id):
            stored = await self._storage.add_record(record)
            await self._queue.enqueue(global_id, stored.revision, self._hub_target)
        logger.info("Created %s %s", record_kind.value, global_id)
        return stored

    async def update(self, global_id: str, changes: dict[str, Any]) -> SyncableRecord:
        """Apply field changes to an existing record, bumping its revision.

        A ``None`` value removes an optional field.

        Raises:
            RecordNotFoundError: Unknown global id.
            ValueError: The record was merged into another one.
            SchemaValidationError: The resulting payload is invalid.
        """
        async with self._context.record_locks.hold(global_id):
            existing = await self._storage.get_record(global_id)
            if existing is None:
                raise RecordNotFoundError(global_id)
            if existing.state == RecordState.MERGED:
                raise ValueError(f"Record {global_id} was merged into {existing.merged_into}")

            merged = {**existing.payload, **changes}
            payload = {k: v for k, v in merged.items() if v is not None}
            validated = validate_payload(existing.kind, payload, global_id)
            updated = existing.with_payload(validated)

            if self._context.role != NodeRole.HUB:
                await self._storage.update_record(updated)
                await self._queue.enqueue(global_id, updated.revision, self._hub_target)

        if self._resolver is not None and self._context.role == NodeRole.HUB:
            await self._resolver.resolve(updated, self._context.node_id)

        logger.info("Updated %s to revision %d", global_id, updated.revision)
        return updated

"""Hub side of the transfer protocol."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from racelog_sync.core.conflict import ConflictRecord, Resolution
from racelog_sync.core.context import NodeContext
from racelog_sync.core.identity import is_global_id, is_node_id
from racelog_sync.core.record import KIND_SPECS, RecordKind, RecordState, SyncableRecord
from racelog_sync.core.schemas import SchemaValidationError, validate_payload
from racelog_sync.storage.sqlite_nodes import NodeRecord
from racelog_sync.storage.sqlite_queue import QueueEntryKind, QueueState
from racelog_sync.sync.protocol import (
    MAX_BATCH_RECORDS,
    DownloadResult,
    HubTransport,
    NoticeAction,
    RecordOutcome,
    ResolutionNotice,
    SyncOutcome,
    UploadRequest,
    UploadResult,
    parse_scope,
)
from racelog_sync.sync.queue import SyncQueue
from racelog_sync.sync.resolver import DeduplicationResolver
from racelog_sync.sync.review import ConflictReviewService

if TYPE_CHECKING:
    from racelog_sync.storage.base import SyncStorage

logger = logging.getLogger(__name__)


def _check_node_id(node_id: str) -> None:
    if not is_node_id(node_id):
        raise ValueError(f"Invalid node id: {node_id!r}")


def parse_wire_record(raw: dict[str, Any]) -> SyncableRecord:
    """Turn one wire record into a validated :class:`SyncableRecord`.

    Raises:
        SchemaValidationError: On any structural problem with the record.
    """
    global_id = str(raw.get("global_id") or "")
    kind = str(raw.get("kind") or "")
    if not is_global_id(global_id):
        raise SchemaValidationError(kind or "record", "global_id must be a lowercase UUID", global_id)
    try:
        record = SyncableRecord.from_wire(raw)
    except (KeyError, TypeError, ValueError) as e:
        raise SchemaValidationError(kind or "record", f"malformed record: {e}", global_id) from e
    if record.revision < 1:
        raise SchemaValidationError(kind, "revision must be >= 1", global_id)
    if not is_node_id(record.origin_node):
        raise SchemaValidationError(kind, "invalid origin_node", global_id)
    payload = validate_payload(record.kind, record.payload, global_id)
    return replace(record, payload=payload)


class HubService(HubTransport):
    """
    Authoritative hub: applies uploads through the resolver, serves
    reference scopes and queues resolution notices for edges.

    Also usable in-process as an edge's transport.
    """

    def __init__(
        self,
        storage: SyncStorage,
        context: NodeContext,
        queue: SyncQueue | None = None,
    ) -> None:
        self._storage = storage
        self._context = context
        self._queue = queue or SyncQueue(storage)
        self._resolver = DeduplicationResolver(storage, context, self._queue)
        self._review = ConflictReviewService(storage, self._resolver)

    @property
    def context(self) -> NodeContext:
        return self._context

    @property
    def resolver(self) -> DeduplicationResolver:
        return self._resolver

    @property
    def review(self) -> ConflictReviewService:
        return self._review

    # ── Health & nodes ──────────────────────────────────────────────

    async def health_check(self) -> bool:
        return True

    async def register_node(self, node_id: str, node_name: str = "") -> dict[str, Any]:
        _check_node_id(node_id)
        node = await self._storage.register_node(node_id, node_name)
        logger.info("Registered node %s (%s)", node_id, node.node_name or "unnamed")
        return node.to_dict()

    async def list_nodes(self) -> list[NodeRecord]:
        return await self._storage.list_nodes()

    # ── Download ────────────────────────────────────────────────────

    async def download_scope(self, scope: str, node_id: str) -> DownloadResult:
        """Return the reference records of *scope* parents-first.

        Raises:
            ValueError: Unknown or malformed scope selector, invalid node id.
        """
        selector = parse_scope(scope)
        _check_node_id(node_id)
        await self._storage.register_node(node_id)

        root_id = await self._storage.resolve_redirect(selector.global_id)
        records: list[SyncableRecord] = []

        if selector.kind == RecordKind.COMPETITION:
            competition = await self._active(root_id, RecordKind.COMPETITION)
            if competition is not None:
                records.append(competition)
                races = await self._storage.list_records(
                    kind=RecordKind.RACE, state=RecordState.ACTIVE, parent_id=root_id
                )
                records.extend(races)
                for race in races:
                    records.extend(await self._race_children(race.global_id))
        else:
            race = await self._active(root_id, RecordKind.RACE)
            if race is not None:
                if race.parent_id:
                    competition = await self._active(race.parent_id, RecordKind.COMPETITION)
                    if competition is not None:
                        records.append(competition)
                records.append(race)
                records.extend(await self._race_children(race.global_id))

        records.sort(key=lambda r: (KIND_SPECS[r.kind].rank, r.created_at, r.global_id))
        redirects = await self._storage.list_redirects([r.global_id for r in records])
        for record in records:
            await self._storage.add_holder(record.global_id, node_id, record.revision)
        await self._storage.touch_node_sync(node_id)

        logger.info("Served %d records for %s to %s", len(records), scope, node_id)
        return DownloadResult(scope=str(selector), records=records, redirects=redirects)

    async def _active(self, global_id: str, kind: RecordKind) -> SyncableRecord | None:
        record = await self._storage.get_record(global_id)
        if record is None or record.kind != kind or record.state != RecordState.ACTIVE:
            return None
        return record

    async def _race_children(self, race_id: str) -> list[SyncableRecord]:
        children: list[SyncableRecord] = []
        for kind in (RecordKind.RACE_LOCATION, RecordKind.RACE_PARTICIPATION):
            children.extend(
                await self._storage.list_records(
                    kind=kind, state=RecordState.ACTIVE, parent_id=race_id
                )
            )
        return children

    # ── Upload ──────────────────────────────────────────────────────

    async def upload_batch(self, request: UploadRequest) -> UploadResult:
        """Resolve each record of a batch independently.

        A rejected record never blocks the others. Outcomes are persisted
        one by one, so a batch replayed after a dropped connection returns
        the already-applied outcomes instead of resolving twice.

        Raises:
            ValueError: Invalid node id, missing batch id or oversized batch.
        """
        _check_node_id(request.node_id)
        if not request.batch_id:
            raise ValueError("batch_id is required")
        if len(request.records) > MAX_BATCH_RECORDS:
            raise ValueError(f"Batch exceeds {MAX_BATCH_RECORDS} records")

        await self._storage.register_node(request.node_id)
        previous = {
            o["global_id"]: RecordOutcome.from_dict(o)
            for o in await self._storage.get_batch_outcomes(request.batch_id)
        }

        outcomes: list[RecordOutcome] = []
        for raw in request.records:
            global_id = str(raw.get("global_id") or "")
            if global_id in previous:
                outcomes.append(previous[global_id])
                continue

            try:
                record = parse_wire_record(raw)
            except SchemaValidationError as e:
                logger.warning("Rejected %s from %s: %s", global_id, request.node_id, e.reason)
                outcome = RecordOutcome(
                    global_id=global_id,
                    outcome=SyncOutcome.REJECTED,
                    reason=e.reason,
                )
            else:
                outcome = await self._resolver.resolve(record, request.node_id)

            await self._storage.save_batch_outcome(request.batch_id, request.node_id, outcome.to_dict())
            outcomes.append(outcome)

        await self._storage.touch_node_sync(request.node_id)
        logger.info(
            "Batch %s from %s: %d records, %d conflicted, %d rejected",
            request.batch_id,
            request.node_id,
            len(outcomes),
            sum(1 for o in outcomes if o.outcome == SyncOutcome.CONFLICTED),
            sum(1 for o in outcomes if o.outcome == SyncOutcome.REJECTED),
        )
        return UploadResult(batch_id=request.batch_id, outcomes=outcomes)

    async def get_batch_outcomes(self, batch_id: str) -> list[RecordOutcome]:
        return [RecordOutcome.from_dict(o) for o in await self._storage.get_batch_outcomes(batch_id)]

    # ── Resolution notices ──────────────────────────────────────────

    async def pull_resolutions(self, node_id: str) -> list[ResolutionNotice]:
        """Notices waiting for *node_id*. Unacknowledged ones are re-sent."""
        _check_node_id(node_id)
        entries = await self._storage.find_queue_entries(
            target=node_id,
            states=(QueueState.PENDING, QueueState.IN_TRANSIT),
            kind=QueueEntryKind.RESOLUTION,
        )

        notices: list[ResolutionNotice] = []
        for entry in entries:
            if entry.state == QueueState.PENDING:
                entry = await self._queue.transition(
                    entry, QueueState.IN_TRANSIT, attempts=entry.attempts + 1
                )
            winner = await self._storage.get_record(entry.global_id)
            notices.append(
                ResolutionNotice(
                    entry_id=entry.id,
                    action=NoticeAction(entry.payload.get("action", NoticeAction.RESOLVED.value)),
                    winner=winner,
                    superseded=tuple(entry.payload.get("superseded", [])),
                    conflict_id=entry.conflict_id,
                )
            )
        return notices

    async def ack_resolutions(self, node_id: str, entry_ids: list[int]) -> int:
        """Mark delivered notices as synced. Unknown or foreign ids are ignored."""
        _check_node_id(node_id)
        acked = 0
        for entry_id in entry_ids:
            entry = await self._storage.get_queue_entry(entry_id)
            if (
                entry is None
                or entry.target != node_id
                or entry.kind != QueueEntryKind.RESOLUTION
                or entry.state != QueueState.IN_TRANSIT
            ):
                continue
            await self._queue.mark_synced(entry)
            acked += 1
        return acked

    # ── Review ──────────────────────────────────────────────────────

    async def list_open_conflicts(self, limit: int = 100) -> list[ConflictRecord]:
        return await self._review.list_open_conflicts(limit=limit)

    async def get_conflict(self, conflict_id: str) -> ConflictRecord:
        return await self._review.get_conflict(conflict_id)

    async def resolve_conflict(
        self,
        conflict_id: str,
        resolution: Resolution,
        operator: str = "",
    ) -> ConflictRecord:
        return await self._review.resolve(conflict_id, resolution, operator=operator)

    async def add_conflict_note(self, conflict_id: str, operator: str, text: str) -> ConflictRecord:
        return await self._review.add_note(conflict_id, operator, text)

    # ── Status ──────────────────────────────────────────────────────

    async def status(self) -> dict[str, Any]:
        last_cycle = self._context.last_successful_cycle_at
        return {
            "node_id": self._context.node_id,
            "role": self._context.role.value,
            "queue": await self._storage.get_queue_stats(),
            "records": await self._storage.count_records(),
            "conflicts": await self._storage.count_conflicts(),
            "nodes": len(await self._storage.list_nodes()),
            "last_successful_cycle_at": last_cycle.isoformat() if last_cycle else None,
        }

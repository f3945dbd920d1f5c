"""Edge sync cycle orchestrator."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, TypeVar
from uuid import uuid4

from racelog_sync.core.context import NodeContext
from racelog_sync.core.record import RecordState, SyncableRecord
from racelog_sync.core.schemas import SchemaValidationError, validate_payload
from racelog_sync.storage.sqlite_queue import QueueEntry
from racelog_sync.sync.protocol import (
    DownloadResult,
    HubTransport,
    RecordOutcome,
    ResolutionNotice,
    SyncOutcome,
    TransportError,
    UploadRequest,
)
from racelog_sync.sync.queue import SyncQueue
from racelog_sync.sync.writer import HUB_TARGET
from racelog_sync.utils.timeutils import utcnow

if TYPE_CHECKING:
    from racelog_sync.storage.base import SyncStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Safety bound on upload batches per cycle
_MAX_BATCHES_PER_CYCLE = 50


class CycleStatus(StrEnum):
    COMPLETED = "completed"
    OFFLINE = "offline"  # Health probe failed; nothing attempted
    TRANSPORT_ERROR = "transport_error"  # Hub dropped mid-cycle
    COALESCED = "coalesced"  # Another cycle was already running


@dataclass
class CycleReport:
    """Summary of one sync cycle."""

    trigger: str
    status: CycleStatus = CycleStatus.COMPLETED
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    downloaded: int = 0
    uploaded: int = 0
    synced: int = 0
    merged: int = 0
    conflicted: int = 0
    rejected: int = 0
    released: int = 0
    resolutions_applied: int = 0
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "downloaded": self.downloaded,
            "uploaded": self.uploaded,
            "synced": self.synced,
            "merged": self.merged,
            "conflicted": self.conflicted,
            "rejected": self.rejected,
            "released": self.released,
            "resolutions_applied": self.resolutions_applied,
            "error": self.error,
        }


class SyncEngine:
    """Runs sync cycles for one edge node.

    A cycle:
    1. Probe the hub; stop quietly if unreachable
    2. Download configured reference scopes and apply redirects
    3. Pull, apply and acknowledge resolution notices
    4. Upload due queue entries in batches and apply per-record outcomes

    Only one cycle runs at a time per node; a trigger that finds one in
    flight returns a ``coalesced`` report immediately.
    """

    def __init__(
        self,
        storage: SyncStorage,
        context: NodeContext,
        transport: HubTransport,
        queue: SyncQueue | None = None,
        *,
        scopes: Sequence[str] = (),
        batch_size: int = 100,
        exchange_timeout: float = 30.0,
        hub_target: str = HUB_TARGET,
    ) -> None:
        self._storage = storage
        self._context = context
        self._transport = transport
        self._queue = queue or SyncQueue(storage)
        self._scopes = tuple(scopes)
        self._batch_size = max(1, batch_size)
        self._exchange_timeout = exchange_timeout
        self._hub_target = hub_target

    @property
    def queue(self) -> SyncQueue:
        return self._queue

    async def start(self) -> None:
        """Recover entries a crash left in transit. Call once at startup."""
        await self._queue.recover_in_transit(self._hub_target)

    async def is_hub_reachable(self) -> bool:
        try:
            async with asyncio.timeout(self._exchange_timeout):
                return await self._transport.health_check()
        except (TransportError, TimeoutError):
            return False

    async def run_cycle(self, trigger: str = "manual") -> CycleReport:
        report = CycleReport(trigger=trigger)
        if self._context.cycle_in_flight:
            report.status = CycleStatus.COALESCED
            report.finished_at = utcnow()
            logger.debug("Sync cycle (%s) coalesced into the running one", trigger)
            return report

        async with self._context.cycle_lock:
            if not await self.is_hub_reachable():
                report.status = CycleStatus.OFFLINE
                report.finished_at = utcnow()
                logger.debug("Hub unreachable, deferring sync")
                return report

            try:
                await self._exchange(
                    self._transport.register_node(self._context.node_id, self._context.node_name)
                )
                for scope in self._scopes:
                    report.downloaded += await self._download(scope)
                report.resolutions_applied += await self._pull_resolutions()
                await self._upload_all(report)
            except (TransportError, TimeoutError) as e:
                report.status = CycleStatus.TRANSPORT_ERROR
                report.error = str(e) or type(e).__name__
                logger.warning("Sync cycle interrupted: %s", report.error)
            else:
                self._context.last_successful_cycle_at = utcnow()

        report.finished_at = utcnow()
        logger.info(
            "Sync cycle (%s) %s: %d downloaded, %d uploaded, %d conflicted, %d rejected",
            trigger,
            report.status,
            report.downloaded,
            report.uploaded,
            report.conflicted,
            report.rejected,
        )
        return report

    async def _exchange(self, call: Awaitable[T]) -> T:
        async with asyncio.timeout(self._exchange_timeout):
            return await call

    # ── Download ────────────────────────────────────────────────────

    async def _download(self, scope: str) -> int:
        result = await self._exchange(
            self._transport.download_scope(scope, self._context.node_id)
        )
        return await self.apply_download(result)

    async def apply_download(self, result: DownloadResult) -> int:
        """Replace-or-merge downloaded records by global id.

        A local record with an upload still pending keeps its local version;
        the hub decides about it when the upload arrives.
        """
        for loser_id, winner_id in result.redirects.items():
            await self._merge_locally(loser_id, winner_id)

        applied = 0
        for incoming in result.records:
            try:
                payload = validate_payload(incoming.kind, incoming.payload, incoming.global_id)
            except SchemaValidationError as e:
                logger.warning("Skipping invalid downloaded record %s: %s", incoming.global_id, e)
                continue
            if await self._store_remote(replace(incoming, payload=payload)):
                applied += 1
        logger.debug("Applied %d of %d records from %s", applied, len(result.records), result.scope)
        return applied

    async def _store_remote(self, incoming: SyncableRecord) -> bool:
        async with self._context.record_locks.hold(incoming.global_id):
            local = await self._storage.get_record(incoming.global_id)
            if local is None:
                await self._storage.add_record(replace(incoming, state=RecordState.ACTIVE))
                return True
            if local.state == RecordState.MERGED or incoming.revision < local.revision:
                return False
            if await self._queue.has_pending_upload(incoming.global_id, self._hub_target):
                return False
            if local.same_content(incoming) and local.state == RecordState.ACTIVE:
                return False
            await self._storage.update_record(
                replace(
                    local,
                    payload=dict(incoming.payload),
                    revision=incoming.revision,
                    state=RecordState.ACTIVE,
                    merged_into=None,
                )
            )
            return True

    async def _merge_locally(self, loser_id: str, winner_id: str) -> None:
        if loser_id == winner_id:
            return
        async with self._context.record_locks.hold_many([loser_id, winner_id]):
            await self._storage.add_redirect(loser_id, winner_id)
            await self._storage.set_record_state(loser_id, RecordState.MERGED, merged_into=winner_id)
            await self._storage.repoint_references(loser_id, winner_id)

    # ── Resolution notices ──────────────────────────────────────────

    async def _pull_resolutions(self) -> int:
        notices = await self._exchange(self._transport.pull_resolutions(self._context.node_id))
        if not notices:
            return 0

        applied: list[int] = []
        for notice in notices:
            await self.apply_notice(notice)
            applied.append(notice.entry_id)

        await self._exchange(self._transport.ack_resolutions(self._context.node_id, applied))
        return len(applied)

    async def apply_notice(self, notice: ResolutionNotice) -> None:
        """Adopt the hub's winner, fold superseded records into it and retire
        the queue entries the conflict was holding."""
        winner_id = notice.winner.global_id if notice.winner else None
        if notice.winner is not None:
            await self._store_notice_winner(notice.winner)

        if winner_id is not None:
            for loser_id in notice.superseded:
                await self._merge_locally(loser_id, winner_id)

        if notice.conflict_id:
            await self._queue.retire_conflict(notice.conflict_id)
        for global_id in (*notice.superseded, *([winner_id] if winner_id else [])):
            await self._queue.retire_record(global_id)

        logger.debug(
            "Applied %s notice %d: winner %s, superseded %s",
            notice.action,
            notice.entry_id,
            winner_id,
            ", ".join(notice.superseded) or "-",
        )

    async def _store_notice_winner(self, winner: SyncableRecord) -> None:
        async with self._context.record_locks.hold(winner.global_id):
            local = await self._storage.get_record(winner.global_id)
            if local is None:
                await self._storage.add_record(replace(winner, state=RecordState.ACTIVE))
                return
            if winner.revision < local.revision:
                return
            if local.canonical_payload() != winner.canonical_payload() and (
                await self._queue.has_pending_upload(winner.global_id, self._hub_target)
            ):
                # A local edit made during review goes to the hub, which
                # decides about it against the resolved version.
                logger.info(
                    "Keeping local edit of %s (rev %d) over resolved rev %d",
                    winner.global_id,
                    local.revision,
                    winner.revision,
                )
                return
            await self._storage.update_record(
                replace(
                    local,
                    payload=dict(winner.payload),
                    revision=winner.revision,
                    state=RecordState.ACTIVE,
                    merged_into=None,
                )
            )

    # ── Upload ──────────────────────────────────────────────────────

    async def _upload_all(self, report: CycleReport) -> None:
        for _ in range(_MAX_BATCHES_PER_CYCLE):
            entries = await self._queue.claim(self._hub_target, limit=self._batch_size)
            if not entries:
                return
            await self._upload_batch(entries, report)

    async def _upload_batch(self, entries: list[QueueEntry], report: CycleReport) -> None:
        records = await self._storage.get_records([e.global_id for e in entries])
        in_flight: dict[str, QueueEntry] = {}
        wire: list[dict[str, Any]] = []
        for entry in entries:
            record = records.get(entry.global_id)
            if record is None:
                await self._queue.mark_failed(entry, "record missing locally")
                report.rejected += 1
                continue
            in_flight[entry.global_id] = entry
            wire.append(record.to_wire())
        if not wire:
            return

        request = UploadRequest(
            node_id=self._context.node_id,
            batch_id=uuid4().hex,
            records=wire,
        )
        try:
            result = await self._exchange(self._transport.upload_batch(request))
            outcomes = result.outcomes
        except (TransportError, TimeoutError) as e:
            error = str(e) or type(e).__name__
            outcomes = await self._recover_batch(request.batch_id)
            await self._apply_outcomes(in_flight, outcomes, report, error)
            raise

        report.uploaded += len(wire)
        await self._apply_outcomes(in_flight, outcomes, report, "no outcome returned")

    async def _recover_batch(self, batch_id: str) -> list[RecordOutcome]:
        """Ask the hub what it applied from a batch whose response was lost."""
        try:
            return await self._exchange(self._transport.get_batch_outcomes(batch_id))
        except (TransportError, TimeoutError):
            logger.debug("Could not fetch outcomes of batch %s", batch_id)
            return []

    async def _apply_outcomes(
        self,
        in_flight: dict[str, QueueEntry],
        outcomes: list[RecordOutcome],
        report: CycleReport,
        missing_error: str,
    ) -> None:
        remaining = dict(in_flight)
        for outcome in outcomes:
            entry = remaining.pop(outcome.global_id, None)
            if entry is None:
                continue
            if outcome.outcome == SyncOutcome.SYNCED:
                await self._queue.mark_synced(entry)
                report.synced += 1
                if outcome.canonical_id and outcome.canonical_id != outcome.global_id:
                    await self._merge_locally(outcome.global_id, outcome.canonical_id)
                    report.merged += 1
            elif outcome.outcome == SyncOutcome.CONFLICTED:
                await self._queue.mark_conflicted(entry, outcome.conflict_id)
                report.conflicted += 1
            else:
                await self._queue.mark_failed(entry, outcome.reason or "rejected")
                report.rejected += 1
                logger.warning("Hub rejected %s: %s", outcome.global_id, outcome.reason)

        for entry in remaining.values():
            await self._queue.release(entry, missing_error)
            report.released += 1

"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from racelog_sync.core.context import NodeContext, NodeRole
from racelog_sync.core.identity import assign
from racelog_sync.core.record import RecordKind, SyncableRecord
from racelog_sync.core.schemas import validate_payload
from racelog_sync.storage.sqlite_store import SQLiteStorage
from racelog_sync.sync.hub import HubService
from racelog_sync.sync.protocol import (
    DownloadResult,
    HubTransport,
    RecordOutcome,
    ResolutionNotice,
    TransportError,
    UploadRequest,
    UploadResult,
)
from racelog_sync.sync.queue import SyncQueue
from racelog_sync.sync.sync_engine import SyncEngine
from racelog_sync.sync.writer import RecordWriter

HUB_NODE = "hub-0"
NODE_A = "edge-a"
NODE_B = "edge-b"


class RecordFactory:
    """Builds validated records for one origin node."""

    def __init__(self, origin: str = NODE_A) -> None:
        self.origin = origin

    def make(
        self,
        kind: RecordKind,
        payload: dict[str, Any],
        *,
        origin: str | None = None,
        global_id: str | None = None,
        revision: int = 1,
        created_at: datetime | None = None,
    ) -> SyncableRecord:
        gid = global_id or assign()
        extra: dict[str, Any] = {"created_at": created_at} if created_at else {}
        return SyncableRecord(
            global_id=gid,
            kind=kind,
            origin_node=origin or self.origin,
            revision=revision,
            payload=validate_payload(kind, payload, gid),
            **extra,
        )

    def competition(self, **kwargs: Any) -> SyncableRecord:
        payload = {
            "name": "Pierra Menta",
            "place": "Arêches-Beaufort",
            "country": "FRA",
            "start_date": "2026-03-11",
            "end_date": "2026-03-14",
        }
        return self.make(RecordKind.COMPETITION, payload, **kwargs)

    def race(self, competition_id: str, **kwargs: Any) -> SyncableRecord:
        payload = {
            "competition_id": competition_id,
            "name": "Individual",
            "stage_name": "Stage 1",
            "stage_type": "individual",
            "gender_category": "M",
        }
        return self.make(RecordKind.RACE, payload, **kwargs)

    def location(self, race_id: str, name: str = "Checkpoint 3", **kwargs: Any) -> SyncableRecord:
        payload = {
            "race_id": race_id,
            "name": name,
            "course_segment": "ascent",
            "segment_position": "top",
            "display_order": 3,
        }
        return self.make(RecordKind.RACE_LOCATION, payload, **kwargs)

    def participation(self, race_id: str, bib: int = 42, **kwargs: Any) -> SyncableRecord:
        payload = {"race_id": race_id, "bib_number": bib, "athlete_name": "Jane Doe"}
        return self.make(RecordKind.RACE_PARTICIPATION, payload, **kwargs)

    def incident(
        self,
        race_id: str,
        bib: int = 42,
        observed_at: str = "2026-03-11T10:15:00",
        location_id: str | None = None,
        decision: str = "pending",
        **kwargs: Any,
    ) -> SyncableRecord:
        payload: dict[str, Any] = {
            "race_id": race_id,
            "bib_number": bib,
            "observed_at": observed_at,
            "decision": decision,
        }
        if location_id:
            payload["race_location_id"] = location_id
        return self.make(RecordKind.INCIDENT, payload, **kwargs)

    def report(
        self,
        race_id: str,
        bib: int = 42,
        observed_at: str = "2026-03-11T10:15:00",
        description: str = "Skins removed before the transition zone",
        **extra: Any,
    ) -> SyncableRecord:
        payload: dict[str, Any] = {
            "race_id": race_id,
            "bib_number": bib,
            "observed_at": observed_at,
            "description": description,
        }
        kwargs = {k: extra.pop(k) for k in ("origin", "global_id", "revision", "created_at") if k in extra}
        payload.update(extra)
        return self.make(RecordKind.REPORT, payload, **kwargs)


@pytest.fixture
def factory() -> RecordFactory:
    return RecordFactory()


@pytest_asyncio.fixture
async def storage(tmp_path: Path) -> AsyncGenerator[SQLiteStorage, None]:
    """A fresh node database."""
    store = SQLiteStorage(tmp_path / "node.db")
    await store.initialize()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def hub_storage(tmp_path: Path) -> AsyncGenerator[SQLiteStorage, None]:
    store = SQLiteStorage(tmp_path / "hub.db")
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def hub_context() -> NodeContext:
    return NodeContext(node_id=HUB_NODE, node_name="finish area", role=NodeRole.HUB)


@pytest.fixture
def hub(hub_storage: SQLiteStorage, hub_context: NodeContext) -> HubService:
    return HubService(hub_storage, hub_context)


class FlakyHub(HubTransport):
    """In-process hub whose link can be cut or made to drop responses."""

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.online = True
        self.fail_upload_before = False  # Request never reaches the hub
        self.fail_upload_after = False  # Hub applies the batch, response is lost
        self.fail_outcomes = False
        self.delay = 0.0  # Seconds each notice pull stalls
        self.uploads = 0

    async def health_check(self) -> bool:
        return self.online

    def _check(self) -> None:
        if not self.online:
            raise TransportError("hub unreachable")

    async def download_scope(self, scope: str, node_id: str) -> DownloadResult:
        self._check()
        return await self.hub.download_scope(scope, node_id)

    async def upload_batch(self, request: UploadRequest) -> UploadResult:
        self._check()
        self.uploads += 1
        if self.fail_upload_before:
            raise TransportError("connection reset")
        result = await self.hub.upload_batch(request)
        if self.fail_upload_after:
            raise TransportError("response lost")
        return result

    async def get_batch_outcomes(self, batch_id: str) -> list[RecordOutcome]:
        self._check()
        if self.fail_outcomes:
            raise TransportError("connection reset")
        return await self.hub.get_batch_outcomes(batch_id)

    async def pull_resolutions(self, node_id: str) -> list[ResolutionNotice]:
        self._check()
        if self.delay:
            await asyncio.sleep(self.delay)
        return await self.hub.pull_resolutions(node_id)

    async def ack_resolutions(self, node_id: str, entry_ids: list[int]) -> int:
        self._check()
        return await self.hub.ack_resolutions(node_id, entry_ids)

    async def register_node(self, node_id: str, node_name: str = "") -> dict[str, Any]:
        self._check()
        return await self.hub.register_node(node_id, node_name)


@pytest.fixture
def flaky_hub(hub: HubService) -> FlakyHub:
    return FlakyHub(hub)


@pytest.fixture
def make_link(hub: HubService) -> Callable[[], FlakyHub]:
    """One independent link per edge node, all to the same hub."""
    return lambda: FlakyHub(hub)


@dataclass
class EdgeNode:
    """Everything one edge node runs, wired to a transport."""

    storage: SQLiteStorage
    context: NodeContext
    queue: SyncQueue
    writer: RecordWriter
    engine: SyncEngine


EdgeMaker = Callable[..., Awaitable[EdgeNode]]


@pytest_asyncio.fixture
async def make_edge(
    tmp_path: Path,
    hub: HubService,
) -> AsyncGenerator[EdgeMaker, None]:
    """Create edge nodes syncing with the in-process hub (or a given transport)."""
    opened: list[SQLiteStorage] = []

    async def _make(
        node_id: str,
        transport: HubTransport | None = None,
        scopes: tuple[str, ...] = (),
        batch_size: int = 100,
        exchange_timeout: float = 5.0,
    ) -> EdgeNode:
        store = SQLiteStorage(tmp_path / f"{node_id}.db")
        await store.initialize()
        opened.append(store)
        context = NodeContext(node_id=node_id, node_name=node_id)
        # Zero backoff so released entries are due again immediately
        queue = SyncQueue(store, backoff_base=0.0, backoff_cap=0.0)
        engine = SyncEngine(
            store,
            context,
            transport or hub,
            queue,
            scopes=scopes,
            batch_size=batch_size,
            exchange_timeout=exchange_timeout,
        )
        await engine.start()
        return EdgeNode(
            storage=store,
            context=context,
            queue=queue,
            writer=RecordWriter(store, context, queue),
            engine=engine,
        )

    yield _make

    for store in opened:
        await store.close()


@pytest_asyncio.fixture
async def race_tree(
    hub: HubService,
    hub_context: NodeContext,
    factory: RecordFactory,
) -> dict[str, SyncableRecord]:
    """Reference data created on the hub: competition, race, checkpoint, bib 42."""
    competition = factory.competition(origin=HUB_NODE)
    race = factory.race(competition.global_id, origin=HUB_NODE)
    location = factory.location(race.global_id, origin=HUB_NODE)
    participation = factory.participation(race.global_id, origin=HUB_NODE)
    for record in (competition, race, location, participation):
        await hub.resolver.resolve(record, hub_context.node_id)
    return {
        "competition": competition,
        "race": race,
        "location": location,
        "participation": participation,
    }

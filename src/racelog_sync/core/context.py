"""Per-node sync context.

One :class:`NodeContext` exists per running node. It is passed explicitly
to the engine, hub service, writer and review service instead of living in
module-level state.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from racelog_sync.core.fingerprint import DEFAULT_WINDOW_SECONDS
from racelog_sync.utils.locks import KeyedLock


class NodeRole(StrEnum):
    EDGE = "edge"
    HUB = "hub"


class MergeTieBreak(StrEnum):
    """Which record keeps its global id when two fingerprint-equal records merge.

    LOWEST_ORIGIN_NODE: lower origin node id, then earlier created_at, then
        lower global id.
    EARLIEST_CREATED: earlier created_at, then lower origin node id, then
        lower global id.
    """

    LOWEST_ORIGIN_NODE = "lowest_origin_node"
    EARLIEST_CREATED = "earliest_created"


DEFAULT_TIE_BREAK = MergeTieBreak.LOWEST_ORIGIN_NODE


@dataclass
class NodeContext:
    """
    Identity and mutable sync state of one node.

    Attributes:
        node_id: Stable identifier of this node
        node_name: Human-readable name
        role: Edge or hub
        tie_break: Layer-2 merge tie-break rule
        window_seconds: Fingerprint time tolerance
        last_successful_cycle_at: End of the last complete sync cycle
        cycle_lock: Held while a sync cycle is in flight
        record_locks: Per-global-id locks for resolver and review
    """

    node_id: str
    node_name: str = ""
    role: NodeRole = NodeRole.EDGE
    tie_break: MergeTieBreak = DEFAULT_TIE_BREAK
    window_seconds: int = DEFAULT_WINDOW_SECONDS
    last_successful_cycle_at: datetime | None = None
    cycle_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    record_locks: KeyedLock = field(default_factory=KeyedLock)

    @property
    def cycle_in_flight(self) -> bool:
        return self.cycle_lock.locked()

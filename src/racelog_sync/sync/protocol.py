"""Transfer protocol data structures shared by hub, client and engine."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from racelog_sync.core.identity import is_global_id
from racelog_sync.core.record import RecordKind, SyncableRecord
from racelog_sync.utils.timeutils import parse_timestamp, utcnow

# Upper bound on records per upload batch
MAX_BATCH_RECORDS = 500


class TransportError(Exception):
    """The hub could not be reached or answered unusably. Always retryable."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SyncOutcome(StrEnum):
    """Per-record result of an upload."""

    SYNCED = "synced"
    CONFLICTED = "conflicted"
    REJECTED = "rejected"


class NoticeAction(StrEnum):
    MERGED = "merged"  # Automatic fingerprint merge
    RESOLVED = "resolved"  # Reviewer settled a conflict


@dataclass(frozen=True)
class RecordOutcome:
    """Outcome of one uploaded record.

    ``canonical_id`` differs from ``global_id`` when a fingerprint merge kept
    the other record.
    """

    global_id: str
    outcome: SyncOutcome
    canonical_id: str | None = None
    conflict_id: str | None = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "global_id": self.global_id,
            "outcome": self.outcome.value,
            "canonical_id": self.canonical_id,
            "conflict_id": self.conflict_id,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecordOutcome:
        return cls(
            global_id=str(data["global_id"]),
            outcome=SyncOutcome(data["outcome"]),
            canonical_id=data.get("canonical_id"),
            conflict_id=data.get("conflict_id"),
            reason=str(data.get("reason") or ""),
        )


@dataclass(frozen=True)
class UploadRequest:
    """A batch of record versions from one node."""

    node_id: str
    batch_id: str
    records: list[dict[str, Any]] = field(default_factory=list)  # Wire-format records

    def to_dict(self) -> dict[str, Any]:
        return {"node_id": self.node_id, "batch_id": self.batch_id, "records": self.records}


@dataclass(frozen=True)
class UploadResult:
    batch_id: str
    outcomes: list[RecordOutcome] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"batch_id": self.batch_id, "outcomes": [o.to_dict() for o in self.outcomes]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UploadResult:
        return cls(
            batch_id=str(data["batch_id"]),
            outcomes=[RecordOutcome.from_dict(o) for o in data.get("outcomes", [])],
        )


@dataclass(frozen=True)
class DownloadResult:
    """Reference records of one scope in dependency order, plus redirects."""

    scope: str
    records: list[SyncableRecord] = field(default_factory=list)
    redirects: dict[str, str] = field(default_factory=dict)
    server_time: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "records": [r.to_wire() for r in self.records],
            "redirects": dict(self.redirects),
            "server_time": self.server_time.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DownloadResult:
        server_time = data.get("server_time")
        return cls(
            scope=str(data["scope"]),
            records=[SyncableRecord.from_wire(r) for r in data.get("records", [])],
            redirects={str(k): str(v) for k, v in (data.get("redirects") or {}).items()},
            server_time=parse_timestamp(server_time) if server_time else utcnow(),
        )


@dataclass(frozen=True)
class ResolutionNotice:
    """Hub-to-edge delivery of a merge or review outcome.

    Attributes:
        entry_id: Hub queue entry id; echoed back in the acknowledgement
        action: Automatic merge or reviewer resolution
        winner: Current version of the surviving record
        superseded: Global ids that now redirect to the winner
        conflict_id: The resolved conflict, for reviewer resolutions
    """

    entry_id: int
    action: NoticeAction
    winner: SyncableRecord | None
    superseded: tuple[str, ...] = ()
    conflict_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "action": self.action.value,
            "winner": self.winner.to_wire() if self.winner else None,
            "superseded": list(self.superseded),
            "conflict_id": self.conflict_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResolutionNotice:
        winner = data.get("winner")
        return cls(
            entry_id=int(data["entry_id"]),
            action=NoticeAction(data["action"]),
            winner=SyncableRecord.from_wire(winner) if winner else None,
            superseded=tuple(str(g) for g in data.get("superseded", [])),
            conflict_id=data.get("conflict_id"),
        )


@dataclass(frozen=True)
class ScopeSelector:
    """A reference subtree rooted at a competition or a race."""

    kind: RecordKind
    global_id: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.global_id}"


_SCOPE_KINDS = frozenset({RecordKind.COMPETITION, RecordKind.RACE})


def parse_scope(value: str) -> ScopeSelector:
    """Parse ``competition:<global_id>`` or ``race:<global_id>``.

    Raises:
        ValueError: If the selector is malformed or names an unsupported kind.
    """
    kind_raw, sep, gid = value.strip().partition(":")
    if not sep:
        raise ValueError(f"Invalid scope selector: {value!r}")
    try:
        kind = RecordKind(kind_raw.lower())
    except ValueError:
        raise ValueError(f"Unknown scope kind: {kind_raw!r}") from None
    if kind not in _SCOPE_KINDS:
        raise ValueError(f"Scope kind must be competition or race, got {kind_raw!r}")
    gid = gid.lower()
    if not is_global_id(gid):
        raise ValueError(f"Invalid global id in scope: {gid!r}")
    return ScopeSelector(kind=kind, global_id=gid)


class HubTransport(ABC):
    """Everything an edge needs from the hub.

    Implemented over HTTP by :class:`racelog_sync.sync.client.HubClient`
    and in-process by :class:`racelog_sync.sync.hub.HubService`.
    """

    @abstractmethod
    async def health_check(self) -> bool:
        """Lightweight reachability probe. Never raises."""
        ...

    @abstractmethod
    async def download_scope(self, scope: str, node_id: str) -> DownloadResult: ...

    @abstractmethod
    async def upload_batch(self, request: UploadRequest) -> UploadResult: ...

    @abstractmethod
    async def get_batch_outcomes(self, batch_id: str) -> list[RecordOutcome]: ...

    @abstractmethod
    async def pull_resolutions(self, node_id: str) -> list[ResolutionNotice]: ...

    @abstractmethod
    async def ack_resolutions(self, node_id: str, entry_ids: list[int]) -> int: ...

    @abstractmethod
    async def register_node(self, node_id: str, node_name: str = "") -> dict[str, Any]: ...

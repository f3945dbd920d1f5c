"""Conflict records.

A conflict is one of two explicit variants:

- :class:`IdentityConflict`: several versions of the *same* global id whose
  payloads diverged without either side seeing the other's edit.
- :class:`FingerprintConflict`: two records with *different* global ids
  describing the same real-world event whose embedded decisions contradict.

Both carry a status, an optional winner and an append-only audit trail.
Conflict records are never deleted.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any, assert_never
from uuid import uuid4

from racelog_sync.core.record import SyncableRecord
from racelog_sync.utils.timeutils import parse_timestamp, utcnow


class ConflictStatus(StrEnum):
    OPEN = "open"
    RESOLVED = "resolved"


class ConflictType(StrEnum):
    IDENTITY = "identity"
    FINGERPRINT = "fingerprint"


class ResolutionChoice(StrEnum):
    """How a reviewer settles a conflict."""

    PICK_LEFT = "pick_left"
    PICK_RIGHT = "pick_right"
    MERGED_PAYLOAD = "merged_payload"


@dataclass(frozen=True)
class Resolution:
    """A reviewer's decision. ``payload`` is required for MERGED_PAYLOAD only."""

    choice: ResolutionChoice
    payload: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        if self.choice == ResolutionChoice.MERGED_PAYLOAD and self.payload is None:
            raise ValueError("merged_payload resolution requires a payload")


@dataclass(frozen=True)
class AuditEntry:
    """One line of a conflict's audit trail."""

    at: datetime
    actor_node: str
    action: str
    operator: str = ""
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "at": self.at.isoformat(),
            "actor_node": self.actor_node,
            "operator": self.operator,
            "action": self.action,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEntry:
        return cls(
            at=parse_timestamp(data["at"]),
            actor_node=str(data.get("actor_node", "")),
            operator=str(data.get("operator", "")),
            action=str(data.get("action", "")),
            detail=str(data.get("detail", "")),
        )


def new_conflict_id() -> str:
    return f"cf-{uuid4().hex}"


@dataclass(frozen=True)
class IdentityConflict:
    """Divergent versions of one global id. ``versions[0]`` is the stored ("left") one."""

    conflict_id: str
    global_id: str
    versions: tuple[SyncableRecord, ...]
    status: ConflictStatus = ConflictStatus.OPEN
    winner_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    audit: tuple[AuditEntry, ...] = ()

    @property
    def type(self) -> ConflictType:
        return ConflictType.IDENTITY

    @property
    def left(self) -> SyncableRecord:
        return self.versions[0]

    @property
    def right(self) -> SyncableRecord:
        return self.versions[-1]

    @property
    def global_ids(self) -> tuple[str, ...]:
        return (self.global_id,)

    @property
    def origin_nodes(self) -> frozenset[str]:
        return frozenset(v.origin_node for v in self.versions)


@dataclass(frozen=True)
class FingerprintConflict:
    """Two records for the same event whose decisions contradict."""

    conflict_id: str
    fingerprint: str
    left: SyncableRecord
    right: SyncableRecord
    reason: str = ""
    status: ConflictStatus = ConflictStatus.OPEN
    winner_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    audit: tuple[AuditEntry, ...] = ()

    @property
    def type(self) -> ConflictType:
        return ConflictType.FINGERPRINT

    @property
    def global_ids(self) -> tuple[str, ...]:
        return (self.left.global_id, self.right.global_id)

    @property
    def origin_nodes(self) -> frozenset[str]:
        return frozenset((self.left.origin_node, self.right.origin_node))


ConflictRecord = IdentityConflict | FingerprintConflict


def with_audit(conflict: ConflictRecord, entry: AuditEntry) -> ConflictRecord:
    """Return a copy of *conflict* with *entry* appended to its audit trail."""
    return replace(conflict, audit=(*conflict.audit, entry))


def _record_to_dict(record: SyncableRecord) -> dict[str, Any]:
    return record.to_wire()


def conflict_to_dict(conflict: ConflictRecord) -> dict[str, Any]:
    """Serialize a conflict for storage and for the review API."""
    base: dict[str, Any] = {
        "conflict_id": conflict.conflict_id,
        "type": conflict.type.value,
        "status": conflict.status.value,
        "winner_id": conflict.winner_id,
        "created_at": conflict.created_at.isoformat(),
        "audit": [a.to_dict() for a in conflict.audit],
    }
    if isinstance(conflict, IdentityConflict):
        base["global_id"] = conflict.global_id
        base["versions"] = [_record_to_dict(v) for v in conflict.versions]
    elif isinstance(conflict, FingerprintConflict):
        base["fingerprint"] = conflict.fingerprint
        base["reason"] = conflict.reason
        base["left"] = _record_to_dict(conflict.left)
        base["right"] = _record_to_dict(conflict.right)
    else:
        assert_never(conflict)
    return base


def conflict_from_dict(data: dict[str, Any]) -> ConflictRecord:
    """Rebuild a conflict from :func:`conflict_to_dict` output.

    Raises:
        ValueError: If the conflict type is unknown.
    """
    conflict_type = ConflictType(data["type"])
    common: dict[str, Any] = {
        "conflict_id": data["conflict_id"],
        "status": ConflictStatus(data.get("status", "open")),
        "winner_id": data.get("winner_id"),
        "created_at": parse_timestamp(data["created_at"]) if data.get("created_at") else utcnow(),
        "audit": tuple(AuditEntry.from_dict(a) for a in data.get("audit", [])),
    }
    if conflict_type == ConflictType.IDENTITY:
        return IdentityConflict(
            global_id=data["global_id"],
            versions=tuple(SyncableRecord.from_wire(v) for v in data["versions"]),
            **common,
        )
    return FingerprintConflict(
        fingerprint=data.get("fingerprint", ""),
        left=SyncableRecord.from_wire(data["left"]),
        right=SyncableRecord.from_wire(data["right"]),
        reason=data.get("reason", ""),
        **common,
    )

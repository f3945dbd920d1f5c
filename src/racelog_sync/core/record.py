"""Syncable record model and the per-kind metadata table."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any

from racelog_sync.utils.timeutils import parse_timestamp, utcnow


class RecordClass(StrEnum):
    """Data classes that sync differently."""

    REFERENCE = "reference"  # Created once, on exactly one node
    OPERATIONAL = "operational"  # May be created concurrently on several nodes


class RecordKind(StrEnum):
    """Kinds of syncable records."""

    COMPETITION = "competition"
    RACE = "race"
    RACE_LOCATION = "race_location"
    RACE_PARTICIPATION = "race_participation"
    REPORT = "report"
    INCIDENT = "incident"


class RecordState(StrEnum):
    """Storage-side lifecycle of a record row."""

    ACTIVE = "active"
    MERGED = "merged"  # Lost a merge, redirects to merged_into
    HELD = "held"  # Parked inside an open fingerprint conflict


@dataclass(frozen=True)
class KindSpec:
    """Static description of a record kind.

    Attributes:
        kind: The record kind
        record_class: Reference or operational
        rank: Dependency rank; parents sort before children
        parent_field: Payload field holding the parent's global id
        reference_fields: All payload fields that hold global ids
        key_field: Business discriminator used by the fingerprint
        location_field: Payload field bucketed as the fingerprint location
        time_field: Payload field bucketed as the fingerprint time
        decision_field: Field whose differing non-default values make two
            fingerprint-equal records contradictory
        decision_default: Value of decision_field meaning "not decided"
    """

    kind: RecordKind
    record_class: RecordClass
    rank: int
    parent_field: str | None = None
    reference_fields: tuple[str, ...] = ()
    key_field: str | None = None
    location_field: str | None = None
    time_field: str | None = None
    decision_field: str | None = None
    decision_default: Any = None


KIND_SPECS: dict[RecordKind, KindSpec] = {
    RecordKind.COMPETITION: KindSpec(
        kind=RecordKind.COMPETITION,
        record_class=RecordClass.REFERENCE,
        rank=0,
    ),
    RecordKind.RACE: KindSpec(
        kind=RecordKind.RACE,
        record_class=RecordClass.REFERENCE,
        rank=1,
        parent_field="competition_id",
        reference_fields=("competition_id",),
    ),
    RecordKind.RACE_LOCATION: KindSpec(
        kind=RecordKind.RACE_LOCATION,
        record_class=RecordClass.REFERENCE,
        rank=2,
        parent_field="race_id",
        reference_fields=("race_id",),
    ),
    RecordKind.RACE_PARTICIPATION: KindSpec(
        kind=RecordKind.RACE_PARTICIPATION,
        record_class=RecordClass.REFERENCE,
        rank=2,
        parent_field="race_id",
        reference_fields=("race_id",),
    ),
    RecordKind.INCIDENT: KindSpec(
        kind=RecordKind.INCIDENT,
        record_class=RecordClass.OPERATIONAL,
        rank=3,
        parent_field="race_id",
        reference_fields=("race_id", "race_location_id"),
        key_field="bib_number",
        location_field="race_location_id",
        time_field="observed_at",
        decision_field="decision",
        decision_default="pending",
    ),
    RecordKind.REPORT: KindSpec(
        kind=RecordKind.REPORT,
        record_class=RecordClass.OPERATIONAL,
        rank=4,
        parent_field="race_id",
        reference_fields=("race_id", "race_location_id", "incident_id"),
        key_field="bib_number",
        location_field="race_location_id",
        time_field="observed_at",
        decision_field="proposed_penalty",
        decision_default=None,
    ),
}


def kind_spec(kind: RecordKind | str) -> KindSpec:
    """Look up the spec for a kind.

    Raises:
        ValueError: If the kind is unknown.
    """
    return KIND_SPECS[RecordKind(kind)]


def canonical_json(payload: dict[str, Any]) -> str:
    """Serialize a payload deterministically for byte-level comparison."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True)
class SyncableRecord:
    """
    One version of a syncable record.

    Records are immutable; every local mutation produces a new instance with
    ``revision`` incremented.

    Attributes:
        global_id: Globally unique id minted by the creating node
        kind: Record kind (determines class and schema)
        origin_node: Node that created the record
        revision: Mutation counter, incremented on every local change
        payload: Validated domain fields
        created_at: Creation time on the origin node (naive UTC)
        updated_at: Last local write time
        local_id: Node-local sequence number; never transmitted
        state: Storage lifecycle state
        merged_into: Winning global id when state is MERGED
    """

    global_id: str
    kind: RecordKind
    origin_node: str
    revision: int
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    local_id: int | None = None
    state: RecordState = RecordState.ACTIVE
    merged_into: str | None = None

    @property
    def spec(self) -> KindSpec:
        return KIND_SPECS[self.kind]

    @property
    def record_class(self) -> RecordClass:
        return KIND_SPECS[self.kind].record_class

    @property
    def is_operational(self) -> bool:
        return self.record_class == RecordClass.OPERATIONAL

    @property
    def parent_id(self) -> str | None:
        parent_field = self.spec.parent_field
        if parent_field is None:
            return None
        value = self.payload.get(parent_field)
        return str(value) if value else None

    def canonical_payload(self) -> str:
        return canonical_json(self.payload)

    def same_content(self, other: SyncableRecord) -> bool:
        """True when both versions carry the same revision and identical payload."""
        return self.revision == other.revision and self.canonical_payload() == other.canonical_payload()

    def with_payload(self, payload: dict[str, Any], revision: int | None = None) -> SyncableRecord:
        """Return a copy with a new payload and revision (default: +1)."""
        return replace(
            self,
            payload=dict(payload),
            revision=self.revision + 1 if revision is None else revision,
            updated_at=utcnow(),
        )

    def to_wire(self) -> dict[str, Any]:
        """Serialize for transfer. ``local_id`` and storage state stay local."""
        return {
            "global_id": self.global_id,
            "kind": self.kind.value,
            "origin_node": self.origin_node,
            "revision": self.revision,
            "created_at": self.created_at.isoformat(),
            "payload": self.payload,
        }

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> SyncableRecord:
        """Rebuild a record received from another node.

        Raises:
            KeyError: If a required field is missing.
            ValueError: If kind or timestamps are malformed.
        """
        created_at_raw = data.get("created_at")
        return cls(
            global_id=str(data["global_id"]),
            kind=RecordKind(data["kind"]),
            origin_node=str(data["origin_node"]),
            revision=int(data["revision"]),
            payload=dict(data.get("payload") or {}),
            created_at=parse_timestamp(created_at_raw) if created_at_raw else utcnow(),
        )

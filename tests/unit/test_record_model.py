"""Tests for the record model, payload schemas and conflict serialization."""

from __future__ import annotations

from dataclasses import FrozenInstanceError
from datetime import datetime

import pytest

from racelog_sync.core.conflict import (
    AuditEntry,
    ConflictStatus,
    ConflictType,
    FingerprintConflict,
    IdentityConflict,
    Resolution,
    ResolutionChoice,
    conflict_from_dict,
    conflict_to_dict,
    with_audit,
)
from racelog_sync.core.identity import assign
from racelog_sync.core.record import (
    KIND_SPECS,
    RecordClass,
    RecordKind,
    SyncableRecord,
    kind_spec,
)
from racelog_sync.core.schemas import SchemaValidationError, validate_payload


def _incident_payload(**overrides) -> dict:
    payload = {
        "race_id": assign(),
        "bib_number": 42,
        "observed_at": "2026-03-11T10:15:00",
    }
    payload.update(overrides)
    return payload


# ── Kind metadata ────────────────────────────────────────────────────


class TestKindSpecs:
    def test_reference_kinds(self) -> None:
        for kind in (
            RecordKind.COMPETITION,
            RecordKind.RACE,
            RecordKind.RACE_LOCATION,
            RecordKind.RACE_PARTICIPATION,
        ):
            assert KIND_SPECS[kind].record_class == RecordClass.REFERENCE

    def test_operational_kinds(self) -> None:
        assert KIND_SPECS[RecordKind.INCIDENT].record_class == RecordClass.OPERATIONAL
        assert KIND_SPECS[RecordKind.REPORT].record_class == RecordClass.OPERATIONAL

    def test_parents_rank_before_children(self) -> None:
        for spec in KIND_SPECS.values():
            if spec.parent_field == "competition_id":
                assert spec.rank > KIND_SPECS[RecordKind.COMPETITION].rank
            elif spec.parent_field == "race_id":
                assert spec.rank > KIND_SPECS[RecordKind.RACE].rank

    def test_unknown_kind_raises(self) -> None:
        with pytest.raises(ValueError):
            kind_spec("athlete")


# ── SyncableRecord ───────────────────────────────────────────────────


class TestSyncableRecord:
    def test_is_frozen(self, factory) -> None:
        record = factory.competition()
        with pytest.raises(FrozenInstanceError):
            record.revision = 2  # type: ignore[misc]

    def test_with_payload_bumps_revision(self, factory) -> None:
        record = factory.competition()
        updated = record.with_payload({**record.payload, "place": "Beaufort"})

        assert updated.revision == 2
        assert updated.global_id == record.global_id
        assert updated.payload["place"] == "Beaufort"
        assert record.payload["place"] != "Beaufort"

    def test_with_payload_explicit_revision(self, factory) -> None:
        record = factory.competition()
        assert record.with_payload(record.payload, revision=9).revision == 9

    def test_parent_id(self, factory) -> None:
        competition = factory.competition()
        race = factory.race(competition.global_id)

        assert competition.parent_id is None
        assert race.parent_id == competition.global_id

    def test_same_content_requires_equal_revision(self, factory) -> None:
        record = factory.competition()
        assert record.same_content(record)
        assert not record.same_content(record.with_payload(record.payload))

    def test_same_content_ignores_key_order(self, factory) -> None:
        record = factory.competition()
        reordered = SyncableRecord(
            global_id=record.global_id,
            kind=record.kind,
            origin_node="edge-b",
            revision=record.revision,
            payload=dict(reversed(list(record.payload.items()))),
        )
        assert record.same_content(reordered)

    def test_wire_excludes_local_fields(self, factory) -> None:
        wire = factory.competition().to_wire()

        assert set(wire) == {"global_id", "kind", "origin_node", "revision", "created_at", "payload"}

    def test_from_wire_restores_record(self, factory) -> None:
        record = factory.incident(assign(), created_at=datetime(2026, 3, 11, 10, 15, 30))
        restored = SyncableRecord.from_wire(record.to_wire())

        assert restored.global_id == record.global_id
        assert restored.kind == RecordKind.INCIDENT
        assert restored.created_at == datetime(2026, 3, 11, 10, 15, 30)
        assert restored.local_id is None
        assert restored.same_content(record)

    def test_from_wire_missing_field_raises(self) -> None:
        with pytest.raises(KeyError):
            SyncableRecord.from_wire({"kind": "race"})


# ── Payload schemas ──────────────────────────────────────────────────


class TestValidatePayload:
    def test_incident_defaults_are_filled(self) -> None:
        payload = validate_payload(RecordKind.INCIDENT, _incident_payload())

        assert payload["status"] == "unofficial"
        assert payload["decision"] == "pending"
        assert "race_location_id" not in payload

    def test_timestamps_normalized_to_naive_utc(self) -> None:
        payload = validate_payload(
            RecordKind.INCIDENT, _incident_payload(observed_at="2026-03-11T12:15:00+02:00")
        )
        assert payload["observed_at"] == "2026-03-11T10:15:00"

    def test_reference_ids_are_lowercased(self) -> None:
        race_id = assign()
        payload = validate_payload(RecordKind.INCIDENT, _incident_payload(race_id=race_id.upper()))
        assert payload["race_id"] == race_id

    def test_bad_reference_id(self) -> None:
        with pytest.raises(SchemaValidationError, match="race_id"):
            validate_payload(RecordKind.INCIDENT, _incident_payload(race_id="42"))

    @pytest.mark.parametrize("bib", [0, 10000, -1])
    def test_bib_out_of_range(self, bib: int) -> None:
        with pytest.raises(SchemaValidationError, match="bib_number"):
            validate_payload(RecordKind.INCIDENT, _incident_payload(bib_number=bib))

    def test_unknown_decision(self) -> None:
        with pytest.raises(SchemaValidationError):
            validate_payload(RecordKind.INCIDENT, _incident_payload(decision="maybe"))

    def test_extra_field_forbidden(self) -> None:
        with pytest.raises(SchemaValidationError):
            validate_payload(RecordKind.INCIDENT, _incident_payload(weather="sunny"))

    def test_unknown_kind(self) -> None:
        with pytest.raises(SchemaValidationError) as exc_info:
            validate_payload("athlete", {}, "gid-1")
        assert exc_info.value.reason == "unknown record kind"
        assert exc_info.value.global_id == "gid-1"

    def test_competition_end_before_start(self) -> None:
        with pytest.raises(SchemaValidationError, match="end_date"):
            validate_payload(
                RecordKind.COMPETITION,
                {
                    "name": "Pierra Menta",
                    "place": "Arêches",
                    "country": "FRA",
                    "start_date": "2026-03-14",
                    "end_date": "2026-03-11",
                },
            )

    def test_report_video_url_must_be_http(self) -> None:
        payload = {
            "race_id": assign(),
            "bib_number": 5,
            "observed_at": "2026-03-11T10:15:00",
            "description": "Missing mandatory gear",
            "video_url": "ftp://example.org/clip.mp4",
        }
        with pytest.raises(SchemaValidationError, match="video_url"):
            validate_payload(RecordKind.REPORT, payload)

    def test_schema_error_is_value_error(self) -> None:
        assert issubclass(SchemaValidationError, ValueError)


# ── Conflicts ────────────────────────────────────────────────────────


class TestResolution:
    def test_merged_payload_requires_payload(self) -> None:
        with pytest.raises(ValueError, match="requires a payload"):
            Resolution(choice=ResolutionChoice.MERGED_PAYLOAD)

    def test_pick_without_payload(self) -> None:
        assert Resolution(choice=ResolutionChoice.PICK_LEFT).payload is None


class TestConflictSerialization:
    def test_identity_conflict_roundtrip(self, factory) -> None:
        left = factory.competition()
        right = SyncableRecord(
            global_id=left.global_id,
            kind=left.kind,
            origin_node="edge-b",
            revision=left.revision,
            payload={**left.payload, "place": "Beaufort"},
        )
        conflict = IdentityConflict(
            conflict_id="cf-1",
            global_id=left.global_id,
            versions=(left, right),
            audit=(AuditEntry(at=datetime(2026, 3, 11), actor_node="hub-0", action="flagged"),),
        )

        data = conflict_to_dict(conflict)
        restored = conflict_from_dict(data)

        assert data["type"] == "identity"
        assert isinstance(restored, IdentityConflict)
        assert restored.left.same_content(left)
        assert restored.right.same_content(right)
        assert restored.origin_nodes == frozenset({"edge-a", "edge-b"})
        assert restored.audit[0].action == "flagged"

    def test_identity_right_is_newest_version(self, factory) -> None:
        first = factory.competition()
        versions = (first, first.with_payload(first.payload), first.with_payload(first.payload, 5))
        conflict = IdentityConflict(conflict_id="cf-2", global_id=first.global_id, versions=versions)

        assert conflict.left is versions[0]
        assert conflict.right is versions[-1]

    def test_fingerprint_conflict_roundtrip(self, factory) -> None:
        race_id = assign()
        left = factory.incident(race_id, decision="penalty_applied")
        right = factory.incident(race_id, decision="rejected", origin="edge-b")
        conflict = FingerprintConflict(
            conflict_id="cf-3",
            fingerprint="abc",
            left=left,
            right=right,
            reason="contradictory decisions",
        )

        restored = conflict_from_dict(conflict_to_dict(conflict))

        assert isinstance(restored, FingerprintConflict)
        assert restored.type == ConflictType.FINGERPRINT
        assert restored.global_ids == (left.global_id, right.global_id)
        assert restored.reason == "contradictory decisions"
        assert restored.status == ConflictStatus.OPEN

    def test_with_audit_appends(self, factory) -> None:
        record = factory.competition()
        conflict = IdentityConflict(conflict_id="cf-4", global_id=record.global_id, versions=(record,))
        entry = AuditEntry(at=datetime(2026, 3, 11), actor_node="hub-0", action="note", detail="x")

        updated = with_audit(conflict, entry)

        assert conflict.audit == ()
        assert updated.audit == (entry,)

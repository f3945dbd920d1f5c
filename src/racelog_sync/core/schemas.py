"""Payload schemas, one per record kind.

Payloads are validated and normalized here before they are stored locally
and again when they arrive over the wire, so the resolver only ever sees
well-formed, canonical dictionaries.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

from racelog_sync.core.identity import is_global_id
from racelog_sync.core.record import RecordKind
from racelog_sync.utils.timeutils import to_naive_utc

GlobalId = str


class SchemaValidationError(ValueError):
    """A payload failed structural validation."""

    def __init__(self, kind: str, reason: str, global_id: str | None = None) -> None:
        super().__init__(f"{kind}: {reason}")
        self.kind = kind
        self.reason = reason
        self.global_id = global_id


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    @field_validator("*", mode="after")
    @classmethod
    def normalize_timestamps(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return to_naive_utc(value)
        return value


def _check_ref(value: str | None) -> str | None:
    if value is None:
        return None
    lowered = value.lower()
    if not is_global_id(lowered):
        raise ValueError("must be a global id (UUID)")
    return lowered


# ── Reference data ──────────────────────────────────────────────────


class CompetitionPayload(_Payload):
    name: str = Field(..., min_length=1, max_length=255)
    place: str = Field(..., min_length=1, max_length=255)
    country: str = Field(..., min_length=3, max_length=3)
    start_date: date
    end_date: date

    @field_validator("end_date")
    @classmethod
    def check_end_date(cls, value: date, info: ValidationInfo) -> date:
        start = info.data.get("start_date")
        if start is not None and value < start:
            raise ValueError("cannot be before start_date")
        return value


class RacePayload(_Payload):
    competition_id: GlobalId
    name: str = Field(..., min_length=1, max_length=255)
    stage_name: str = Field(..., min_length=1, max_length=255)
    stage_type: str = Field(..., min_length=1, max_length=64)
    gender_category: Literal["M", "F", "X"] = "M"
    scheduled_at: datetime | None = None

    @field_validator("competition_id")
    @classmethod
    def check_refs(cls, value: str) -> str | None:
        return _check_ref(value)


class RaceLocationPayload(_Payload):
    race_id: GlobalId
    name: str = Field(..., min_length=1, max_length=255)
    course_segment: str = Field(..., min_length=1, max_length=64)
    segment_position: str = Field(..., min_length=1, max_length=64)
    display_order: int = Field(0, ge=0)

    @field_validator("race_id")
    @classmethod
    def check_refs(cls, value: str) -> str | None:
        return _check_ref(value)


class RaceParticipationPayload(_Payload):
    race_id: GlobalId
    bib_number: int = Field(..., ge=1, le=9999)
    athlete_name: str = Field(..., min_length=1, max_length=255)
    country: str | None = Field(None, min_length=3, max_length=3)

    @field_validator("race_id")
    @classmethod
    def check_refs(cls, value: str) -> str | None:
        return _check_ref(value)


# ── Operational data ────────────────────────────────────────────────


class ReportPayload(_Payload):
    race_id: GlobalId
    bib_number: int = Field(..., ge=1, le=9999)
    observed_at: datetime
    description: str = Field(..., min_length=1, max_length=10_000)
    race_location_id: GlobalId | None = None
    athlete_name: str | None = Field(None, max_length=255)
    video_url: str | None = Field(None, pattern=r"(?i)^https?://.+")
    incident_id: GlobalId | None = None
    proposed_penalty: str | None = Field(None, min_length=1, max_length=16)

    @field_validator("race_id", "race_location_id", "incident_id")
    @classmethod
    def check_refs(cls, value: str | None) -> str | None:
        return _check_ref(value)


class IncidentPayload(_Payload):
    race_id: GlobalId
    bib_number: int = Field(..., ge=1, le=9999)
    observed_at: datetime
    race_location_id: GlobalId | None = None
    status: Literal["unofficial", "official"] = "unofficial"
    decision: Literal["pending", "penalty_applied", "rejected", "no_action"] = "pending"
    decision_notes: str | None = Field(None, max_length=5_000)

    @field_validator("race_id", "race_location_id")
    @classmethod
    def check_refs(cls, value: str | None) -> str | None:
        return _check_ref(value)


PAYLOAD_SCHEMAS: dict[RecordKind, type[_Payload]] = {
    RecordKind.COMPETITION: CompetitionPayload,
    RecordKind.RACE: RacePayload,
    RecordKind.RACE_LOCATION: RaceLocationPayload,
    RecordKind.RACE_PARTICIPATION: RaceParticipationPayload,
    RecordKind.REPORT: ReportPayload,
    RecordKind.INCIDENT: IncidentPayload,
}


def _summarize(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "payload"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


def validate_payload(
    kind: RecordKind | str,
    payload: dict[str, Any],
    global_id: str | None = None,
) -> dict[str, Any]:
    """Validate *payload* against the schema of *kind* and normalize it.

    Returns:
        JSON-ready dict with ``None`` fields dropped and timestamps in naive
        UTC ISO form.

    Raises:
        SchemaValidationError: If the kind is unknown or the payload invalid.
    """
    try:
        record_kind = RecordKind(kind)
    except ValueError:
        raise SchemaValidationError(str(kind), "unknown record kind", global_id) from None

    schema = PAYLOAD_SCHEMAS[record_kind]
    try:
        model = schema.model_validate(payload)
    except ValidationError as e:
        raise SchemaValidationError(record_kind.value, _summarize(e), global_id) from e
    return model.model_dump(mode="json", exclude_none=True)

"""Fingerprint engine: content-derived similarity keys for operational records.

Two referees at the same checkpoint who log the same athlete within a few
seconds of each other produce records with different global ids but the
same fingerprint. The fingerprint is a SHA-256 digest over a normalized
tuple:

    (kind, parent id, discriminating key, location bucket, time bucket)

The time bucket is ``floor(epoch_seconds / window)``. A fixed bucket edge
would separate two events a couple of seconds apart, so candidate lookup
also probes the neighbouring buckets and then confirms the observation
times are within ``window`` seconds of each other.
"""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from racelog_sync.core.record import KindSpec, RecordKind, SyncableRecord, kind_spec
from racelog_sync.utils.timeutils import parse_timestamp

# Default tolerance window in seconds
DEFAULT_WINDOW_SECONDS = 30

# Placeholder for a missing location
_ANY_LOCATION = "*"


@dataclass(frozen=True)
class Fingerprint:
    """Normalized fingerprint components plus the digest of the exact bucket."""

    kind: RecordKind
    parent_id: str
    key: str
    location: str
    time_bucket: int
    observed_at: datetime
    digest: str

    @property
    def lock_key(self) -> str:
        """Key shared by every record that could ever be fingerprint-equal."""
        return f"fp:{self.kind.value}|{self.parent_id}|{self.key}"

    def neighbour_digests(self) -> tuple[str, str, str]:
        """Digests of the previous, own and next time buckets."""
        return (
            _digest(self.kind, self.parent_id, self.key, self.location, self.time_bucket - 1),
            self.digest,
            _digest(self.kind, self.parent_id, self.key, self.location, self.time_bucket + 1),
        )

    def matches(self, other: Fingerprint, window_seconds: int = DEFAULT_WINDOW_SECONDS) -> bool:
        """True when *other* denotes the same real-world event."""
        if (self.kind, self.parent_id, self.key, self.location) != (
            other.kind,
            other.parent_id,
            other.key,
            other.location,
        ):
            return False
        delta = abs((self.observed_at - other.observed_at).total_seconds())
        return delta <= window_seconds


def _digest(kind: RecordKind, parent_id: str, key: str, location: str, bucket: int) -> str:
    raw = "|".join((kind.value, parent_id, key, location, str(bucket)))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _epoch_seconds(value: datetime) -> float:
    return value.replace(tzinfo=UTC).timestamp()


def _normalize_key(value: Any) -> str:
    if isinstance(value, str):
        return value.strip().lower()
    return str(value)


def time_bucket(observed_at: datetime, window_seconds: int = DEFAULT_WINDOW_SECONDS) -> int:
    """Return the bucket index for a naive-UTC timestamp."""
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")
    return math.floor(_epoch_seconds(observed_at) / window_seconds)


def compute_fingerprint(
    record: SyncableRecord,
    window_seconds: int = DEFAULT_WINDOW_SECONDS,
) -> Fingerprint | None:
    """Compute the fingerprint of an operational record.

    Returns:
        The fingerprint, or ``None`` for reference records and for
        operational records missing a parent, key or timestamp.
    """
    spec: KindSpec = kind_spec(record.kind)
    if spec.key_field is None or spec.time_field is None or spec.parent_field is None:
        return None

    payload = record.payload
    parent = payload.get(spec.parent_field)
    key = payload.get(spec.key_field)
    observed_raw = payload.get(spec.time_field)
    if not parent or key is None or not observed_raw:
        return None

    location_raw = payload.get(spec.location_field) if spec.location_field else None
    location = _normalize_key(location_raw) if location_raw else _ANY_LOCATION

    observed_at = parse_timestamp(observed_raw)
    parent_id = _normalize_key(parent)
    norm_key = _normalize_key(key)
    bucket = time_bucket(observed_at, window_seconds)

    return Fingerprint(
        kind=record.kind,
        parent_id=parent_id,
        key=norm_key,
        location=location,
        time_bucket=bucket,
        observed_at=observed_at,
        digest=_digest(record.kind, parent_id, norm_key, location, bucket),
    )


def has_contradictory_decision(left: SyncableRecord, right: SyncableRecord) -> bool:
    """True when both records embed a decision and the decisions differ.

    Such records must go to human review rather than being auto-merged.
    """
    spec = kind_spec(left.kind)
    if spec.decision_field is None or left.kind != right.kind:
        return False
    left_value = left.payload.get(spec.decision_field, spec.decision_default)
    right_value = right.payload.get(spec.decision_field, spec.decision_default)
    if left_value == spec.decision_default or right_value == spec.decision_default:
        return False
    return bool(left_value != right_value)

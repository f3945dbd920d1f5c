"""Core data models for racelog-sync."""

from racelog_sync.core.conflict import (
    AuditEntry,
    ConflictRecord,
    ConflictStatus,
    ConflictType,
    FingerprintConflict,
    IdentityConflict,
    Resolution,
    ResolutionChoice,
)
from racelog_sync.core.context import MergeTieBreak, NodeContext, NodeRole
from racelog_sync.core.fingerprint import Fingerprint, compute_fingerprint
from racelog_sync.core.identity import NodeInfo, assign, get_node_id, get_node_info
from racelog_sync.core.record import RecordClass, RecordKind, RecordState, SyncableRecord
from racelog_sync.core.schemas import SchemaValidationError, validate_payload

__all__ = [
    # Records
    "RecordClass",
    "RecordKind",
    "RecordState",
    "SyncableRecord",
    "SchemaValidationError",
    "validate_payload",
    # Identity
    "NodeInfo",
    "assign",
    "get_node_id",
    "get_node_info",
    # Fingerprints
    "Fingerprint",
    "compute_fingerprint",
    # Conflicts
    "AuditEntry",
    "ConflictRecord",
    "ConflictStatus",
    "ConflictType",
    "FingerprintConflict",
    "IdentityConflict",
    "Resolution",
    "ResolutionChoice",
    # Node context
    "MergeTieBreak",
    "NodeContext",
    "NodeRole",
]

"""Pydantic models for API request/response."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from racelog_sync.core.conflict import ResolutionChoice
from racelog_sync.sync.protocol import MAX_BATCH_RECORDS

# ============ Request Models ============


class RegisterNodeRequest(BaseModel):
    """Request to register (or rename) a node."""

    node_id: str = Field(..., min_length=1, max_length=64, pattern=r"^[a-zA-Z0-9_\-\.]+$")
    node_name: str = Field("", max_length=256)


class UploadBatchRequest(BaseModel):
    """A batch of record versions from one node.

    Records stay loosely typed here: a malformed record is rejected on its
    own by the hub instead of failing the whole request.
    """

    node_id: str = Field(..., min_length=1, max_length=64)
    batch_id: str = Field(..., min_length=1, max_length=64)
    records: list[dict[str, Any]] = Field(default_factory=list, max_length=MAX_BATCH_RECORDS)


class AckResolutionsRequest(BaseModel):
    """Acknowledge applied resolution notices."""

    entry_ids: list[int] = Field(default_factory=list, max_length=1000)


class ResolveConflictRequest(BaseModel):
    """A reviewer's decision on an open conflict."""

    choice: ResolutionChoice = Field(..., description="pick_left, pick_right or merged_payload")
    payload: dict[str, Any] | None = Field(
        None, description="Replacement payload; required for merged_payload"
    )
    operator: str = Field("", max_length=128, description="Who made the decision")


class ConflictNoteRequest(BaseModel):
    """Free-text note appended to a conflict's audit trail."""

    operator: str = Field("", max_length=128)
    text: str = Field(..., min_length=1, max_length=2000)


# ============ Response Models ============


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service status")
    version: str = Field(..., description="API version")


class ErrorResponse(BaseModel):
    """Error response."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: dict[str, Any] | None = Field(None, description="Additional details")

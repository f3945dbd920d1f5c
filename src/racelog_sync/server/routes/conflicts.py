"""Conflict review endpoints."""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query

from racelog_sync.core.conflict import Resolution, conflict_to_dict
from racelog_sync.core.schemas import SchemaValidationError
from racelog_sync.server.dependencies import get_hub_service, require_api_key
from racelog_sync.server.models import ConflictNoteRequest, ResolveConflictRequest
from racelog_sync.sync.hub import HubService
from racelog_sync.sync.review import ConflictAlreadyResolvedError, ConflictNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/conflicts",
    tags=["conflicts"],
    dependencies=[Depends(require_api_key)],
)


@router.get("", summary="List open conflicts")
async def list_conflicts(
    hub: Annotated[HubService, Depends(get_hub_service)],
    limit: int = Query(default=100, ge=1, le=1000),
) -> dict[str, Any]:
    try:
        conflicts = await hub.list_open_conflicts(limit=limit)
    except Exception:
        logger.error("Failed to list conflicts", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to list conflicts")

    return {"conflicts": [conflict_to_dict(c) for c in conflicts], "count": len(conflicts)}


@router.get("/{conflict_id}", summary="Get one conflict with its audit trail")
async def get_conflict(
    conflict_id: str,
    hub: Annotated[HubService, Depends(get_hub_service)],
) -> dict[str, Any]:
    try:
        conflict = await hub.get_conflict(conflict_id)
    except ConflictNotFoundError:
        raise HTTPException(status_code=404, detail="Conflict not found")
    except Exception:
        logger.error("Failed to read conflict %s", conflict_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to read conflict")

    return conflict_to_dict(conflict)


@router.post("/{conflict_id}/resolve", summary="Resolve a conflict")
async def resolve_conflict(
    conflict_id: str,
    body: ResolveConflictRequest,
    hub: Annotated[HubService, Depends(get_hub_service)],
) -> dict[str, Any]:
    """Apply a reviewer's decision and queue notices for every holder."""
    try:
        resolution = Resolution(choice=body.choice, payload=body.payload)
        conflict = await hub.resolve_conflict(conflict_id, resolution, operator=body.operator)
    except ConflictNotFoundError:
        raise HTTPException(status_code=404, detail="Conflict not found")
    except ConflictAlreadyResolvedError:
        raise HTTPException(status_code=409, detail="Conflict already resolved")
    except SchemaValidationError as e:
        raise HTTPException(status_code=422, detail=f"Invalid payload: {e.reason}")
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception:
        logger.error("Failed to resolve conflict %s", conflict_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to resolve conflict")

    return conflict_to_dict(conflict)


@router.post("/{conflict_id}/notes", summary="Add a note to a conflict")
async def add_conflict_note(
    conflict_id: str,
    body: ConflictNoteRequest,
    hub: Annotated[HubService, Depends(get_hub_service)],
) -> dict[str, Any]:
    try:
        conflict = await hub.add_conflict_note(conflict_id, body.operator, body.text)
    except ConflictNotFoundError:
        raise HTTPException(status_code=404, detail="Conflict not found")
    except Exception:
        logger.error("Failed to annotate conflict %s", conflict_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to add note")

    return conflict_to_dict(conflict)

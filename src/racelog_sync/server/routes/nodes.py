"""Node registry endpoints."""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException

from racelog_sync.server.dependencies import get_hub_service, require_api_key
from racelog_sync.server.models import RegisterNodeRequest
from racelog_sync.sync.hub import HubService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/nodes",
    tags=["nodes"],
    dependencies=[Depends(require_api_key)],
)


@router.post("/register", summary="Register a node with the hub")
async def register_node(
    body: RegisterNodeRequest,
    hub: Annotated[HubService, Depends(get_hub_service)],
) -> dict[str, Any]:
    """Register a node, or update its display name if already known."""
    try:
        return await hub.register_node(body.node_id, body.node_name)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception:
        logger.error("Failed to register node %s", body.node_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to register node")


@router.get("", summary="List registered nodes")
async def list_nodes(
    hub: Annotated[HubService, Depends(get_hub_service)],
) -> dict[str, Any]:
    try:
        nodes = await hub.list_nodes()
    except Exception:
        logger.error("Failed to list nodes", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to list nodes")

    return {"nodes": [n.to_dict() for n in nodes], "count": len(nodes)}

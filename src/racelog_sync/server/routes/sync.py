"""Transfer protocol endpoints used by edge nodes."""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query

from racelog_sync.server.dependencies import get_hub_service, get_storage, require_api_key
from racelog_sync.server.models import AckResolutionsRequest, UploadBatchRequest
from racelog_sync.storage.base import SyncStorage
from racelog_sync.sync.hub import HubService
from racelog_sync.sync.protocol import UploadRequest

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/sync",
    tags=["sync"],
    dependencies=[Depends(require_api_key)],
)


@router.get("/download", summary="Download the reference records of a scope")
async def download_scope(
    hub: Annotated[HubService, Depends(get_hub_service)],
    scope: str = Query(..., max_length=128, description="competition:<id> or race:<id>"),
    node_id: str = Query(..., max_length=64),
) -> dict[str, Any]:
    """Return the scope's records parents-first, plus redirects of merged ids."""
    try:
        result = await hub.download_scope(scope, node_id)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception:
        logger.error("Download of %s for %s failed", scope, node_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Download failed")

    return result.to_dict()


@router.post("/upload", summary="Upload a batch of record versions")
async def upload_batch(
    body: UploadBatchRequest,
    hub: Annotated[HubService, Depends(get_hub_service)],
) -> dict[str, Any]:
    """Resolve each record and return one outcome per record.

    Schema violations come back as ``rejected`` outcomes; the rest of the
    batch is still applied.
    """
    request = UploadRequest(node_id=body.node_id, batch_id=body.batch_id, records=body.records)
    try:
        result = await hub.upload_batch(request)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception:
        logger.error(
            "Upload of batch %s from %s failed", body.batch_id, body.node_id, exc_info=True
        )
        raise HTTPException(status_code=500, detail="Upload failed")

    return result.to_dict()


@router.get("/batches/{batch_id}", summary="Outcomes recorded for a batch")
async def get_batch_outcomes(
    batch_id: str,
    hub: Annotated[HubService, Depends(get_hub_service)],
) -> dict[str, Any]:
    """Let an edge find out what was applied before a dropped connection."""
    if not batch_id or len(batch_id) > 64:
        raise HTTPException(status_code=422, detail="Invalid batch_id")

    try:
        outcomes = await hub.get_batch_outcomes(batch_id)
    except Exception:
        logger.error("Failed to read outcomes of batch %s", batch_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to read batch outcomes")

    return {"batch_id": batch_id, "outcomes": [o.to_dict() for o in outcomes]}


@router.get("/resolutions/{node_id}", summary="Pull pending resolution notices")
async def pull_resolutions(
    node_id: str,
    hub: Annotated[HubService, Depends(get_hub_service)],
) -> dict[str, Any]:
    try:
        notices = await hub.pull_resolutions(node_id)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception:
        logger.error("Failed to pull resolutions for %s", node_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to pull resolutions")

    return {"node_id": node_id, "notices": [n.to_dict() for n in notices]}


@router.post("/resolutions/{node_id}/ack", summary="Acknowledge applied notices")
async def ack_resolutions(
    node_id: str,
    body: AckResolutionsRequest,
    hub: Annotated[HubService, Depends(get_hub_service)],
) -> dict[str, Any]:
    try:
        acknowledged = await hub.ack_resolutions(node_id, body.entry_ids)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception:
        logger.error("Failed to acknowledge resolutions for %s", node_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to acknowledge resolutions")

    return {"node_id": node_id, "acknowledged": acknowledged}


@router.get("/status", summary="Queue and store statistics of the hub")
async def sync_status(
    hub: Annotated[HubService, Depends(get_hub_service)],
    storage: Annotated[SyncStorage, Depends(get_storage)],
) -> dict[str, Any]:
    try:
        status = await hub.status()
        stats = await storage.get_stats()
    except Exception:
        logger.error("Failed to read hub status", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to retrieve status")

    return {**status, "db_size_bytes": stats.get("db_size_bytes", 0)}

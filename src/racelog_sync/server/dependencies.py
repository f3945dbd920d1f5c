"""Shared dependencies for API routes."""

from __future__ import annotations

import hmac
import logging
from typing import Annotated

from fastapi import Header, HTTPException

from racelog_sync.storage.base import SyncStorage
from racelog_sync.sync.hub import HubService

logger = logging.getLogger(__name__)


async def require_api_key(
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Reject requests without the configured bearer token.

    A hub without ``RACELOG_SYNC_API_KEY`` accepts every request.
    """
    from racelog_sync.utils.config import get_config

    expected = get_config().api_key
    if not expected:
        return

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
        logger.debug("Rejected request with missing or invalid API key")
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


async def get_storage() -> SyncStorage:
    """
    Dependency to get storage instance.

    This is overridden by the application at startup.
    """
    raise NotImplementedError("Storage not configured")


async def get_hub_service() -> HubService:
    """
    Dependency to get the hub service.

    This is overridden by the application at startup.
    """
    raise NotImplementedError("Hub service not configured")

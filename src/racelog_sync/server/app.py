"""FastAPI application factory."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from racelog_sync import __version__
from racelog_sync.core.context import NodeRole
from racelog_sync.server.models import HealthResponse
from racelog_sync.server.routes import conflicts_router, nodes_router, sync_router
from racelog_sync.storage.base import SyncStorage
from racelog_sync.sync.hub import HubService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Open the node database and build the hub service."""
    from racelog_sync.unified_config import close_shared_storage, get_config, get_shared_storage
    from racelog_sync.utils.config import get_config as get_server_config

    storage = await get_shared_storage(get_server_config().db_path)
    context = get_config().build_context(role=NodeRole.HUB)
    app.state.storage = storage
    app.state.hub = HubService(storage, context)
    logger.info("Hub %s serving %s", context.node_id, storage.db_path)
    yield
    await close_shared_storage()


def create_app(
    title: str = "racelog-sync hub",
    description: str = "Offline-first sync hub for race-incident logging",
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        title: API title
        description: API description
        cors_origins: Allowed CORS origins (default: from RACELOG_SYNC_CORS_ORIGINS)

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=title,
        description=description,
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    if cors_origins is None:
        from racelog_sync.utils.config import get_config

        cors_origins = list(get_config().cors_origins)

    is_wildcard = cors_origins == ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=not is_wildcard,  # Don't allow creds with wildcard
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Override dependencies using the shared module
    from racelog_sync.server.dependencies import get_hub_service as shared_get_hub_service
    from racelog_sync.server.dependencies import get_storage as shared_get_storage

    async def get_storage() -> SyncStorage:
        storage: SyncStorage = app.state.storage
        return storage

    async def get_hub_service() -> HubService:
        hub: HubService = app.state.hub
        return hub

    app.dependency_overrides[shared_get_storage] = get_storage
    app.dependency_overrides[shared_get_hub_service] = get_hub_service

    # Versioned API routes
    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(sync_router)
    api_v1.include_router(nodes_router)
    api_v1.include_router(conflicts_router)
    app.include_router(api_v1)

    # Health check endpoint
    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(status="healthy", version=__version__)

    # Root endpoint
    @app.get("/", tags=["health"])
    async def root() -> dict[str, str]:
        """Root endpoint with API info."""
        return {
            "name": title,
            "description": description,
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    return app

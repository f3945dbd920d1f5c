"""API routes for the racelog-sync hub."""

from racelog_sync.server.routes.conflicts import router as conflicts_router
from racelog_sync.server.routes.nodes import router as nodes_router
from racelog_sync.server.routes.sync import router as sync_router

__all__ = [
    "conflicts_router",
    "nodes_router",
    "sync_router",
]

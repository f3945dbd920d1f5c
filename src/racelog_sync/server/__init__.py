"""HTTP server exposing the hub."""

from racelog_sync.server.app import create_app

__all__ = ["create_app"]

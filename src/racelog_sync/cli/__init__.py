"""Command-line interface for racelog-sync."""

from racelog_sync.cli.main import app, main

__all__ = ["app", "main"]

"""Shared CLI helpers for configuration, storage, and output formatting."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Coroutine
from typing import Any, TypeVar

import typer

from racelog_sync.core.context import NodeContext, NodeRole
from racelog_sync.storage.sqlite_store import SQLiteStorage
from racelog_sync.sync.client import HubClient
from racelog_sync.sync.hub import HubService
from racelog_sync.sync.queue import SyncQueue
from racelog_sync.sync.writer import RecordWriter
from racelog_sync.unified_config import UnifiedConfig
from racelog_sync.unified_config import get_config as get_unified_config

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_config() -> UnifiedConfig:
    """Get node configuration."""
    return get_unified_config()


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async CLI command with proper storage cleanup.

    Replaces bare ``asyncio.run()`` to ensure aiosqlite connections are
    closed *before* the event loop is torn down.
    """
    from racelog_sync.unified_config import close_shared_storage

    async def _with_cleanup() -> T:
        try:
            return await coro
        finally:
            await close_shared_storage()
            # Drain pending aiosqlite callbacks before the loop closes.
            await asyncio.sleep(0)

    return asyncio.run(_with_cleanup())


async def get_storage(config: UnifiedConfig) -> SQLiteStorage:
    """Open the node database named by *config*."""
    from racelog_sync.unified_config import get_shared_storage

    return await get_shared_storage(config.db_path)


def build_queue(config: UnifiedConfig, storage: SQLiteStorage) -> SyncQueue:
    return SyncQueue(
        storage,
        backoff_base=config.sync.backoff_base_seconds,
        backoff_cap=config.sync.backoff_cap_seconds,
    )


def build_writer(
    config: UnifiedConfig,
    storage: SQLiteStorage,
    context: NodeContext,
) -> RecordWriter:
    """Writer for this node; a hub writes through its resolver."""
    queue = build_queue(config, storage)
    if context.role == NodeRole.HUB:
        hub = HubService(storage, context, queue)
        return RecordWriter(storage, context, queue, resolver=hub.resolver)
    return RecordWriter(storage, context, queue)


def build_hub_client(config: UnifiedConfig) -> HubClient:
    return HubClient(
        config.hub.url,
        timeout=config.hub.timeout,
        api_key=config.hub.api_key or None,
    )


def parse_json_option(value: str | None, option: str) -> dict[str, Any]:
    """Parse a JSON object given on the command line, exiting on error."""
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        typer.secho(f"Invalid JSON for {option}: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    if not isinstance(data, dict):
        typer.secho(f"{option} must be a JSON object", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    return data


def output_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))

"""Sync cycle, queue and daemon commands."""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated, Any

import typer

from racelog_sync.cli._helpers import (
    build_hub_client,
    build_queue,
    get_config,
    get_storage,
    output_json,
    run_async,
)
from racelog_sync.cli.tui import print_cycle_report, print_queue_entries, print_queue_stats
from racelog_sync.core.context import NodeRole
from racelog_sync.storage.sqlite_queue import QueueEntry, QueueState
from racelog_sync.sync.scheduler import SyncScheduler
from racelog_sync.sync.sync_engine import SyncEngine
from racelog_sync.unified_config import UnifiedConfig

logger = logging.getLogger(__name__)

sync_app = typer.Typer(help="Synchronize with the hub")


def _require_edge(config: UnifiedConfig) -> None:
    if config.node.role != NodeRole.EDGE:
        typer.secho("This command runs on edge nodes only", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


@sync_app.command("run")
def sync_run(
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Run one sync cycle now.

    An unreachable hub is not an error: the cycle reports ``offline`` and
    everything stays queued.
    """
    config = get_config()
    _require_edge(config)

    async def _run() -> dict[str, Any]:
        storage = await get_storage(config)
        async with build_hub_client(config) as client:
            engine = SyncEngine(
                storage,
                config.build_context(),
                client,
                build_queue(config, storage),
                scopes=config.sync.scopes,
                batch_size=config.sync.batch_size,
                exchange_timeout=config.hub.timeout,
            )
            await engine.start()
            report = await engine.run_cycle(trigger="manual")
        return report.to_dict()

    report = run_async(_run())
    if json_output:
        output_json(report)
    else:
        print_cycle_report(report)


@sync_app.command("status")
def sync_status(
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Show queue and record counts of this node."""
    config = get_config()

    async def _status() -> dict[str, Any]:
        storage = await get_storage(config)
        stats = await storage.get_stats()
        return {"node_id": config.node_id, "role": config.node.role.value, **stats}

    status = run_async(_status())
    if json_output:
        output_json(status)
        return

    typer.echo(f"Node {status['node_id']} ({status['role']})")
    typer.echo(f"Records: {status['records']}")
    typer.echo(f"Open conflicts: {status['conflicts'].get('open', 0)}")
    print_queue_stats(status["queue"])


@sync_app.command("queue")
def sync_queue(
    state: Annotated[
        QueueState | None, typer.Option("--state", "-s", help="Filter by state")
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-l", help="Maximum entries")] = 50,
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """List sync queue entries."""
    config = get_config()

    async def _list() -> list[QueueEntry]:
        storage = await get_storage(config)
        return await build_queue(config, storage).list_entries(state=state, limit=limit)

    entries = run_async(_list())
    if json_output:
        output_json(
            [
                {
                    "id": e.id,
                    "global_id": e.global_id,
                    "target": e.target,
                    "kind": e.kind.value,
                    "state": e.state.value,
                    "revision": e.revision,
                    "attempts": e.attempts,
                    "next_attempt_at": e.next_attempt_at,
                    "last_error": e.last_error,
                    "conflict_id": e.conflict_id,
                }
                for e in entries
            ]
        )
    else:
        print_queue_entries(entries)


@sync_app.command("prune")
def sync_prune(
    older_than_days: Annotated[
        int, typer.Option("--older-than", "-o", help="Age in days of synced entries to drop")
    ] = 30,
) -> None:
    """Delete old synced queue entries."""
    config = get_config()

    async def _prune() -> int:
        storage = await get_storage(config)
        return await build_queue(config, storage).prune_synced(older_than_days)

    removed = run_async(_prune())
    typer.secho(f"Removed {removed} synced entries", fg=typer.colors.GREEN)


@sync_app.command("daemon")
def sync_daemon() -> None:
    """Sync in the background until interrupted.

    Runs a cycle every ``sync.interval_seconds`` and as soon as the hub
    becomes reachable after being offline.
    """
    config = get_config()
    _require_edge(config)

    async def _daemon() -> None:
        storage = await get_storage(config)
        async with build_hub_client(config) as client:
            engine = SyncEngine(
                storage,
                config.build_context(),
                client,
                build_queue(config, storage),
                scopes=config.sync.scopes,
                batch_size=config.sync.batch_size,
                exchange_timeout=config.hub.timeout,
            )
            scheduler = SyncScheduler(
                engine,
                interval_seconds=config.sync.interval_seconds,
                health_interval_seconds=config.sync.health_interval_seconds,
            )
            await scheduler.start()
            try:
                await asyncio.Event().wait()
            finally:
                await scheduler.stop()

    typer.echo(f"Syncing with {config.hub.url} every {config.sync.interval_seconds:.0f}s")
    try:
        run_async(_daemon())
    except KeyboardInterrupt:
        typer.echo("Stopped.")

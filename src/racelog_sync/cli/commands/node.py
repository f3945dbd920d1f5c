"""Node identity and role configuration commands."""

from __future__ import annotations

from dataclasses import replace
from typing import Annotated, Any

import typer

from racelog_sync.cli._helpers import (
    build_hub_client,
    get_config,
    get_storage,
    output_json,
    run_async,
)
from racelog_sync.core.context import MergeTieBreak, NodeRole
from racelog_sync.sync.client import HubClientError

node_app = typer.Typer(help="Node identity and hub connection")


@node_app.command("init")
def node_init(
    role: Annotated[NodeRole, typer.Option("--role", "-r", help="edge or hub")] = NodeRole.EDGE,
    name: Annotated[str | None, typer.Option("--name", "-n", help="Display name")] = None,
    hub_url: Annotated[
        str | None, typer.Option("--hub-url", "-u", help="Hub URL (edge nodes)")
    ] = None,
    api_key: Annotated[
        str | None, typer.Option("--api-key", "-k", help="Bearer token for the hub")
    ] = None,
    tie_break: Annotated[
        MergeTieBreak | None,
        typer.Option("--tie-break", help="Merge tie-break; must match across nodes"),
    ] = None,
    scope: Annotated[
        list[str] | None,
        typer.Option("--scope", "-s", help="Reference scope to download, e.g. race:<id>"),
    ] = None,
) -> None:
    """Configure this installation as an edge or hub node.

    Examples:
        rlsync node init --role hub --name finish-area
        rlsync node init --hub-url http://10.0.0.2:8000 --scope race:<id>
    """
    config = get_config()
    node = replace(config.node, role=role, name=name if name is not None else config.node.name)
    hub = config.hub
    if hub_url is not None:
        hub = replace(hub, url=hub_url.rstrip("/"))
    if api_key is not None:
        hub = replace(hub, api_key=api_key)
    sync = config.sync if scope is None else replace(config.sync, scopes=tuple(scope))
    dedup = config.dedup if tie_break is None else replace(config.dedup, tie_break=tie_break)

    updated = config.with_updates(node=node, hub=hub, sync=sync, dedup=dedup)
    updated.save()

    typer.secho(f"Node {updated.node_id} configured as {role.value}", fg=typer.colors.GREEN)
    typer.echo(f"  Config: {updated.config_path}")
    typer.echo(f"  Database: {updated.db_path}")
    if role == NodeRole.EDGE:
        typer.echo(f"  Hub: {updated.hub.url}")


@node_app.command("show")
def node_show(
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Show this node's identity and configuration."""
    config = get_config()
    info = {
        "node_id": config.node_id,
        "role": config.node.role.value,
        "name": config.node.name,
        "data_dir": str(config.data_dir),
        "hub_url": config.hub.url,
        "api_key_set": bool(config.hub.api_key),
        "scopes": list(config.sync.scopes),
        "tie_break": config.dedup.tie_break.value,
        "window_seconds": config.dedup.window_seconds,
    }
    if json_output:
        output_json(info)
        return
    for key, value in info.items():
        typer.echo(f"{key:>15}: {value}")


@node_app.command("ping")
def node_ping() -> None:
    """Check that the configured hub is reachable and register with it."""
    config = get_config()

    async def _ping() -> bool:
        async with build_hub_client(config) as client:
            if not await client.health_check():
                return False
            try:
                await client.register_node(config.node_id, config.node.name)
            except HubClientError as e:
                typer.secho(f"Registration failed: {e}", fg=typer.colors.RED, err=True)
                return False
            return True

    if run_async(_ping()):
        typer.secho(f"Hub {config.hub.url} is reachable", fg=typer.colors.GREEN)
    else:
        typer.secho(f"Hub {config.hub.url} is unreachable", fg=typer.colors.YELLOW)
        raise typer.Exit(1)


@node_app.command("list")
def node_list(
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """List the nodes registered with the hub."""
    config = get_config()

    async def _list() -> list[dict[str, Any]]:
        if config.node.role == NodeRole.HUB:
            storage = await get_storage(config)
            return [n.to_dict() for n in await storage.list_nodes()]
        async with build_hub_client(config) as client:
            return await client.list_nodes()

    try:
        nodes = run_async(_list())
    except HubClientError as e:
        typer.secho(f"Hub unavailable: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    if json_output:
        output_json(nodes)
        return
    for node in nodes:
        typer.echo(
            f"{node['node_id']:<18} {node.get('node_name') or '-':<20} "
            f"last sync {node.get('last_sync_at') or 'never'}"
        )

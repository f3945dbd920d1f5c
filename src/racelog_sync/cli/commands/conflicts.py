"""Conflict review commands.

On a hub node the commands work on the local database; on an edge node
they go through the configured hub's review API.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Annotated, Any, NoReturn

import typer

from racelog_sync.cli._helpers import (
    build_hub_client,
    build_queue,
    get_config,
    get_storage,
    output_json,
    parse_json_option,
    run_async,
)
from racelog_sync.cli.tui import print_conflict, print_conflicts
from racelog_sync.core.conflict import Resolution, ResolutionChoice, conflict_to_dict
from racelog_sync.core.context import NodeRole
from racelog_sync.core.schemas import SchemaValidationError
from racelog_sync.sync.client import HubClient, HubClientError
from racelog_sync.sync.hub import HubService
from racelog_sync.sync.review import ConflictAlreadyResolvedError, ConflictNotFoundError
from racelog_sync.unified_config import UnifiedConfig

conflicts_app = typer.Typer(help="Review conflicts held by the hub")


async def _review(
    config: UnifiedConfig,
    local: Callable[[HubService], Awaitable[Any]],
    remote: Callable[[HubClient], Awaitable[Any]],
) -> Any:
    if config.node.role == NodeRole.HUB:
        storage = await get_storage(config)
        hub = HubService(storage, config.build_context(), build_queue(config, storage))
        return await local(hub)
    async with build_hub_client(config) as client:
        return await remote(client)


def _fail(message: str) -> NoReturn:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(1)


@conflicts_app.command("list")
def conflicts_list(
    limit: Annotated[int, typer.Option("--limit", "-l", help="Maximum conflicts")] = 100,
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """List open conflicts."""
    config = get_config()

    async def _local(hub: HubService) -> list[dict[str, Any]]:
        return [conflict_to_dict(c) for c in await hub.list_open_conflicts(limit=limit)]

    async def _remote(client: HubClient) -> list[dict[str, Any]]:
        return (await client.list_conflicts())[:limit]

    try:
        conflicts = run_async(_review(config, _local, _remote))
    except HubClientError as e:
        _fail(f"Hub unavailable: {e}")

    if json_output:
        output_json(conflicts)
    else:
        print_conflicts(conflicts)


@conflicts_app.command("show")
def conflicts_show(
    conflict_id: Annotated[str, typer.Argument(help="Conflict id")],
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Show both sides of a conflict and its audit trail."""
    config = get_config()

    async def _local(hub: HubService) -> dict[str, Any]:
        return conflict_to_dict(await hub.get_conflict(conflict_id))

    async def _remote(client: HubClient) -> dict[str, Any]:
        return await client.get_conflict(conflict_id)

    try:
        conflict = run_async(_review(config, _local, _remote))
    except ConflictNotFoundError:
        _fail(f"Conflict {conflict_id} not found")
    except HubClientError as e:
        _fail(f"Conflict {conflict_id} not found" if e.status_code == 404 else str(e))

    if json_output:
        output_json(conflict)
    else:
        print_conflict(conflict)


@conflicts_app.command("resolve")
def conflicts_resolve(
    conflict_id: Annotated[str, typer.Argument(help="Conflict id")],
    choice: Annotated[ResolutionChoice, typer.Option("--choice", "-c", help="Resolution")],
    payload: Annotated[
        str | None, typer.Option("--payload", "-p", help="Merged payload as JSON")
    ] = None,
    operator: Annotated[str, typer.Option("--operator", "-o", help="Reviewer name")] = "",
) -> None:
    """Resolve a conflict by picking a side or supplying a merged payload.

    Examples:
        rlsync conflicts resolve <id> --choice pick_left --operator "race jury"
        rlsync conflicts resolve <id> -c merged_payload -p '{"bib": "42", ...}'
    """
    merged = parse_json_option(payload, "--payload") if payload else None
    try:
        resolution = Resolution(choice=choice, payload=merged)
    except ValueError as e:
        _fail(str(e))
    config = get_config()

    async def _local(hub: HubService) -> dict[str, Any]:
        return conflict_to_dict(await hub.resolve_conflict(conflict_id, resolution, operator))

    async def _remote(client: HubClient) -> dict[str, Any]:
        return await client.resolve_conflict(conflict_id, choice.value, merged, operator)

    try:
        resolved = run_async(_review(config, _local, _remote))
    except ConflictNotFoundError:
        _fail(f"Conflict {conflict_id} not found")
    except ConflictAlreadyResolvedError:
        _fail(f"Conflict {conflict_id} is already resolved")
    except SchemaValidationError as e:
        _fail(f"Invalid payload: {e.reason}")
    except HubClientError as e:
        _fail(str(e))

    typer.secho(
        f"Resolved {conflict_id}; winner {resolved.get('winner_id')}", fg=typer.colors.GREEN
    )


@conflicts_app.command("note")
def conflicts_note(
    conflict_id: Annotated[str, typer.Argument(help="Conflict id")],
    text: Annotated[str, typer.Argument(help="Note text")],
    operator: Annotated[str, typer.Option("--operator", "-o", help="Reviewer name")] = "",
) -> None:
    """Add a note to a conflict's audit trail."""
    config = get_config()

    async def _local(hub: HubService) -> dict[str, Any]:
        return conflict_to_dict(await hub.add_conflict_note(conflict_id, operator, text))

    async def _remote(client: HubClient) -> dict[str, Any]:
        return await client.add_conflict_note(conflict_id, operator, text)

    try:
        run_async(_review(config, _local, _remote))
    except ConflictNotFoundError:
        _fail(f"Conflict {conflict_id} not found")
    except HubClientError as e:
        _fail(str(e))

    typer.secho("Note added", fg=typer.colors.GREEN)

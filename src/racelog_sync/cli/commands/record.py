"""Local record commands."""

from __future__ import annotations

from typing import Annotated

import typer

from racelog_sync.cli._helpers import (
    build_writer,
    get_config,
    get_storage,
    output_json,
    parse_json_option,
    run_async,
)
from racelog_sync.cli.tui import print_records
from racelog_sync.core.record import RecordKind, RecordState, SyncableRecord
from racelog_sync.core.schemas import SchemaValidationError
from racelog_sync.sync.writer import RecordNotFoundError

record_app = typer.Typer(help="Create, update and inspect local records")


@record_app.command("create")
def record_create(
    kind: Annotated[RecordKind, typer.Argument(help="Record kind")],
    data: Annotated[str, typer.Option("--data", "-d", help="Payload as a JSON object")],
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Create a record and queue it for the hub.

    Examples:
        rlsync record create incident -d '{"race_id": "...", "bib": "42", ...}'
    """
    payload = parse_json_option(data, "--data")
    config = get_config()

    async def _create() -> dict[str, object]:
        storage = await get_storage(config)
        writer = build_writer(config, storage, config.build_context())
        record = await writer.create(kind, payload)
        return record.to_wire()

    try:
        result = run_async(_create())
    except SchemaValidationError as e:
        typer.secho(f"Invalid {kind.value}: {e.reason}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    if json_output:
        output_json(result)
    else:
        typer.secho(f"Created {kind.value} {result['global_id']}", fg=typer.colors.GREEN)


@record_app.command("update")
def record_update(
    global_id: Annotated[str, typer.Argument(help="Global id of the record")],
    data: Annotated[str, typer.Option("--data", "-d", help="Changed fields as JSON; null removes")],
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """Change fields of a record, bumping its revision."""
    changes = parse_json_option(data, "--data")
    config = get_config()

    async def _update() -> dict[str, object]:
        storage = await get_storage(config)
        writer = build_writer(config, storage, config.build_context())
        record = await writer.update(global_id, changes)
        return record.to_wire()

    try:
        result = run_async(_update())
    except RecordNotFoundError:
        typer.secho(f"Record {global_id} not found", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except SchemaValidationError as e:
        typer.secho(f"Invalid update: {e.reason}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except ValueError as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    if json_output:
        output_json(result)
    else:
        typer.secho(f"Updated {global_id} to revision {result['revision']}", fg=typer.colors.GREEN)


@record_app.command("show")
def record_show(
    global_id: Annotated[str, typer.Argument(help="Global id of the record")],
) -> None:
    """Show one record, following merge redirects."""
    config = get_config()

    async def _show() -> dict[str, object] | None:
        storage = await get_storage(config)
        canonical = await storage.resolve_redirect(global_id)
        record = await storage.get_record(canonical)
        if record is None:
            return None
        data: dict[str, object] = {**record.to_wire(), "state": record.state.value}
        if canonical != global_id:
            data["redirected_from"] = global_id
        return data

    result = run_async(_show())
    if result is None:
        typer.secho(f"Record {global_id} not found", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    output_json(result)


@record_app.command("list")
def record_list(
    kind: Annotated[RecordKind | None, typer.Option("--kind", "-k", help="Filter by kind")] = None,
    state: Annotated[
        RecordState | None, typer.Option("--state", "-s", help="Filter by state")
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-l", help="Maximum records")] = 50,
    json_output: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
) -> None:
    """List local records."""
    config = get_config()

    async def _list() -> list[SyncableRecord]:
        storage = await get_storage(config)
        return await storage.list_records(kind=kind, state=state, limit=limit)

    records = run_async(_list())
    if json_output:
        output_json([{**r.to_wire(), "state": r.state.value} for r in records])
    else:
        print_records(records)

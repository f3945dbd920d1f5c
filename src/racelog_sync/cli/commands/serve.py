"""Hub server command."""

from __future__ import annotations

import os
from typing import Annotated

import typer

from racelog_sync.cli._helpers import get_config
from racelog_sync.core.context import NodeRole


def serve(
    host: Annotated[str, typer.Option("--host", "-h", help="Host to bind to")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", "-p", help="Port to bind to")] = 8000,
    api_key: Annotated[
        str | None,
        typer.Option("--api-key", "-k", help="Require this bearer token from edge nodes"),
    ] = None,
    reload: Annotated[
        bool, typer.Option("--reload", "-r", help="Enable auto-reload for development")
    ] = False,
) -> None:
    """Run the hub API server.

    Examples:
        rlsync serve                       # Run on localhost:8000
        rlsync serve --host 0.0.0.0        # Expose to the race network
        rlsync serve -k secret             # Require a bearer token
    """
    import uvicorn

    config = get_config()
    if config.node.role != NodeRole.HUB:
        typer.secho(
            "Warning: this node is configured as an edge; serving it as the hub anyway.",
            fg=typer.colors.YELLOW,
            err=True,
        )
    if api_key:
        os.environ["RACELOG_SYNC_API_KEY"] = api_key
    os.environ.setdefault("RACELOG_SYNC_DB_PATH", str(config.db_path))

    typer.echo(f"Starting racelog-sync hub {config.node_id} on http://{host}:{port}")
    typer.echo(f"  Docs: http://{host}:{port}/docs")

    uvicorn.run(
        "racelog_sync.server.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )

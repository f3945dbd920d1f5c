"""racelog-sync CLI main entry point."""

from __future__ import annotations

from typing import Annotated

import typer

from racelog_sync.cli._helpers import configure_logging
from racelog_sync.cli.commands.conflicts import conflicts_app
from racelog_sync.cli.commands.node import node_app
from racelog_sync.cli.commands.record import record_app
from racelog_sync.cli.commands.serve import serve
from racelog_sync.cli.commands.sync import sync_app

# Main app
app = typer.Typer(
    name="rlsync",
    help="racelog-sync - Offline edge/hub sync for race-incident logging",
    no_args_is_help=True,
)

app.add_typer(node_app, name="node")
app.add_typer(record_app, name="record")
app.add_typer(sync_app, name="sync")
app.add_typer(conflicts_app, name="conflicts")
app.command()(serve)


@app.callback()
def _root(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Log debug output to stderr")
    ] = False,
) -> None:
    configure_logging(verbose)


@app.command()
def version() -> None:
    """Show version information."""
    from racelog_sync import __version__

    typer.echo(f"racelog-sync v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()

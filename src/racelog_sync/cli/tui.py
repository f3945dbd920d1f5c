"""Rich renderers for CLI status and review output."""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from racelog_sync.core.record import SyncableRecord
from racelog_sync.storage.sqlite_queue import QueueEntry

console = Console()


QUEUE_STATE_COLORS = {
    "pending": "yellow",
    "in_transit": "cyan",
    "synced": "green",
    "conflicted": "magenta",
    "failed": "red",
}

CYCLE_STATUS_COLORS = {
    "completed": "green",
    "offline": "yellow",
    "transport_error": "red",
    "coalesced": "bright_black",
}


def _colored(value: str, colors: dict[str, str]) -> str:
    color = colors.get(value, "white")
    return f"[{color}]{value}[/{color}]"


def print_cycle_report(report: dict[str, Any]) -> None:
    status = str(report.get("status", ""))
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    table.add_row("Status", _colored(status, CYCLE_STATUS_COLORS))
    for key in ("downloaded", "uploaded", "synced", "merged", "conflicted", "rejected", "released"):
        table.add_row(key.capitalize(), str(report.get(key, 0)))
    table.add_row("Resolutions", str(report.get("resolutions_applied", 0)))
    if report.get("error"):
        table.add_row("Error", f"[red]{report['error']}[/red]")
    console.print(Panel(table, title=f"Sync cycle ({report.get('trigger', 'manual')})"))


def print_queue_stats(stats: dict[str, int], title: str = "Sync queue") -> None:
    table = Table(title=title, title_style="bold cyan", border_style="bright_black")
    table.add_column("State")
    table.add_column("Entries", justify="right")
    for state, color in QUEUE_STATE_COLORS.items():
        table.add_row(f"[{color}]{state}[/{color}]", str(stats.get(state, 0)))
    table.add_row("[bold]total[/bold]", str(stats.get("total", 0)))
    console.print(table)


def print_queue_entries(entries: list[QueueEntry]) -> None:
    if not entries:
        console.print("[yellow]Queue is empty.[/yellow]")
        return

    table = Table(title="Queue entries", title_style="bold cyan", border_style="bright_black")
    table.add_column("#", style="bright_black")
    table.add_column("Record", overflow="fold")
    table.add_column("Kind")
    table.add_column("State")
    table.add_column("Rev", justify="right")
    table.add_column("Tries", justify="right")
    table.add_column("Last error", overflow="fold")
    for entry in entries:
        table.add_row(
            str(entry.id),
            entry.global_id,
            entry.kind.value,
            _colored(entry.state.value, QUEUE_STATE_COLORS),
            str(entry.revision),
            str(entry.attempts),
            entry.last_error or "-",
        )
    console.print(table)


def print_records(records: list[SyncableRecord]) -> None:
    if not records:
        console.print("[yellow]No records found.[/yellow]")
        return

    table = Table(title="Records", title_style="bold cyan", border_style="bright_black")
    table.add_column("Global id", overflow="fold")
    table.add_column("Kind", style="bold")
    table.add_column("State")
    table.add_column("Rev", justify="right")
    table.add_column("Origin")
    table.add_column("Created")
    for record in records:
        table.add_row(
            record.global_id,
            record.kind.value,
            record.state.value,
            str(record.revision),
            record.origin_node,
            record.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


def print_conflicts(conflicts: list[dict[str, Any]]) -> None:
    if not conflicts:
        console.print("[green]No open conflicts.[/green]")
        return

    table = Table(
        title="Open conflicts",
        show_lines=True,
        title_style="bold cyan",
        border_style="bright_black",
    )
    table.add_column("Conflict", overflow="fold")
    table.add_column("Type", style="bold")
    table.add_column("Records", overflow="fold")
    table.add_column("Created")
    for conflict in conflicts:
        table.add_row(
            conflict["conflict_id"],
            conflict["type"],
            "\n".join(_conflict_record_ids(conflict)),
            str(conflict.get("created_at", ""))[:19],
        )
    console.print(table)


def print_conflict(conflict: dict[str, Any]) -> None:
    console.print(
        f"[bold]{conflict['conflict_id']}[/bold]  {conflict['type']}  "
        f"status={conflict['status']}  winner={conflict.get('winner_id') or '-'}"
    )
    if conflict["type"] == "identity":
        versions = conflict.get("versions", [])
        sides = [("left", versions[0]), ("right", versions[-1])] if versions else []
    else:
        if conflict.get("reason"):
            console.print(f"[bright_black]{conflict['reason']}[/bright_black]")
        sides = [("left", conflict["left"]), ("right", conflict["right"])]

    for label, record in sides:
        console.print(
            Panel(
                "\n".join(f"{k}: {v}" for k, v in sorted(record.get("payload", {}).items())),
                title=f"{label}: {record['global_id']} rev {record['revision']} "
                f"from {record['origin_node']}",
            )
        )

    for entry in conflict.get("audit", []):
        console.print(
            f"[bright_black]{entry['at'][:19]}[/bright_black] {entry['action']} "
            f"{entry.get('operator') or entry['actor_node']} {entry.get('detail') or ''}"
        )


def _conflict_record_ids(conflict: dict[str, Any]) -> list[str]:
    if conflict["type"] == "identity":
        return [conflict["global_id"]]
    return [conflict["left"]["global_id"], conflict["right"]["global_id"]]

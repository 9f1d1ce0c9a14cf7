"""Terminal rendering for console commands."""

from datetime import datetime
from typing import Any
import json

from rich import box
from rich.console import Console
from rich.table import Table


console = Console()
error_console = Console(stderr=True)

# Identifier columns highlighted in VQL and API tables
KEY_COLUMNS = frozenset({
    "client_id", "ClientId", "hunt_id", "HuntId", "flow_id", "FlowId",
    "session_id", "Fqdn", "Hostname", "Name",
})


def print_json(data: Any) -> None:
    """Print data as indented JSON."""
    print(json.dumps(data, indent=2, default=str))


def print_json_line(data: Any) -> None:
    """Print one compact JSON record; streamed rows are flushed immediately."""
    print(json.dumps(data, default=str), flush=True)


def format_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S %Z").strip()
    if isinstance(value, (list, dict)):
        return json.dumps(value, default=str)
    return str(value)


def print_table(
    rows: list[dict[str, Any]],
    columns: list[str] | None = None,
    title: str | None = None,
) -> None:
    """Print VQL rows as a table.

    Column order follows `columns` when the server reported one; otherwise
    it is the key order of the first row. Cells missing from a row are blank.
    """
    if not rows:
        console.print("[dim]No rows[/dim]")
        return

    if columns is None:
        columns = list(rows[0].keys())

    table = Table(title=title, box=box.ROUNDED)
    for column in columns:
        table.add_column(column, style="cyan" if column in KEY_COLUMNS else None)

    for row in rows:
        table.add_row(*[format_cell(row.get(column)) for column in columns])

    console.print(table)


def print_dict(data: dict[str, Any], title: str | None = None) -> None:
    """Print one record as a two-column key/value table."""
    table = Table(title=title, box=box.ROUNDED, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    for key, value in data.items():
        table.add_row(key, format_cell(value))

    console.print(table)


def print_success(message: str) -> None:
    console.print(f"[green]{message}[/green]")


def print_error(message: str) -> None:
    """Errors go to stderr so JSON output on stdout stays parseable."""
    error_console.print(f"[red]Error: {message}[/red]")


def print_warning(message: str) -> None:
    console.print(f"[yellow]Warning: {message}[/yellow]")


def print_info(message: str) -> None:
    console.print(f"[dim]{message}[/dim]")

"""Console output helpers for the CLI."""

import json

import yaml
from rich.console import Console
from rich.table import Table

console = Console()
err_console = Console(stderr=True)

OUTPUT_FORMATS = ("table", "json", "yaml")


def print_error(message: str) -> None:
    err_console.print(f"[bold red]Error:[/bold red] {message}")


def print_success(message: str) -> None:
    console.print(f"[bold green]OK[/bold green] {message}")


def print_warning(message: str) -> None:
    err_console.print(f"[bold yellow]Warning:[/bold yellow] {message}")


def format_state(state: str) -> str:
    """Color a ConnectivityState value."""
    match state:
        case "connected":
            return f"[green]{state}[/green]"
        case "listening" | "connecting":
            return f"[yellow]{state}[/yellow]"
        case "failed" | "disconnected":
            return f"[red]{state}[/red]"
    return f"[dim]{state}[/dim]"


def print_structured(data, output_format: str) -> None:
    """Print a dict/list as JSON or YAML."""
    if output_format == "json":
        console.print_json(json.dumps(data))
    else:
        console.print(yaml.safe_dump(data, sort_keys=False).rstrip(), markup=False)


def key_value_table(title: str, rows: list[tuple[str, str]]) -> Table:
    table = Table(title=title, show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    for key, value in rows:
        table.add_row(key, value)
    return table

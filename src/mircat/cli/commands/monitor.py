"""
Commands that query a running control API.

Example:
    mircat status --format json
    mircat events --limit 20
    mircat events --follow
"""

import asyncio
import base64
import binascii
import json
from typing import Annotated

import typer
from rich.markup import escape
from rich.table import Table

from mircat.cli import client
from mircat.cli import config as cli_config
from mircat.cli.output import (
    OUTPUT_FORMATS,
    console,
    format_state,
    key_value_table,
    print_error,
    print_structured,
    print_success,
)

OutputFormatOption = Annotated[
    str | None,
    typer.Option("--format", "-f", help="Output format: table|json|yaml"),
]


def _format_or_exit(output_format: str | None) -> str:
    output_format = output_format or cli_config.OUTPUT_FORMAT
    if output_format not in OUTPUT_FORMATS:
        print_error(f"Unknown format: {output_format}")
        raise typer.Exit(1)
    return output_format


def _status_rows(data: dict) -> list[tuple[str, str]]:
    detail = data.get("detail") or {}
    rows = [
        ("Role", data.get("role") or "-"),
        ("State", format_state(data["state"])),
        ("Active sessions", str(data.get("active_sessions", 0))),
    ]
    for name, endpoint in (detail.get("endpoints") or {}).items():
        rows.append((f"Endpoint ({name})", endpoint))
    if "server" in detail:
        rows.append(("Server", detail["server"]))
        rows.append(("Destination", detail["destination"]))
    channel = detail.get("channel")
    if channel:
        rows.append(("Channel", f"#{channel['channel_id']} {channel['peer']}"))
    sessions = detail.get("sessions")
    if sessions:
        rows.append(("TCP / UDP sessions", f"{sessions['tcp']} / {sessions['udp']}"))
        rows.append(("Sessions created", str(sessions["total_created"])))
    if data.get("last_error"):
        rows.append(("Last error", f"[red]{data['last_error']}[/red]"))
    return rows


def status(output_format: OutputFormatOption = None):
    """Show the status of the relay behind the control API."""
    output_format = _format_or_exit(output_format)
    try:
        data = client.get_status()
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if output_format != "table":
        print_structured(data, output_format)
        return
    console.print(key_value_table("Relay Status", _status_rows(data)))


def stop():
    """Stop the relay behind the control API."""
    try:
        result = client.stop_relay()
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)
    if result.get("stopped"):
        print_success("Relay stopped")
    else:
        console.print("[dim]No relay was running.[/dim]")


PREVIEW_CHARS = 64


def _data_preview(event: dict) -> str:
    """Printable preview of a tapped chunk."""
    try:
        raw = base64.b64decode(event.get("data") or "", validate=True)
    except binascii.Error:
        return ""
    text = raw.decode("utf-8", errors="replace")
    shown = text[:PREVIEW_CHARS]
    suffix = "..." if event.get("truncated") or len(text) > PREVIEW_CHARS else ""
    return f" [green]{escape(repr(shown))}{suffix}[/green]"


def _event_line(event: dict) -> str:
    session = f" [dim]session={event['session_id']}[/dim]" if event.get("session_id") else ""
    role = f"[cyan]{event['role']}[/cyan] " if event.get("role") else ""
    preview = _data_preview(event) if event["kind"] == "data" else ""
    return (
        f"[dim]{event['timestamp']}[/dim] {role}[bold]{event['kind']}[/bold] "
        f"{escape(event['message'])}{session}{preview}"
    )


async def _follow_events(replay: int) -> None:
    import websockets
    from websockets.exceptions import ConnectionClosed

    ws_url = cli_config.ws_url(f"/ws/events?replay={replay}")
    console.print(f"[dim]Following {ws_url} (Ctrl+C to stop)[/dim]")
    try:
        async with websockets.connect(ws_url) as websocket:
            while True:
                message = await websocket.recv()
                console.print(_event_line(json.loads(message)))
    except ConnectionClosed:
        console.print("[dim]Event stream closed.[/dim]")


def events(
    limit: Annotated[int, typer.Option("--limit", "-n", help="Recent events to show")] = 20,
    follow: Annotated[
        bool, typer.Option("--follow", "-F", help="Stream new events (WebSocket)")
    ] = False,
    output_format: OutputFormatOption = None,
):
    """Show recent relay events, or follow them live."""
    if follow:
        try:
            asyncio.run(_follow_events(limit))
        except KeyboardInterrupt:
            pass
        except OSError as e:
            print_error(f"Connection error: {e}")
            raise typer.Exit(1)
        return

    output_format = _format_or_exit(output_format)
    try:
        items = client.get_events(limit)
    except client.APIError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if output_format != "table":
        print_structured(items, output_format)
        return
    if not items:
        console.print("[dim]No events.[/dim]")
        return

    table = Table(title="Relay Events", show_header=True)
    table.add_column("#", style="dim")
    table.add_column("Time")
    table.add_column("Role", style="cyan")
    table.add_column("Kind", style="bold")
    table.add_column("Message")
    for event in items:
        table.add_row(
            str(event["seq"]),
            event["timestamp"],
            event.get("role") or "-",
            event["kind"],
            escape(event["message"])
            + (_data_preview(event) if event["kind"] == "data" else ""),
        )
    console.print(table)

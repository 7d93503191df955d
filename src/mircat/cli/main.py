"""
mircat unified CLI entry point.

Usage:
    mircat [OPTIONS] COMMAND [ARGS]...

Commands:
    server    Run the relay server in the foreground
    client    Run the relay client in the foreground
    api       Serve the control API
    config    Config file commands
    status    Status of the relay behind the control API
    events    Relay events from the control API
    stop      Stop the relay behind the control API
"""

from typing import Annotated

import typer

from mircat.cli import config as cli_config
from mircat.cli.commands import config_cmd, monitor, relay
from mircat.cli.output import console

app = typer.Typer(
    name="mircat",
    help="mircat TCP/UDP tunnel relay",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

# Register command groups
app.add_typer(config_cmd.app, name="config", help="Config file commands")

app.command("server")(relay.server)
app.command("client")(relay.client)
app.command("api")(relay.api)
app.command("status")(monitor.status)
app.command("events")(monitor.events)
app.command("stop")(monitor.stop)


@app.callback()
def main(
    config_path: Annotated[
        str | None,
        typer.Option("--config", "-c", help="Config file", envvar="MIRCAT_CONFIG"),
    ] = None,
    api_host: Annotated[
        str | None,
        typer.Option("--api-host", help="Control API address", envvar="MIRCAT_API_HOST"),
    ] = None,
    api_port: Annotated[
        int | None,
        typer.Option("--api-port", help="Control API port", envvar="MIRCAT_API_PORT"),
    ] = None,
    output_format: Annotated[
        str,
        typer.Option("--format", "-f", help="Default output format: table|json|yaml"),
    ] = "table",
):
    """
    mircat TCP/UDP tunnel relay.

    Expose a private TCP/UDP service through a public server.
    """
    if config_path:
        cli_config.CONFIG_PATH = config_path
    if api_host:
        cli_config.API_HOST = api_host
    if api_port:
        cli_config.API_PORT = api_port
    cli_config.OUTPUT_FORMAT = output_format


@app.command("version")
def version():
    """Show version information."""
    from mircat import __version__

    console.print(f"mircat v{__version__}")


def run():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    run()

"""
Relay commands: run the server or client in the foreground, or serve the
control API.

Example:
    mircat server --config ./config.json
    mircat client --retry-forever --log-level debug
    mircat server --tap --log-level debug
    mircat api --bind 0.0.0.0 --port 8090
"""

import asyncio
from typing import Annotated

import typer

from mircat.cli import config as cli_config
from mircat.cli.output import console, print_error
from mircat.control.manager import RelayManager
from mircat.models.config import Config, load_config
from mircat.models.enums import LogLevel, RelayRole
from mircat.relay.config import config as relay_config
from mircat.tunnel.errors import ConfigError, ListenError, RetriesExhaustedError
from mircat.utils.logger import configure_logging, format_traceback, get_logger

logger = get_logger(__name__)

LogLevelOption = Annotated[
    LogLevel | None,
    typer.Option("--log-level", "-l", help="Log verbosity: full|debug|info|warning"),
]
ConfigOption = Annotated[
    str | None,
    typer.Option("--config", "-c", help="Config file (overrides the global option)"),
]
TapOption = Annotated[
    bool,
    typer.Option("--tap", help="Publish a data event with a preview of every relayed chunk"),
]


def _setup(log_level: LogLevel | None, tap: bool = False) -> None:
    if tap:
        relay_config.DATA_EVENTS = True
    if log_level is not None:
        relay_config.LOG_LEVEL = log_level
    configure_logging(relay_config.LOG_LEVEL, relay_config.LOG_FILE)


def _load(role: RelayRole) -> Config:
    config = load_config(cli_config.CONFIG_PATH or None)
    if role == RelayRole.SERVER:
        return config.validate_for_server()
    return config.validate_for_client()


async def _run_role(role: RelayRole, config: Config, retry_forever: bool) -> None:
    manager = RelayManager(relay_config)
    if role == RelayRole.SERVER:
        await manager.start_server(config)
    else:
        await manager.start_client(config, retry_forever=retry_forever)
    try:
        await manager.wait()
    finally:
        await manager.stop()


def _run_foreground(role: RelayRole, retry_forever: bool = False) -> None:
    try:
        config = _load(role)
        asyncio.run(_run_role(role, config, retry_forever))
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/dim]")
    except (ConfigError, ListenError, RetriesExhaustedError) as e:
        print_error(str(e))
        raise typer.Exit(1)
    except Exception as e:
        logger.debug(format_traceback(e))
        print_error(f"Unexpected error: {e}")
        raise typer.Exit(1)


def server(
    config_path: ConfigOption = None,
    log_level: LogLevelOption = None,
    tap: TapOption = False,
):
    """Run the relay server until Ctrl+C."""
    if config_path:
        cli_config.CONFIG_PATH = config_path
    _setup(log_level, tap)
    _run_foreground(RelayRole.SERVER)


def client(
    config_path: ConfigOption = None,
    log_level: LogLevelOption = None,
    retry_forever: Annotated[
        bool,
        typer.Option("--retry-forever", help="Never give up reconnecting"),
    ] = False,
    tap: TapOption = False,
):
    """Run the relay client until Ctrl+C."""
    if config_path:
        cli_config.CONFIG_PATH = config_path
    _setup(log_level, tap)
    _run_foreground(RelayRole.CLIENT, retry_forever)


def api(
    bind: Annotated[
        str, typer.Option("--bind", "-b", help="Address to serve the control API on")
    ] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", "-p", help="Control API port")] = 8090,
    log_level: LogLevelOption = None,
    tap: TapOption = False,
):
    """Serve the control API (start/stop relays over HTTP)."""
    from mircat.control.app import run

    _setup(log_level, tap)
    console.print(f"[dim]Control API on http://{bind}:{port}[/dim]")
    run(bind, port, cli_config.CONFIG_PATH or None, relay_config)

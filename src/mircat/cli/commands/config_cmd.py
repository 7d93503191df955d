"""Config file commands."""

import os
from typing import Annotated

import typer

from mircat.cli import config as cli_config
from mircat.cli.output import (
    OUTPUT_FORMATS,
    console,
    key_value_table,
    print_error,
    print_structured,
    print_success,
    print_warning,
)
from mircat.models.config import (
    Config,
    default_config_path,
    load_config,
    save_config,
)
from mircat.tunnel.errors import ConfigError

app = typer.Typer(help="Configuration commands")


def _path() -> str:
    return cli_config.CONFIG_PATH or default_config_path()


def _load_or_exit() -> Config:
    try:
        return load_config(_path())
    except ConfigError as e:
        print_error(str(e))
        raise typer.Exit(1)


@app.command("init")
def init_config(
    force: Annotated[
        bool, typer.Option("--force", help="Overwrite an existing file")
    ] = False,
):
    """Write an empty config file to fill in."""
    path = _path()
    if os.path.isfile(path) and not force:
        print_warning(f"{path} already exists (use --force to overwrite)")
        raise typer.Exit(1)
    save_config(Config(), path)
    print_success(f"Config written to: {path}")


@app.command("show")
def show_config(
    output_format: Annotated[
        str | None,
        typer.Option("--format", "-f", help="Output format: table|json|yaml"),
    ] = None,
):
    """Show the config file."""
    output_format = output_format or cli_config.OUTPUT_FORMAT
    if output_format not in OUTPUT_FORMATS:
        print_error(f"Unknown format: {output_format}")
        raise typer.Exit(1)

    data = _load_or_exit().to_file_dict()
    if output_format != "table":
        print_structured(data, output_format)
        return

    rows = []
    for section, values in data.items():
        for key, value in values.items():
            rows.append((f"{section}.{key}", value if value != "" else "[dim]-[/dim]"))
    console.print(key_value_table(f"Config ({_path()})", rows))


@app.command("validate")
def validate_config(
    role: Annotated[
        str,
        typer.Option("--role", "-r", help="Role to check: server|client|both"),
    ] = "both",
):
    """Check the config file for the given role."""
    config = _load_or_exit()
    checks = {
        "server": config.validate_for_server,
        "client": config.validate_for_client,
    }
    if role != "both" and role not in checks:
        print_error(f"Unknown role: {role}")
        raise typer.Exit(1)

    failed = False
    for name, check in checks.items():
        if role not in ("both", name):
            continue
        try:
            check()
            print_success(f"{name} configuration is valid")
        except ConfigError as e:
            failed = True
            print_error(str(e))
    if failed:
        raise typer.Exit(1)

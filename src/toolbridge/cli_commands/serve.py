"""``toolbridge serve`` — serve the filesystem toolset over stdio."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from toolbridge.cli_commands._output import configure_logging, err_console


@click.command()
@click.option("--config", "-c", "config_path", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Settings YAML file.")
@click.option("--root", "-r", type=click.Path(exists=True, file_okay=False), default=None,
              help="Allowed root directory (overrides settings and TOOLBRIDGE_ROOT).")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              default=None, help="Log level (logs go to stderr).")
def serve(config_path: str | None, root: str | None, log_level: str | None) -> None:
    """Serve the filesystem tools on stdin/stdout until the client disconnects."""
    from toolbridge.config import SettingsValidationError, load_settings
    from toolbridge.server import serve_stdio

    try:
        settings = load_settings(Path(config_path) if config_path else None, root=Path(root) if root else None)
    except SettingsValidationError as exc:
        err_console.print(f"[red]Configuration error:[/red] {exc}")
        sys.exit(1)

    if not settings.sandbox.root.is_dir():
        err_console.print(f"[red]Allowed root does not exist:[/red] {settings.sandbox.root}")
        sys.exit(1)

    configure_logging(log_level or settings.logging.level)

    try:
        asyncio.run(serve_stdio(settings))
    except KeyboardInterrupt:
        pass

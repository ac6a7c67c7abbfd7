"""``toolbridge tools`` — list built-in tools, discover and call remote ones."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click

from toolbridge.cli_commands._output import console, print_tool_result, print_tools_table

_TRANSPORT_OPTION = click.option(
    "--transport",
    type=click.Choice(["stdio", "websocket"]),
    default="stdio",
    help="Server transport type.",
)


def _client_for(server: str, transport: str) -> Any:
    from toolbridge.client import ToolClient

    if transport == "stdio":
        return ToolClient(command=server)
    return ToolClient(url=server)


@click.group()
def tools() -> None:
    """List, discover and call tools."""


@tools.command("list")
@click.option("--config", "-c", "config_path", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Settings YAML file.")
@click.option("--root", "-r", type=click.Path(file_okay=False), default=None, help="Allowed root directory.")
def list_tools(config_path: str | None, root: str | None) -> None:
    """List the tools this server provides."""
    from toolbridge.config import SettingsValidationError, load_settings
    from toolbridge.server import build_dispatcher

    try:
        settings = load_settings(Path(config_path) if config_path else None, root=Path(root) if root else None)
    except SettingsValidationError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        sys.exit(1)

    print_tools_table(build_dispatcher(settings).list_tools(), title="Built-in Tools")


@tools.command("discover")
@click.argument("server")
@_TRANSPORT_OPTION
def discover(server: str, transport: str) -> None:
    """Discover tools from a server.

    SERVER is the command (for stdio) or URL (for websocket) of the server.
    """

    async def _discover() -> list[Any]:
        async with _client_for(server, transport) as client:
            return await client.list_tools()

    try:
        descriptors = asyncio.run(_discover())
    except Exception as exc:
        console.print(f"[red]Discovery error:[/red] {exc}")
        sys.exit(1)

    if not descriptors:
        console.print("[yellow]No tools discovered.[/yellow]")
        return

    print_tools_table(descriptors, title="Discovered Tools")


@tools.command("call")
@click.argument("server")
@click.argument("name")
@click.option("--args", "-a", "raw_args", default="{}", help="Tool arguments as a JSON object.")
@click.option("--offset", type=click.IntRange(min=0), default=0, help="Continuation offset for paged output.")
@_TRANSPORT_OPTION
def call(server: str, name: str, raw_args: str, offset: int, transport: str) -> None:
    """Call tool NAME on SERVER and print its result."""
    try:
        arguments = json.loads(raw_args)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"not valid JSON: {exc}", param_hint="--args") from exc
    if not isinstance(arguments, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--args")

    async def _call() -> Any:
        async with _client_for(server, transport) as client:
            return await client.call_tool(name, arguments, offset=offset)

    try:
        result = asyncio.run(_call())
    except Exception as exc:
        console.print(f"[red]Call error:[/red] {exc}")
        sys.exit(1)

    print_tool_result(result)
    if result.is_error:
        sys.exit(2)

"""Shared CLI output formatters."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from toolbridge.protocol.models import CallToolResult, TextContent, ToolDescriptor  # noqa: TC001

console = Console()
err_console = Console(stderr=True)


def configure_logging(level: str = "INFO") -> None:
    """Send log records to stderr through rich; stdout may carry the protocol."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def print_tools_table(tools: list[ToolDescriptor], *, title: str = "Tools") -> None:
    """Pretty-print tool descriptors as a table."""
    table = Table(title=title)
    table.add_column("Name", style="cyan")
    table.add_column("Parameters")
    table.add_column("Description")

    for tool in tools:
        properties = tool.input_schema.get("properties", {})
        required = set(tool.input_schema.get("required", []))
        params = ", ".join(name if name in required else escape(f"[{name}]") for name in properties) or "-"
        table.add_row(tool.name, params, _truncate(tool.description))

    console.print(table)


def print_tool_result(result: CallToolResult) -> None:
    """Print a tool result's content; errors in red."""
    style = "red" if result.is_error else None
    for item in result.content:
        if isinstance(item, TextContent):
            console.print(item.text, style=style, markup=False, highlight=False)
        else:
            console.print(f"<{item.mime_type}, {len(item.data)} base64 chars>", style="dim")
    if result.meta and "continuationOffset" in result.meta:
        console.print(f"[dim]More output available at offset {result.meta['continuationOffset']}[/dim]")


def _truncate(text: str, max_len: int = 80) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."

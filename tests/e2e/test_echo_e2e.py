"""E2E: negotiation, dispatch and change notifications across a live channel pair."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from toolbridge.client import ToolClient
from toolbridge.config import ServerSettings
from toolbridge.protocol.channel import create_channel_pair
from toolbridge.protocol.models import CallToolResult
from toolbridge.runtime.dispatcher import ToolDispatcher
from toolbridge.runtime.models import ToolDefinition
from toolbridge.server import build_dispatcher, build_session


class TestEchoRoundTrip:
    async def test_short_text_echoes(self, session_pair: Any) -> None:
        async with session_pair() as (client, _):
            assert client.agreed is not None
            assert set(client.agreed.categories) == {"tools"}

            listed = await client.request("tools/list")
            assert [tool["name"] for tool in listed["tools"]] == ["echo"]

            raw = await client.request("tools/call", {"name": "echo", "arguments": {"text": "hi"}})

        result = CallToolResult.model_validate(raw)
        assert result.is_error is False
        assert result.text == "hi"

    async def test_long_text_fails_validation(self, session_pair: Any) -> None:
        async with session_pair() as (client, _):
            raw = await client.request(
                "tools/call", {"name": "echo", "arguments": {"text": "this is too long"}}
            )

        result = CallToolResult.model_validate(raw)
        assert result.is_error is True
        assert "at most 10 characters" in result.text

    async def test_concurrent_calls_all_answered(self, session_pair: Any) -> None:
        async with session_pair() as (client, _):
            raws = await asyncio.gather(
                *(
                    client.request("tools/call", {"name": "echo", "arguments": {"text": f"n{i}"}})
                    for i in range(20)
                )
            )

        assert [CallToolResult.model_validate(raw).text for raw in raws] == [f"n{i}" for i in range(20)]


class TestFilesystemServer:
    async def test_write_read_list_search(self, tmp_path: Path) -> None:
        settings = ServerSettings.model_validate({"sandbox": {"root": str(tmp_path)}})
        client_end, server_end = create_channel_pair()
        server = build_session(server_end, settings)
        server.start()

        async with ToolClient(client_end) as client:
            written = await client.call_tool("write_file", {"path": "src/app.py", "content": "print('hi')\n"})
            read = await client.call_tool("read_file", {"path": "src/app.py"})
            listing = await client.call_tool("list_directory")
            found = await client.call_tool("search_files", {"pattern": "**/*.py"})
            denied = await client.call_tool("read_file", {"path": "/etc/hostname"})

        await server.wait_closed()

        assert written.text == "Successfully wrote 12 bytes to src/app.py"
        assert read.text == "print('hi')\n"
        assert "[DIR]  src" in listing.text
        assert found.text == "Found 1 file(s):\n\nsrc/app.py"
        assert denied.is_error is True
        assert denied.meta == {"errorCode": -32003}
        assert (tmp_path / "src" / "app.py").exists()

    async def test_tool_list_change_reaches_client(self, tmp_path: Path) -> None:
        settings = ServerSettings.model_validate({"sandbox": {"root": str(tmp_path)}})
        dispatcher: ToolDispatcher = build_dispatcher(settings)
        client_end, server_end = create_channel_pair()
        server = build_session(server_end, settings, dispatcher=dispatcher)
        server.start()
        changed = asyncio.Event()

        async with ToolClient(client_end) as client:
            client.on_tools_changed(lambda _params: changed.set())
            dispatcher.replace(ToolDefinition(name="noop", handler=lambda arguments, context: "ok"))
            await asyncio.wait_for(changed.wait(), 1)
            names = {tool.name for tool in await client.list_tools()}

        await server.close()
        assert "noop" in names

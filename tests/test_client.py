"""Tests for ToolClient against an in-process filesystem server."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from toolbridge.client import ToolClient
from toolbridge.config import ServerSettings
from toolbridge.protocol.channel import create_channel_pair
from toolbridge.protocol.errors import ConnectionFailedError, MethodNotFoundError, RemoteError
from toolbridge.protocol.models import CapabilityFlags
from toolbridge.server import build_session
from toolbridge.session import Session, SessionConfig, SessionState


@pytest.fixture
def root(tmp_path: Path) -> Path:
    (tmp_path / "notes.md").write_text("# Notes\n")
    (tmp_path / "long.txt").write_text("abcdefghij" * 12)
    return tmp_path


@pytest.fixture
def settings(root: Path) -> ServerSettings:
    return ServerSettings.model_validate(
        {"sandbox": {"root": str(root)}, "max_result_chars": 50, "shutdown_grace": 1.0}
    )


@pytest.fixture
async def served(settings: ServerSettings) -> AsyncIterator[tuple[Any, Session]]:
    client_end, server_end = create_channel_pair()
    server = build_session(server_end, settings)
    server.start()
    try:
        yield client_end, server
    finally:
        await server.close()


class TestConstruction:
    def test_needs_a_target(self) -> None:
        with pytest.raises(ValueError, match="channel"):
            ToolClient()

    def test_session_before_connect(self) -> None:
        client = ToolClient(command="toolbridge serve")
        with pytest.raises(RuntimeError, match="not connected"):
            _ = client.session

    async def test_unlaunchable_command(self) -> None:
        client = ToolClient(command="toolbridge-no-such-binary-4d1f --stdio")
        with pytest.raises(ConnectionFailedError, match="Cannot connect to toolbridge-no-such-binary"):
            await client.connect()


class TestToolClient:
    async def test_connect_and_list_tools(self, served: tuple[Any, Session]) -> None:
        channel, server = served
        async with ToolClient(channel) as client:
            tools = await client.list_tools()
            assert client.session.peer_info is not None
            assert client.session.peer_info.name == "toolbridge-filesystem"
            assert server.caller_id == "toolbridge-client"

        names = {tool.name for tool in tools}
        assert {"read_file", "write_file", "list_directory"} <= names
        read_file = next(tool for tool in tools if tool.name == "read_file")
        assert read_file.input_schema["required"] == ["path"]

    async def test_call_tool(self, served: tuple[Any, Session]) -> None:
        channel, _ = served
        async with ToolClient(channel) as client:
            result = await client.call_tool("read_file", {"path": "notes.md"})
        assert result.is_error is False
        assert result.text == "# Notes\n"

    async def test_tool_failure_is_a_result(self, served: tuple[Any, Session]) -> None:
        channel, _ = served
        async with ToolClient(channel) as client:
            result = await client.call_tool("read_file", {"path": "../../etc/passwd"})
        assert result.is_error is True

    async def test_unknown_tool_raises(self, served: tuple[Any, Session]) -> None:
        channel, _ = served
        async with ToolClient(channel) as client:
            with pytest.raises(RemoteError) as exc_info:
                await client.call_tool("format_disk")
        assert exc_info.value.code == -32601

    async def test_paged_result(self, served: tuple[Any, Session], root: Path) -> None:
        channel, _ = served
        async with ToolClient(channel) as client:
            pages = await client.call_tool_paged("read_file", {"path": "long.txt"})

        assert len(pages) == 3
        assert [page.meta for page in pages[:2]] == [{"continuationOffset": 50}, {"continuationOffset": 100}]
        assert "".join(page.content[0].text for page in pages) == (root / "long.txt").read_text()
        assert "continue with offset=50" in pages[0].content[-1].text

    async def test_resources(self, served: tuple[Any, Session], root: Path) -> None:
        channel, _ = served
        async with ToolClient(channel) as client:
            listed = await client.list_resources()
            contents = await client.read_resource("file://notes.md")

        assert {r.name for r in listed} == {"notes.md", "long.txt"}
        assert contents[0].text == "# Notes\n"
        assert contents[0].mime_type == "text/markdown"

    async def test_subscribe_receives_updates(self, settings: ServerSettings, root: Path) -> None:
        from toolbridge.runtime.dispatcher import ToolDispatcher
        from toolbridge.runtime.sandbox import PathSandbox
        from toolbridge.tools.filesystem import FileResources, register_filesystem_tools

        dispatcher = ToolDispatcher(sandbox=PathSandbox(root))
        register_filesystem_tools(dispatcher)
        resources = FileResources(PathSandbox(root))
        client_end, server_end = create_channel_pair()
        server = Session(
            server_end,
            dispatcher=dispatcher,
            resources=resources,
            config=SessionConfig(
                name="fs",
                capabilities={
                    "tools": CapabilityFlags(),
                    "resources": CapabilityFlags(subscribe=True),
                },
            ),
        )
        server.start()
        updates: list[Any] = []
        uri = (root.resolve() / "notes.md").as_uri()
        try:
            async with ToolClient(client_end) as client:
                await client.subscribe(uri, updates.append)
                resources.notify_updated(uri)
                await client.session.ping()
                await client.unsubscribe(uri)
                resources.notify_updated(uri)
                await client.session.ping()
        finally:
            await server.close()

        assert updates == [{"uri": uri}]

    async def test_subscribe_unsupported(self, root: Path) -> None:
        from toolbridge.runtime.dispatcher import ToolDispatcher

        client_end, server_end = create_channel_pair()
        server = Session(
            server_end,
            dispatcher=ToolDispatcher(),
            config=SessionConfig(name="plain", capabilities={"tools": CapabilityFlags()}),
        )
        server.start()
        try:
            async with ToolClient(client_end) as client:
                with pytest.raises(MethodNotFoundError):
                    await client.subscribe("file:///x")
        finally:
            await server.close()

    async def test_close_shuts_server_down(self, served: tuple[Any, Session]) -> None:
        channel, server = served
        client = ToolClient(channel)
        await client.connect()
        await client.close()

        await server.wait_closed()
        assert server.state is SessionState.CLOSED

"""ToolClient — connects to a tool server and invokes its tools.

Implements tool discovery (``tools/list``), execution (``tools/call``) and
resource access on top of an initiating :class:`Session`.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

from toolbridge.protocol.channel import Channel, ProcessChannel, WebSocketChannel
from toolbridge.protocol.errors import ConnectionFailedError, MethodNotFoundError
from toolbridge.protocol.models import (
    CallToolResult,
    CapabilityFlags,
    ResourceContent,
    ResourceDescriptor,
    ToolDescriptor,
)
from toolbridge.session import Session, SessionConfig

if TYPE_CHECKING:
    from toolbridge.session import NotificationHandler, ProgressCallback


def default_client_config() -> SessionConfig:
    """Client identity accepting tools and resources with change notifications."""
    return SessionConfig(
        name="toolbridge-client",
        capabilities={
            "tools": CapabilityFlags(list_changed=True),
            "resources": CapabilityFlags(list_changed=True, subscribe=True),
        },
    )


class ToolClient:
    """Async context manager that connects to a tool server.

    Usage::

        async with ToolClient(command="toolbridge serve --root /srv/data") as client:
            tools = await client.list_tools()
            result = await client.call_tool("read_file", {"path": "notes.md"})
    """

    def __init__(
        self,
        channel: Channel | None = None,
        *,
        command: str | None = None,
        url: str | None = None,
        env: dict[str, str] | None = None,
        config: SessionConfig | None = None,
    ) -> None:
        if channel is None and not command and not url:
            msg = "ToolClient needs a channel, a 'command' or a 'url'"
            raise ValueError(msg)
        self._channel = channel
        self._command = command
        self._url = url
        self._env = env
        self._config = config or default_client_config()
        self._session: Session | None = None
        self._tools: dict[str, ToolDescriptor] = {}

    async def __aenter__(self) -> ToolClient:
        await self.connect()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    @property
    def session(self) -> Session:
        if self._session is None:
            msg = "Client not connected"
            raise RuntimeError(msg)
        return self._session

    async def connect(self) -> None:
        """Open the channel and perform the initialize handshake."""
        channel = self._channel or await self._open_channel()
        self._session = Session(channel, config=self._config)
        self._session.start()
        await self._session.initialize()

    async def close(self) -> None:
        """Shut the session down and release the channel."""
        if self._session is not None:
            await self._session.shutdown()
            self._session = None

    async def list_tools(self) -> list[ToolDescriptor]:
        """Send ``tools/list`` and cache the advertised descriptors."""
        result = await self.session.request("tools/list")
        tools = [ToolDescriptor.model_validate(raw) for raw in result.get("tools", [])]
        self._tools = {tool.name: tool for tool in tools}
        return tools

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        *,
        offset: int = 0,
        timeout: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> CallToolResult:
        """Send ``tools/call`` for *name*.

        Tool failures come back as a result with ``is_error`` set; unknown
        tools and rate limiting raise :class:`RemoteError`.
        """
        params: dict[str, Any] = {"name": name, "arguments": arguments or {}}
        if offset:
            params["_meta"] = {"continuationOffset": offset}
        result = await self.session.request("tools/call", params, timeout=timeout, on_progress=on_progress)
        return CallToolResult.model_validate(result)

    async def call_tool_paged(self, name: str, arguments: dict[str, Any] | None = None) -> list[CallToolResult]:
        """Call *name* and follow continuation offsets until the last page."""
        pages = [await self.call_tool(name, arguments)]
        while pages[-1].meta and "continuationOffset" in pages[-1].meta:
            pages.append(await self.call_tool(name, arguments, offset=pages[-1].meta["continuationOffset"]))
        return pages

    async def list_resources(self) -> list[ResourceDescriptor]:
        result = await self.session.request("resources/list")
        return [ResourceDescriptor.model_validate(raw) for raw in result.get("resources", [])]

    async def read_resource(self, uri: str) -> list[ResourceContent]:
        result = await self.session.request("resources/read", {"uri": uri})
        return [ResourceContent.model_validate(raw) for raw in result.get("contents", [])]

    async def subscribe(self, uri: str, handler: NotificationHandler | None = None) -> None:
        """Subscribe to change notifications for *uri*.

        Raises:
            MethodNotFoundError: If the server does not support subscriptions.
        """
        if not self.session.capabilities.supports("resources", "subscribe"):
            raise MethodNotFoundError("resources/subscribe")
        if handler is not None:
            self.session.on_notification("notifications/resources/updated", handler)
        await self.session.request("resources/subscribe", {"uri": uri})

    async def unsubscribe(self, uri: str) -> None:
        await self.session.request("resources/unsubscribe", {"uri": uri})

    def on_tools_changed(self, handler: NotificationHandler) -> None:
        self.session.on_notification("notifications/tools/list_changed", handler)

    async def _open_channel(self) -> Channel:
        """Build and connect the channel described by ``command`` or ``url``."""
        channel: ProcessChannel | WebSocketChannel
        if self._command:
            env = {**os.environ, **self._env} if self._env else None
            channel = ProcessChannel(self._command, env=env)
            target = self._command
        else:
            assert self._url is not None
            channel = WebSocketChannel(self._url)
            target = self._url
        try:
            await channel.connect()
        except (OSError, ValueError) as exc:
            raise ConnectionFailedError(target, str(exc)) from exc
        return channel

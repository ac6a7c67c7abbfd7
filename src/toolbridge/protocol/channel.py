"""Channels — framed duplex message carriers consumed by a Session.

Each channel satisfies the :class:`Channel` protocol, providing ``send``,
``receive`` and ``close``.  Message boundaries are the channel's concern: the
session only ever sees whole decoded messages.

- ``MemoryChannel`` — in-process pair built by :func:`create_channel_pair`.
- ``StdioChannel`` — newline-delimited JSON on this process's stdin/stdout.
- ``ProcessChannel`` — spawns a server subprocess and talks over its pipes.
- ``WebSocketChannel`` — requires the ``websockets`` package (extra ``ws``).
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from typing import Any, BinaryIO, Protocol, runtime_checkable

from toolbridge.protocol.errors import ChannelClosedError, MalformedMessageError

logger = logging.getLogger(__name__)


@runtime_checkable
class Channel(Protocol):
    """Abstract duplex message channel."""

    async def send(self, data: dict[str, Any]) -> None: ...
    async def receive(self) -> Any: ...
    async def close(self) -> None: ...


def _decode_line(line: bytes | str) -> Any:
    try:
        return json.loads(line)
    except ValueError as exc:
        raise MalformedMessageError(line, str(exc)) from exc


_CLOSED = object()


class MemoryChannel:
    """One end of an in-process channel pair.

    Messages are round-tripped through JSON so each side receives its own
    copy, exactly as it would over a byte stream.
    """

    def __init__(self) -> None:
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()
        self._peer: MemoryChannel | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, data: dict[str, Any]) -> None:
        if self._closed or self._peer is None or self._peer._closed:
            msg = "Channel closed"
            raise ChannelClosedError(msg)
        self._peer._inbox.put_nowait(json.loads(json.dumps(data)))

    async def receive(self) -> Any:
        if self._closed and self._inbox.empty():
            msg = "Channel closed"
            raise ChannelClosedError(msg)
        item = await self._inbox.get()
        if item is _CLOSED:
            self._closed = True
            msg = "Channel closed by peer"
            raise ChannelClosedError(msg)
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._inbox.put_nowait(_CLOSED)
        if self._peer is not None and not self._peer._closed:
            self._peer._inbox.put_nowait(_CLOSED)


def create_channel_pair() -> tuple[MemoryChannel, MemoryChannel]:
    """Return two connected in-process channel ends."""
    left, right = MemoryChannel(), MemoryChannel()
    left._peer, right._peer = right, left
    return left, right


class StdioChannel:
    """Serves over this process's stdin/stdout as newline-delimited JSON.

    Both ends are attached to the running loop as pipes on first use, so
    neither reads nor writes block it.  Used by ``toolbridge serve``;
    logging must go to stderr.
    """

    def __init__(
        self,
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
    ) -> None:
        self._stdin = stdin or sys.stdin.buffer
        # private descriptor; closing it leaves sys.stdout open
        self._stdout = stdout or open(os.dup(sys.stdout.fileno()), "wb", buffering=0)  # noqa: SIM115
        self._reader: asyncio.StreamReader | None = None
        self._read_transport: asyncio.ReadTransport | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._closed = False

    async def _ensure_reader(self) -> asyncio.StreamReader:
        if self._reader is None:
            loop = asyncio.get_running_loop()
            reader = asyncio.StreamReader()
            self._read_transport, _ = await loop.connect_read_pipe(
                lambda: asyncio.StreamReaderProtocol(reader), self._stdin
            )
            self._reader = reader
        return self._reader

    async def _ensure_writer(self) -> asyncio.StreamWriter:
        if self._writer is None:
            loop = asyncio.get_running_loop()
            transport, protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, self._stdout)
            self._writer = asyncio.StreamWriter(transport, protocol, None, loop)
        return self._writer

    async def send(self, data: dict[str, Any]) -> None:
        """Write one JSON line to stdout."""
        if self._closed:
            msg = "Channel closed"
            raise ChannelClosedError(msg)
        line = json.dumps(data, separators=(",", ":")) + "\n"
        writer = await self._ensure_writer()
        try:
            writer.write(line.encode())
            await writer.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            self._closed = True
            raise ChannelClosedError(str(exc)) from exc

    async def receive(self) -> Any:
        """Read one JSON line from stdin, skipping blank lines."""
        reader = await self._ensure_reader()
        while True:
            if self._closed:
                msg = "Channel closed"
                raise ChannelClosedError(msg)
            line = await reader.readline()
            if not line:
                self._closed = True
                msg = "stdin reached EOF"
                raise ChannelClosedError(msg)
            if line.strip():
                return _decode_line(line)

    async def close(self) -> None:
        """Wake a pending :meth:`receive` and flush and close stdout.  Idempotent."""
        self._closed = True
        if self._reader is not None:
            self._reader.feed_eof()
        if self._read_transport is not None:
            self._read_transport.close()
            self._read_transport = None
        if self._writer is not None:
            writer, self._writer = self._writer, None
            writer.close()
            try:
                await writer.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("stdout already closed by peer")


class ProcessChannel:
    """Communicates with a server subprocess via its stdin/stdout.

    Sends and receives newline-delimited JSON.
    """

    def __init__(self, command: str, env: dict[str, str] | None = None) -> None:
        self._command = command
        self._env = env
        self._process: asyncio.subprocess.Process | None = None

    async def connect(self) -> None:
        """Launch the subprocess."""
        import shlex

        parts = shlex.split(self._command)
        self._process = await asyncio.create_subprocess_exec(
            *parts,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            env=self._env,
        )
        logger.debug("Spawned server process %s (pid %s)", parts[0], self._process.pid)

    async def send(self, data: dict[str, Any]) -> None:
        """Write a JSON line to the child's stdin."""
        if self._process is None or self._process.stdin is None:
            msg = "Channel not connected"
            raise ChannelClosedError(msg)
        line = json.dumps(data) + "\n"
        try:
            self._process.stdin.write(line.encode())
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise ChannelClosedError(str(exc)) from exc

    async def receive(self) -> Any:
        """Read a JSON line from the child's stdout."""
        if self._process is None or self._process.stdout is None:
            msg = "Channel not connected"
            raise ChannelClosedError(msg)
        line = await self._process.stdout.readline()
        if not line:
            msg = "Server process closed its output"
            raise ChannelClosedError(msg)
        return _decode_line(line)

    async def close(self) -> None:
        """Terminate the subprocess."""
        if self._process is not None:
            if self._process.stdin:
                self._process.stdin.close()
            if self._process.returncode is None:
                try:
                    self._process.terminate()
                except ProcessLookupError:
                    pass
            await self._process.wait()
            self._process = None


class WebSocketChannel:
    """Communicates with a peer over WebSocket, one JSON message per frame.

    Requires the ``websockets`` package (optional dependency ``ws``).
    """

    def __init__(self, url: str) -> None:
        self._url = url
        self._ws: Any = None

    async def connect(self) -> None:
        """Open the WebSocket connection."""
        try:
            import websockets
        except ImportError as exc:
            msg = "websockets package required — install with: pip install toolbridge[ws]"
            raise ImportError(msg) from exc
        self._ws = await websockets.connect(self._url)

    async def send(self, data: dict[str, Any]) -> None:
        if self._ws is None:
            msg = "Channel not connected"
            raise ChannelClosedError(msg)
        await self._ws.send(json.dumps(data))

    async def receive(self) -> Any:
        if self._ws is None:
            msg = "Channel not connected"
            raise ChannelClosedError(msg)
        from websockets.exceptions import ConnectionClosed

        try:
            raw = await self._ws.recv()
        except ConnectionClosed as exc:
            raise ChannelClosedError(str(exc)) from exc
        return _decode_line(raw)

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None

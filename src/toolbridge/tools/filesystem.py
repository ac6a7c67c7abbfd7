"""Filesystem toolset — file tools and ``file://`` resources under a sandbox root.

Every path argument is declared as a locator, so the dispatcher has already
confined it to the sandbox root by the time a handler sees it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from toolbridge.protocol.errors import InvalidParamsError
from toolbridge.protocol.models import CallToolResult, ResourceContent, ResourceDescriptor
from toolbridge.runtime.errors import ToolError
from toolbridge.runtime.models import (
    InvocationContext,
    ParameterContract,
    ParameterSpec,
    ResultBuilder,
    ToolDefinition,
)

if TYPE_CHECKING:
    from toolbridge.runtime.dispatcher import ToolDispatcher
    from toolbridge.runtime.resources import ResourceListener
    from toolbridge.runtime.sandbox import PathSandbox

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 1024 * 1024
MAX_SEARCH_RESULTS = 100

MIME_TYPES = {
    ".json": "application/json",
    ".md": "text/markdown",
    ".txt": "text/plain",
    ".py": "text/x-python",
    ".ts": "text/typescript",
    ".js": "text/javascript",
    ".yaml": "application/yaml",
    ".yml": "application/yaml",
}


def mime_type_for(path: Path) -> str:
    return MIME_TYPES.get(path.suffix.lower(), "text/plain")


class FilesystemTools:
    """Handlers for the filesystem tools, bound to one sandbox."""

    def __init__(self, sandbox: PathSandbox, *, max_file_size: int = MAX_FILE_SIZE) -> None:
        self._sandbox = sandbox
        self._max_file_size = max_file_size

    def definitions(self) -> list[ToolDefinition]:
        """Build the tool definitions for registration."""
        path = ParameterSpec(description="Path to the file (relative to allowed root)", is_locator=True)
        return [
            ToolDefinition(
                name="read_file",
                description="Read the contents of a file. Returns the file content as text.",
                parameters=ParameterContract(parameters={"path": path}),
                handler=self.read_file,
            ),
            ToolDefinition(
                name="read_multiple_files",
                description="Read several files at once. Files that fail are reported individually.",
                parameters=ParameterContract(
                    parameters={
                        "paths": ParameterSpec(
                            type="array",
                            items=ParameterSpec(),
                            min_length=1,
                            description="Paths of the files to read",
                            is_locator=True,
                        ),
                    }
                ),
                handler=self.read_multiple_files,
            ),
            ToolDefinition(
                name="write_file",
                description="Write content to a file. Creates the file if it doesn't exist.",
                parameters=ParameterContract(
                    parameters={
                        "path": path,
                        "content": ParameterSpec(
                            max_length=self._max_file_size,
                            description="Content to write",
                        ),
                    }
                ),
                handler=self.write_file,
            ),
            ToolDefinition(
                name="list_directory",
                description="List contents of a directory with file metadata.",
                parameters=ParameterContract(
                    parameters={
                        "path": ParameterSpec(
                            required=False,
                            description="Directory path (defaults to the root)",
                            is_locator=True,
                        ),
                    }
                ),
                handler=self.list_directory,
            ),
            ToolDefinition(
                name="search_files",
                description="Search for files matching a glob pattern. Returns list of matching paths.",
                parameters=ParameterContract(
                    parameters={
                        "pattern": ParameterSpec(min_length=1, description="Glob pattern, e.g. '**/*.py'"),
                        "root_path": ParameterSpec(
                            required=False,
                            description="Subdirectory to search in",
                            is_locator=True,
                        ),
                    }
                ),
                handler=self.search_files,
            ),
        ]

    # ------------------------------------------------------------------
    # Handlers (synchronous; the dispatcher runs them on worker threads)
    # ------------------------------------------------------------------

    def read_file(self, arguments: dict[str, Any], context: InvocationContext) -> str:
        return self._read_text(Path(arguments["path"]))

    def read_multiple_files(self, arguments: dict[str, Any], context: InvocationContext) -> CallToolResult:
        paths = [Path(p) for p in arguments["paths"]]
        builder = ResultBuilder()
        for index, path in enumerate(paths):
            if context.token.cancelled:
                break
            display = self._sandbox.relative(path)
            try:
                builder.add_text(f"{display}:\n{self._read_text(path)}")
            except ToolError as exc:
                builder.add_text(f"{display}: {exc}", failed=True)
            context.report_progress_threadsafe(index + 1, len(paths), display)
        return builder.build()

    def write_file(self, arguments: dict[str, Any], context: InvocationContext) -> str:
        path = Path(arguments["path"])
        content: str = arguments["content"]
        display = self._sandbox.relative(path)
        if path == self._sandbox.root or path.is_dir():
            msg = f"{display} is a directory, not a file"
            raise ToolError(msg)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            written = path.write_bytes(content.encode("utf-8"))
        except OSError as exc:
            msg = f"Error writing file: {exc.strerror or exc}"
            raise ToolError(msg) from exc
        logger.info("Wrote %d bytes to %s", written, display)
        return f"Successfully wrote {written} bytes to {display}"

    def list_directory(self, arguments: dict[str, Any], context: InvocationContext) -> str:
        path = Path(arguments.get("path") or self._sandbox.root)
        display = self._sandbox.relative(path)
        try:
            entries = list(path.iterdir())
        except NotADirectoryError as exc:
            msg = f"{display} is not a directory"
            raise ToolError(msg) from exc
        except OSError as exc:
            msg = f"Error listing directory: {exc.strerror or exc}"
            raise ToolError(msg) from exc

        rows: list[tuple[bool, str, int, str]] = []
        for entry in entries:
            try:
                stat = entry.stat()
            except OSError:
                logger.debug("Skipping unreadable entry %s", entry)
                continue
            is_dir = entry.is_dir()
            modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(timespec="seconds")
            rows.append((is_dir, entry.name, 0 if is_dir else stat.st_size, modified))
        rows.sort(key=lambda row: (not row[0], row[1].lower()))

        lines = [
            f"{'[DIR] ' if is_dir else '[FILE]'} {name:<30} {'-' if is_dir else f'{size}b':>10}  {modified}"
            for is_dir, name, size, modified in rows
        ]
        return f"Contents of {display}:\n\n" + "\n".join(lines)

    def search_files(self, arguments: dict[str, Any], context: InvocationContext) -> str:
        pattern: str = arguments["pattern"]
        search_root = Path(arguments.get("root_path") or self._sandbox.root)
        if not search_root.is_dir():
            msg = f"{self._sandbox.relative(search_root)} is not a directory"
            raise ToolError(msg)

        try:
            candidates = sorted(search_root.glob(pattern))
        except (ValueError, NotImplementedError) as exc:
            msg = f"Invalid pattern {pattern!r}: {exc}"
            raise ToolError(msg) from exc

        matches: list[str] = []
        for candidate in candidates:
            if context.token.cancelled:
                break
            resolved = candidate.resolve()
            if not candidate.is_file() or not self._sandbox.contains(resolved):
                continue
            matches.append(candidate.relative_to(search_root).as_posix())

        header = f"Found {len(matches)} file(s)"
        if len(matches) > MAX_SEARCH_RESULTS:
            header += f" (showing first {MAX_SEARCH_RESULTS})"
        return header + ":\n\n" + "\n".join(matches[:MAX_SEARCH_RESULTS])

    def _read_text(self, path: Path) -> str:
        display = self._sandbox.relative(path)
        try:
            stat = path.stat()
        except FileNotFoundError as exc:
            msg = f"File not found: {display}"
            raise ToolError(msg) from exc
        except OSError as exc:
            msg = f"Error reading file: {exc.strerror or exc}"
            raise ToolError(msg) from exc
        if path.is_dir():
            msg = f"{display} is a directory, not a file"
            raise ToolError(msg)
        if stat.st_size > self._max_file_size:
            msg = f"File too large ({stat.st_size} bytes, max {self._max_file_size})"
            raise ToolError(msg)
        try:
            return path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            msg = f"{display} is not a UTF-8 text file"
            raise ToolError(msg) from exc
        except OSError as exc:
            msg = f"Error reading file: {exc.strerror or exc}"
            raise ToolError(msg) from exc


class FileResources:
    """Serves files under the sandbox root as ``file://`` resources."""

    def __init__(self, sandbox: PathSandbox, *, max_file_size: int = MAX_FILE_SIZE) -> None:
        self._sandbox = sandbox
        self._max_file_size = max_file_size
        self._listeners: list[ResourceListener] = []

    def uri_for(self, path: Path) -> str:
        return path.as_uri()

    async def list_resources(self) -> list[ResourceDescriptor]:
        """List the regular files directly under the root."""
        return await asyncio.to_thread(self._list)

    def _list(self) -> list[ResourceDescriptor]:
        resources: list[ResourceDescriptor] = []
        for entry in sorted(self._sandbox.root.iterdir()):
            if entry.is_file() and self._sandbox.contains(entry.resolve()):
                resources.append(
                    ResourceDescriptor(uri=self.uri_for(entry), name=entry.name, mime_type=mime_type_for(entry))
                )
        return resources

    async def read_resource(self, uri: str) -> list[ResourceContent]:
        """Read a file (or a directory listing as JSON).

        Raises:
            SandboxViolationError: If *uri* resolves outside the root.
            InvalidParamsError: If the resource does not exist or is unreadable.
        """
        path = self._sandbox.resolve(uri)
        return await asyncio.to_thread(self._read, uri, path)

    def _read(self, uri: str, path: Path) -> list[ResourceContent]:
        if path.is_dir():
            names = sorted(entry.name for entry in path.iterdir())
            return [ResourceContent(uri=uri, mime_type="application/json", text=json.dumps(names, indent=2))]
        if not path.is_file():
            msg = f"Resource not found: {uri}"
            raise InvalidParamsError(msg)
        size = path.stat().st_size
        if size > self._max_file_size:
            msg = f"Resource too large ({size} bytes, max {self._max_file_size}): {uri}"
            raise InvalidParamsError(msg)
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            msg = f"Cannot read resource {uri}: {exc}"
            raise InvalidParamsError(msg) from exc
        return [ResourceContent(uri=uri, mime_type=mime_type_for(path), text=text)]

    def validate_uri(self, uri: str) -> None:
        self._sandbox.resolve(uri)

    def add_listener(self, listener: ResourceListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ResourceListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def notify_updated(self, uri: str) -> None:
        """Tell subscribed sessions that *uri* changed."""
        for listener in list(self._listeners):
            try:
                listener(uri)
            except Exception:
                logger.exception("Resource listener failed for %s", uri)


def register_filesystem_tools(dispatcher: ToolDispatcher, *, max_file_size: int = MAX_FILE_SIZE) -> FilesystemTools:
    """Register the filesystem tools on *dispatcher*.

    Raises:
        ValueError: If the dispatcher has no sandbox; these tools never run unconfined.
    """
    if dispatcher.sandbox is None:
        msg = "Filesystem tools require a dispatcher with a PathSandbox"
        raise ValueError(msg)
    tools = FilesystemTools(dispatcher.sandbox, max_file_size=max_file_size)
    for definition in tools.definitions():
        dispatcher.register(definition)
    return tools


"""Error types for the runtime safety layer."""

from __future__ import annotations

from toolbridge.protocol.errors import ToolbridgeError


class RuntimeSafetyError(ToolbridgeError):
    """Base error for all runtime safety failures."""


class SandboxViolationError(RuntimeSafetyError):
    """A resource locator resolved outside the allowed root."""

    def __init__(self, locator: str, root: str = "") -> None:
        self.locator = locator
        self.root = root
        msg = f"Access denied: {locator!r} is outside the allowed directory"
        super().__init__(msg)


class DuplicateToolError(RuntimeSafetyError):
    """A tool with the same name is already registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool already registered: {name}")


class ToolError(Exception):
    """Raised by tool handlers to report a failure to the caller.

    The message is surfaced verbatim in an ``isError=true`` result.
    """


class InvocationCancelledError(RuntimeSafetyError):
    """The invocation's cancellation token fired before the handler finished."""

    def __init__(self, tool_name: str, reason: str = "") -> None:
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(f"Invocation of {tool_name} cancelled" + (f": {reason}" if reason else ""))


class InvocationTimeoutError(RuntimeSafetyError):
    """The handler did not finish within the configured timeout."""

    def __init__(self, tool_name: str, timeout: float) -> None:
        self.tool_name = tool_name
        self.timeout = timeout
        super().__init__(f"Tool {tool_name} timed out after {timeout}s")

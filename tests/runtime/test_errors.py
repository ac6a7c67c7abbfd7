"""Tests for the runtime error hierarchy."""

from toolbridge.protocol.errors import (
    ErrorCode,
    MethodNotFoundError,
    RemoteError,
    RequestCancelledError,
    ToolbridgeError,
)
from toolbridge.protocol.models import ErrorObject
from toolbridge.runtime.errors import (
    DuplicateToolError,
    InvocationCancelledError,
    InvocationTimeoutError,
    RuntimeSafetyError,
    SandboxViolationError,
    ToolError,
)


class TestErrorHierarchy:
    def test_runtime_safety_error_is_toolbridge_error(self) -> None:
        assert issubclass(RuntimeSafetyError, ToolbridgeError)

    def test_sandbox_violation_is_runtime_safety_error(self) -> None:
        assert issubclass(SandboxViolationError, RuntimeSafetyError)

    def test_cancelled_and_timeout_are_runtime_safety_errors(self) -> None:
        assert issubclass(InvocationCancelledError, RuntimeSafetyError)
        assert issubclass(InvocationTimeoutError, RuntimeSafetyError)

    def test_tool_error_is_plain_exception(self) -> None:
        assert not issubclass(ToolError, ToolbridgeError)


class TestSandboxViolationError:
    def test_attributes(self) -> None:
        err = SandboxViolationError("../etc/passwd", "/srv")
        assert err.locator == "../etc/passwd"
        assert err.root == "/srv"
        assert "outside the allowed directory" in str(err)

    def test_message_omits_root(self) -> None:
        assert "/srv" not in str(SandboxViolationError("x", "/srv"))


class TestInvocationErrors:
    def test_cancelled_with_reason(self) -> None:
        err = InvocationCancelledError("read_file", "user abort")
        assert err.tool_name == "read_file"
        assert str(err) == "Invocation of read_file cancelled: user abort"

    def test_cancelled_without_reason(self) -> None:
        assert str(InvocationCancelledError("read_file")) == "Invocation of read_file cancelled"

    def test_timeout(self) -> None:
        err = InvocationTimeoutError("search_files", 2.5)
        assert err.timeout == 2.5
        assert "2.5s" in str(err)

    def test_duplicate_tool(self) -> None:
        assert "echo" in str(DuplicateToolError("echo"))


class TestProtocolErrorPayloads:
    def test_method_not_found(self) -> None:
        error = MethodNotFoundError("frobnicate", kind="Tool").to_error()
        assert error.code == ErrorCode.METHOD_NOT_FOUND
        assert error.message == "Tool not found: frobnicate"
        assert error.data == {"name": "frobnicate"}

    def test_request_cancelled_code(self) -> None:
        assert RequestCancelledError(7, "client gave up").to_error().code == -32800

    def test_remote_error_preserves_payload(self) -> None:
        err = RemoteError.from_error(ErrorObject(code=-32002, message="slow down", data={"retryAfter": 1.0}))
        assert err.code == -32002
        assert err.data == {"retryAfter": 1.0}
        assert str(err) == "slow down"

"""Error taxonomy for the protocol layer.

Every protocol-level failure carries an :class:`ErrorCode` and can be
rendered as a wire error object with :meth:`ProtocolError.to_error`.
"""

from __future__ import annotations

from enum import IntEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

if TYPE_CHECKING:
    from toolbridge.protocol.models import ErrorObject


class ErrorCode(IntEnum):
    """Numeric error codes carried in error payloads."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_FAULT = -32603
    RATE_LIMITED = -32002
    SANDBOX_VIOLATION = -32003
    TOOL_EXECUTION_FAULT = -32004
    TIMEOUT = -32005
    REQUEST_CANCELLED = -32800


class FieldError(BaseModel):
    """A single offending argument field."""

    field: str
    message: str


class ToolbridgeError(Exception):
    """Base error for all toolbridge failures."""


class ChannelClosedError(ToolbridgeError):
    """The channel was closed; nothing more can be sent or received."""


class ConnectionFailedError(ToolbridgeError):
    """A channel to a remote server could not be established."""

    def __init__(self, target: str, detail: str) -> None:
        self.target = target
        self.detail = detail
        super().__init__(f"Cannot connect to {target}: {detail}")


class MalformedMessageError(ToolbridgeError):
    """A frame arrived that could not be decoded into a message."""

    def __init__(self, raw: Any, detail: str = "") -> None:
        self.raw = raw
        self.detail = detail
        super().__init__("Malformed message" + (f": {detail}" if detail else ""))


class SessionClosedError(ToolbridgeError):
    """The session reached ``CLOSED`` before an outbound request completed."""


class ProtocolError(ToolbridgeError):
    """Base error for failures reported to the peer as error responses."""

    code: ErrorCode = ErrorCode.INTERNAL_FAULT

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | int | None = None,
        data: Any = None,
    ) -> None:
        self.message = message
        if code is not None:
            self.code = code  # type: ignore[assignment]
        self.data = data
        super().__init__(message)

    def to_error(self) -> ErrorObject:
        """Render this exception as a wire error object."""
        from toolbridge.protocol.models import ErrorObject

        return ErrorObject(code=int(self.code), message=self.message, data=self.data)


class ParseError(ProtocolError):
    code = ErrorCode.PARSE_ERROR


class InvalidRequestError(ProtocolError):
    code = ErrorCode.INVALID_REQUEST


class MethodNotFoundError(ProtocolError):
    """Requested method (or tool) is unknown or was never negotiated."""

    code = ErrorCode.METHOD_NOT_FOUND

    def __init__(self, name: str, kind: str = "Method") -> None:
        self.name = name
        super().__init__(f"{kind} not found: {name}", data={"name": name})


class InvalidParamsError(ProtocolError):
    """Arguments failed validation; ``errors`` lists the offending fields."""

    code = ErrorCode.INVALID_PARAMS

    def __init__(self, errors: list[FieldError] | str) -> None:
        if isinstance(errors, str):
            self.errors: list[FieldError] = []
            message = errors
        else:
            self.errors = errors
            message = "Invalid params: " + "; ".join(f"{e.field}: {e.message}" for e in errors)
        super().__init__(
            message,
            data={"errors": [e.model_dump() for e in self.errors]} if self.errors else None,
        )


class RateLimitedError(ProtocolError):
    """Caller exceeded its call budget; retrying later is allowed."""

    code = ErrorCode.RATE_LIMITED

    def __init__(self, caller_id: str, retry_after: float) -> None:
        self.caller_id = caller_id
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for caller {caller_id}; retry after {retry_after:.1f}s",
            data={"retryAfter": round(retry_after, 3)},
        )


class InternalFaultError(ProtocolError):
    code = ErrorCode.INTERNAL_FAULT


class RequestCancelledError(ProtocolError):
    """The request was cancelled before a result was produced."""

    code = ErrorCode.REQUEST_CANCELLED

    def __init__(self, request_id: int | str | None, reason: str = "") -> None:
        self.request_id = request_id
        self.reason = reason
        super().__init__("Request cancelled" + (f": {reason}" if reason else ""))


class ProtocolVersionError(ProtocolError):
    """The peer answered with a protocol version this side cannot speak."""

    code = ErrorCode.INVALID_REQUEST

    def __init__(self, version: str, supported: tuple[str, ...]) -> None:
        self.version = version
        self.supported = supported
        super().__init__(
            f"Unsupported protocol version {version!r}",
            data={"supported": list(supported)},
        )


class RemoteError(ProtocolError):
    """The peer answered an outbound request with an error payload."""

    @classmethod
    def from_error(cls, error: ErrorObject) -> RemoteError:
        return cls(error.message, code=error.code, data=error.data)

"""Protocol layer — wire models, channels, correlation and capability negotiation."""

from toolbridge.protocol.capabilities import AgreedCapabilities, CapabilityRegistry
from toolbridge.protocol.channel import (
    Channel,
    MemoryChannel,
    ProcessChannel,
    StdioChannel,
    WebSocketChannel,
    create_channel_pair,
)
from toolbridge.protocol.correlation import PendingRequests
from toolbridge.protocol.errors import (
    ChannelClosedError,
    ErrorCode,
    FieldError,
    InvalidParamsError,
    InvalidRequestError,
    MethodNotFoundError,
    ProtocolError,
    RateLimitedError,
    RemoteError,
    RequestCancelledError,
    SessionClosedError,
    ToolbridgeError,
)
from toolbridge.protocol.models import (
    CallToolResult,
    Notification,
    Request,
    Response,
    ToolDescriptor,
    parse_message,
)

__all__ = [
    "AgreedCapabilities",
    "CallToolResult",
    "CapabilityRegistry",
    "Channel",
    "ChannelClosedError",
    "ErrorCode",
    "FieldError",
    "InvalidParamsError",
    "InvalidRequestError",
    "MemoryChannel",
    "MethodNotFoundError",
    "Notification",
    "PendingRequests",
    "ProcessChannel",
    "ProtocolError",
    "RateLimitedError",
    "RemoteError",
    "Request",
    "RequestCancelledError",
    "Response",
    "SessionClosedError",
    "StdioChannel",
    "ToolDescriptor",
    "ToolbridgeError",
    "WebSocketChannel",
    "create_channel_pair",
    "parse_message",
]

"""Wire models — JSON-RPC 2.0 envelopes and protocol payloads.

Implements the three message kinds (request, response, notification) plus
the payloads exchanged during negotiation, tool discovery (``tools/list``),
tool execution (``tools/call``), resources and progress reporting.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from toolbridge.protocol.errors import InvalidRequestError, ParseError

JSONRPC_VERSION = "2.0"
LATEST_PROTOCOL_VERSION = "2025-06-18"
SUPPORTED_PROTOCOL_VERSIONS = ("2024-11-05", "2025-03-26", "2025-06-18")

RequestId = int | str


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Dump using wire (camelCase) names, omitting unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# JSON-RPC 2.0 envelope
# ---------------------------------------------------------------------------


class ErrorObject(_WireModel):
    """Error payload: ``{code, message, data?}``."""

    code: int
    message: str
    data: Any = None


class Request(BaseModel):
    """A message that expects exactly one correlated response."""

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    id: RequestId
    method: str
    params: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id, "method": self.method}
        if self.params:
            wire["params"] = self.params
        return wire


class Notification(BaseModel):
    """A fire-and-forget message; carries no id."""

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    method: str
    params: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {"jsonrpc": self.jsonrpc, "method": self.method}
        if self.params:
            wire["params"] = self.params
        return wire


class Response(BaseModel):
    """The answer to a request: exactly one of ``result`` or ``error``."""

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    id: RequestId | None
    result: dict[str, Any] | None = None
    error: ErrorObject | None = None

    @model_validator(mode="after")
    def _one_outcome(self) -> Response:
        if (self.result is None) == (self.error is None):
            msg = "response must carry exactly one of 'result' or 'error'"
            raise ValueError(msg)
        return self

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            wire["error"] = self.error.to_wire()
        else:
            wire["result"] = self.result
        return wire


Message = Request | Response | Notification


def parse_message(raw: Any) -> Message:
    """Classify a decoded frame as a request, response or notification.

    Raises:
        InvalidRequestError: If *raw* is not a well-formed message.  The
            error's ``data`` carries the id only for request-shaped frames;
            a broken response is never answered.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise ParseError(f"Invalid JSON: {exc}") from exc

    if not isinstance(raw, dict):
        raise InvalidRequestError("Message must be a JSON object")

    msg_id = raw.get("id")
    if "method" not in raw or not isinstance(msg_id, (int, str)) or isinstance(msg_id, bool):
        msg_id = None
    if raw.get("jsonrpc") != JSONRPC_VERSION:
        raise InvalidRequestError("Missing or unsupported 'jsonrpc' version", data={"id": msg_id})

    try:
        if "method" in raw:
            if "id" in raw and raw["id"] is not None:
                return Request.model_validate(raw)
            return Notification.model_validate(raw)
        if "result" in raw or "error" in raw:
            return Response.model_validate(raw)
    except ValidationError as exc:
        raise InvalidRequestError(_first_error(exc), data={"id": msg_id}) from exc

    raise InvalidRequestError("Message is neither a request, response nor notification", data={"id": msg_id})


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(p) for p in err["loc"]) or "message"
    return f"{loc}: {err['msg']}"


# ---------------------------------------------------------------------------
# Negotiation payloads
# ---------------------------------------------------------------------------


class CapabilityFlags(_WireModel):
    """Optional sub-flags of a declared capability category."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    list_changed: bool = Field(default=False, alias="listChanged")
    subscribe: bool = False


class Implementation(_WireModel):
    name: str
    version: str = "0.0.0"


class InitializeParams(_WireModel):
    """Sent by the initiating side with its protocol version and capabilities."""

    protocol_version: str = Field(alias="protocolVersion")
    capabilities: dict[str, CapabilityFlags] = Field(default_factory=dict)
    client_info: Implementation = Field(
        default_factory=lambda: Implementation(name="unknown"), alias="clientInfo"
    )


class InitializeResult(_WireModel):
    """Returned by the serving side to complete negotiation."""

    protocol_version: str = Field(alias="protocolVersion")
    capabilities: dict[str, CapabilityFlags] = Field(default_factory=dict)
    server_info: Implementation = Field(
        default_factory=lambda: Implementation(name="unknown"), alias="serverInfo"
    )


# ---------------------------------------------------------------------------
# Tool payloads
# ---------------------------------------------------------------------------


class TextContent(_WireModel):
    """Plain text content item."""

    type: Literal["text"] = "text"
    text: str


class BinaryContent(_WireModel):
    """Base64-encoded binary content item with a mime type."""

    type: Literal["binary"] = "binary"
    data: str
    mime_type: str = Field(default="application/octet-stream", alias="mimeType")


ContentItem = Annotated[TextContent | BinaryContent, Field(discriminator="type")]


class CallToolResult(_WireModel):
    """The shared envelope for successful and failed tool outcomes."""

    content: list[ContentItem] = Field(default_factory=list)
    is_error: bool = Field(default=False, alias="isError")
    meta: dict[str, Any] | None = Field(default=None, alias="_meta")

    @classmethod
    def from_text(cls, text: str, *, is_error: bool = False) -> CallToolResult:
        return cls(content=[TextContent(text=text)], is_error=is_error)

    @classmethod
    def error(cls, message: str, code: int | None = None) -> CallToolResult:
        """Build an ``isError=true`` result; *code* is kept under ``_meta``."""
        meta = {"errorCode": code} if code is not None else None
        return cls(content=[TextContent(text=message)], is_error=True, meta=meta)

    @property
    def text(self) -> str:
        """Concatenated text of every text item."""
        return "\n".join(item.text for item in self.content if isinstance(item, TextContent))


class ToolDescriptor(_WireModel):
    """A tool as advertised by ``tools/list``."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict, alias="inputSchema")


class CallToolParams(_WireModel):
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    meta: dict[str, Any] | None = Field(default=None, alias="_meta")


class ProgressParams(_WireModel):
    """Payload of ``notifications/progress``."""

    invocation_id: RequestId = Field(alias="invocationId")
    completed: float
    total: float | None = None
    status: str | None = None


class CancelledParams(_WireModel):
    """Payload of ``notifications/cancelled``."""

    request_id: RequestId = Field(alias="requestId")
    reason: str | None = None


# ---------------------------------------------------------------------------
# Resource payloads
# ---------------------------------------------------------------------------


class ResourceDescriptor(_WireModel):
    uri: str
    name: str
    mime_type: str | None = Field(default=None, alias="mimeType")


class ResourceContent(_WireModel):
    uri: str
    mime_type: str = Field(default="text/plain", alias="mimeType")
    text: str

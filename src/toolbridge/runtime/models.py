"""Data models for tool registration and invocation."""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from toolbridge.protocol.models import (
    BinaryContent,
    CallToolResult,
    ContentItem,
    ProgressParams,
    RequestId,
    TextContent,
    ToolDescriptor,
)
from toolbridge.runtime.cancellation import CancellationToken

logger = logging.getLogger(__name__)

ParameterType = Literal["string", "number", "integer", "boolean", "enum", "array", "object"]

_JSON_TYPES = {
    "string": "string",
    "number": "number",
    "integer": "integer",
    "boolean": "boolean",
    "array": "array",
    "object": "object",
}


class ParameterSpec(BaseModel):
    """Declared type, required-ness and bounds of one tool parameter."""

    type: ParameterType = Field(default="string", description="Value type.")
    required: bool = Field(default=True, description="Whether the caller must supply it.")
    description: str = Field(default="", description="Shown to callers in tools/list.")
    min_length: int | None = Field(default=None, ge=0, description="Min string length / array size.")
    max_length: int | None = Field(default=None, ge=0, description="Max string length / array size.")
    minimum: float | None = Field(default=None, description="Inclusive lower bound for numbers.")
    maximum: float | None = Field(default=None, description="Inclusive upper bound for numbers.")
    pattern: str | None = Field(default=None, description="Regex a string must match.")
    values: list[Any] | None = Field(default=None, description="Allowed values for enum parameters.")
    items: ParameterSpec | None = Field(default=None, description="Element spec for arrays.")
    is_locator: bool = Field(
        default=False,
        description="Value is a resource locator and must pass the path sandbox.",
    )

    @model_validator(mode="after")
    def _check_shape(self) -> ParameterSpec:
        if self.type == "enum" and not self.values:
            msg = "enum parameters require 'values'"
            raise ValueError(msg)
        if self.is_locator and self.type not in ("string", "array"):
            msg = "locator parameters must be strings or arrays of strings"
            raise ValueError(msg)
        return self

    def to_json_schema(self) -> dict[str, Any]:
        """Render as a JSON Schema fragment."""
        schema: dict[str, Any] = {}
        if self.type == "enum":
            schema["enum"] = list(self.values or [])
        else:
            schema["type"] = _JSON_TYPES[self.type]
        if self.description:
            schema["description"] = self.description
        if self.type == "array":
            if self.min_length is not None:
                schema["minItems"] = self.min_length
            if self.max_length is not None:
                schema["maxItems"] = self.max_length
            if self.items is not None:
                schema["items"] = self.items.to_json_schema()
        else:
            if self.min_length is not None:
                schema["minLength"] = self.min_length
            if self.max_length is not None:
                schema["maxLength"] = self.max_length
        if self.minimum is not None:
            schema["minimum"] = self.minimum
        if self.maximum is not None:
            schema["maximum"] = self.maximum
        if self.pattern is not None:
            schema["pattern"] = self.pattern
        return schema


class ParameterContract(BaseModel):
    """The full argument contract of a tool."""

    parameters: dict[str, ParameterSpec] = Field(default_factory=dict)
    allow_extra: bool = Field(
        default=False,
        description="Pass unknown fields through instead of rejecting them.",
    )

    @property
    def locator_fields(self) -> list[str]:
        return [name for name, spec in self.parameters.items() if spec.is_locator]

    def to_json_schema(self) -> dict[str, Any]:
        """Render as the ``inputSchema`` advertised in ``tools/list``."""
        return {
            "type": "object",
            "properties": {name: spec.to_json_schema() for name, spec in self.parameters.items()},
            "required": [name for name, spec in self.parameters.items() if spec.required],
            "additionalProperties": self.allow_extra,
        }


class ToolDefinition(BaseModel):
    """A registered tool: name, contract and the application's handler."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(..., min_length=1)
    description: str = ""
    parameters: ParameterContract = Field(default_factory=ParameterContract)
    handler: Callable[..., Any]
    timeout: float | None = Field(
        default=None,
        gt=0,
        description="Per-tool timeout override in seconds.",
    )

    def describe(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            input_schema=self.parameters.to_json_schema(),
        )


class Invocation(BaseModel):
    """One execution request for a registered tool."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    caller_id: str = "anonymous"
    token: CancellationToken = Field(default_factory=CancellationToken)
    request_id: RequestId | None = None
    progress_token: RequestId | None = None
    offset: int = Field(default=0, ge=0, description="Continuation offset into a paged result.")


class DispatcherConfig(BaseModel):
    """Limits applied by the tool dispatcher."""

    timeout: float | None = Field(default=30.0, gt=0, description="Per-invocation timeout in seconds.")
    max_result_chars: int = Field(
        default=100_000,
        gt=0,
        description="Rendered result size above which results are paged.",
    )


ProgressSink = Callable[[ProgressParams], Awaitable[None]]


class InvocationContext:
    """Handed to every tool handler alongside its validated arguments."""

    def __init__(
        self,
        invocation: Invocation,
        *,
        progress_sink: ProgressSink | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._invocation = invocation
        self._progress_sink = progress_sink
        self._loop = loop

    @property
    def token(self) -> CancellationToken:
        return self._invocation.token

    @property
    def caller_id(self) -> str:
        return self._invocation.caller_id

    @property
    def tool_name(self) -> str:
        return self._invocation.tool_name

    async def report_progress(
        self,
        completed: float,
        total: float | None = None,
        status: str | None = None,
    ) -> None:
        """Emit a progress notification; dropped once cancelled or if unrequested."""
        if self._progress_sink is None or self._invocation.progress_token is None:
            return
        if self.token.cancelled:
            logger.debug("Dropping progress for cancelled invocation %s", self.tool_name)
            return
        await self._progress_sink(
            ProgressParams(
                invocation_id=self._invocation.progress_token,
                completed=completed,
                total=total,
                status=status,
            )
        )

    def report_progress_threadsafe(
        self,
        completed: float,
        total: float | None = None,
        status: str | None = None,
    ) -> None:
        """Variant of :meth:`report_progress` for synchronous handlers on worker threads."""
        if self._loop is None:
            return
        asyncio.run_coroutine_threadsafe(self.report_progress(completed, total, status), self._loop)


ToolHandler = Callable[[dict[str, Any], InvocationContext], Any]


class ResultBuilder:
    """Accumulates content from sub-operations that may partially fail.

    The built result is an error only if every sub-operation failed.
    """

    def __init__(self) -> None:
        self._content: list[ContentItem] = []
        self._succeeded = 0
        self._failed = 0

    def add_text(self, text: str, *, failed: bool = False) -> ResultBuilder:
        self._content.append(TextContent(text=text))
        self._count(failed)
        return self

    def add_binary(self, data: bytes, mime_type: str = "application/octet-stream") -> ResultBuilder:
        self._content.append(
            BinaryContent(data=base64.b64encode(data).decode("ascii"), mime_type=mime_type)
        )
        self._count(False)
        return self

    def build(self) -> CallToolResult:
        is_error = self._failed > 0 and self._succeeded == 0
        return CallToolResult(content=list(self._content), is_error=is_error)

    def _count(self, failed: bool) -> None:
        if failed:
            self._failed += 1
        else:
            self._succeeded += 1

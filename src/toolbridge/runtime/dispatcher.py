"""ToolDispatcher — routes invocations to registered tool handlers.

Every invocation passes, in order and short-circuiting on the first failure,
through lookup, rate limiting, argument validation and locator confinement
before the handler runs.  Tool-domain failures come back as results with
``isError=true``; only unknown tools and rate limiting raise, because those
are answered as protocol errors.
"""

from __future__ import annotations

import asyncio
import base64
import inspect
import json
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from toolbridge.protocol.errors import (
    ErrorCode,
    InvalidParamsError,
    MethodNotFoundError,
    RateLimitedError,
)
from toolbridge.protocol.models import BinaryContent, CallToolResult, ContentItem, TextContent
from toolbridge.runtime.errors import (
    DuplicateToolError,
    InvocationCancelledError,
    InvocationTimeoutError,
    SandboxViolationError,
    ToolError,
)
from toolbridge.runtime.models import (
    DispatcherConfig,
    Invocation,
    InvocationContext,
    ParameterContract,
    ProgressSink,
    ToolDefinition,
)
from toolbridge.runtime.validation import SchemaValidator
from toolbridge.utils.telemetry import ATTR_CALLER_ID, ATTR_OUTCOME, ATTR_TOOL_NAME, get_tracer

if TYPE_CHECKING:
    from toolbridge.protocol.models import ToolDescriptor
    from toolbridge.runtime.ratelimit import RateLimiter
    from toolbridge.runtime.sandbox import PathSandbox

logger = logging.getLogger(__name__)
_tracer = get_tracer(__name__)

ListChangedListener = Callable[[], None]


class ToolDispatcher:
    """Maintains the tool registry and executes invocations.

    Usage::

        dispatcher = ToolDispatcher(sandbox=sandbox, rate_limiter=limiter)
        dispatcher.register(ToolDefinition(name="echo", handler=echo, ...))

        tools = dispatcher.list_tools()
        result = await dispatcher.invoke(Invocation(tool_name="echo", arguments={...}))
    """

    def __init__(
        self,
        *,
        sandbox: PathSandbox | None = None,
        rate_limiter: RateLimiter | None = None,
        validator: SchemaValidator | None = None,
        config: DispatcherConfig | None = None,
    ) -> None:
        self._sandbox = sandbox
        self._rate_limiter = rate_limiter
        self._validator = validator or SchemaValidator()
        self._config = config or DispatcherConfig()
        self._tools: dict[str, ToolDefinition] = {}
        self._listeners: list[ListChangedListener] = []

    @property
    def config(self) -> DispatcherConfig:
        return self._config

    @property
    def sandbox(self) -> PathSandbox | None:
        return self._sandbox

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, definition: ToolDefinition) -> None:
        """Add a tool.

        Raises:
            DuplicateToolError: If a tool with the same name exists.
        """
        if definition.name in self._tools:
            raise DuplicateToolError(definition.name)
        self._tools[definition.name] = definition
        logger.debug("Registered tool %s", definition.name)

    def replace(self, definition: ToolDefinition) -> None:
        """Add or replace a tool at runtime and notify list-change listeners."""
        self._tools[definition.name] = definition
        logger.info("Tool %s replaced", definition.name)
        self._notify_changed()

    def unregister(self, name: str) -> None:
        """Remove a tool at runtime and notify list-change listeners.

        Raises:
            MethodNotFoundError: If no such tool exists.
        """
        if self._tools.pop(name, None) is None:
            raise MethodNotFoundError(name, kind="Tool")
        logger.info("Tool %s unregistered", name)
        self._notify_changed()

    def tool(
        self,
        name: str,
        description: str = "",
        parameters: ParameterContract | None = None,
        *,
        timeout: float | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: Callable[..., Any]) -> Callable[..., Any]:
            self.register(
                ToolDefinition(
                    name=name,
                    description=description or (inspect.getdoc(handler) or ""),
                    parameters=parameters or ParameterContract(),
                    handler=handler,
                    timeout=timeout,
                )
            )
            return handler

        return decorator

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def list_tools(self) -> list[ToolDescriptor]:
        """Return wire descriptors for every registered tool."""
        return [definition.describe() for definition in self._tools.values()]

    def add_listener(self, listener: ListChangedListener) -> None:
        """Call *listener* whenever the tool list changes after startup."""
        self._listeners.append(listener)

    def remove_listener(self, listener: ListChangedListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify_changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Tool list listener failed")

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    async def invoke(
        self,
        invocation: Invocation,
        *,
        progress_sink: ProgressSink | None = None,
    ) -> CallToolResult:
        """Run one invocation through the admission pipeline and its handler.

        Raises:
            MethodNotFoundError: Unknown tool.
            RateLimitedError: Caller exceeded its budget.
            InvocationCancelledError: The token fired before a result existed;
                any late result is discarded.
        """
        with _tracer.start_as_current_span("toolbridge.tool.invoke") as span:
            span.set_attribute(ATTR_TOOL_NAME, invocation.tool_name)
            span.set_attribute(ATTR_CALLER_ID, invocation.caller_id)
            try:
                result = await self._invoke(invocation, progress_sink)
            except (MethodNotFoundError, RateLimitedError, InvocationCancelledError) as exc:
                span.set_attribute(ATTR_OUTCOME, type(exc).__name__)
                raise
            except Exception:
                logger.exception("Internal fault while invoking %s", invocation.tool_name)
                span.set_attribute(ATTR_OUTCOME, "internal_fault")
                return CallToolResult.error(
                    f"Internal error while invoking {invocation.tool_name}",
                    ErrorCode.INTERNAL_FAULT,
                )
            span.set_attribute(ATTR_OUTCOME, "error" if result.is_error else "ok")
            return result

    async def _invoke(
        self,
        invocation: Invocation,
        progress_sink: ProgressSink | None,
    ) -> CallToolResult:
        # 1. lookup
        definition = self._tools.get(invocation.tool_name)
        if definition is None:
            raise MethodNotFoundError(invocation.tool_name, kind="Tool")

        # 2. admission
        if self._rate_limiter is not None and not self._rate_limiter.admit(invocation.caller_id):
            raise RateLimitedError(
                invocation.caller_id,
                self._rate_limiter.retry_after(invocation.caller_id),
            )

        # 3. argument contract
        try:
            arguments = self._validator.validate(definition.parameters, invocation.arguments)
        except InvalidParamsError as exc:
            return CallToolResult.error(exc.message, ErrorCode.INVALID_PARAMS)

        # 4. locator confinement
        try:
            arguments = self._confine_locators(definition, arguments)
        except SandboxViolationError as exc:
            return CallToolResult.error(str(exc), ErrorCode.SANDBOX_VIOLATION)

        # 5. handler
        try:
            raw = await self._run_handler(definition, arguments, invocation, progress_sink)
        except InvocationCancelledError:
            raise
        except InvocationTimeoutError as exc:
            logger.warning("%s", exc)
            return CallToolResult.error(str(exc), ErrorCode.TIMEOUT)
        except ToolError as exc:
            return CallToolResult.error(str(exc), ErrorCode.TOOL_EXECUTION_FAULT)
        except Exception as exc:
            # 6. a failing handler never takes the session down
            logger.exception("Tool %s raised", definition.name)
            return CallToolResult.error(
                f"Tool {definition.name} failed: {exc}",
                ErrorCode.TOOL_EXECUTION_FAULT,
            )

        return self._page(shape_result(raw), invocation.offset)

    def _confine_locators(self, definition: ToolDefinition, arguments: dict[str, Any]) -> dict[str, Any]:
        """Replace locator arguments with their sandbox-resolved absolute paths."""
        fields = definition.parameters.locator_fields
        if not fields or self._sandbox is None:
            return arguments
        confined = dict(arguments)
        for name in fields:
            value = confined.get(name)
            if isinstance(value, str):
                confined[name] = str(self._sandbox.resolve(value))
            elif isinstance(value, list):
                confined[name] = [str(self._sandbox.resolve(v)) for v in value]
        return confined

    async def _run_handler(
        self,
        definition: ToolDefinition,
        arguments: dict[str, Any],
        invocation: Invocation,
        progress_sink: ProgressSink | None,
    ) -> Any:
        """Race the handler against its cancellation token and timeout."""
        token = invocation.token
        if token.cancelled:
            raise InvocationCancelledError(definition.name, token.reason)

        context = InvocationContext(
            invocation,
            progress_sink=progress_sink,
            loop=asyncio.get_running_loop(),
        )
        timeout = definition.timeout or self._config.timeout
        handler_task = asyncio.ensure_future(_call_handler(definition.handler, arguments, context))
        cancel_task = asyncio.ensure_future(token.wait())

        try:
            done, _ = await asyncio.wait(
                {handler_task, cancel_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            token.cancel("invocation task cancelled")
            _discard(handler_task)
            cancel_task.cancel()
            raise
        cancel_task.cancel()

        if handler_task in done and not token.cancelled:
            return handler_task.result()

        _discard(handler_task)
        if not done:
            assert timeout is not None
            token.cancel("timeout")
            raise InvocationTimeoutError(definition.name, timeout)
        logger.debug("Discarding outcome of cancelled invocation %s", definition.name)
        raise InvocationCancelledError(definition.name, token.reason)

    def _page(self, result: CallToolResult, offset: int) -> CallToolResult:
        """Cut an oversized result into a page with a continuation marker."""
        limit = self._config.max_result_chars
        sizes = [_content_size(item) for item in result.content]
        total = sum(sizes)
        if offset == 0 and total <= limit:
            return result
        if offset >= total and total > 0:
            return CallToolResult.error(
                f"Offset {offset} is beyond the end of the result ({total} characters)",
                ErrorCode.INVALID_PARAMS,
            )

        page: list[ContentItem] = []
        budget = limit
        end = offset
        position = 0
        for item, size in zip(result.content, sizes):
            start, position = position, position + size
            if position <= offset:
                continue
            if budget <= 0:
                break
            if isinstance(item, TextContent):
                skip = max(0, offset - start)
                chunk = item.text[skip : skip + budget]
                page.append(TextContent(text=chunk))
                budget -= len(chunk)
                end = start + skip + len(chunk)
            else:
                if start < offset:
                    continue
                if size > budget and page:
                    break
                page.append(item)
                budget -= size
                end = position

        meta = dict(result.meta or {})
        if end < total:
            page.append(
                TextContent(
                    text=(
                        f"[truncated: showing characters {offset}-{end} of {total}; "
                        f"continue with offset={end}]"
                    )
                )
            )
            meta["continuationOffset"] = end
        return CallToolResult(content=page, is_error=result.is_error, meta=meta or None)


async def _call_handler(handler: Callable[..., Any], arguments: dict[str, Any], context: InvocationContext) -> Any:
    """Await async handlers; run synchronous ones on a worker thread."""
    if inspect.iscoroutinefunction(handler):
        return await handler(arguments, context)
    result = await asyncio.to_thread(handler, arguments, context)
    if inspect.isawaitable(result):
        result = await result
    return result


def _discard(task: asyncio.Future[Any]) -> None:
    """Cancel *task* and swallow whatever it eventually produces."""
    task.cancel()
    task.add_done_callback(_consume_outcome)


def _consume_outcome(task: asyncio.Future[Any]) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Late failure from discarded invocation: %r", task.exception())


def _content_size(item: ContentItem) -> int:
    return len(item.text) if isinstance(item, TextContent) else len(item.data)


def shape_result(value: Any) -> CallToolResult:
    """Normalize a handler's return value into a :class:`CallToolResult`."""
    if isinstance(value, CallToolResult):
        return value
    if value is None:
        return CallToolResult()
    if isinstance(value, (list, tuple)):
        return CallToolResult(content=[_to_content(v) for v in value])
    return CallToolResult(content=[_to_content(value)])


def _to_content(value: Any) -> ContentItem:
    if isinstance(value, (TextContent, BinaryContent)):
        return value
    if isinstance(value, str):
        return TextContent(text=value)
    if isinstance(value, (bytes, bytearray)):
        return BinaryContent(data=base64.b64encode(bytes(value)).decode("ascii"))
    return TextContent(text=json.dumps(value, indent=2, default=str))

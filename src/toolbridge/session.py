"""Session — connection lifecycle, negotiation and message correlation.

A Session owns one channel and drives it through::

    UNINITIALIZED -> NEGOTIATING -> READY -> SHUTTING_DOWN -> CLOSED

The same class serves both ends.  The side that calls :meth:`Session.initialize`
is the initiator; the other side answers the ``initialize`` request and becomes
``READY`` once the ``notifications/initialized`` confirmation arrives.

Inbound requests run concurrently, one asyncio task each; outbound writes are
serialized through a single lock because the channel is single-writer.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError

from toolbridge.protocol.capabilities import CapabilityRegistry
from toolbridge.protocol.correlation import PendingRequests
from toolbridge.protocol.errors import (
    ChannelClosedError,
    ErrorCode,
    InternalFaultError,
    InvalidParamsError,
    InvalidRequestError,
    MalformedMessageError,
    MethodNotFoundError,
    ProtocolError,
    ProtocolVersionError,
    RemoteError,
    RequestCancelledError,
    SessionClosedError,
)
from toolbridge.protocol.models import (
    LATEST_PROTOCOL_VERSION,
    SUPPORTED_PROTOCOL_VERSIONS,
    CallToolParams,
    CancelledParams,
    CapabilityFlags,
    Implementation,
    InitializeParams,
    InitializeResult,
    Message,
    Notification,
    ProgressParams,
    Request,
    RequestId,
    Response,
    parse_message,
)
from toolbridge.runtime.cancellation import CancellationToken
from toolbridge.runtime.errors import InvocationCancelledError, SandboxViolationError
from toolbridge.runtime.models import Invocation
from toolbridge.utils.telemetry import ATTR_METHOD, ATTR_REQUEST_ID, ATTR_SESSION_ID, get_tracer

if TYPE_CHECKING:
    from toolbridge.protocol.capabilities import AgreedCapabilities
    from toolbridge.protocol.channel import Channel
    from toolbridge.runtime.dispatcher import ToolDispatcher
    from toolbridge.runtime.resources import ResourceProvider

logger = logging.getLogger(__name__)
_tracer = get_tracer(__name__)

NotificationHandler = Callable[[dict[str, Any]], Awaitable[None] | None]
ProgressCallback = Callable[[ProgressParams], Awaitable[None] | None]


class SessionState(str, Enum):
    """Lifecycle states of a session."""

    UNINITIALIZED = "uninitialized"
    NEGOTIATING = "negotiating"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


class SessionConfig(BaseModel):
    """Identity, declared capabilities and timing of one session end."""

    name: str = Field(default="toolbridge", description="Reported as clientInfo/serverInfo name.")
    version: str = Field(default="0.1.0", description="Reported implementation version.")
    protocol_version: str = Field(default=LATEST_PROTOCOL_VERSION)
    capabilities: dict[str, CapabilityFlags] = Field(
        default_factory=dict,
        description="Categories this side declares (provides or accepts).",
    )
    request_timeout: float | None = Field(
        default=60.0,
        gt=0,
        description="Seconds to wait for a response to an outbound request.",
    )
    shutdown_grace: float = Field(
        default=5.0,
        ge=0,
        description="Seconds in-flight invocations get to finish when shutting down.",
    )
    caller_id: str | None = Field(
        default=None,
        description="Identity used for rate limiting; defaults to the peer's name.",
    )


@dataclass
class _InFlight:
    task: asyncio.Task[None]
    token: CancellationToken
    method: str


class Session:
    """One negotiated connection over a :class:`Channel`.

    Usage (serving side)::

        session = Session(channel, dispatcher=dispatcher, config=config)
        await session.serve()            # returns once CLOSED

    Usage (initiating side)::

        async with Session(channel, config=config) as session:
            await session.initialize()
            result = await session.request("tools/call", {"name": "echo", ...})
    """

    def __init__(
        self,
        channel: Channel,
        *,
        dispatcher: ToolDispatcher | None = None,
        resources: ResourceProvider | None = None,
        config: SessionConfig | None = None,
        session_id: str | None = None,
    ) -> None:
        self._channel = channel
        self._dispatcher = dispatcher
        self._resources = resources
        self._config = config or SessionConfig()
        self.session_id = session_id or uuid4().hex[:12]

        self._state = SessionState.UNINITIALIZED
        self._registry = CapabilityRegistry()
        self._pending = PendingRequests()
        self._write_lock = asyncio.Lock()
        self._inflight: dict[RequestId, _InFlight] = {}
        self._progress_callbacks: dict[RequestId, ProgressCallback] = {}
        self._notification_handlers: dict[str, list[NotificationHandler]] = {}
        self._subscriptions: set[str] = set()
        self._background: set[asyncio.Task[Any]] = set()
        self._peer_info: Implementation | None = None
        self._protocol_version: str | None = None

        self._ready = asyncio.Event()
        self._closed = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._shutdown_task: asyncio.Task[None] | None = None

        if self._dispatcher is not None:
            self._dispatcher.add_listener(self._on_tools_changed)
        if self._resources is not None:
            self._resources.add_listener(self._on_resource_updated)

    async def __aenter__(self) -> Session:
        self.start()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def capabilities(self) -> CapabilityRegistry:
        return self._registry

    @property
    def agreed(self) -> AgreedCapabilities | None:
        return self._registry.agreed

    @property
    def peer_info(self) -> Implementation | None:
        return self._peer_info

    @property
    def protocol_version(self) -> str | None:
        return self._protocol_version

    @property
    def caller_id(self) -> str:
        if self._config.caller_id:
            return self._config.caller_id
        if self._peer_info is not None:
            return self._peer_info.name
        return f"session:{self.session_id}"

    async def wait_ready(self) -> None:
        await self._ready.wait()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def _set_state(self, state: SessionState) -> None:
        logger.debug("Session %s: %s -> %s", self.session_id, self._state.value, state.value)
        self._state = state

    # ------------------------------------------------------------------
    # Receive loop
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Run :meth:`serve` in a background task (idempotent)."""
        if self._loop_task is None and self._state is not SessionState.CLOSED:
            self._loop_task = asyncio.create_task(self._receive_loop())

    async def serve(self) -> None:
        """Process inbound messages until the session is ``CLOSED``."""
        self.start()
        assert self._loop_task is not None
        await self._loop_task
        await self._closed.wait()

    async def _receive_loop(self) -> None:
        try:
            while self._state is not SessionState.CLOSED:
                try:
                    raw = await self._channel.receive()
                except MalformedMessageError as exc:
                    logger.warning("Dropping undecodable frame: %s", exc.detail)
                    continue
                except ChannelClosedError:
                    logger.info("Session %s: channel closed", self.session_id)
                    break
                await self._dispatch_raw(raw)
        finally:
            self._begin_shutdown("channel closed")
            if self._shutdown_task is not None:
                await asyncio.shield(self._shutdown_task)

    async def _dispatch_raw(self, raw: Any) -> None:
        try:
            message = parse_message(raw)
        except ProtocolError as exc:
            request_id = exc.data.get("id") if isinstance(exc.data, dict) else None
            if request_id is None:
                logger.warning("Dropping invalid message: %s", exc.message)
                return
            await self._send_error(request_id, InvalidRequestError(exc.message))
            return

        try:
            await self._dispatch(message)
        except Exception:
            logger.exception("Unexpected failure handling %s", type(message).__name__)

    async def _dispatch(self, message: Message) -> None:
        if isinstance(message, Response):
            self._pending.resolve(message)
        elif isinstance(message, Notification):
            await self._handle_notification(message)
        else:
            await self._handle_request(message)

    # ------------------------------------------------------------------
    # Inbound requests
    # ------------------------------------------------------------------

    async def _handle_request(self, request: Request) -> None:
        method = request.method
        state = self._state

        if method == "initialize":
            if state is SessionState.UNINITIALIZED:
                await self._accept_initialize(request)
            else:
                await self._send_error(request.id, InvalidRequestError("Session is already initialized"))
            return

        if state in (SessionState.UNINITIALIZED, SessionState.NEGOTIATING):
            await self._send_error(
                request.id,
                InvalidRequestError(f"Method {method!r} is not allowed before initialization completes"),
            )
            return

        if state in (SessionState.SHUTTING_DOWN, SessionState.CLOSED):
            await self._send_error(request.id, InvalidRequestError("Session is shutting down"))
            return

        if method == "shutdown":
            await self._send_quietly(Response(id=request.id, result={}))
            self._begin_shutdown("shutdown requested by peer")
            return

        if not self._registry.is_allowed(method):
            await self._send_error(request.id, MethodNotFoundError(method))
            return

        if request.id in self._inflight:
            await self._send_error(
                request.id, InvalidRequestError(f"Request id {request.id!r} is already in flight")
            )
            return

        token = CancellationToken()
        task = asyncio.create_task(self._serve_request(request, token))
        self._inflight[request.id] = _InFlight(task=task, token=token, method=method)

    async def _serve_request(self, request: Request, token: CancellationToken) -> None:
        with _tracer.start_as_current_span("toolbridge.session.request") as span:
            span.set_attribute(ATTR_SESSION_ID, self.session_id)
            span.set_attribute(ATTR_METHOD, request.method)
            span.set_attribute(ATTR_REQUEST_ID, str(request.id))
            try:
                result = await self._route(request, token)
                if token.cancelled:
                    raise RequestCancelledError(request.id, token.reason)
                response = Response(id=request.id, result=result)
            except InvocationCancelledError as exc:
                response = Response(
                    id=request.id,
                    error=RequestCancelledError(request.id, exc.reason).to_error(),
                )
            except ProtocolError as exc:
                response = Response(id=request.id, error=exc.to_error())
            except asyncio.CancelledError:
                await self._send_quietly(
                    Response(
                        id=request.id,
                        error=RequestCancelledError(request.id, token.reason or "session closing").to_error(),
                    )
                )
                raise
            except Exception:
                logger.exception("Internal fault serving %s", request.method)
                response = Response(
                    id=request.id,
                    error=InternalFaultError("Internal error").to_error(),
                )
            finally:
                self._inflight.pop(request.id, None)
            await self._send_quietly(response)

    async def _route(self, request: Request, token: CancellationToken) -> dict[str, Any]:
        method = request.method
        params = request.params

        if method == "ping":
            return {}
        if method == "tools/list" and self._dispatcher is not None:
            return {"tools": [tool.to_wire() for tool in self._dispatcher.list_tools()]}
        if method == "tools/call" and self._dispatcher is not None:
            return await self._call_tool(request, token)
        if method.startswith("resources/") and self._resources is not None:
            return await self._route_resources(method, params)
        raise MethodNotFoundError(method)

    async def _call_tool(self, request: Request, token: CancellationToken) -> dict[str, Any]:
        assert self._dispatcher is not None
        try:
            params = CallToolParams.model_validate(request.params)
            meta = params.meta or {}
            invocation = Invocation(
                tool_name=params.name,
                arguments=params.arguments,
                caller_id=self.caller_id,
                token=token,
                request_id=request.id,
                progress_token=meta.get("progressToken"),
                offset=meta.get("continuationOffset", 0),
            )
        except ValidationError as exc:
            raise InvalidParamsError(f"Invalid tools/call params: {exc.errors()[0]['msg']}") from exc

        result = await self._dispatcher.invoke(invocation, progress_sink=self._send_progress)
        return result.to_wire()

    async def _route_resources(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        assert self._resources is not None
        if method == "resources/list":
            resources = await self._resources.list_resources()
            return {"resources": [r.to_wire() for r in resources]}

        uri = params.get("uri")
        if not isinstance(uri, str) or not uri:
            raise InvalidParamsError(f"{method} requires a 'uri' string")

        try:
            if method == "resources/read":
                contents = await self._resources.read_resource(uri)
                return {"contents": [c.to_wire() for c in contents]}
            if method == "resources/subscribe":
                if not self._registry.supports("resources", "subscribe"):
                    raise MethodNotFoundError(method)
                self._resources.validate_uri(uri)
                self._subscriptions.add(uri)
                return {}
            if method == "resources/unsubscribe":
                self._subscriptions.discard(uri)
                return {}
        except SandboxViolationError as exc:
            raise ProtocolError(str(exc), code=ErrorCode.SANDBOX_VIOLATION, data={"uri": uri}) from exc
        raise MethodNotFoundError(method)

    async def _accept_initialize(self, request: Request) -> None:
        try:
            params = InitializeParams.model_validate(request.params)
        except ValidationError as exc:
            await self._send_error(
                request.id, InvalidParamsError(f"Invalid initialize params: {exc.errors()[0]['msg']}")
            )
            return

        self._set_state(SessionState.NEGOTIATING)
        if params.protocol_version in SUPPORTED_PROTOCOL_VERSIONS:
            version = params.protocol_version
        else:
            logger.info(
                "Peer requested protocol %s; offering %s",
                params.protocol_version,
                self._config.protocol_version,
            )
            version = self._config.protocol_version
        self._protocol_version = version
        self._peer_info = params.client_info
        self._registry.negotiate(self._config.capabilities, params.capabilities)

        result = InitializeResult(
            protocol_version=version,
            capabilities=self._config.capabilities,
            server_info=Implementation(name=self._config.name, version=self._config.version),
        )
        await self._send_quietly(Response(id=request.id, result=result.to_wire()))

    # ------------------------------------------------------------------
    # Inbound notifications
    # ------------------------------------------------------------------

    async def _handle_notification(self, notification: Notification) -> None:
        method = notification.method
        params = notification.params

        if method == "notifications/initialized":
            if self._state is SessionState.NEGOTIATING and self._registry.negotiated:
                self._set_state(SessionState.READY)
                self._ready.set()
                logger.info("Session %s ready (peer %s)", self.session_id, self.caller_id)
            else:
                logger.warning("Ignoring unexpected %s in state %s", method, self._state.value)
            return

        if self._state in (SessionState.UNINITIALIZED, SessionState.NEGOTIATING):
            logger.warning("Dropping notification %s received during negotiation", method)
            return

        if method == "notifications/cancelled":
            self._handle_cancelled(params)
        elif method == "notifications/progress":
            await self._handle_progress(params)
        else:
            handlers = self._notification_handlers.get(method)
            if not handlers:
                logger.debug("No handler for notification %s", method)
                return
            for handler in list(handlers):
                await _call_listener(handler, params, method)

    def _handle_cancelled(self, params: dict[str, Any]) -> None:
        try:
            cancelled = CancelledParams.model_validate(params)
        except ValidationError:
            logger.warning("Dropping malformed cancellation: %r", params)
            return
        inflight = self._inflight.get(cancelled.request_id)
        if inflight is None:
            logger.debug("Cancellation for unknown or finished request %r", cancelled.request_id)
            return
        logger.info("Request %r cancelled by peer: %s", cancelled.request_id, cancelled.reason or "-")
        inflight.token.cancel(cancelled.reason or "cancelled by peer")

    async def _handle_progress(self, params: dict[str, Any]) -> None:
        try:
            progress = ProgressParams.model_validate(params)
        except ValidationError:
            logger.warning("Dropping malformed progress notification: %r", params)
            return
        callback = self._progress_callbacks.get(progress.invocation_id)
        if callback is None:
            logger.debug("Progress for unknown invocation %r", progress.invocation_id)
            return
        await _call_listener(callback, progress, "notifications/progress")

    def on_notification(self, method: str, handler: NotificationHandler) -> None:
        """Register *handler(params)* for inbound notifications named *method*."""
        self._notification_handlers.setdefault(method, []).append(handler)

    # ------------------------------------------------------------------
    # Outbound traffic
    # ------------------------------------------------------------------

    async def initialize(self) -> InitializeResult:
        """Negotiate as the initiating side and enter ``READY``.

        Raises:
            InvalidRequestError: If the session was already initialized.
            ProtocolVersionError: If the peer answers with an unsupported version.
            RemoteError: If the peer rejects the ``initialize`` request.
        """
        if self._state is not SessionState.UNINITIALIZED:
            msg = f"Cannot initialize a session in state {self._state.value}"
            raise InvalidRequestError(msg)
        self.start()
        self._set_state(SessionState.NEGOTIATING)

        params = InitializeParams(
            protocol_version=self._config.protocol_version,
            capabilities=self._config.capabilities,
            client_info=Implementation(name=self._config.name, version=self._config.version),
        )
        response = await self._request_raw("initialize", params.to_wire())
        if response.error is not None:
            await self.close()
            raise RemoteError.from_error(response.error)

        result = InitializeResult.model_validate(response.result)
        if result.protocol_version not in SUPPORTED_PROTOCOL_VERSIONS:
            await self.close()
            raise ProtocolVersionError(result.protocol_version, SUPPORTED_PROTOCOL_VERSIONS)

        self._protocol_version = result.protocol_version
        self._peer_info = result.server_info
        self._registry.negotiate(self._config.capabilities, result.capabilities)
        await self._send(Notification(method="notifications/initialized"))
        self._set_state(SessionState.READY)
        self._ready.set()
        return result

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        """Send a request and wait for its correlated result.

        Cancelling the awaiting task (or hitting the timeout) abandons the
        request and tells the peer via ``notifications/cancelled``.

        Raises:
            InvalidRequestError: If the session is not ``READY``.
            MethodNotFoundError: If the method's category was not negotiated.
            RemoteError: If the peer answered with an error.
            TimeoutError: If no response arrived in time.
            SessionClosedError: If the session closed first.
        """
        if self._state is not SessionState.READY:
            msg = f"Cannot send {method!r} while session is {self._state.value}"
            raise InvalidRequestError(msg)
        if not self._registry.is_allowed(method):
            raise MethodNotFoundError(method)

        response = await self._request_raw(method, params or {}, timeout=timeout, on_progress=on_progress)
        if response.error is not None:
            raise RemoteError.from_error(response.error)
        return response.result or {}

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification.

        Raises:
            SessionClosedError: If the session is closed.
        """
        if self._state is SessionState.CLOSED:
            msg = "Session is closed"
            raise SessionClosedError(msg)
        await self._send(Notification(method=method, params=params or {}))

    async def ping(self) -> None:
        await self.request("ping")

    async def shutdown(self) -> None:
        """Ask the peer to shut down gracefully, then close this end."""
        if self._state is SessionState.READY:
            try:
                await self.request("shutdown", timeout=self._config.shutdown_grace or None)
            except (ProtocolError, TimeoutError, SessionClosedError, ChannelClosedError) as exc:
                logger.warning("Peer did not acknowledge shutdown: %s", exc)
        await self.close()

    async def _request_raw(
        self,
        method: str,
        params: dict[str, Any],
        *,
        timeout: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Response:
        request_id = self._pending.next_id()
        if on_progress is not None:
            meta = {**params.get("_meta", {}), "progressToken": request_id}
            params = {**params, "_meta": meta}
            self._progress_callbacks[request_id] = on_progress

        future = self._pending.open(request_id)
        effective_timeout = timeout if timeout is not None else self._config.request_timeout
        try:
            await self._send(Request(id=request_id, method=method, params=params))
            return await asyncio.wait_for(future, effective_timeout)
        except TimeoutError:
            self._pending.abandon(request_id)
            await self._send_cancel(request_id, "timeout")
            raise
        except asyncio.CancelledError:
            self._pending.abandon(request_id)
            await self._send_cancel(request_id, "cancelled by caller")
            raise
        except ChannelClosedError as exc:
            self._pending.abandon(request_id)
            msg = f"Channel closed while sending {method!r}"
            raise SessionClosedError(msg) from exc
        finally:
            self._progress_callbacks.pop(request_id, None)

    async def _send_cancel(self, request_id: RequestId, reason: str) -> None:
        if self._state in (SessionState.READY, SessionState.SHUTTING_DOWN):
            params = CancelledParams(request_id=request_id, reason=reason)
            await self._send_quietly(Notification(method="notifications/cancelled", params=params.to_wire()))

    async def _send_progress(self, progress: ProgressParams) -> None:
        await self._send_quietly(Notification(method="notifications/progress", params=progress.to_wire()))

    async def _send(self, message: Message) -> None:
        async with self._write_lock:
            await self._channel.send(message.to_wire())

    async def _send_quietly(self, message: Message) -> None:
        """Send, logging instead of raising if the channel is already gone."""
        try:
            await self._send(message)
        except ChannelClosedError:
            logger.debug("Channel closed; dropped outbound %s", type(message).__name__)

    async def _send_error(self, request_id: RequestId, error: ProtocolError) -> None:
        await self._send_quietly(Response(id=request_id, error=error.to_error()))

    # ------------------------------------------------------------------
    # Change notifications
    # ------------------------------------------------------------------

    def _on_tools_changed(self) -> None:
        if self._state is SessionState.READY and self._registry.supports("tools", "list_changed"):
            self._spawn(self._send_quietly(Notification(method="notifications/tools/list_changed")))

    def _on_resource_updated(self, uri: str) -> None:
        if self._state is SessionState.READY and uri in self._subscriptions:
            self._spawn(
                self._send_quietly(Notification(method="notifications/resources/updated", params={"uri": uri}))
            )

    def _spawn(self, coro: Awaitable[Any]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)  # type: ignore[arg-type]
        except RuntimeError:
            logger.debug("No running loop; dropping change notification")
            if inspect.iscoroutine(coro):
                coro.close()
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def _begin_shutdown(self, reason: str) -> None:
        if self._shutdown_task is not None or self._state is SessionState.CLOSED:
            return
        logger.info("Session %s shutting down: %s", self.session_id, reason)
        self._set_state(SessionState.SHUTTING_DOWN)
        self._shutdown_task = asyncio.get_running_loop().create_task(self._drain_and_close())

    async def _drain_and_close(self) -> None:
        inflight = list(self._inflight.values())
        if inflight:
            _, pending = await asyncio.wait(
                [entry.task for entry in inflight],
                timeout=self._config.shutdown_grace,
            )
            if pending:
                logger.warning("Cancelling %d invocation(s) after shutdown grace period", len(pending))
                for entry in inflight:
                    entry.token.cancel("session shutting down")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        self._set_state(SessionState.CLOSED)
        self._pending.fail_all(SessionClosedError("Session closed"))
        if self._dispatcher is not None:
            self._dispatcher.remove_listener(self._on_tools_changed)
        if self._resources is not None:
            self._resources.remove_listener(self._on_resource_updated)
        try:
            await self._channel.close()
        finally:
            self._closed.set()

    async def close(self) -> None:
        """Shut down (draining in-flight work) and release the channel.  Idempotent."""
        if self._state is SessionState.CLOSED and self._closed.is_set():
            return
        self._begin_shutdown("closed locally")
        if self._shutdown_task is not None:
            await asyncio.shield(self._shutdown_task)
        if self._loop_task is not None and self._loop_task is not asyncio.current_task():
            if not self._loop_task.done():
                self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)


async def _call_listener(listener: Callable[[Any], Any], payload: Any, name: str) -> None:
    """Run a notification/progress listener; failures are logged, never lost."""
    try:
        result = listener(payload)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Listener for %s failed", name)

"""Server wiring — settings to sandbox, limiter, dispatcher and session."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from toolbridge.protocol.channel import StdioChannel
from toolbridge.protocol.models import CapabilityFlags
from toolbridge.runtime.dispatcher import ToolDispatcher
from toolbridge.runtime.ratelimit import RateLimiter
from toolbridge.runtime.sandbox import PathSandbox
from toolbridge.session import Session, SessionConfig
from toolbridge.tools.filesystem import FileResources, register_filesystem_tools
from toolbridge.utils.telemetry import configure_telemetry

if TYPE_CHECKING:
    from toolbridge.config import ServerSettings
    from toolbridge.protocol.channel import Channel

logger = logging.getLogger(__name__)


def build_dispatcher(settings: ServerSettings) -> ToolDispatcher:
    """Create a dispatcher with the filesystem tools registered."""
    limiter = RateLimiter(settings.rate_limit.to_config()) if settings.rate_limit.enabled else None
    dispatcher = ToolDispatcher(
        sandbox=PathSandbox(settings.sandbox.to_policy()),
        rate_limiter=limiter,
        config=settings.dispatcher_config(),
    )
    register_filesystem_tools(dispatcher, max_file_size=settings.max_file_size)
    return dispatcher


def server_config(settings: ServerSettings) -> SessionConfig:
    """Serving-side identity: offers tools and subscribable resources."""
    return SessionConfig(
        name=settings.name,
        version=settings.version,
        capabilities={
            "tools": CapabilityFlags(list_changed=True),
            "resources": CapabilityFlags(list_changed=True, subscribe=True),
        },
        request_timeout=settings.request_timeout,
        shutdown_grace=settings.shutdown_grace,
        caller_id=settings.caller_id,
    )


def build_session(
    channel: Channel,
    settings: ServerSettings,
    *,
    dispatcher: ToolDispatcher | None = None,
) -> Session:
    """Assemble a serving session over *channel*."""
    dispatcher = dispatcher or build_dispatcher(settings)
    assert dispatcher.sandbox is not None
    resources = FileResources(dispatcher.sandbox, max_file_size=settings.max_file_size)
    return Session(channel, dispatcher=dispatcher, resources=resources, config=server_config(settings))


async def serve_stdio(settings: ServerSettings) -> None:
    """Serve the filesystem toolset over this process's stdin/stdout until EOF."""
    if settings.telemetry.enabled:
        configure_telemetry(
            service_name=settings.name,
            export_to_console=settings.telemetry.export_to_console,
            otlp_endpoint=settings.telemetry.otlp_endpoint,
        )
    session = build_session(StdioChannel(), settings)
    logger.info("Serving %s with root %s", settings.name, settings.sandbox.root)
    await session.serve()

"""Shared fixtures: an echo tool and connected in-process session pairs."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import pytest

from toolbridge.protocol.channel import create_channel_pair
from toolbridge.protocol.models import CapabilityFlags
from toolbridge.runtime.dispatcher import ToolDispatcher
from toolbridge.runtime.models import InvocationContext, ParameterContract, ParameterSpec, ToolDefinition
from toolbridge.session import Session, SessionConfig

ECHO_CONTRACT = ParameterContract(parameters={"text": ParameterSpec(type="string", max_length=10)})


def echo(arguments: dict[str, Any], context: InvocationContext) -> str:
    return arguments["text"]


def make_echo_dispatcher(**kwargs: Any) -> ToolDispatcher:
    dispatcher = ToolDispatcher(**kwargs)
    dispatcher.register(
        ToolDefinition(name="echo", description="Echo text back.", parameters=ECHO_CONTRACT, handler=echo)
    )
    return dispatcher


def server_config(**overrides: Any) -> SessionConfig:
    values: dict[str, Any] = {
        "name": "test-server",
        "capabilities": {"tools": CapabilityFlags(list_changed=True)},
        "shutdown_grace": 1.0,
    }
    values.update(overrides)
    return SessionConfig(**values)


def client_config(**overrides: Any) -> SessionConfig:
    values: dict[str, Any] = {
        "name": "test-client",
        "capabilities": {"tools": CapabilityFlags(list_changed=True)},
        "request_timeout": 5.0,
    }
    values.update(overrides)
    return SessionConfig(**values)


@asynccontextmanager
async def _session_pair(
    dispatcher: ToolDispatcher | None = None,
    *,
    server: SessionConfig | None = None,
    client: SessionConfig | None = None,
    resources: Any = None,
    initialize: bool = True,
) -> AsyncIterator[tuple[Session, Session]]:
    """Yield ``(client, server)`` sessions joined by an in-memory channel."""
    client_end, server_end = create_channel_pair()
    server_session = Session(
        server_end,
        dispatcher=dispatcher if dispatcher is not None else make_echo_dispatcher(),
        resources=resources,
        config=server or server_config(),
    )
    client_session = Session(client_end, config=client or client_config())
    server_session.start()
    client_session.start()
    try:
        if initialize:
            await client_session.initialize()
            await asyncio.wait_for(server_session.wait_ready(), 1)
        yield client_session, server_session
    finally:
        await client_session.close()
        await server_session.close()


@pytest.fixture
def echo_dispatcher() -> ToolDispatcher:
    return make_echo_dispatcher()


@pytest.fixture
def session_pair() -> Any:
    """Factory: ``async with session_pair(dispatcher) as (client, server)``."""
    return _session_pair


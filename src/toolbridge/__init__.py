"""toolbridge — a sandboxed, rate-limited tool-invocation protocol engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

__version__ = "0.1.0"

if TYPE_CHECKING:
    from toolbridge.client import ToolClient as ToolClient
    from toolbridge.server import build_session as build_session
    from toolbridge.session import Session as Session
    from toolbridge.session import SessionConfig as SessionConfig

_LAZY_EXPORTS = {
    "Session": "toolbridge.session",
    "SessionConfig": "toolbridge.session",
    "ToolClient": "toolbridge.client",
    "build_session": "toolbridge.server",
}


def __getattr__(name: str) -> object:
    module_path = _LAZY_EXPORTS.get(name)
    if module_path is not None:
        import importlib

        mod = importlib.import_module(module_path)
        return getattr(mod, name)
    raise AttributeError(f"module 'toolbridge' has no attribute {name!r}")

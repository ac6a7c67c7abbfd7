"""Smoke test to verify the project scaffolding works."""

from __future__ import annotations


def test_import() -> None:
    import toolbridge

    assert toolbridge.__version__ == "0.1.0"


def test_cli_entrypoint() -> None:
    from toolbridge.cli import main

    assert callable(main)


def test_runtime_exports() -> None:
    from toolbridge.runtime import (
        PathSandbox,
        RateLimiter,
        ResourceProvider,
        SchemaValidator,
        ToolDispatcher,
    )

    assert PathSandbox is not None
    assert RateLimiter is not None
    assert ResourceProvider is not None
    assert SchemaValidator is not None
    assert ToolDispatcher is not None


def test_lazy_import_from_toolbridge() -> None:
    import toolbridge

    assert toolbridge.Session is not None
    assert toolbridge.ToolClient is not None
    assert toolbridge.build_session is not None

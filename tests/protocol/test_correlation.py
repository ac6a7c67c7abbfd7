"""Tests for PendingRequests."""

from __future__ import annotations

import asyncio
import logging

import pytest

from toolbridge.protocol.correlation import PendingRequests
from toolbridge.protocol.errors import SessionClosedError
from toolbridge.protocol.models import Response


def _ok(request_id: int) -> Response:
    return Response(id=request_id, result={"n": request_id})


class TestPendingRequests:
    async def test_resolve_matches_by_id(self) -> None:
        pending = PendingRequests()
        first, second = pending.open(1), pending.open(2)

        assert pending.resolve(_ok(2))
        assert pending.resolve(_ok(1))

        assert (await first).result == {"n": 1}
        assert (await second).result == {"n": 2}
        assert len(pending) == 0

    async def test_ids_are_unique(self) -> None:
        pending = PendingRequests()
        assert len({pending.next_id() for _ in range(100)}) == 100

    async def test_open_duplicate_id(self) -> None:
        pending = PendingRequests()
        pending.open(1)
        with pytest.raises(ValueError):
            pending.open(1)

    async def test_unknown_id_logged_and_discarded(self, caplog: pytest.LogCaptureFixture) -> None:
        pending = PendingRequests()
        with caplog.at_level(logging.WARNING):
            assert pending.resolve(_ok(99)) is False
        assert "unknown request id 99" in caplog.text

    async def test_duplicate_response_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        pending = PendingRequests()
        pending.open(1)
        pending.resolve(_ok(1))
        with caplog.at_level(logging.WARNING):
            assert pending.resolve(_ok(1)) is False
        assert "duplicate response" in caplog.text

    async def test_abandoned_late_response_is_quiet(self, caplog: pytest.LogCaptureFixture) -> None:
        pending = PendingRequests()
        future = pending.open(1)
        pending.abandon(1)
        assert future.cancelled()
        with caplog.at_level(logging.WARNING):
            assert pending.resolve(_ok(1)) is False
        assert caplog.text == ""

    async def test_fail_all(self) -> None:
        pending = PendingRequests()
        future = pending.open(1)
        pending.fail_all(SessionClosedError("closed"))
        with pytest.raises(SessionClosedError):
            await future
        assert 1 not in pending

    async def test_concurrent_waiters(self) -> None:
        pending = PendingRequests()
        futures = {i: pending.open(i) for i in range(1, 21)}

        async def answer() -> None:
            for i in reversed(range(1, 21)):
                pending.resolve(_ok(i))
                await asyncio.sleep(0)

        await answer()
        results = await asyncio.gather(*futures.values())
        assert [r.id for r in results] == list(range(1, 21))

"""CancellationToken — cooperative cancellation for one invocation."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class CancellationToken:
    """Signals that an invocation should stop.

    Safe to check from worker threads (``cancelled``); async handlers may
    ``await token.wait()``.  Cancellation is sticky and the first reason wins.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = ""
        self._callbacks: list[Callable[[str], None]] = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Request cancellation.  Returns ``False`` if already cancelled."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback(reason)
            except Exception:
                logger.exception("Cancellation callback failed")
        return True

    def on_cancel(self, callback: Callable[[str], None]) -> None:
        """Run *callback(reason)* once cancellation is requested.

        Runs immediately if the token is already cancelled.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback(self._reason)

    def raise_if_cancelled(self) -> None:
        """Raise :class:`asyncio.CancelledError` if cancellation was requested."""
        if self._event.is_set():
            raise asyncio.CancelledError(self._reason)

    async def wait(self) -> str:
        """Wait until cancellation is requested; return the reason."""
        if self._event.is_set():
            return self._reason
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()

        def _wake(reason: str) -> None:
            loop.call_soon_threadsafe(_set_once, future, reason)

        self.on_cancel(_wake)
        return await future


def _set_once(future: asyncio.Future[str], value: str) -> None:
    if not future.done():
        future.set_result(value)

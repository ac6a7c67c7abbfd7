"""RateLimiter — per-caller moving-window admission control.

Built on :mod:`limits`: every caller id is one key under a single
``RateLimitItemPerSecond`` item, checked with the moving-window strategy
against in-process memory storage.  A call is admitted while fewer than
``max_calls`` calls from the same caller fall inside the trailing window.
State is in-memory only.
"""

from __future__ import annotations

import threading
import time

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter
from pydantic import BaseModel, Field

_NAMESPACE = "toolbridge"


class RateLimitConfig(BaseModel):
    """Moving-window limits applied per caller."""

    max_calls: int = Field(default=60, gt=0, description="Calls admitted per window.")
    window_seconds: int = Field(default=60, gt=0, description="Window duration in whole seconds.")


class RateLimiter:
    """Moving-window limiter keyed by caller id.

    Hits go through one lock, so concurrent calls for the same caller can
    never both take the last free slot.
    """

    def __init__(self, config: RateLimitConfig | None = None) -> None:
        self._config = config or RateLimitConfig()
        self._item = RateLimitItemPerSecond(
            self._config.max_calls,
            self._config.window_seconds,
            namespace=_NAMESPACE,
        )
        self._storage = MemoryStorage()
        self._strategy = MovingWindowRateLimiter(self._storage)
        self._lock = threading.Lock()

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def admit(self, caller_id: str) -> bool:
        """Record and admit a call for *caller_id*, or refuse it.

        A refused call is not recorded.
        """
        with self._lock:
            return self._strategy.hit(self._item, caller_id)

    def retry_after(self, caller_id: str) -> float:
        """Seconds until *caller_id* regains a free slot (``0.0`` if it has one)."""
        stats = self._strategy.get_window_stats(self._item, caller_id)
        if stats.remaining > 0:
            return 0.0
        return max(0.0, float(stats.reset_time) - time.time())

    def reset(self, caller_id: str | None = None) -> None:
        """Forget recorded calls for one caller, or for everyone."""
        if caller_id is None:
            self._storage.reset()
        else:
            self._strategy.clear(self._item, caller_id)

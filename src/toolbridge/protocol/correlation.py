"""PendingRequests — the issuing side's correlation table.

Maps outstanding outbound request ids to futures.  Only the side that sends a
request holds a slot for it; receivers answer with a response carrying the
same id and never allocate slots.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections import OrderedDict
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from toolbridge.protocol.models import RequestId, Response

logger = logging.getLogger(__name__)

_RECENT_ID_LIMIT = 256


class PendingRequests:
    """Lock-protected mapping of request id -> pending response slot."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._slots: dict[RequestId, asyncio.Future[Response]] = {}
        self._abandoned: OrderedDict[RequestId, None] = OrderedDict()
        self._completed: OrderedDict[RequestId, None] = OrderedDict()
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)

    def __contains__(self, request_id: object) -> bool:
        with self._lock:
            return request_id in self._slots

    def next_id(self) -> int:
        with self._lock:
            return next(self._ids)

    def open(self, request_id: RequestId) -> asyncio.Future[Response]:
        """Allocate a slot for *request_id*.

        Raises:
            ValueError: If *request_id* is already outstanding.
        """
        future: asyncio.Future[Response] = asyncio.get_running_loop().create_future()
        with self._lock:
            if request_id in self._slots:
                msg = f"Request id {request_id!r} is already outstanding"
                raise ValueError(msg)
            self._slots[request_id] = future
        return future

    def resolve(self, response: Response) -> bool:
        """Resolve the slot matching ``response.id``.

        Returns ``False`` (and logs) when the id is unknown, already resolved
        or belongs to an abandoned request; the response is discarded.
        """
        with self._lock:
            future = self._slots.pop(response.id, None) if response.id is not None else None
            abandoned = response.id in self._abandoned
            duplicate = response.id in self._completed
            if future is not None:
                _remember(self._completed, response.id)

        if future is None:
            if abandoned:
                logger.debug("Discarding late response for abandoned request %r", response.id)
            elif duplicate:
                logger.warning("Protocol anomaly: duplicate response for request id %r", response.id)
            else:
                logger.warning("Protocol anomaly: response for unknown request id %r", response.id)
            return False
        if future.done():
            logger.debug("Discarding response for request %r; its waiter is gone", response.id)
            return False
        future.set_result(response)
        return True

    def abandon(self, request_id: RequestId) -> None:
        """Drop the slot for a cancelled or timed-out request.

        The id is remembered for a while so that a late response is recognised
        and discarded quietly instead of being reported as an anomaly.
        """
        with self._lock:
            future = self._slots.pop(request_id, None)
            _remember(self._abandoned, request_id)
        if future is not None and not future.done():
            future.cancel()

    def fail_all(self, exc: BaseException) -> None:
        """Fail every outstanding slot with *exc* (session closing)."""
        with self._lock:
            slots = list(self._slots.values())
            self._slots.clear()
        for future in slots:
            if not future.done():
                future.set_exception(exc)


def _remember(recent: OrderedDict[RequestId, None], request_id: RequestId | None) -> None:
    if request_id is None:
        return
    recent[request_id] = None
    while len(recent) > _RECENT_ID_LIMIT:
        recent.popitem(last=False)

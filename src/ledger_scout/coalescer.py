from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Awaitable, Callable, Dict, Hashable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestCoalescer:
    """
    Collapses concurrent requests for the same key onto one running producer.

    The producer runs as its own task, so a caller that gets cancelled does not
    cancel the work other callers are waiting on. The pending slot is released
    by the task's first done-callback, which runs before any waiter resumes.
    """

    def __init__(self) -> None:
        self._pending: Dict[Hashable, asyncio.Future] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, key: Hashable) -> bool:
        return key in self._pending

    async def run_exclusive(self, key: Hashable, producer: Callable[[], Awaitable[T]]) -> T:
        future = self._pending.get(key)
        if future is None:
            future = asyncio.ensure_future(producer())
            self._pending[key] = future
            future.add_done_callback(partial(self._settle, key))
        else:
            logger.debug("Joining in-flight request. key=%s", key)
        return await asyncio.shield(future)

    def _settle(self, key: Hashable, future: asyncio.Future) -> None:
        if self._pending.get(key) is future:
            del self._pending[key]
        if not future.cancelled():
            # Mark the exception retrieved; waiters re-raise it themselves.
            future.exception()

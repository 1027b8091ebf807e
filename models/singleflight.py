"""
Request coalescing: concurrent callers with the same key share one execution.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Generic, Hashable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Call:
    __slots__ = ("task", "waiters")

    def __init__(self, task: asyncio.Future) -> None:
        self.task = task
        self.waiters = 0


class SingleFlight(Generic[T]):
    """
    Keyed single-flight group.

    The first caller for a key starts the coroutine factory as its own task;
    every caller, the first included, awaits that task through `asyncio.shield`.
    Cancelling one caller therefore never cancels the others. The task itself is
    cancelled only once no caller is left waiting on it. The key is released as
    soon as the task settles, so the next caller starts a fresh execution and
    failures are never remembered.
    """

    def __init__(self) -> None:
        self._calls: Dict[Hashable, _Call] = {}

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        call = self._calls.get(key)
        if call is None:
            call = _Call(asyncio.ensure_future(factory()))
            self._calls[key] = call
            call.task.add_done_callback(lambda task, key=key, call=call: self._release(key, call))
        else:
            logger.debug("Joining in-flight call for %s", key)

        call.waiters += 1
        try:
            return await asyncio.shield(call.task)
        finally:
            call.waiters -= 1
            if call.waiters == 0 and not call.task.done():
                logger.debug("Abandoning in-flight call for %s", key)
                call.task.cancel()

    def _release(self, key: Hashable, call: _Call) -> None:
        if self._calls.get(key) is call:
            del self._calls[key]
        if not call.task.cancelled():
            # mark retrieved so an unobserved failure is not reported by the loop
            call.task.exception()

    def in_flight(self, key: Hashable) -> bool:
        return key in self._calls

    def __len__(self) -> int:
        return len(self._calls)

"""Coalescing of concurrent identical calls."""

import asyncio
from typing import Any, Awaitable, Callable, Dict


class SingleFlight:
    """Runs at most one call per key at a time.

    A caller arriving while a call for the same key is outstanding awaits
    that call's result instead of starting another one. Cancelling one
    waiter does not cancel the shared call; cancel(key) does.
    """

    def __init__(self) -> None:
        self._calls: Dict[str, "asyncio.Task[Any]"] = {}

    async def do(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        task = self._calls.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._calls[key] = task
            task.add_done_callback(lambda t, key=key: self._forget(key, t))
        return await asyncio.shield(task)

    def in_flight(self, key: str) -> bool:
        return key in self._calls

    def cancel(self, key: str) -> bool:
        task = self._calls.get(key)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_all(self) -> None:
        for task in list(self._calls.values()):
            task.cancel()

    def _forget(self, key: str, task: "asyncio.Task[Any]") -> None:
        if self._calls.get(key) is task:
            del self._calls[key]
        if not task.cancelled():
            # Mark the exception retrieved when every waiter went away.
            task.exception()

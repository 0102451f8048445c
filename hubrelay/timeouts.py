"""Deadline enforcement for awaited operations."""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger

from .errors import OperationTimeoutError

T = TypeVar("T")

log = logger.bind(component="timeout_executor")


class TimeoutExecutor:
    """Runs an operation with a hard deadline.

    On expiry the task running the operation is cancelled, so an in-flight
    HTTP request is aborted and its connection released, and
    OperationTimeoutError is raised. There is no retry logic here.
    """

    async def run(self, op: Callable[[], Awaitable[T]], timeout: Optional[float]) -> T:
        if timeout is None:
            return await op()
        try:
            return await asyncio.wait_for(op(), timeout)
        except OperationTimeoutError:
            raise
        except asyncio.TimeoutError:
            log.debug(f"Operation cancelled after {timeout:g}s")
            raise OperationTimeoutError(timeout) from None

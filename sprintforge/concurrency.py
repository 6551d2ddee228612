"""
Concurrency Helpers
===================

- SingleFlight: per-key "already in progress" guard for one-shot operations
  (sprint planning, queue drains). A second concurrent call for the same key
  fails fast with ConflictError instead of queuing.
- retry_async: bounded retry with exponential backoff for transient failures.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from sprintforge.errors import ConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight:
    """
    Tracks keys with an operation in flight.

    The check-and-set happens without an intervening await, so it is atomic
    with respect to other coroutines on the same event loop. The key is always
    released when the guarded block exits.

    Usage:
        planning = SingleFlight("sprint planning")
        async with planning.guard(project_id):
            ...
    """

    def __init__(self, operation: str):
        self.operation = operation
        self._in_progress: set[str] = set()

    def is_running(self, key: str) -> bool:
        return key in self._in_progress

    @property
    def active_keys(self) -> set[str]:
        return set(self._in_progress)

    @asynccontextmanager
    async def guard(self, key: str) -> AsyncIterator[None]:
        if key in self._in_progress:
            raise ConflictError(key, self.operation)
        self._in_progress.add(key)
        try:
            yield
        finally:
            self._in_progress.discard(key)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    is_retryable: Callable[[BaseException], bool],
    max_delay: float = 2.0,
    label: str = "operation",
    on_exhausted: Optional[Callable[[BaseException, int], BaseException]] = None,
) -> T:
    """
    Run `operation`, retrying retryable failures with exponential backoff.

    Non-retryable exceptions propagate immediately. When every attempt fails,
    `on_exhausted(last_error, attempts)` supplies the exception to raise; by
    default the last error is re-raised.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            if attempt == attempts:
                if on_exhausted is not None:
                    raise on_exhausted(exc, attempt) from exc
                raise
            delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
            logger.debug(
                "%s hit contention (attempt %d/%d), retrying in %.3fs",
                label, attempt, attempts, delay,
            )
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover

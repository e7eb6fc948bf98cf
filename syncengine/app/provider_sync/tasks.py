"""
Deadline and task wrappers for sync coroutines.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

from syncengine.config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Deadline:
    """A point in monotonic time after which remaining work is skipped."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self._expires_at = time.monotonic() + seconds

    @classmethod
    def from_settings(cls) -> "Deadline":
        return cls(get_settings().sync_timeout_seconds)

    def remaining(self) -> float:
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await with the remaining time as timeout.

        Raises:
            asyncio.TimeoutError: If the deadline passes first
        """
        if self.expired:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise asyncio.TimeoutError("Sync deadline exceeded")
        return await asyncio.wait_for(awaitable, timeout=self.remaining())


class SyncTask:
    """
    Wraps a sync coroutine so callers can await it inline or detach it.

    The wrapped coroutine is responsible for its own bookkeeping on
    cancellation; the wrapper only logs and re-raises.
    """

    def __init__(
        self,
        coroutine_factory: Callable[[], Awaitable[T]],
        name: Optional[str] = None
    ):
        self._factory = coroutine_factory
        self.name = name or "sync"
        self._task: Optional[asyncio.Task] = None

    async def run(self):
        """Run the sync inline and return its result."""
        try:
            return await self._factory()
        except asyncio.CancelledError:
            logger.warning(f"Task {self.name} cancelled")
            raise

    def detach(self) -> asyncio.Task:
        """
        Schedule the sync on the running loop and return immediately.

        The returned task must be kept referenced by the caller until done.
        """
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=self.name)
            self._task.add_done_callback(self._log_outcome)
        return self._task

    def _log_outcome(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Detached task {self.name} failed: {error}")

"""
Per-key sequential execution.

Used by the driver when ``UpdateConfig.serialize_updates`` is on: updates
of the same entity id in this process run one after another instead of
interleaving at the column level. Other processes are not affected.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Hashable, TypeVar

from ..errors import LockTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SequentialWorker:
    """Runs tasks pushed under the same key in arrival order.

    Example:
        >>> worker = SequentialWorker(timeout=60)
        >>> await worker.push(("User", "u1"), lambda: do_update())
    """

    def __init__(self, timeout: float = 60.0) -> None:
        self.timeout = timeout
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiting: Dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    async def push(self, key: Hashable, task: Callable[[], Awaitable[T]]) -> T:
        """Run task once every earlier task of the same key has finished.

        Raises:
            LockTimeout: If the task waited longer than the timeout
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiting[key] = self._waiting.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.warning("Sequential task timed out", extra={"key": str(key)})
                raise LockTimeout(str(key), 1) from None
            try:
                return await task()
            finally:
                lock.release()
        finally:
            self._waiting[key] -= 1
            if not self._waiting[key]:
                del self._waiting[key]
                del self._locks[key]

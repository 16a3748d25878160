"""
In-process caches for EavDB.

TTLCache is a bounded LRU map whose entries expire after a fixed TTL.
SingleFlight collapses concurrent loads of the same key into one task,
so that N concurrent first lookups hit the database once and all
callers observe the same result.

Thread safety:
    Both classes are meant for a single event loop. They hold no locks.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")
T = TypeVar("T")


class TTLCache(Generic[K, V]):
    """Bounded LRU cache with per-entry expiry.

    Example:
        >>> cache = TTLCache(max_size=2, ttl_seconds=60)
        >>> cache.set("a", 1)
        >>> cache.get("a")
        1
    """

    def __init__(
        self,
        max_size: int = 500,
        ttl_seconds: float = 60.0,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._timer = timer
        self._entries: "OrderedDict[K, Tuple[float, V]]" = OrderedDict()

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return default
        expires_at, value = entry
        if expires_at <= self._timer():
            del self._entries[key]
            return default
        self._entries.move_to_end(key)
        return value

    def set(self, key: K, value: V) -> None:
        self._entries[key] = (self._timer() + self.ttl_seconds, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def delete(self, key: K) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        return len(self._entries)


class SingleFlight(Generic[K, T]):
    """Run at most one load per key at a time.

    Callers arriving while a load for the same key is running await
    that load instead of starting their own. Exceptions propagate to
    every waiter; the next call after a failure starts a fresh load.
    """

    def __init__(self) -> None:
        self._tasks: Dict[K, "asyncio.Task[T]"] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._tasks

    async def do(self, key: K, load: Callable[[], Awaitable[T]]) -> T:
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(load())
            self._tasks[key] = task

            def forget(done: "asyncio.Task[T]", key: K = key) -> None:
                if self._tasks.get(key) is done:
                    del self._tasks[key]

            task.add_done_callback(forget)
        return await asyncio.shield(task)

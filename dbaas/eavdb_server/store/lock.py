"""
Named locks shared by every process using the store.

A lock is a row in the ``locks`` table whose ``active`` flag is set by an
atomic conditional UPDATE. Waiters in this process are woken through an
asyncio.Condition when the lock is released here; waiters in other
processes notice on their next poll. Either way acquisition is bounded
by ``try_max`` attempts spaced ``try_interval`` apart.

Invariants:
    - At most one holder per lock name across all processes
    - lock_while() releases the lock even if the action raises
    - unlock_all() is only safe while no other process holds a lock
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from ..config import LockConfig
from ..errors import LockTimeout
from .database import Database

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _now_ms() -> int:
    return int(time.time() * 1000)


class LockManager:
    """Polling mutual exclusion over the ``locks`` table.

    Example:
        >>> locks = LockManager(db, LockConfig())
        >>> await locks.lock_while("User/attributes", assign_columns)
    """

    def __init__(self, db: Database, config: Optional[LockConfig] = None) -> None:
        self._db = db
        self.config = config or LockConfig()
        self._conditions: Dict[str, asyncio.Condition] = {}

    def _condition(self, name: str) -> asyncio.Condition:
        condition = self._conditions.get(name)
        if condition is None:
            condition = asyncio.Condition()
            self._conditions[name] = condition
        return condition

    async def _wait(self, name: str, interval: float) -> None:
        """Sleep until released in this process or the interval elapses."""
        condition = self._condition(name)
        async with condition:
            try:
                await asyncio.wait_for(condition.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def _notify(self, name: str) -> None:
        condition = self._condition(name)
        async with condition:
            condition.notify_all()

    def _budget(self, try_max: Optional[int], try_interval: Optional[float]) -> tuple[int, float]:
        return (
            try_max if try_max is not None else self.config.try_max,
            try_interval if try_interval is not None else self.config.try_interval_ms / 1000.0,
        )

    async def is_locked(self, name: str) -> bool:
        """Whether the named lock is currently held."""

        def query(conn: sqlite3.Connection) -> bool:
            row = conn.execute("SELECT active FROM locks WHERE name = ?", (name,)).fetchone()
            return bool(row and row["active"])

        return await self._db.read(query)

    async def wait_to_lock(
        self,
        name: str,
        try_max: Optional[int] = None,
        try_interval: Optional[float] = None,
    ) -> bool:
        """Wait until the named lock is free, without taking it.

        Args:
            name: Lock name
            try_max: Attempts before giving up
            try_interval: Seconds between attempts

        Returns:
            True once the lock is observed free

        Raises:
            LockTimeout: If the lock stays held for every attempt
        """
        try_max, try_interval = self._budget(try_max, try_interval)
        for _ in range(try_max):
            if not await self.is_locked(name):
                return True
            await self._wait(name, try_interval)
        raise LockTimeout(name, try_max)

    async def try_acquire(self, name: str) -> bool:
        """Take the named lock if it is free. Never waits."""

        def take(conn: sqlite3.Connection) -> bool:
            now = _now_ms()
            conn.execute(
                "INSERT OR IGNORE INTO locks (name, active, updated_at) VALUES (?, 0, ?)",
                (name, now),
            )
            cursor = conn.execute(
                "UPDATE locks SET active = 1, updated_at = ? WHERE name = ? AND active = 0",
                (now, name),
            )
            return cursor.rowcount == 1

        return await self._db.write(take)

    async def acquire(
        self,
        name: str,
        try_max: Optional[int] = None,
        try_interval: Optional[float] = None,
    ) -> None:
        """Take the named lock, waiting up to the retry budget.

        Raises:
            LockTimeout: If the lock could not be taken in try_max attempts
        """
        try_max, try_interval = self._budget(try_max, try_interval)
        for attempt in range(try_max):
            if await self.try_acquire(name):
                logger.debug("Lock acquired", extra={"lock": name, "attempt": attempt + 1})
                return
            if attempt + 1 < try_max:
                await self._wait(name, try_interval)
        raise LockTimeout(name, try_max)

    async def release(self, name: str) -> None:
        """Clear the named lock and wake local waiters."""

        def clear(conn: sqlite3.Connection) -> None:
            conn.execute(
                "UPDATE locks SET active = 0, updated_at = ? WHERE name = ?",
                (_now_ms(), name),
            )

        await self._db.write(clear)
        await self._notify(name)
        logger.debug("Lock released", extra={"lock": name})

    async def lock_while(
        self,
        name: str,
        action: Callable[[], Awaitable[T]],
        try_max: Optional[int] = None,
        try_interval: Optional[float] = None,
    ) -> T:
        """Run action while holding the named lock.

        Args:
            name: Lock name
            action: Zero-argument coroutine function
            try_max: Attempts before giving up
            try_interval: Seconds between attempts

        Returns:
            The action's result

        Raises:
            LockTimeout: If the lock could not be taken (action not run)
        """
        await self.acquire(name, try_max, try_interval)
        try:
            return await action()
        finally:
            await self.release(name)

    async def unlock_all(self) -> int:
        """Clear every held lock (stale locks of a crashed run).

        Returns:
            Number of locks that were held
        """

        def clear(conn: sqlite3.Connection) -> list[str]:
            names = [
                row["name"] for row in conn.execute("SELECT name FROM locks WHERE active = 1")
            ]
            conn.execute("UPDATE locks SET active = 0, updated_at = ? WHERE active = 1", (_now_ms(),))
            return names

        names = await self._db.write(clear)
        for name in names:
            await self._notify(name)
        if names:
            logger.info("Released stale locks", extra={"locks": names})
        return len(names)

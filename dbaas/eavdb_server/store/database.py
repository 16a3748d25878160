"""
SQLite access layer for EavDB.

This module owns the shared SQLite database file and provides:
- Per-operation connections configured like the rest of the store
- Read and write transactions run off the event loop
- Bounded exponential-backoff retry on lock contention
- The process-wide tables (resources, locks, usages)

Every storage call is a suspension point: the SQLite work runs in a
worker thread while other requests continue on the event loop.

Invariants:
    - One database file shared by every process using the store
    - Write transactions use BEGIN IMMEDIATE (single writer at a time)
    - A failed transaction is rolled back before it is retried

How to change safely:
    - Schema changes must be additive (CREATE ... IF NOT EXISTS)
    - Keep transactions short; they block every other writer
    - Test contention with several processes before release
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, TypeVar

from ..config import StorageConfig
from ..errors import StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

BASE_SCHEMA = """
    -- Resource kinds (namespaces)
    CREATE TABLE IF NOT EXISTS resources (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE,
        created_at INTEGER NOT NULL
    );

    -- Named locks shared by every process
    CREATE TABLE IF NOT EXISTS locks (
        name TEXT NOT NULL PRIMARY KEY,
        active INTEGER NOT NULL DEFAULT 0,
        updated_at INTEGER NOT NULL
    );

    -- Advisory column usage counters
    CREATE TABLE IF NOT EXISTS usages (
        resource TEXT NOT NULL,
        kind TEXT NOT NULL,
        counts TEXT NOT NULL DEFAULT '{}',
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (resource, kind)
    );
"""


def is_contention(error: sqlite3.OperationalError) -> bool:
    """Whether an OperationalError is transient lock contention."""
    message = str(error).lower()
    return "locked" in message or "busy" in message


class Database:
    """Shared SQLite database used by every component of the store.

    Thread safety:
        Each operation opens its own connection inside a worker thread.
        SQLite handles concurrent access via WAL mode and busy timeouts.

    Example:
        >>> db = Database(StorageConfig(path="/tmp/eav.sqlite3"))
        >>> await db.initialize()
        >>> count = await db.read(lambda conn: conn.execute("SELECT 1").fetchone()[0])
    """

    def __init__(self, config: StorageConfig) -> None:
        """Initialize the database wrapper.

        Args:
            config: Storage configuration
        """
        self.config = config
        self.path = Path(config.path)

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection.

        Yields:
            SQLite connection in autocommit mode
        """
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.config.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.config.busy_timeout_ms}")
            if self.config.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")

            yield conn
        finally:
            conn.close()

    def _run(self, fn: Callable[[sqlite3.Connection], T], write: bool) -> T:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            try:
                result = fn(conn)
                conn.execute("COMMIT")
                return result
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def _run_script(self, script: str) -> None:
        with self._get_connection() as conn:
            conn.executescript(script)

    async def _with_retry(self, fn: Callable[..., T], *args) -> T:
        backoff = self.config.retry_backoff_ms / 1000.0
        backoff_max = self.config.retry_backoff_max_ms / 1000.0
        attempt = 0
        while True:
            try:
                return await asyncio.to_thread(fn, *args)
            except sqlite3.OperationalError as e:
                if not is_contention(e):
                    raise
                attempt += 1
                if attempt > self.config.max_retries:
                    raise StorageError(
                        f"Database busy after {attempt} attempts: {e}", attempts=attempt
                    ) from e
                logger.warning(
                    "Database contention, retrying",
                    extra={"attempt": attempt, "backoff_s": backoff, "error": str(e)},
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, backoff_max)

    async def read(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run fn inside a read transaction.

        Args:
            fn: Callable receiving the connection

        Returns:
            Whatever fn returns
        """
        return await self._with_retry(self._run, fn, False)

    async def write(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run fn inside a write transaction (BEGIN IMMEDIATE).

        The transaction is rolled back if fn raises and retried with
        exponential backoff if SQLite reports lock contention.

        Args:
            fn: Callable receiving the connection

        Returns:
            Whatever fn returns

        Raises:
            StorageError: If contention outlives the retry budget
        """
        return await self._with_retry(self._run, fn, True)

    async def script(self, script: str) -> None:
        """Run a multi-statement DDL script."""
        await self._with_retry(self._run_script, script)

    async def initialize(self) -> None:
        """Create the database file and the process-wide tables."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        await self.script(BASE_SCHEMA)
        logger.info(f"Initialized database: {self.path}")

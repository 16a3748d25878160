"""
Column usage counters.

Every list query pushes the column slots it filtered and sorted on. The
counts are kept in memory and periodically merged into the ``usages``
table. They are read only when an entity table is created, to choose
which slots get a secondary index.

Usage data is advisory: a failed flush is logged and dropped, and losing
unflushed counts on crash is accepted.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections import Counter
from typing import Dict, Iterable, List, Optional, Tuple

from .database import Database

logger = logging.getLogger(__name__)

WHERE_COLS = "whereCols"
ORDER_COLS = "orderCols"
FILTER = "filter"

KINDS = (WHERE_COLS, ORDER_COLS, FILTER)


class UsageTracker:
    """Accumulates and persists column usage per resource.

    Example:
        >>> usage = UsageTracker(db)
        >>> usage.push("User", WHERE_COLS, ["v_0", "v_3"])
        >>> await usage.flush()
        >>> await usage.counts_of("User")
        {'whereCols': {'v_0': 1, 'v_3': 1}, 'orderCols': {}, 'filter': {}}
    """

    def __init__(self, db: Database, enabled: bool = True) -> None:
        self._db = db
        self.enabled = enabled
        self._pending: Dict[Tuple[str, str], Counter] = {}
        self._flush_lock: Optional[asyncio.Lock] = None

    def push(self, resource_name: str, kind: str, keys: Iterable[str]) -> None:
        """Record one use of each key. Never touches the database."""
        if not self.enabled:
            return
        if kind not in KINDS:
            raise ValueError(f"Unknown usage kind: {kind}")
        keys = list(keys)
        if not keys:
            return
        self._pending.setdefault((resource_name, kind), Counter()).update(keys)

    @property
    def pending(self) -> int:
        """Number of (resource, kind) groups waiting for a flush."""
        return len(self._pending)

    async def flush(self) -> int:
        """Merge pending counts into the usages table.

        Concurrent calls are serialized; a call finding nothing pending
        does nothing. Failures are logged and the batch is dropped.

        Returns:
            Number of (resource, kind) groups written
        """
        if self._flush_lock is None:
            # Bound to the running loop on first use
            self._flush_lock = asyncio.Lock()
        async with self._flush_lock:
            if not self._pending:
                return 0
            batch, self._pending = self._pending, {}

            def merge(conn: sqlite3.Connection) -> None:
                now = int(time.time() * 1000)
                for (resource_name, kind), counts in batch.items():
                    row = conn.execute(
                        "SELECT counts FROM usages WHERE resource = ? AND kind = ?",
                        (resource_name, kind),
                    ).fetchone()
                    merged = Counter(json.loads(row["counts"]) if row else {})
                    merged.update(counts)
                    conn.execute(
                        """
                        INSERT INTO usages (resource, kind, counts, updated_at)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT(resource, kind) DO UPDATE SET
                            counts = excluded.counts,
                            updated_at = excluded.updated_at
                        """,
                        (resource_name, kind, json.dumps(dict(merged)), now),
                    )

            try:
                await self._db.write(merge)
            except Exception as e:
                logger.warning(
                    "Failed to flush usage counters",
                    extra={"groups": len(batch), "error": str(e)},
                )
                return 0
            logger.debug("Flushed usage counters", extra={"groups": len(batch)})
            return len(batch)

    async def counts_of(self, resource_name: str) -> Dict[str, Dict[str, int]]:
        """Persisted histogram per kind for a resource."""

        def query(conn: sqlite3.Connection) -> Dict[str, Dict[str, int]]:
            rows = conn.execute(
                "SELECT kind, counts FROM usages WHERE resource = ?", (resource_name,)
            ).fetchall()
            result: Dict[str, Dict[str, int]] = {kind: {} for kind in KINDS}
            for row in rows:
                result[row["kind"]] = json.loads(row["counts"])
            return result

        return await self._db.read(query)

    async def top_columns(self, resource_name: str, k: int) -> List[str]:
        """The k most used where/order slots of a resource (``v_i`` names)."""
        if k <= 0:
            return []
        counts = await self.counts_of(resource_name)
        total: Counter = Counter()
        for kind in (WHERE_COLS, ORDER_COLS):
            total.update(counts.get(kind, {}))
        return [
            name
            for name, _ in sorted(total.items(), key=lambda item: (-item[1], item[0]))
            if name.startswith("v_")
        ][:k]

    async def clear(self, resource_name: str) -> None:
        """Forget pending and persisted counts of a resource."""
        for key in [key for key in self._pending if key[0] == resource_name]:
            del self._pending[key]

        def delete(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM usages WHERE resource = ?", (resource_name,))

        await self._db.write(delete)

    async def run_periodic(self, interval: float) -> None:
        """Flush every interval seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            await self.flush()

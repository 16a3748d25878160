"""
Attribute registry: attribute name to fixed column slot, per resource kind.

Each resource kind owns a ``{prefix}_attribute`` table mapping flattened
attribute names (``bar.n``, ``tags[1]``) to a slot index in [0, N).

Column assignment:
    1. Known names come from a short-TTL cache of the whole table.
    2. Unknown names enter the assignment critical section, guarded by
       an asyncio.Lock in this process and the named lock
       ``{table}/attributes`` across processes.
    3. Inside, the table is re-read; names assigned meanwhile by another
       writer are reused, the rest get consecutive slots after the
       current maximum, in first-seen order.
    4. The cache is invalidated so the next lookup sees the new slots.

Invariants:
    - A name's slot never changes once assigned
    - No two names share a slot
    - Slots are never reused, even after the name stops being written
    - Exceeding the column budget assigns nothing and raises TooManyColumns
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from ..errors import TooManyColumns
from ..serial import DataType, flatten, serialize, type_of
from .cache import SingleFlight
from .database import Database
from .lock import LockManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttributeDef:
    """A name assigned to a column slot."""

    name: str
    col: int


@dataclass(frozen=True)
class ColumnValue:
    """One flattened attribute ready to be written.

    Attributes:
        name: Flattened attribute name
        col: Assigned slot
        type: Type tag for t_{col}
        value: Full encoded value (None for NULL)
    """

    name: str
    col: int
    type: DataType
    value: Optional[str]


class AttributeRegistry:
    """Column slots of one resource kind.

    Example:
        >>> attributes = AttributeRegistry(db, locks, "User", "r_User_1a2b3c4d", 64)
        >>> await attributes.create_schema()
        >>> cols = await attributes.cols_for({"name": "alice", "bar": {"n": 1}})
        >>> [(c.name, c.col) for c in cols]
        [('name', 0), ('bar.n', 1)]
    """

    def __init__(
        self,
        db: Database,
        locks: LockManager,
        resource_name: str,
        prefix: str,
        column_count: int,
        ttl_seconds: float = 2.0,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._db = db
        self._locks = locks
        self.resource_name = resource_name
        self.table = f"{prefix}_attribute"
        self.column_count = column_count
        self.ttl_seconds = ttl_seconds
        self._timer = timer
        self._cached: Optional[List[AttributeDef]] = None
        self._expires_at = 0.0
        self._generation = 0
        self._loading: SingleFlight[int, List[AttributeDef]] = SingleFlight()
        self._assign_lock = asyncio.Lock()

    def schema_sql(self) -> str:
        return f"""
            CREATE TABLE IF NOT EXISTS "{self.table}" (
                name TEXT NOT NULL PRIMARY KEY,
                col INTEGER NOT NULL UNIQUE,
                created_at INTEGER NOT NULL
            );
        """

    async def create_schema(self) -> None:
        await self._db.script(self.schema_sql())

    @staticmethod
    def _read_all(conn: sqlite3.Connection, table: str) -> List[AttributeDef]:
        rows = conn.execute(f'SELECT name, col FROM "{table}" ORDER BY col')
        return [AttributeDef(name=row["name"], col=row["col"]) for row in rows]

    async def all_of(self) -> List[AttributeDef]:
        """Every assigned attribute ordered by slot (cached for a few seconds)."""
        if self._cached is not None and self._expires_at > self._timer():
            return self._cached

        generation = self._generation

        async def load() -> List[AttributeDef]:
            attributes = await self._db.read(lambda conn: self._read_all(conn, self.table))
            # Drop results that raced with an invalidation
            if generation == self._generation:
                self._cached = attributes
                self._expires_at = self._timer() + self.ttl_seconds
            return attributes

        return await self._loading.do(generation, load)

    async def columns(self) -> Dict[str, int]:
        """Name to slot map of every assigned attribute."""
        return {attribute.name: attribute.col for attribute in await self.all_of()}

    def invalidate(self) -> None:
        self._generation += 1
        self._cached = None
        self._expires_at = 0.0

    async def cols_for(self, values: Mapping[str, Any]) -> List[ColumnValue]:
        """Flatten, encode and resolve the slots of attribute values.

        Values are encoded before any slot is assigned, so a value that
        cannot be stored never consumes a column.

        Args:
            values: Top-level attribute mapping (may be nested)

        Returns:
            One ColumnValue per flattened name, in flattening order

        Raises:
            ValueTooLarge: If a number does not fit the digit budget
            TooManyColumns: If new names would exceed the column budget
            LockTimeout: If the assignment lock could not be acquired
        """
        encoded = []
        for name, value in flatten(values):
            type_ = type_of(value)
            encoded.append((name, type_, serialize(value, type_)))

        slots = await self.resolve([name for name, _, _ in encoded])
        return [
            ColumnValue(name=name, col=slots[name], type=type_, value=value)
            for name, type_, value in encoded
        ]

    async def resolve(self, names: Sequence[str]) -> Dict[str, int]:
        """Slots of the given names, assigning slots to unknown names."""
        known = await self.columns()
        missing = [name for name in dict.fromkeys(names) if name not in known]
        if missing:
            known = await self._assign(missing)
        return {name: known[name] for name in names}

    async def _assign(self, names: List[str]) -> Dict[str, int]:
        async with self._assign_lock:
            self.invalidate()
            known = await self.columns()
            if all(name in known for name in names):
                return known

            assigned = await self._locks.lock_while(
                f"{self.table}/attributes", lambda: self._db.write(lambda conn: self._insert(conn, names))
            )
            self.invalidate()
            return assigned

    def _insert(self, conn: sqlite3.Connection, names: List[str]) -> Dict[str, int]:
        current = {attribute.name: attribute.col for attribute in self._read_all(conn, self.table)}
        missing = [name for name in names if name not in current]
        if not missing:
            return current

        next_col = max(current.values(), default=-1) + 1
        required = next_col + len(missing)
        if required > self.column_count:
            raise TooManyColumns(self.resource_name, required, self.column_count)

        now = int(time.time() * 1000)
        new = {name: next_col + i for i, name in enumerate(missing)}
        conn.executemany(
            f'INSERT INTO "{self.table}" (name, col, created_at) VALUES (?, ?, ?)',
            [(name, col, now) for name, col in new.items()],
        )
        logger.info(
            "Assigned attribute columns",
            extra={"resource": self.resource_name, "columns": new},
        )
        current.update(new)
        return current

    async def drop(self) -> None:
        """Drop the attribute table, forgetting every slot assignment."""
        await self._db.script(f'DROP TABLE IF EXISTS "{self.table}";')
        self.invalidate()

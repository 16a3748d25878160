"""
Entity table model: the wide row table plus its overflow side table.

Per resource kind:

    {prefix}_entity
        id          INTEGER PRIMARY KEY   internal row id ($$num)
        cid         TEXT UNIQUE           external id (id)
        created_at  INTEGER               epoch ms
        updated_at  INTEGER               epoch ms ($$at)
        t_0, v_0 ... t_{N-1}, v_{N-1}     type tag / value truncated to base length

    {prefix}_extra
        entity_id   -> {prefix}_entity.id (ON DELETE CASCADE)
        name        TEXT                  v_i slot of the overflowed value
        value       BLOB                  msgpack of the full encoded value

Invariants:
    - An extra row exists only while its value exceeds the base length
    - A slot with t_i NULL is unset for that entity; t_i = 0 is a stored null
    - Every mutation deletes the cached row before and after the write
    - The cid never changes once the row is created

How to change safely:
    - Schema changes must be additive (CREATE ... IF NOT EXISTS)
    - Keep base row and extra rows in the same transaction
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from ..errors import DeserializationError, EntityAlreadyExists
from ..serial import (
    AS_KEY,
    AT_KEY,
    ID_KEY,
    NUM_KEY,
    Entity,
    deserialize,
    expand,
    pack,
    truncate,
    unpack,
)
from ..serial.serializer import EPOCH
from .attribute import AttributeDef, ColumnValue
from .cache import TTLCache
from .database import Database
from .filters import ColumnPredicate, FilterSpec, SortKey, SortSpec, order_by, parse_filter, parse_sort

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class EntityRow:
    """A raw row of the entity table with its overflow values."""

    id: int
    cid: str
    created_at: int
    updated_at: int
    values: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, bytes] = field(default_factory=dict)


@dataclass
class ColumnValues:
    """Write payload: base columns and overflow values.

    Attributes:
        base: t_i / v_i column values for the entity row
        extra: v_i slot -> packed full value, or None to clear
    """

    base: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Optional[bytes]] = field(default_factory=dict)


@dataclass
class ListResult:
    """Rows of one page plus the total match count."""

    rows: List[EntityRow]
    total: int
    predicate: ColumnPredicate
    sort: List[SortKey]


class EntityTable:
    """Wide row storage of one resource kind.

    Example:
        >>> table = EntityTable(db, "User", "r_User_1a2b3c4d", 64, 255)
        >>> await table.create_schema(["v_0"])
        >>> await table.insert("u1", table.values_with_cols(cols))
        >>> row = await table.for_one("u1")
    """

    def __init__(
        self,
        db: Database,
        resource_name: str,
        prefix: str,
        column_count: int,
        value_base_length: int,
        cache: Optional[TTLCache] = None,
    ) -> None:
        self._db = db
        self.resource_name = resource_name
        self.table = f"{prefix}_entity"
        self.extra_table = f"{prefix}_extra"
        self.column_count = column_count
        self.value_base_length = value_base_length
        self._cache: TTLCache[str, EntityRow] = cache or TTLCache(max_size=500, ttl_seconds=60)
        self._version = 0

    # Schema

    def schema_sql(self, index_columns: Sequence[str] = ()) -> str:
        slots = ",\n".join(
            f'                "t_{i}" INTEGER,\n                "v_{i}" TEXT'
            for i in range(self.column_count)
        )
        indexes = "\n".join(
            f'            CREATE INDEX IF NOT EXISTS "{self.table}_{column}" '
            f'ON "{self.table}" ("{column}");'
            for column in index_columns
        )
        return f"""
            CREATE TABLE IF NOT EXISTS "{self.table}" (
                "id" INTEGER PRIMARY KEY AUTOINCREMENT,
                "cid" TEXT NOT NULL UNIQUE,
                "created_at" INTEGER NOT NULL,
                "updated_at" INTEGER NOT NULL,
{slots}
            );

            CREATE INDEX IF NOT EXISTS "{self.table}_updated_at"
                ON "{self.table}" ("updated_at");

            CREATE TABLE IF NOT EXISTS "{self.extra_table}" (
                "entity_id" INTEGER NOT NULL
                    REFERENCES "{self.table}" ("id") ON DELETE CASCADE,
                "name" TEXT NOT NULL,
                "value" BLOB,
                PRIMARY KEY ("entity_id", "name")
            );
{indexes}
        """

    async def create_schema(self, index_columns: Sequence[str] = ()) -> None:
        """Create both tables and the given secondary indexes.

        Args:
            index_columns: v_i columns to index (most used first)
        """
        await self._db.script(self.schema_sql(index_columns))
        logger.info(
            "Created entity tables",
            extra={"resource": self.resource_name, "table": self.table, "indexes": list(index_columns)},
        )

    async def drop(self) -> None:
        """Drop both tables."""
        await self._db.script(
            f"""
            DROP TABLE IF EXISTS "{self.extra_table}";
            DROP TABLE IF EXISTS "{self.table}";
            """
        )
        self.clear_cache()

    # Payloads

    def values_with_cols(self, cols: Iterable[ColumnValue], clear: Iterable[int] = ()) -> ColumnValues:
        """Build the base and overflow payload for a write.

        Args:
            cols: Resolved attribute values
            clear: Slots to unset (t_i and v_i to NULL, overflow removed)

        Returns:
            ColumnValues; extra holds None for every written slot that no
            longer needs an overflow row
        """
        values = ColumnValues()
        for col in clear:
            slot = f"v_{col}"
            values.base[f"t_{col}"] = None
            values.base[slot] = None
            values.extra[slot] = None
        for cv in cols:
            slot = f"v_{cv.col}"
            values.base[f"t_{cv.col}"] = int(cv.type)
            values.base[slot] = truncate(cv.value, self.value_base_length)
            if cv.value is not None and len(cv.value) > self.value_base_length:
                values.extra[slot] = pack(cv.value)
            else:
                values.extra[slot] = None
        return values

    @staticmethod
    def filter_extra(
        extra: Mapping[str, Optional[bytes]], existing: Set[str]
    ) -> Dict[str, Optional[bytes]]:
        """Drop clear requests for slots that have no overflow row."""
        return {
            name: value
            for name, value in extra.items()
            if value is not None or name in existing
        }

    @staticmethod
    def _write_extra(
        conn: sqlite3.Connection, table: str, entity_id: int, extra: Mapping[str, Optional[bytes]]
    ) -> None:
        for name, value in extra.items():
            if value is None:
                conn.execute(
                    f'DELETE FROM "{table}" WHERE entity_id = ? AND name = ?',
                    (entity_id, name),
                )
            else:
                conn.execute(
                    f"""
                    INSERT INTO "{table}" (entity_id, name, value) VALUES (?, ?, ?)
                    ON CONFLICT(entity_id, name) DO UPDATE SET value = excluded.value
                    """,
                    (entity_id, name, value),
                )

    # Reads

    def _extras_for(self, conn: sqlite3.Connection, ids: Sequence[int]) -> Dict[int, Dict[str, bytes]]:
        result: Dict[int, Dict[str, bytes]] = {entity_id: {} for entity_id in ids}
        if not ids:
            return result
        placeholders = ", ".join("?" for _ in ids)
        rows = conn.execute(
            f'SELECT entity_id, name, value FROM "{self.extra_table}" '
            f"WHERE entity_id IN ({placeholders}) AND value IS NOT NULL",
            list(ids),
        )
        for row in rows:
            result[row["entity_id"]][row["name"]] = bytes(row["value"])
        return result

    @staticmethod
    def _to_row(row: sqlite3.Row, extra: Dict[str, bytes]) -> EntityRow:
        return EntityRow(
            id=row["id"],
            cid=row["cid"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            values={key: row[key] for key in row.keys() if key.startswith(("t_", "v_"))},
            extra=extra,
        )

    async def for_one(self, cid: str) -> Optional[EntityRow]:
        """Row of an entity by external id (cached).

        Returns:
            EntityRow or None if the entity does not exist
        """
        cached = self._cache.get(cid)
        if cached is not None:
            return cached

        version = self._version

        def query(conn: sqlite3.Connection) -> Optional[EntityRow]:
            row = conn.execute(f'SELECT * FROM "{self.table}" WHERE cid = ?', (cid,)).fetchone()
            if row is None:
                return None
            return self._to_row(row, self._extras_for(conn, [row["id"]])[row["id"]])

        result = await self._db.read(query)
        # A write that finished while reading makes the result unsafe to cache
        if result is not None and version == self._version:
            self._cache.set(cid, result)
        return result

    async def for_list(
        self,
        attributes: Mapping[str, int],
        filter: FilterSpec = None,
        sort: SortSpec = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> ListResult:
        """One page of rows matching a filter, with the total match count.

        Args:
            attributes: Name to slot map of the resource kind
            filter: Filter spec (see filters module)
            sort: Sort spec
            limit: Max rows returned (None for all)
            offset: Rows skipped

        Returns:
            ListResult with rows, distinct total and the parsed query
        """
        predicate = parse_filter(filter, attributes, self.value_base_length)
        keys = parse_sort(sort, attributes)

        def query(conn: sqlite3.Connection) -> ListResult:
            total = conn.execute(
                f'SELECT COUNT(DISTINCT e."id") FROM "{self.table}" AS e WHERE {predicate.clause}',
                predicate.params,
            ).fetchone()[0]
            rows = conn.execute(
                f'SELECT e.* FROM "{self.table}" AS e WHERE {predicate.clause} '
                f"ORDER BY {order_by(keys)} LIMIT ? OFFSET ?",
                [*predicate.params, -1 if limit is None else limit, offset],
            ).fetchall()
            extras = self._extras_for(conn, [row["id"] for row in rows])
            return ListResult(
                rows=[self._to_row(row, extras[row["id"]]) for row in rows],
                total=total,
                predicate=predicate,
                sort=keys,
            )

        return await self._db.read(query)

    # Writes

    async def insert(self, cid: str, values: ColumnValues) -> None:
        """Insert a new entity row with its overflow values.

        Raises:
            EntityAlreadyExists: If the cid is already used
        """
        columns = list(values.base)

        def write(conn: sqlite3.Connection) -> None:
            now = _now_ms()
            names = ", ".join(f'"{column}"' for column in ["cid", "created_at", "updated_at", *columns])
            placeholders = ", ".join("?" for _ in range(len(columns) + 3))
            cursor = conn.execute(
                f'INSERT INTO "{self.table}" ({names}) VALUES ({placeholders})',
                [cid, now, now, *(values.base[column] for column in columns)],
            )
            self._write_extra(conn, self.extra_table, cursor.lastrowid, self.filter_extra(values.extra, set()))

        self.invalidate(cid)
        try:
            await self._db.write(write)
        except sqlite3.IntegrityError:
            raise EntityAlreadyExists(self.resource_name, cid) from None
        finally:
            self.invalidate(cid)

    async def update(self, cid: str, values: ColumnValues) -> bool:
        """Rewrite columns of an existing entity.

        Only the columns in ``values`` are touched. Overflow rows of
        written slots are replaced or removed.

        Returns:
            False if the entity does not exist
        """
        columns = list(values.base)

        def write(conn: sqlite3.Connection) -> bool:
            row = conn.execute(f'SELECT id FROM "{self.table}" WHERE cid = ?', (cid,)).fetchone()
            if row is None:
                return False
            entity_id = row["id"]
            assignments = ", ".join(f'"{column}" = ?' for column in ["updated_at", *columns])
            conn.execute(
                f'UPDATE "{self.table}" SET {assignments} WHERE id = ?',
                [_now_ms(), *(values.base[column] for column in columns), entity_id],
            )
            existing = {
                r["name"]
                for r in conn.execute(
                    f'SELECT name FROM "{self.extra_table}" WHERE entity_id = ?', (entity_id,)
                )
            }
            self._write_extra(conn, self.extra_table, entity_id, self.filter_extra(values.extra, existing))
            return True

        self.invalidate(cid)
        try:
            return await self._db.write(write)
        finally:
            self.invalidate(cid)

    async def destroy(self, cid: str) -> int:
        """Delete an entity and its overflow rows.

        Returns:
            1 if a row was deleted, else 0
        """

        def write(conn: sqlite3.Connection) -> int:
            return conn.execute(f'DELETE FROM "{self.table}" WHERE cid = ?', (cid,)).rowcount

        self.invalidate(cid)
        try:
            return await self._db.write(write)
        finally:
            self.invalidate(cid)

    # Projection

    def has_unknown_columns(self, row: EntityRow, attributes: Sequence[AttributeDef]) -> bool:
        """Whether the row sets a slot missing from the attribute list."""
        known = {attribute.col for attribute in attributes}
        return any(
            value is not None and int(key[2:]) not in known
            for key, value in row.values.items()
            if key.startswith("t_")
        )

    def as_entity(self, row: EntityRow, attributes: Sequence[AttributeDef]) -> Entity:
        """Expand a row into a logical entity.

        Values that cannot be decoded become None and are logged; they
        never fail the read.
        """
        pairs = []
        for attribute in attributes:
            type_ = row.values.get(f"t_{attribute.col}")
            if type_ is None:
                continue
            slot = f"v_{attribute.col}"
            try:
                encoded = unpack(row.extra[slot]) if slot in row.extra else row.values.get(slot)
                value = deserialize(encoded, type_)
            except DeserializationError as e:
                logger.warning(
                    "Failed to deserialize column, using null",
                    extra={
                        "resource": self.resource_name,
                        "entity": row.cid,
                        "attribute": attribute.name,
                        "error": e.message,
                    },
                )
                value = None
            pairs.append((attribute.name, value))

        entity = Entity({ID_KEY: row.cid})
        entity.update(expand(pairs))
        entity[NUM_KEY] = row.id
        entity[AT_KEY] = EPOCH + timedelta(milliseconds=row.updated_at)
        entity[AS_KEY] = self.resource_name
        return entity

    # Cache

    def invalidate(self, cid: str) -> None:
        self._version += 1
        self._cache.delete(cid)

    def clear_cache(self) -> None:
        self._version += 1
        self._cache.clear()

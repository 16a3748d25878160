"""
Resource registry: logical namespace name to internal numeric id.

Resources are created lazily on first reference. Concurrent first
lookups of the same unseen name share one find-or-create call, and the
UNIQUE constraint on ``resources.name`` keeps other processes from
inserting a duplicate.

Invariants:
    - Exactly one row per distinct name
    - Table names are derived from the name, never from the id, so they
      are stable across processes and across drop/recreate
"""

from __future__ import annotations

import hashlib
import logging
import re
import sqlite3
import time
from dataclasses import dataclass
from typing import List, Optional

from .cache import SingleFlight, TTLCache
from .database import Database

logger = logging.getLogger(__name__)

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9]+")


@dataclass(frozen=True)
class Resource:
    """A row of the resources table."""

    id: int
    name: str
    created_at: int


@dataclass(frozen=True)
class ResourceName:
    """A resource name split into name and optional domain (``Name@domain``)."""

    name: str
    domain: Optional[str] = None

    def to_dict(self) -> dict:
        return {"name": self.name, "domain": self.domain}


def parse_resource_name(full_name: str) -> ResourceName:
    name, sep, domain = full_name.partition("@")
    return ResourceName(name=name, domain=domain if sep else None)


def table_prefix(name: str) -> str:
    """SQL-safe table name prefix for a resource name.

    The sanitized name keeps tables readable; the hash suffix keeps
    names that sanitize alike (``a-b`` and ``a_b``) apart.
    """
    safe = _UNSAFE_RE.sub("_", name).strip("_")[:40]
    digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
    return f"r_{safe}_{digest}"


class ResourceRegistry:
    """Find-or-create and cache of resources by name."""

    def __init__(self, db: Database, cache: Optional[TTLCache] = None) -> None:
        self._db = db
        self._cache: TTLCache[str, Resource] = cache or TTLCache(max_size=1000, ttl_seconds=300)
        self._inflight: SingleFlight[str, Resource] = SingleFlight()

    @staticmethod
    def _row_to_resource(row: sqlite3.Row) -> Resource:
        return Resource(id=row["id"], name=row["name"], created_at=row["created_at"])

    async def of_name(self, name: str) -> Resource:
        """Resolve a resource by name, creating it on first use.

        Args:
            name: Resource name

        Returns:
            The resource (same id for every caller)
        """
        if not name:
            raise ValueError("Resource name must not be empty")
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        async def load() -> Resource:
            def find_or_create(conn: sqlite3.Connection) -> Resource:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO resources (name, created_at) VALUES (?, ?)",
                    (name, int(time.time() * 1000)),
                )
                if cursor.rowcount:
                    logger.info("Created resource", extra={"resource": name})
                row = conn.execute(
                    "SELECT id, name, created_at FROM resources WHERE name = ?", (name,)
                ).fetchone()
                return self._row_to_resource(row)

            resource = await self._db.write(find_or_create)
            self._cache.set(name, resource)
            return resource

        return await self._inflight.do(name, load)

    async def find(self, name: str) -> Optional[Resource]:
        """Look a resource up without creating it."""
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        def query(conn: sqlite3.Connection) -> Optional[Resource]:
            row = conn.execute(
                "SELECT id, name, created_at FROM resources WHERE name = ?", (name,)
            ).fetchone()
            return self._row_to_resource(row) if row else None

        resource = await self._db.read(query)
        if resource is not None:
            self._cache.set(name, resource)
        return resource

    async def all(self) -> List[Resource]:
        """Every resource, ordered by name."""

        def query(conn: sqlite3.Connection) -> List[Resource]:
            rows = conn.execute("SELECT id, name, created_at FROM resources ORDER BY name")
            return [self._row_to_resource(row) for row in rows]

        return await self._db.read(query)

    async def destroy(self, name: str) -> bool:
        """Delete the resource row. Returns False if it did not exist."""

        def delete(conn: sqlite3.Connection) -> bool:
            return conn.execute("DELETE FROM resources WHERE name = ?", (name,)).rowcount > 0

        try:
            return await self._db.write(delete)
        finally:
            self.clear_cache_for_name(name)

    def clear_cache_for_name(self, name: str) -> None:
        self._cache.delete(name)

"""
Backing store binding for EavDB (SQLite).

Components:
- Database: connections, transactions and contention retry
- ResourceRegistry: namespace name to resource id
- AttributeRegistry: attribute name to column slot, per resource kind
- EntityTable: wide row table and overflow table, per resource kind
- LockManager: named locks shared across processes
- UsageTracker: advisory column usage counters
- SequentialWorker: optional per-id update ordering
"""

from .attribute import AttributeDef, AttributeRegistry, ColumnValue
from .cache import SingleFlight, TTLCache
from .database import Database
from .entity import ColumnValues, EntityRow, EntityTable, ListResult
from .filters import ColumnPredicate, SortKey, normalize_sort, parse_filter, parse_sort
from .lock import LockManager
from .resource import Resource, ResourceName, ResourceRegistry, parse_resource_name, table_prefix
from .sequential import SequentialWorker
from .usage import UsageTracker

__all__ = [
    "AttributeDef",
    "AttributeRegistry",
    "ColumnValue",
    "SingleFlight",
    "TTLCache",
    "Database",
    "ColumnValues",
    "EntityRow",
    "EntityTable",
    "ListResult",
    "ColumnPredicate",
    "SortKey",
    "normalize_sort",
    "parse_filter",
    "parse_sort",
    "LockManager",
    "Resource",
    "ResourceName",
    "ResourceRegistry",
    "parse_resource_name",
    "table_prefix",
    "SequentialWorker",
    "UsageTracker",
]

"""
Filter and sort translation into SQL over the wide entity table.

A filter is a mapping from attribute name to a condition:

    {"age": 3}                                  equality
    {"age": {"$gte": 1, "$lt": 10}}             operators (ANDed)
    {"age": [1, 2]}                             $in
    {"note": None}                              IS NULL
    {"owner": {"$ref": "User#1"}}               reference equality
    {"owner": entity}                           same, for a live Entity
    {"meta": {}}                                stored empty object
    {"bar": {"n": 1}}                           nested name "bar.n"
    {"$or": [{"age": 1}, {"age": 3}]}           OR of sub-filters
    [{"age": 1}, {"age": 3}]                    same as $or
    {"$and": [{"age": {"$gt": 1}}, ...]}        AND of sub-filters

Values are encoded with the serializer before comparison, so number and
date ranges compare correctly as strings. Encoded values longer than the
base length are truncated (prefix match only).

Name resolution:
    - ``id``, ``$$num`` and ``$$at`` map to the cid, row id and
      updated_at columns and are compared raw
    - Other ``$$`` names are ignored with a warning
    - Names with no assigned column make their branch match nothing
      (``0 = 1``), so a filter on an attribute never written returns
      no entity

Sort specs are names with an optional leading ``-`` (descending), as a
list or a comma separated string. Unresolvable sort names are dropped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union

from ..serial import REF_KEY, Entity, epoch_millis, is_ref, serialize, truncate

logger = logging.getLogger(__name__)

RESERVED = {
    "id": "cid",
    "$$num": "id",
    "$$at": "updated_at",
}

MATCH_ALL = "1 = 1"
MATCH_NONE = "0 = 1"

_COMPARISONS = {
    "$eq": "=",
    "$ne": "!=",
    "$gt": ">",
    "$gte": ">=",
    "$lt": "<",
    "$lte": "<=",
    "$like": "LIKE",
    "$notLike": "NOT LIKE",
}
_SETS = {"$in": "IN", "$nin": "NOT IN", "$notIn": "NOT IN"}
_RANGES = {"$between": "BETWEEN", "$notBetween": "NOT BETWEEN"}

FilterSpec = Union[Mapping[str, Any], Sequence[Mapping[str, Any]], None]
SortSpec = Union[str, Sequence[str], None]


@dataclass
class ColumnPredicate:
    """A WHERE clause with its parameters.

    Attributes:
        clause: SQL boolean expression over alias ``e``
        params: Positional parameters for the clause
        columns: Slot columns (``v_i``) the clause reads
        names: Attribute names that resolved to a column
        unknown: Attribute names with no column (matching nothing)
    """

    clause: str = MATCH_ALL
    params: List[Any] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)
    names: List[str] = field(default_factory=list)
    unknown: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SortKey:
    """One ORDER BY term."""

    column: str
    descending: bool
    name: str

    def sql(self) -> str:
        return f'e."{self.column}" {"DESC" if self.descending else "ASC"}'


def _numeric_twin(value: Any) -> Any:
    """The same number in its other encoding (2 and 2.0), or None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, int) and abs(value) < 2**53:
        return float(value)
    return None


def _with_twins(items: List[Any]) -> List[Any]:
    result: List[Any] = []
    for item in items:
        result.append(item)
        twin = _numeric_twin(item)
        if twin is not None:
            result.append(twin)
    return result


class _Builder:
    def __init__(self, attributes: Mapping[str, int], value_base_length: int) -> None:
        self.attributes = attributes
        self.value_base_length = value_base_length
        self.params: List[Any] = []
        self.columns: List[str] = []
        self.names: List[str] = []
        self.unknown: List[str] = []

    # Resolution

    def _resolve(self, name: str) -> Optional[Tuple[str, bool]]:
        """(column, is_reserved) for a name, or None if unknown."""
        if name in RESERVED:
            return RESERVED[name], True
        col = self.attributes.get(name)
        if col is None:
            return None
        column = f"v_{col}"
        if column not in self.columns:
            self.columns.append(column)
        if name not in self.names:
            self.names.append(name)
        return column, False

    def _encode(self, name: str, value: Any, reserved: bool) -> Any:
        if reserved:
            if isinstance(value, datetime):
                return epoch_millis(value)
            return value
        if is_ref(value):
            value = value[REF_KEY]
        encoded = serialize(value)
        truncated = truncate(encoded, self.value_base_length)
        if truncated is not encoded:
            logger.warning(
                "Filter value truncated to base length, matching by prefix",
                extra={"attribute": name, "length": len(encoded)},
            )
        return truncated

    # Tree

    def build(self, spec: FilterSpec) -> str:
        if spec is None:
            return MATCH_ALL
        if isinstance(spec, (list, tuple)):
            return self._join([self.build(item) for item in spec], "OR", MATCH_NONE)
        if not isinstance(spec, Mapping):
            raise TypeError(f"Filter must be a mapping or a list, got {type(spec).__name__}")
        return self._join(
            [self._entry(key, value, "") for key, value in spec.items()], "AND", MATCH_ALL
        )

    def _entry(self, key: str, value: Any, prefix: str) -> str:
        if key == "$or":
            items = value if isinstance(value, (list, tuple)) else [value]
            return self._join([self.build(item) for item in items], "OR", MATCH_NONE)
        if key == "$and":
            items = value if isinstance(value, (list, tuple)) else [value]
            return self._join([self.build(item) for item in items], "AND", MATCH_ALL)

        name = f"{prefix}.{key}" if prefix else key
        if name.startswith("$$") and name not in RESERVED:
            logger.warning("Ignored reserved filter name", extra={"attribute": name})
            return MATCH_ALL

        if isinstance(value, Entity) or (isinstance(value, Mapping) and not value):
            return self._condition(name, "$eq", value)
        if isinstance(value, Mapping) and not is_ref(value):
            operators = {k: v for k, v in value.items() if k.startswith("$")}
            nested = {k: v for k, v in value.items() if not k.startswith("$")}
            parts = [self._entry(k, v, name) for k, v in nested.items()]
            if operators:
                parts.extend(self._condition(name, op, operand) for op, operand in operators.items())
            return self._join(parts, "AND", MATCH_ALL)

        if isinstance(value, (list, tuple)):
            return self._condition(name, "$in", value)
        return self._condition(name, "$eq", value)

    def _condition(self, name: str, op: str, operand: Any) -> str:
        resolved = self._resolve(name)
        if resolved is None:
            logger.debug("Unknown filter name matches nothing", extra={"attribute": name})
            self.unknown.append(name)
            return MATCH_NONE
        column, reserved = resolved
        target = f'e."{column}"'

        if operand is None and op in ("$eq", "$ne"):
            return f"{target} IS NULL" if op == "$eq" else f"{target} IS NOT NULL"

        if not reserved and op in ("$eq", "$ne") and _numeric_twin(operand) is not None:
            op, operand = ("$in" if op == "$eq" else "$nin"), [operand]

        if op in _COMPARISONS:
            if op in ("$like", "$notLike"):
                self.params.append(str(operand))
            else:
                self.params.append(self._encode(name, operand, reserved))
            return f"{target} {_COMPARISONS[op]} ?"

        if op in _SETS:
            items = list(operand) if isinstance(operand, (list, tuple, set)) else [operand]
            if not reserved:
                items = _with_twins(items)
            if not items:
                return MATCH_NONE if _SETS[op] == "IN" else MATCH_ALL
            self.params.extend(self._encode(name, item, reserved) for item in items)
            placeholders = ", ".join("?" for _ in items)
            return f"{target} {_SETS[op]} ({placeholders})"

        if op in _RANGES:
            if not isinstance(operand, (list, tuple)) or len(operand) != 2:
                raise ValueError(f"{op} on '{name}' needs a [low, high] pair")
            low, high = operand
            self.params.append(self._encode(name, low, reserved))
            self.params.append(self._encode(name, high, reserved))
            return f"{target} {_RANGES[op]} ? AND ?"

        raise ValueError(f"Unknown filter operator '{op}' on '{name}'")

    @staticmethod
    def _join(parts: List[str], operator: str, empty: str) -> str:
        # empty is the identity of operator (1 = 1 for AND, 0 = 1 for OR)
        parts = [part for part in parts if part and part != empty]
        if not parts:
            return empty
        if len(parts) == 1:
            return parts[0]
        return "(" + f" {operator} ".join(f"({part})" for part in parts) + ")"


def parse_filter(
    spec: FilterSpec,
    attributes: Mapping[str, int],
    value_base_length: int = 255,
) -> ColumnPredicate:
    """Translate a filter spec into a WHERE clause.

    Args:
        spec: Filter mapping or list of mappings (OR)
        attributes: Name to slot map of the resource kind
        value_base_length: Truncation length of v_i columns

    Returns:
        ColumnPredicate over table alias ``e``

    Raises:
        ValueError: On an unknown operator or a malformed range
        ValueTooLarge: If a compared number does not fit the digit budget
    """
    builder = _Builder(attributes, value_base_length)
    clause = builder.build(spec)
    return ColumnPredicate(
        clause=clause,
        params=builder.params,
        columns=builder.columns,
        names=builder.names,
        unknown=builder.unknown,
    )


def normalize_sort(spec: SortSpec) -> List[str]:
    """Split a sort spec into individual names.

    >>> normalize_sort("-age, name")
    ['-age', 'name']
    >>> normalize_sort(["group", "-age,name"])
    ['group', '-age', 'name']
    """
    if not spec:
        return []
    items = [spec] if isinstance(spec, str) else list(spec)
    names: List[str] = []
    for item in items:
        names.extend(part.strip() for part in str(item).split(",") if part.strip())
    return names


def parse_sort(spec: SortSpec, attributes: Mapping[str, int]) -> List[SortKey]:
    """Resolve a sort spec into ORDER BY keys.

    Unresolvable names are dropped with a warning; the remaining keys
    keep their relative order.
    """
    keys: List[SortKey] = []
    for item in normalize_sort(spec):
        descending = item.startswith("-")
        name = item[1:] if descending else item
        if name in RESERVED:
            column = RESERVED[name]
        elif name in attributes:
            column = f"v_{attributes[name]}"
        else:
            logger.warning("Dropped unknown sort name", extra={"attribute": name})
            continue
        keys.append(SortKey(column=column, descending=descending, name=name))
    return keys


def order_by(keys: Sequence[SortKey]) -> str:
    """ORDER BY body, with the row id as final tie breaker."""
    terms = [key.sql() for key in keys]
    if not any(key.column == "id" for key in keys):
        terms.append('e."id" ASC')
    return ", ".join(terms)


def sort_columns(keys: Sequence[SortKey]) -> List[str]:
    """Slot columns used by sort keys, for usage tracking."""
    return [key.column for key in keys if key.column.startswith("v_")]


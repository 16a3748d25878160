"""
Logical value types for EavDB.

Every value written to a v_i column carries one of these tags in its
companion t_i column. The tag decides how the stored string is decoded.

Invariants:
    - Tags are stored as integers and never renumbered
    - type_of() is total: every writable value maps to exactly one tag
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import IntEnum
from typing import Any, Dict, Optional

# Meta fields injected into every entity returned by the driver
ID_KEY = "id"
NUM_KEY = "$$num"
AT_KEY = "$$at"
AS_KEY = "$$as"
META_PREFIX = "$$"
REF_KEY = "$ref"


class DataType(IntEnum):
    """Type tag stored in the t_i column."""

    NULL = 0
    BOOLEAN = 1
    STRING = 2
    NUMBER = 3
    DATE = 4
    OBJECT = 5
    REF = 6
    ENTITY = 7
    ID = 8


class EntityId(str):
    """External-facing identifier of an entity.

    Behaves like ``str``; the subclass only keeps the ID tag when the
    id of one entity is stored as an attribute of another.
    """

    __slots__ = ()


class Entity(Dict[str, Any]):
    """A logical entity: its attributes plus meta fields.

    Meta fields:
        id: External id (cid)
        $$num: Internal numeric row id
        $$at: Last update time (aware UTC datetime)
        $$as: Resource name the entity belongs to

    Example:
        >>> user = await driver.one("User", "u1")
        >>> user.id, user["name"], user.resource_name
        ('u1', 'alice', 'User')
    """

    @property
    def id(self) -> Optional[str]:
        return self.get(ID_KEY)

    @property
    def num(self) -> Optional[int]:
        return self.get(NUM_KEY)

    @property
    def updated_at(self) -> Optional[datetime]:
        return self.get(AT_KEY)

    @property
    def resource_name(self) -> Optional[str]:
        return self.get(AS_KEY)

    def ref(self) -> str:
        """Reference string ``Kind#id`` of this entity."""
        return f"{self.resource_name}#{self.id}"

    def attributes(self) -> Dict[str, Any]:
        """Attributes without meta fields."""
        return {
            key: value
            for key, value in self.items()
            if key != ID_KEY and not key.startswith(META_PREFIX)
        }


def is_ref(value: Any) -> bool:
    """Whether value is a reference object such as ``{"$ref": "User#1"}``."""
    return (
        isinstance(value, dict)
        and not isinstance(value, Entity)
        and len(value) == 1
        and isinstance(value.get(REF_KEY), str)
    )


def type_of(value: Any) -> DataType:
    """Detect the logical type of a native value.

    Args:
        value: Native value

    Returns:
        DataType tag

    Raises:
        TypeError: If the value has no storable representation
    """
    if value is None:
        return DataType.NULL
    if isinstance(value, bool):
        return DataType.BOOLEAN
    if isinstance(value, EntityId):
        return DataType.ID
    if isinstance(value, str):
        return DataType.STRING
    if isinstance(value, (int, float, Decimal)):
        return DataType.NUMBER
    if isinstance(value, datetime):
        return DataType.DATE
    if isinstance(value, Entity):
        return DataType.ENTITY
    if is_ref(value):
        return DataType.REF
    if isinstance(value, (dict, list, tuple, bytes, bytearray)):
        return DataType.OBJECT
    raise TypeError(f"Unsupported attribute value type: {type(value).__name__}")

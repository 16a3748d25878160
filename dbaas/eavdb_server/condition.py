"""
List conditions and list results.

A list call takes a condition:

    {"filter": {...}, "sort": ["-age", "name"], "page": {"number": 1, "size": 25}}

and returns a collection:

    {"entities": [...], "meta": {"offset": 0, "limit": 25, "total": 3, "length": 3}}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field, field_validator

from .serial import Entity

DEFAULT_PAGE_SIZE = 25


class PageSpec(BaseModel):
    """Page number (1-based) and size."""

    number: int = Field(default=1, ge=1, description="1-based page number")
    size: int = Field(default=DEFAULT_PAGE_SIZE, ge=0, description="Entities per page")

    def to_offset_limit(self) -> Tuple[int, int]:
        return (self.number - 1) * self.size, self.size


class ListCondition(BaseModel):
    """Filter, sort and page of a list call."""

    filter: Optional[Union[Dict[str, Any], List[Dict[str, Any]]]] = Field(
        default=None, description="Filter spec"
    )
    sort: Optional[Union[str, List[str]]] = Field(default=None, description="Sort names, '-' for descending")
    page: PageSpec = Field(default_factory=PageSpec)

    @field_validator("sort", mode="before")
    @classmethod
    def _sort_as_list(cls, value: Any) -> Any:
        if isinstance(value, tuple):
            return list(value)
        return value

    @classmethod
    def of(cls, condition: Union[ListCondition, Mapping[str, Any], None]) -> ListCondition:
        """Coerce a mapping (or None) into a ListCondition."""
        if condition is None:
            return cls()
        if isinstance(condition, cls):
            return condition
        return cls.model_validate(dict(condition))


@dataclass(frozen=True)
class ListMeta:
    """Position of a page within the full result."""

    offset: int
    limit: int
    total: int
    length: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "offset": self.offset,
            "limit": self.limit,
            "total": self.total,
            "length": self.length,
        }


@dataclass
class EntityCollection:
    """One page of entities with its meta."""

    entities: List[Entity] = field(default_factory=list)
    meta: ListMeta = field(default_factory=lambda: ListMeta(0, DEFAULT_PAGE_SIZE, 0, 0))

    @classmethod
    def empty(cls, offset: int, limit: int) -> EntityCollection:
        return cls(entities=[], meta=ListMeta(offset=offset, limit=limit, total=0, length=0))

    def __len__(self) -> int:
        return len(self.entities)

    def __iter__(self):
        return iter(self.entities)

    def ids(self) -> Sequence[str]:
        return [entity.id for entity in self.entities]

    def to_dict(self) -> Dict[str, Any]:
        return {"entities": [dict(entity) for entity in self.entities], "meta": self.meta.to_dict()}

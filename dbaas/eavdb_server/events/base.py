"""
Base protocol and types for cross-process cache invalidation.

Every process sharing a database keeps its own entity caches. When one
process mutates an entity it publishes an invalidation event; every
other process evicts the matching cache entries.

Wire shape:
    {"event": "INVALIDATE", "resource": "User", "data": {"id": "u1"}}
    {"event": "INVALIDATE_BULK", "resource": "User", "data": {"ids": ["u1", "u2"]}}

An INVALIDATE_BULK without ids evicts every cached entity of the resource.

Invariants:
    - Events carry ids only, never entity data
    - Handling an event twice is harmless
    - A lost event costs at most one cache TTL of staleness

How to change safely:
    - Protocol changes require updating all implementations
    - Keep the wire shape readable by older processes
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class EventBusError(Exception):
    """Base exception for event bus operations."""
    pass


class EventBusConnectionError(EventBusError):
    """Event bus is not connected."""
    pass


class EventSerializationError(EventBusError):
    """Failed to serialize/deserialize an event."""
    pass


class EventKind(str, Enum):
    """Kinds of invalidation events."""

    INVALIDATE = "INVALIDATE"
    INVALIDATE_BULK = "INVALIDATE_BULK"


@dataclass(frozen=True)
class InvalidationEvent:
    """Cache invalidation for one or more entities of a resource.

    Attributes:
        event: Event kind
        resource: Resource name
        ids: Entity ids (one for INVALIDATE, any number for INVALIDATE_BULK)
        origin: Id of the publishing driver (not part of the wire data)

    Example:
        >>> InvalidationEvent.invalidate("User", "u1").to_dict()
        {'event': 'INVALIDATE', 'resource': 'User', 'data': {'id': 'u1'}}
    """

    event: EventKind
    resource: str
    ids: List[str] = field(default_factory=list)
    origin: Optional[str] = None

    @classmethod
    def invalidate(cls, resource: str, entity_id: str, origin: Optional[str] = None) -> InvalidationEvent:
        return cls(EventKind.INVALIDATE, resource, [entity_id], origin)

    @classmethod
    def invalidate_bulk(
        cls, resource: str, ids: Optional[List[str]] = None, origin: Optional[str] = None
    ) -> InvalidationEvent:
        return cls(EventKind.INVALIDATE_BULK, resource, list(ids or []), origin)

    @property
    def is_bulk(self) -> bool:
        return self.event == EventKind.INVALIDATE_BULK

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the wire dictionary."""
        if self.is_bulk:
            data: Dict[str, Any] = {"ids": list(self.ids)}
        else:
            data = {"id": self.ids[0] if self.ids else None}
        result: Dict[str, Any] = {"event": self.event.value, "resource": self.resource, "data": data}
        if self.origin:
            result["origin"] = self.origin
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> InvalidationEvent:
        """Create from the wire dictionary.

        Raises:
            EventSerializationError: If the message is malformed
        """
        try:
            event = EventKind(data["event"])
            resource = data["resource"]
            payload = data.get("data") or {}
        except (KeyError, TypeError, ValueError) as e:
            raise EventSerializationError(f"Invalid invalidation event: {data!r}") from e

        if event == EventKind.INVALIDATE_BULK:
            ids = [str(i) for i in payload.get("ids") or []]
        else:
            if payload.get("id") is None:
                raise EventSerializationError(f"INVALIDATE without id: {data!r}")
            ids = [str(payload["id"])]
        return cls(event=event, resource=resource, ids=ids, origin=data.get("origin"))

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_bytes(cls, value: bytes) -> InvalidationEvent:
        try:
            return cls.from_dict(json.loads(value.decode("utf-8")))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise EventSerializationError(f"Failed to parse event as JSON: {e}") from e


EventHandler = Callable[[InvalidationEvent], Awaitable[None]]


@runtime_checkable
class EventBus(Protocol):
    """Protocol for invalidation event transports.

    Delivery contract:
        - publish() delivers to every subscriber, including the publisher;
          drivers skip events carrying their own origin
        - At-most-once delivery is enough (see module invariants)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the transport."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the transport and drop all subscriptions."""
        ...

    @abstractmethod
    async def publish(self, event: InvalidationEvent) -> None:
        """Publish an event to every subscriber.

        Raises:
            EventBusConnectionError: If not connected
        """
        ...

    @abstractmethod
    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register a handler.

        Returns:
            A callable removing the subscription
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected."""
        ...

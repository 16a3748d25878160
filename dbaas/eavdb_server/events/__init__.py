"""
Cross-process cache invalidation events for EavDB.

This module provides the invalidation event contract and transports:
- InvalidationEvent: the {event, resource, data} message
- EventBus: protocol every transport implements
- InMemoryEventBus: in-process transport (tests, single host)

Invariants:
    - Events only evict caches; they never carry entity data
    - Drivers ignore events they published themselves

How to change safely:
    - New transports must implement the EventBus protocol
    - Keep from_dict() accepting messages of older processes
"""

from .base import (
    EventBus,
    EventBusConnectionError,
    EventBusError,
    EventHandler,
    EventKind,
    EventSerializationError,
    InvalidationEvent,
)
from .memory import InMemoryEventBus

__all__ = [
    # Protocol and types
    "EventBus",
    "EventHandler",
    "EventKind",
    "InvalidationEvent",
    "EventBusError",
    "EventBusConnectionError",
    "EventSerializationError",
    # Implementations
    "InMemoryEventBus",
]

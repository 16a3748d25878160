"""
In-memory invalidation event bus.

Connects several drivers living in one process (tests, single host
deployments running one driver per database). Every published event is
handed to every subscriber in subscription order.

Invariants:
    - All data is lost on process exit
    - A failing handler never stops delivery to the others
"""

from __future__ import annotations

import logging
from typing import Callable, List

from .base import EventBusConnectionError, EventHandler, InvalidationEvent

logger = logging.getLogger(__name__)


class InMemoryEventBus:
    """In-memory implementation of EventBus.

    Example:
        >>> bus = InMemoryEventBus()
        >>> await bus.connect()
        >>> unsubscribe = bus.subscribe(driver.handle_event)
        >>> await bus.publish(InvalidationEvent.invalidate("User", "u1"))
    """

    def __init__(self) -> None:
        self._connected = False
        self._handlers: List[EventHandler] = []
        self.published: List[InvalidationEvent] = []

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryEventBus connected")

    async def close(self) -> None:
        """Close and drop all subscriptions."""
        self._connected = False
        self._handlers.clear()
        logger.debug("InMemoryEventBus closed")

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def publish(self, event: InvalidationEvent) -> None:
        """Deliver an event to every subscriber.

        Raises:
            EventBusConnectionError: If not connected
        """
        if not self._connected:
            raise EventBusConnectionError("Not connected")

        self.published.append(event)
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    "Invalidation handler failed",
                    extra={"event": event.event.value, "resource": event.resource, "error": str(e)},
                    exc_info=True,
                )

    # Testing helpers

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def clear(self) -> None:
        """Forget published events (testing helper)."""
        self.published.clear()

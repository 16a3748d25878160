"""
EavDB driver: the CRUD/list/drop facade over the EAV store.

This module orchestrates the store components per resource kind:

    create/update
        ResourceRegistry.of_name -> AttributeRegistry.cols_for
        -> EntityTable.values_with_cols -> insert/update -> invalidate
    list
        AttributeRegistry.columns -> EntityTable.for_list
        -> UsageTracker.push -> EntityTable.as_entity

Models (attribute registry + entity table) are built lazily once per
resource kind and process. Building takes the named lock
``{prefix}/schema`` so two processes never create tables concurrently.

Consistency:
    - A mutation evicts the cached row in this process and publishes an
      invalidation event for the other processes
    - Concurrent updates of the same id interleave at the column level
      (last write wins per column) unless ``serialize_updates`` is on,
      which orders them within this process only

Invariants:
    - Reads on an unknown resource never create it
    - drop() removes rows, overflow and slot assignments of one kind only
    - close() flushes usage counters

How to change safely:
    - Keep every mutation path invalidating before and after the write
    - New operations must resolve models through _models_for()
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .condition import EntityCollection, ListCondition, ListMeta
from .config import DriverConfig
from .errors import EntityNotFound, ResourceNotFound
from .events import EventBus, EventBusError, InvalidationEvent
from .serial import ID_KEY, Entity, root_of
from .store import (
    AttributeRegistry,
    Database,
    EntityRow,
    EntityTable,
    LockManager,
    Resource,
    ResourceRegistry,
    SequentialWorker,
    TTLCache,
    UsageTracker,
    parse_resource_name,
    table_prefix,
)
from .store.cache import SingleFlight
from .store.filters import sort_columns
from .store.usage import FILTER, ORDER_COLS, WHERE_COLS

logger = logging.getLogger(__name__)


@dataclass
class ResourceModels:
    """Storage models of one resource kind."""

    resource: Resource
    prefix: str
    attributes: AttributeRegistry
    entities: EntityTable


class EavDriver:
    """Schema-less entity store on SQLite.

    Example:
        >>> async with EavDriver(DriverConfig.for_path("/tmp/eav.sqlite3")) as driver:
        ...     user = await driver.create("User", {"name": "alice", "bar": {"n": 1}})
        ...     found = await driver.list("User", {"filter": {"bar": {"n": 1}}})
        ...     await driver.update("User", user.id, {"name": "bob"})
    """

    def __init__(
        self,
        config: Optional[DriverConfig] = None,
        event_bus: Optional[EventBus] = None,
        origin: Optional[str] = None,
    ) -> None:
        """Initialize the driver. Nothing touches the database until connect().

        Args:
            config: Driver configuration (loaded from the environment if omitted)
            event_bus: Optional transport for cross-process invalidation
            origin: Id of this driver in published events
        """
        self.config = config or DriverConfig.from_env()
        self.origin = origin or uuid.uuid4().hex
        self.db = Database(self.config.storage)
        self.locks = LockManager(self.db, self.config.lock)
        self.usage = UsageTracker(self.db, enabled=self.config.usage.enabled)
        self.registry = ResourceRegistry(
            self.db,
            TTLCache(
                max_size=self.config.cache.resource_max,
                ttl_seconds=self.config.cache.resource_ttl_seconds,
            ),
        )
        self._event_bus = event_bus
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._models: Dict[str, ResourceModels] = {}
        self._building: SingleFlight[str, ResourceModels] = SingleFlight()
        self._connecting: SingleFlight[str, None] = SingleFlight()
        self._connected = False
        self._flush_task: Optional[asyncio.Task] = None
        self._sequential: Optional[SequentialWorker] = None
        if self.config.update.serialize_updates:
            self._sequential = SequentialWorker(timeout=self.config.update.sequential_timeout_seconds)

    # Lifecycle

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Create the shared tables and start background work.

        Safe to call more than once; concurrent calls share one connect.
        """
        if self._connected:
            return
        await self._connecting.do("connect", self._connect)

    async def _connect(self) -> None:
        await self.db.initialize()
        if self.config.lock.unlock_on_start:
            await self.locks.unlock_all()

        if self._event_bus is not None:
            if not self._event_bus.is_connected:
                await self._event_bus.connect()
            self._unsubscribe = self._event_bus.subscribe(self.handle_event)

        if self.usage.enabled:
            self._flush_task = asyncio.create_task(
                self.usage.run_periodic(self.config.usage.flush_interval_seconds)
            )

        self._connected = True
        logger.info(
            "EavDB driver connected",
            extra={"path": str(self.db.path), "origin": self.origin},
        )

    async def close(self) -> None:
        """Flush usage counters and stop background work."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        if self._connected:
            await self.usage.flush()

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        self._models.clear()
        self._connected = False
        logger.info("EavDB driver closed", extra={"origin": self.origin})

    async def __aenter__(self) -> EavDriver:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # Models

    async def _models_for(self, name: str, create: bool = False) -> ResourceModels:
        """Models of a resource kind, building them on first use.

        Args:
            name: Resource name
            create: Create the resource if it does not exist

        Raises:
            ResourceNotFound: If the resource does not exist and create is False
        """
        await self.connect()
        models = self._models.get(name)
        if models is not None:
            return models

        if create:
            resource = await self.registry.of_name(name)
        else:
            resource = await self.registry.find(name)
            if resource is None:
                raise ResourceNotFound(name)

        return await self._building.do(name, lambda: self._build_models(resource))

    async def _build_models(self, resource: Resource) -> ResourceModels:
        prefix = table_prefix(resource.name)
        model_config = self.config.model
        cache_config = self.config.cache

        attributes = AttributeRegistry(
            self.db,
            self.locks,
            resource.name,
            prefix,
            model_config.column_count,
            ttl_seconds=cache_config.attribute_ttl_seconds,
        )
        entities = EntityTable(
            self.db,
            resource.name,
            prefix,
            model_config.column_count,
            model_config.value_base_length,
            cache=TTLCache(
                max_size=cache_config.entity_max,
                ttl_seconds=cache_config.entity_ttl_seconds,
            ),
        )
        index_columns = await self.usage.top_columns(resource.name, model_config.index_top_k)

        async def create_schema() -> None:
            await attributes.create_schema()
            await entities.create_schema(index_columns)

        await self.locks.lock_while(f"{prefix}/schema", create_schema)

        models = ResourceModels(resource=resource, prefix=prefix, attributes=attributes, entities=entities)
        self._models[resource.name] = models
        return models

    def _forget(self, name: str) -> None:
        models = self._models.pop(name, None)
        if models is not None:
            models.entities.clear_cache()
            models.attributes.invalidate()
        self.registry.clear_cache_for_name(name)

    async def _project(self, models: ResourceModels, rows: List[EntityRow]) -> List[Entity]:
        attributes = await models.attributes.all_of()
        if any(models.entities.has_unknown_columns(row, attributes) for row in rows):
            # Slots assigned by another process since the last cache fill
            models.attributes.invalidate()
            attributes = await models.attributes.all_of()
        return [models.entities.as_entity(row, attributes) for row in rows]

    @staticmethod
    def _attribute_values(values: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            key: value
            for key, value in values.items()
            if key != ID_KEY and not key.startswith("$$")
        }

    async def _publish(self, event: InvalidationEvent) -> None:
        if self._event_bus is None or not self._event_bus.is_connected:
            return
        try:
            await self._event_bus.publish(event)
        except EventBusError as e:
            logger.warning(
                "Failed to publish invalidation",
                extra={"event": event.event.value, "resource": event.resource, "error": str(e)},
            )

    # Operations

    async def one(self, kind: str, entity_id: Any) -> Optional[Entity]:
        """Read one entity.

        Args:
            kind: Resource name
            entity_id: External id

        Returns:
            The entity, or None if it (or the resource) does not exist
        """
        try:
            models = await self._models_for(kind)
        except ResourceNotFound:
            return None
        row = await models.entities.for_one(str(entity_id))
        if row is None:
            return None
        return (await self._project(models, [row]))[0]

    async def list(
        self,
        kind: str,
        condition: Union[ListCondition, Mapping[str, Any], None] = None,
    ) -> EntityCollection:
        """List entities matching a filter, sorted and paged.

        Args:
            kind: Resource name
            condition: {"filter": ..., "sort": ..., "page": {"number", "size"}}

        Returns:
            EntityCollection with entities and meta {offset, limit, total, length}
        """
        condition = ListCondition.of(condition)
        offset, limit = condition.page.to_offset_limit()
        try:
            models = await self._models_for(kind)
        except ResourceNotFound:
            return EntityCollection.empty(offset, limit)

        columns = await models.attributes.columns()
        result = await models.entities.for_list(columns, condition.filter, condition.sort, limit, offset)
        if result.predicate.unknown:
            # A name assigned by another process may be missing from the cache
            models.attributes.invalidate()
            fresh = await models.attributes.columns()
            if any(name in fresh for name in result.predicate.unknown):
                result = await models.entities.for_list(
                    fresh, condition.filter, condition.sort, limit, offset
                )

        self.usage.push(kind, WHERE_COLS, result.predicate.columns)
        self.usage.push(kind, ORDER_COLS, sort_columns(result.sort))
        self.usage.push(kind, FILTER, result.predicate.names)

        entities = await self._project(models, result.rows)
        return EntityCollection(
            entities=entities,
            meta=ListMeta(offset=offset, limit=limit, total=result.total, length=len(entities)),
        )

    async def create(self, kind: str, attributes: Mapping[str, Any]) -> Entity:
        """Create an entity.

        Args:
            kind: Resource name (created on first use)
            attributes: Attribute values; ``id`` is used as external id
                and generated when absent

        Returns:
            The stored entity

        Raises:
            EntityAlreadyExists: If the id is already used
            TooManyColumns: If the kind runs out of column slots
            ValueTooLarge: If a number does not fit the digit budget
        """
        entity_id = attributes.get(ID_KEY)
        cid = uuid.uuid4().hex if entity_id is None else str(entity_id)
        models = await self._models_for(kind, create=True)

        cols = await models.attributes.cols_for(self._attribute_values(attributes))
        await models.entities.insert(cid, models.entities.values_with_cols(cols))
        logger.debug("Created entity", extra={"resource": kind, "id": cid})

        row = await models.entities.for_one(cid)
        if row is None:
            raise EntityNotFound(kind, cid)
        return (await self._project(models, [row]))[0]

    async def update(self, kind: str, entity_id: Any, attributes: Mapping[str, Any]) -> Entity:
        """Update an entity.

        Every top-level key given replaces that whole attribute, nested
        and array parts included. Keys not given are left untouched.

        Returns:
            The updated entity

        Raises:
            EntityNotFound: If the entity (or the resource) does not exist
        """
        cid = str(entity_id)
        try:
            models = await self._models_for(kind)
        except ResourceNotFound:
            raise EntityNotFound(kind, cid) from None

        values = self._attribute_values(attributes)
        if self._sequential is not None:
            return await self._sequential.push((kind, cid), lambda: self._update(models, cid, values))
        return await self._update(models, cid, values)

    async def _update(self, models: ResourceModels, cid: str, values: Dict[str, Any]) -> Entity:
        kind = models.resource.name
        if await models.entities.for_one(cid) is None:
            raise EntityNotFound(kind, cid)

        cols = await models.attributes.cols_for(values)
        written = {cv.name for cv in cols}
        clear = [
            attribute.col
            for attribute in await models.attributes.all_of()
            if attribute.name not in written and root_of(attribute.name) in values
        ]
        updated = await models.entities.update(cid, models.entities.values_with_cols(cols, clear))
        if not updated:
            raise EntityNotFound(kind, cid)
        await self._publish(InvalidationEvent.invalidate(kind, cid, self.origin))
        logger.debug("Updated entity", extra={"resource": kind, "id": cid, "cleared": clear})

        row = await models.entities.for_one(cid)
        if row is None:
            raise EntityNotFound(kind, cid)
        return (await self._project(models, [row]))[0]

    async def destroy(self, kind: str, entity_id: Any) -> int:
        """Delete an entity.

        Returns:
            1 if the entity was deleted, 0 if it did not exist
        """
        cid = str(entity_id)
        try:
            models = await self._models_for(kind)
        except ResourceNotFound:
            return 0
        deleted = await models.entities.destroy(cid)
        if deleted:
            await self._publish(InvalidationEvent.invalidate(kind, cid, self.origin))
            logger.debug("Destroyed entity", extra={"resource": kind, "id": cid})
        return deleted

    async def drop(self, kind: str) -> None:
        """Delete every entity and slot assignment of a resource kind.

        Unknown kinds are ignored.
        """
        try:
            models = await self._models_for(kind)
        except ResourceNotFound:
            logger.debug("Drop of unknown resource ignored", extra={"resource": kind})
            return

        async def drop_tables() -> None:
            await models.entities.drop()
            await models.attributes.drop()

        await self.locks.lock_while(f"{models.prefix}/schema", drop_tables)
        await self.registry.destroy(kind)
        await self.usage.clear(kind)
        self._forget(kind)
        await self._publish(InvalidationEvent.invalidate_bulk(kind, origin=self.origin))
        logger.info("Dropped resource", extra={"resource": kind})

    async def resources(self) -> List[Dict[str, Optional[str]]]:
        """Every resource as {name, domain}."""
        await self.connect()
        return [parse_resource_name(resource.name).to_dict() for resource in await self.registry.all()]

    async def unlock_all(self) -> int:
        """Release every named lock (stale locks of a crashed run)."""
        await self.connect()
        return await self.locks.unlock_all()

    async def usage_of(self, kind: str) -> Dict[str, Dict[str, int]]:
        """Flushed column usage counters of a resource kind."""
        await self.connect()
        await self.usage.flush()
        return await self.usage.counts_of(kind)

    # Invalidation

    async def handle_event(self, event: InvalidationEvent) -> None:
        """Evict caches named by an invalidation event of another process."""
        if event.origin is not None and event.origin == self.origin:
            return

        if event.is_bulk and not event.ids:
            self._forget(event.resource)
            logger.debug("Forgot resource models", extra={"resource": event.resource})
            return

        models = self._models.get(event.resource)
        if models is None:
            return
        for entity_id in event.ids:
            models.entities.invalidate(entity_id)

    async def handle_message(self, message: Mapping[str, Any]) -> None:
        """Handle a raw {event, resource, data} message."""
        await self.handle_event(InvalidationEvent.from_dict(dict(message)))

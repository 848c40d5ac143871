"""
Entity cache and lifecycle tracker.

The cache holds, per entity category, the buckets of entities loaded from the
store and the (entity, owner) pairs of entities created since the last flush.
Editing code reports changes through mark_modified, change_owner and
mark_deleted; the store reads the resulting states when it flushes and hands
the outcome back through accept_changes.
"""
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple
from uuid import UUID
import logging

from diagramstore.ecs.enregistry import EntityTypeRegistry
from diagramstore.ecs.entity import Entity, EntityBucket, ItemState, ShapeConnection
from diagramstore.ecs.entity_type import EntityCategory
from diagramstore.ecs.exceptions import EntityDeleted, NotFound


class LoadedEntities:
    """Buckets of one category keyed by persistent identifier, in load order."""

    def __init__(self, category: EntityCategory):
        self.category = category
        self._buckets: Dict[int, EntityBucket] = {}

    def add(self, bucket: EntityBucket) -> None:
        self._buckets[bucket.entity.id] = bucket

    def get(self, entity_id: int) -> Optional[EntityBucket]:
        return self._buckets.get(entity_id)

    def remove(self, entity_id: int) -> None:
        self._buckets.pop(entity_id, None)

    def contains(self, entity_id: Optional[int]) -> bool:
        return entity_id in self._buckets

    def buckets(self, state: Optional[ItemState] = None) -> List[EntityBucket]:
        if state is None:
            return list(self._buckets.values())
        return [b for b in self._buckets.values() if b.state == state]

    def __iter__(self) -> Iterator[EntityBucket]:
        return iter(list(self._buckets.values()))

    def __len__(self) -> int:
        return len(self._buckets)


class NewEntities:
    """(entity, owner) pairs of one category waiting for their first insert."""

    def __init__(self, category: EntityCategory):
        self.category = category
        self._pairs: Dict[UUID, Tuple[Entity, Optional[Entity]]] = {}

    def add(self, entity: Entity, owner: Optional[Entity]) -> None:
        self._pairs[entity.live_id] = (entity, owner)

    def remove(self, entity: Entity) -> None:
        self._pairs.pop(entity.live_id, None)

    def contains(self, entity: Entity) -> bool:
        return entity.live_id in self._pairs

    def owner_of(self, entity: Entity) -> Optional[Entity]:
        return self._pairs[entity.live_id][1]

    def __iter__(self) -> Iterator[Tuple[Entity, Optional[Entity]]]:
        return iter(list(self._pairs.values()))

    def __len__(self) -> int:
        return len(self._pairs)


class StoreCache:
    """
    Lifecycle tracker for everything one project holds in memory.

    Attributes:
        registry: Entity types the tracked entities belong to
        project_name: Name of the project row
        project_id: Identifier of the project row, None until it was stored
    """

    def __init__(self, registry: EntityTypeRegistry, project_name: str, project_id: Optional[int] = None):
        self.registry = registry
        self.project_name = project_name
        self.project_id = project_id
        self._loaded: Dict[EntityCategory, LoadedEntities] = {c: LoadedEntities(c) for c in EntityCategory}
        self._new: Dict[EntityCategory, NewEntities] = {c: NewEntities(c) for c in EntityCategory}
        self._by_live_id: Dict[UUID, EntityBucket] = {}
        self._loaded_connections: Set[ShapeConnection] = set()
        self._new_connections: List[ShapeConnection] = []
        self._deleted_connections: List[ShapeConnection] = []
        self._logger = logging.getLogger("StoreCache")

    ############################
    # Lookups
    ############################

    def loaded(self, category: EntityCategory) -> LoadedEntities:
        return self._loaded[category]

    def new(self, category: EntityCategory) -> NewEntities:
        return self._new[category]

    def get_bucket(self, entity: Entity) -> EntityBucket:
        bucket = self._by_live_id.get(entity.live_id)
        if bucket is None:
            raise NotFound(f"{entity!r} is not a loaded entity of this cache")
        return bucket

    def is_new(self, entity: Entity) -> bool:
        return self._new[entity.category].contains(entity)

    def contains(self, entity: Entity) -> bool:
        return entity.live_id in self._by_live_id or self.is_new(entity)

    def get_entity(self, category: EntityCategory, entity_id: int) -> Entity:
        bucket = self._loaded[category].get(entity_id)
        if bucket is None:
            raise NotFound(f"No {category.value} with identifier {entity_id} is loaded")
        return bucket.entity

    def get_shape(self, shape_id: int) -> Entity:
        return self.get_entity(EntityCategory.SHAPE, shape_id)

    def owner_of(self, entity: Entity) -> Optional[Entity]:
        if self.is_new(entity):
            return self._new[entity.category].owner_of(entity)
        return self.get_bucket(entity).owner

    def shapes_owned_by(self, owner: Entity) -> List[Entity]:
        """Loaded and new shapes whose owner is `owner`, deleted ones excluded."""
        shapes = [b.entity for b in self._loaded[EntityCategory.SHAPE]
                  if b.owner == owner and b.state != ItemState.DELETED]
        shapes.extend(e for e, o in self._new[EntityCategory.SHAPE] if o == owner)
        return shapes

    def tracked_entities(self) -> Iterator[Entity]:
        for category in EntityCategory:
            for bucket in self._loaded[category]:
                yield bucket.entity
            for entity, _ in self._new[category]:
                yield entity

    ############################
    # Lifecycle transitions
    ############################

    def add_new(self, entity: Entity, owner: Optional[Entity] = None) -> None:
        """Track a freshly created entity. It is inserted by the next flush."""
        if entity.id is not None:
            raise ValueError(f"{entity!r} already has an identifier and cannot be added as new")
        if self.contains(entity):
            raise ValueError(f"{entity!r} is already tracked")
        entity.owner = owner
        self._new[entity.category].add(entity, owner)
        self._logger.debug(f"Added new {entity!r} owned by {owner!r}")

    def add_loaded(self, bucket: EntityBucket) -> None:
        """Track an entity read from the store."""
        if bucket.entity.id is None:
            raise ValueError(f"Loaded entity {bucket.entity!r} has no identifier")
        bucket.entity.owner = bucket.owner
        self._loaded[bucket.entity.category].add(bucket)
        self._by_live_id[bucket.entity.live_id] = bucket

    def mark_modified(self, entity: Entity) -> None:
        if self.is_new(entity):
            return
        bucket = self.get_bucket(entity)
        if bucket.state == ItemState.DELETED:
            raise EntityDeleted(f"{entity!r} is deleted and cannot be modified")
        if bucket.state == ItemState.ORIGINAL:
            bucket.state = ItemState.MODIFIED

    def change_owner(self, entity: Entity, owner: Optional[Entity]) -> None:
        if self.is_new(entity):
            self._new[entity.category].add(entity, owner)
            entity.owner = owner
            return
        bucket = self.get_bucket(entity)
        if bucket.state == ItemState.DELETED:
            raise EntityDeleted(f"{entity!r} is deleted and cannot change its owner")
        bucket.owner = owner
        bucket.state = ItemState.OWNER_CHANGED
        entity.owner = owner

    def mark_deleted(self, entity: Entity) -> None:
        """
        Delete an entity. A new entity is simply forgotten since it was never
        stored; a loaded one is deleted by the next flush.
        """
        if self.is_new(entity):
            self._new[entity.category].remove(entity)
            self._logger.debug(f"Dropped new {entity!r}")
            return
        bucket = self.get_bucket(entity)
        bucket.state = ItemState.DELETED

    ############################
    # Shape connections
    ############################

    @property
    def loaded_connections(self) -> List[ShapeConnection]:
        return list(self._loaded_connections)

    @property
    def new_connections(self) -> List[ShapeConnection]:
        return list(self._new_connections)

    @property
    def deleted_connections(self) -> List[ShapeConnection]:
        return list(self._deleted_connections)

    def add_loaded_connection(self, connection: ShapeConnection) -> None:
        self._loaded_connections.add(connection)

    def add_shape_connection(self, connection: ShapeConnection) -> None:
        if connection in self._deleted_connections:
            self._deleted_connections.remove(connection)
        elif connection not in self._loaded_connections and connection not in self._new_connections:
            self._new_connections.append(connection)

    def remove_shape_connection(self, connection: ShapeConnection) -> None:
        if connection in self._new_connections:
            self._new_connections.remove(connection)
        elif connection in self._loaded_connections:
            if connection not in self._deleted_connections:
                self._deleted_connections.append(connection)
        else:
            raise NotFound(f"{connection!r} is not tracked")

    ############################
    # Flush outcome
    ############################

    def accept_changes(self) -> None:
        """
        Fold a committed flush into the cache: inserted entities become loaded
        originals, deleted buckets disappear and the remaining buckets are
        original again.
        """
        moved = purged = 0
        for category in EntityCategory:
            loaded = self._loaded[category]
            for bucket in loaded:
                if bucket.state == ItemState.DELETED:
                    loaded.remove(bucket.entity.id)
                    self._by_live_id.pop(bucket.entity.live_id, None)
                    purged += 1
                else:
                    bucket.state = ItemState.ORIGINAL
            new = self._new[category]
            for entity, owner in new:
                if entity.id is not None:
                    new.remove(entity)
                    self.add_loaded(EntityBucket(entity=entity, owner=owner, state=ItemState.ORIGINAL))
                    moved += 1
        for connection in self._deleted_connections:
            self._loaded_connections.discard(connection)
        self._loaded_connections.update(self._new_connections)
        self._deleted_connections.clear()
        self._new_connections.clear()
        self._logger.info(f"Accepted changes: {moved} inserted, {purged} deleted")

"""
Registry of entity types, keyed by full name.

Each store setup owns its own registry instance; there is no process-wide
registry.
"""
from typing import Dict, Iterator, List, Optional, Union
import logging

from diagramstore.ecs.entity_type import EntityCategory, EntityType, MappingKind, StyleKind
from diagramstore.ecs.exceptions import EntityTypeNotFound, SchemaConflict


class EntityTypeRegistry:
    """Holds the registered entity types in registration order."""

    def __init__(self) -> None:
        self._types: Dict[str, EntityType] = {}
        self._logger = logging.getLogger("EntityTypeRegistry")

    def register(self, entity_type: EntityType) -> EntityType:
        """
        Register an entity type.

        Raises:
            SchemaConflict: when a type with the same full name is registered
        """
        if entity_type.full_name in self._types:
            raise SchemaConflict(f"Entity type '{entity_type.full_name}' is already registered")
        self._types[entity_type.full_name] = entity_type
        self._logger.info(f"Registered entity type {entity_type.full_name} ({entity_type.category.value})")
        return entity_type

    def unregister(self, full_name: str) -> None:
        if self._types.pop(full_name, None) is None:
            raise EntityTypeNotFound(full_name)
        self._logger.info(f"Unregistered entity type {full_name}")

    def find_by_full_name(self, full_name: str) -> EntityType:
        entity_type = self._types.get(full_name)
        if entity_type is None:
            raise EntityTypeNotFound(full_name)
        return entity_type

    def get(self, full_name: str) -> Optional[EntityType]:
        return self._types.get(full_name)

    def all_types(self) -> List[EntityType]:
        return list(self._types.values())

    def types_of(self, category: EntityCategory,
                 kind: Optional[Union[StyleKind, MappingKind]] = None) -> List[EntityType]:
        """Registered types of a category, optionally narrowed to one kind."""
        return [
            t for t in self._types.values()
            if t.category == category and (kind is None or t.kind == kind)
        ]

    def __contains__(self, full_name: str) -> bool:
        return full_name in self._types

    def __iter__(self) -> Iterator[EntityType]:
        return iter(self.all_types())

    def __len__(self) -> int:
        return len(self._types)

"""
Entities, buckets and shape connections.

An Entity is identified in memory by its live_id. Its persistent identifier
stays None until the store inserts it and is assigned exactly once. Field
values cross the store boundary only through the reader/writer contract in
repository.py, so the store never needs to know an entity's Python layout.
"""
from enum import Enum
from typing import Any, Dict, List, Optional, TYPE_CHECKING
from uuid import UUID, uuid4
import logging

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from diagramstore.ecs.entity_type import (
    EntityCategory, EntityType, FieldDefinition, InnerObjectsDefinition,
    MappingKind, StyleKind,
)
from diagramstore.ecs.exceptions import SchemaConflict
from diagramstore.ecs.repository import read_field, write_field

if TYPE_CHECKING:
    from diagramstore.ecs.repository import RepositoryReader, RepositoryWriter

PROJECT_INFO_TYPE_NAME = "Repository.ProjectInfo"
PROJECT_SETTINGS_TYPE_NAME = "Core.Project"
SHAPE_TYPE_NAME = "Core.Shape"
MODEL_OBJECT_TYPE_NAME = "Core.ModelObject"
SHAPE_CONNECTION_TYPE_NAME = "Core.ShapeConnection"

# Diagram model objects exist from this repository version on.
DIAGRAM_MODEL_OBJECT_MIN_VERSION = 7

##############################
# 1) Base entity
##############################

class Entity(BaseModel):
    """
    Base class of everything the store persists.

    Subclasses describe their stored form through save_fields / load_fields
    and the inner-object hooks. The store calls them with a writer or reader
    positioned on the entity and never inspects the subclass itself.

    Attributes:
        entity_type: The registered type descriptor
        live_id: In-memory identity used for hashing and equality
        owner: The owning entity, or None for entities owned by the project
    """
    entity_type: EntityType = Field(exclude=True)
    live_id: UUID = Field(default_factory=uuid4)
    owner: Optional[Any] = Field(default=None, exclude=True, repr=False)

    _id: Optional[int] = PrivateAttr(default=None)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def id(self) -> Optional[int]:
        return self._id

    @property
    def type_name(self) -> str:
        return self.entity_type.full_name

    @property
    def category(self) -> EntityCategory:
        return self.entity_type.category

    @property
    def kind(self) -> Optional[Enum]:
        return self.entity_type.kind

    def assign_id(self, new_id: int) -> None:
        """Set the persistent identifier. Allowed once per entity."""
        if self._id is not None:
            raise ValueError(f"{self!r} already has identifier {self._id}; cannot assign {new_id}")
        self._id = new_id

    def _revoke_id(self) -> None:
        # Only for identifiers handed out inside a rolled back transaction.
        self._id = None

    def save_fields(self, writer: "RepositoryWriter", version: int) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not implement save_fields")

    def load_fields(self, reader: "RepositoryReader", version: int) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not implement load_fields")

    def save_inner_objects(self, property_name: str, writer: "RepositoryWriter", version: int) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not implement save_inner_objects")

    def load_inner_objects(self, property_name: str, reader: "RepositoryReader", version: int) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not implement load_inner_objects")

    def __hash__(self) -> int:
        return hash(self.live_id)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Entity):
            return False
        return self.live_id == other.live_id

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.type_name}, id={self._id})"

    __str__ = __repr__

##############################
# 2) Schema driven entity
##############################

class GenericEntity(Entity):
    """
    Entity whose values are kept in dictionaries keyed by property name.

    Used for every registered type that has no factory of its own.
    """
    field_values: Dict[str, Any] = Field(default_factory=dict)
    inner_records: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)

    def get_field(self, name: str, default: Any = None) -> Any:
        return self.field_values.get(name, default)

    def set_field(self, name: str, value: Any) -> None:
        self.field_values[name] = value

    def _inner_definition(self, property_name: str, version: int) -> InnerObjectsDefinition:
        for definition in self.entity_type.get_property_definitions(version):
            if isinstance(definition, InnerObjectsDefinition) and definition.name == property_name:
                return definition
        raise SchemaConflict(f"{self.type_name} has no inner objects property '{property_name}'")

    def save_fields(self, writer: "RepositoryWriter", version: int) -> None:
        for definition in self.entity_type.get_property_definitions(version):
            if isinstance(definition, FieldDefinition):
                write_field(writer, definition.field_type, self.field_values.get(definition.name))

    def load_fields(self, reader: "RepositoryReader", version: int) -> None:
        for definition in self.entity_type.get_property_definitions(version):
            if isinstance(definition, FieldDefinition):
                self.field_values[definition.name] = read_field(reader, definition.field_type)

    def save_inner_objects(self, property_name: str, writer: "RepositoryWriter", version: int) -> None:
        definition = self._inner_definition(property_name, version)
        writer.begin_write_inner_objects()
        for record in self.inner_records.get(definition.name, []):
            writer.begin_write_inner_object()
            for field in definition.fields:
                write_field(writer, field.field_type, record.get(field.name))
            writer.end_write_inner_object()
        writer.end_write_inner_objects()

    def load_inner_objects(self, property_name: str, reader: "RepositoryReader", version: int) -> None:
        definition = self._inner_definition(property_name, version)
        records = []
        reader.begin_read_inner_objects()
        while reader.begin_read_inner_object():
            record = {}
            for field in definition.fields:
                record[field.name] = read_field(reader, field.field_type)
            records.append(record)
            reader.end_read_inner_object()
        reader.end_read_inner_objects()
        self.inner_records[definition.name] = records

##############################
# 3) Lifecycle tracking types
##############################

class ItemState(str, Enum):
    ORIGINAL = "Original"
    MODIFIED = "Modified"
    DELETED = "Deleted"
    OWNER_CHANGED = "OwnerChanged"


class EntityBucket(BaseModel):
    """A loaded entity together with its owner and lifecycle state."""
    entity: Any
    owner: Optional[Any] = None
    state: ItemState = ItemState.ORIGINAL

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return f"EntityBucket({self.entity!r}, state={self.state.value})"


class ShapeConnection(BaseModel):
    """A glue point of a connector shape attached to a point of a target shape."""
    connector_shape: Any
    glue_point_id: int
    target_shape: Any
    target_point_id: int

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return (f"ShapeConnection({self.connector_shape!r}:{self.glue_point_id} -> "
                f"{self.target_shape!r}:{self.target_point_id})")


__all__ = [
    "Entity", "GenericEntity", "ItemState", "EntityBucket", "ShapeConnection",
    "EntityCategory", "StyleKind", "MappingKind",
    "PROJECT_INFO_TYPE_NAME", "PROJECT_SETTINGS_TYPE_NAME", "SHAPE_TYPE_NAME",
    "MODEL_OBJECT_TYPE_NAME", "SHAPE_CONNECTION_TYPE_NAME", "DIAGRAM_MODEL_OBJECT_MIN_VERSION",
]

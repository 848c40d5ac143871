"""
Entity type descriptors.

An EntityType carries everything the store knows about a kind of entity: its
unique full name, its category, an ordered list of property definitions and
the factory used to create blank instances while loading. Serialization is
purely positional, so the order of the property definitions is part of the
stored format.
"""
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Tuple, Union
import logging

from pydantic import BaseModel, ConfigDict, Field

from diagramstore.ecs.exceptions import SchemaConflict

logger = logging.getLogger("EntityType")

DEFAULT_REPOSITORY_VERSION = 7

##############################
# 1) Categories and kinds
##############################

class EntityCategory(str, Enum):
    SHAPE = "Shape"
    MODEL_OBJECT = "ModelObject"
    DIAGRAM_MODEL_OBJECT = "DiagramModelObject"
    STYLE = "Style"
    TEMPLATE = "Template"
    DIAGRAM = "Diagram"
    MODEL_MAPPING = "ModelMapping"
    PROJECT = "Project"
    DESIGN = "Design"
    MODEL = "Model"


class StyleKind(str, Enum):
    """Style sub kinds in the order their entities are inserted."""
    COLOR = "Color"
    CAP = "Cap"
    LINE = "Line"
    FILL = "Fill"
    CHARACTER = "Character"
    PARAGRAPH = "Paragraph"


class MappingKind(str, Enum):
    NUMERIC = "Numeric"
    FORMAT = "Format"
    STYLE = "Style"


class FieldType(str, Enum):
    """Scalar types a field can hold. ID refers to another entity's identifier."""
    BOOL = "bool"
    BYTE = "byte"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    FLOAT = "float"
    DOUBLE = "double"
    CHAR = "char"
    STRING = "string"
    DATE = "date"
    IMAGE = "image"
    ID = "id"

##############################
# 2) Property definitions
##############################

class FieldDefinition(BaseModel):
    """A scalar property."""
    name: str
    field_type: FieldType
    min_version: int = 0

    model_config = ConfigDict(frozen=True)


class InnerObjectsDefinition(BaseModel):
    """
    A property holding an ordered collection of inner records.

    The records are stored either as child rows of `entity_type_name` or, when
    the property name is composable, inline as a delimited string.
    """
    name: str
    entity_type_name: str
    fields: Tuple[FieldDefinition, ...] = ()
    min_version: int = 0

    model_config = ConfigDict(frozen=True)


PropertyDefinition = Union[FieldDefinition, InnerObjectsDefinition]

##############################
# 3) Entity types
##############################

class EntityType(BaseModel):
    """Immutable descriptor of a registered entity type."""
    full_name: str
    category: EntityCategory
    definitions: Tuple[PropertyDefinition, ...] = ()
    repository_version: int = DEFAULT_REPOSITORY_VERSION
    kind: Optional[Union[StyleKind, MappingKind]] = None
    factory: Optional[Callable[..., Any]] = Field(default=None, exclude=True)

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    def get_property_definitions(self, version: Optional[int] = None) -> List[PropertyDefinition]:
        """Definitions valid for the given schema version, in stored order."""
        if version is None:
            version = self.repository_version
        return [d for d in self.definitions if d.min_version <= version]

    @property
    def property_definitions(self) -> List[PropertyDefinition]:
        return self.get_property_definitions()

    def has_inner_objects(self, version: Optional[int] = None) -> bool:
        return any(isinstance(d, InnerObjectsDefinition) for d in self.get_property_definitions(version))

    def create_instance(self) -> Any:
        """Create a blank instance to be filled by the loader."""
        if self.factory is not None:
            return self.factory(self)
        # Deferred so entity.py can import the definitions above.
        from diagramstore.ecs.entity import GenericEntity
        return GenericEntity(entity_type=self)

    def __str__(self) -> str:
        return self.full_name


def define_entity_type(full_name: str,
                       category: EntityCategory,
                       definitions: Iterable[PropertyDefinition] = (),
                       base: Optional[EntityType] = None,
                       kind: Optional[Union[StyleKind, MappingKind]] = None,
                       repository_version: int = DEFAULT_REPOSITORY_VERSION,
                       factory: Optional[Callable[[EntityType], Any]] = None) -> EntityType:
    """
    Build an entity type, chaining the property definitions of `base` in front
    of its own ones.

    Raises:
        SchemaConflict: when two definitions share a name
    """
    chained: List[PropertyDefinition] = list(base.definitions) if base is not None else []
    chained.extend(definitions)

    seen = set()
    for definition in chained:
        key = definition.name.lower()
        if key in seen:
            raise SchemaConflict(f"Entity type '{full_name}' defines property '{definition.name}' twice.")
        seen.add(key)

    logger.debug(f"Defined entity type {full_name} with {len(chained)} properties")
    return EntityType(
        full_name=full_name,
        category=category,
        definitions=tuple(chained),
        repository_version=repository_version,
        kind=kind,
        factory=factory,
    )

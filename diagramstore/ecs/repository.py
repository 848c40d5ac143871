"""
Reader / writer contract between entities and storage backends.

Entities stream their values through typed read_* / write_* calls without
naming the property they belong to. Each reader and writer keeps a property
index that advances by one per scalar call, so a value lands at the position
of the next field definition. Inner-object definitions are stepped over by
scalar calls and opened explicitly with begin_*_inner_objects; while a
collection is open, scalar calls are routed to the nested reader or writer.

Negative property indexes address the reserved identifier slots some
backends carry in front of the fields. Only identifiers may be read or
written there.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Type

from diagramstore.ecs.entity_type import (
    FieldDefinition, FieldType, InnerObjectsDefinition, PropertyDefinition,
)
from diagramstore.ecs.exceptions import InvalidRepositoryFormat, SchemaConflict, StoreError


INT_RANGES = {
    FieldType.BYTE: (0, 2 ** 8 - 1),
    FieldType.INT16: (-2 ** 15, 2 ** 15 - 1),
    FieldType.INT32: (-2 ** 31, 2 ** 31 - 1),
    FieldType.INT64: (-2 ** 63, 2 ** 63 - 1),
    FieldType.ID: (-2 ** 63, 2 ** 63 - 1),
}


def check_value(field_type: FieldType, value: Any, error: Type[StoreError] = SchemaConflict) -> Any:
    """
    Validate `value` against `field_type` and return it in canonical form.

    None is accepted for every type. Raises `error` when the value does not
    fit the type.
    """
    if value is None:
        return None
    if field_type == FieldType.BOOL:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        raise error(f"Value {value!r} is not a boolean")
    if field_type in INT_RANGES:
        if isinstance(value, bool) or not isinstance(value, int):
            raise error(f"Value {value!r} is not an integer ({field_type.value})")
        low, high = INT_RANGES[field_type]
        if not low <= value <= high:
            raise error(f"Value {value} is out of range for {field_type.value}")
        return value
    if field_type in (FieldType.FLOAT, FieldType.DOUBLE):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise error(f"Value {value!r} is not a number ({field_type.value})")
        return float(value)
    if field_type == FieldType.CHAR:
        if not isinstance(value, str) or len(value) != 1:
            raise error(f"Value {value!r} is not a single character")
        return value
    if field_type == FieldType.STRING:
        if not isinstance(value, str):
            raise error(f"Value {value!r} is not a string")
        return value
    if field_type == FieldType.DATE:
        if not isinstance(value, datetime):
            raise error(f"Value {value!r} is not a datetime")
        return value
    if field_type == FieldType.IMAGE:
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise error(f"Value {value!r} is not binary image data")
        return bytes(value)
    raise error(f"Unknown field type {field_type!r}")


def _advance(owner: Any, definitions: Sequence[PropertyDefinition], index: int, field_type: FieldType) -> int:
    """Index of the next scalar slot after `index`, checked against its definition."""
    index += 1
    if index < 0:
        if field_type != FieldType.ID:
            raise SchemaConflict(f"{owner}: reserved slot {index} only holds identifiers, not {field_type.value}")
        return index
    while index < len(definitions) and isinstance(definitions[index], InnerObjectsDefinition):
        index += 1
    if index >= len(definitions):
        raise SchemaConflict(f"{owner}: more values than the {len(definitions)} property definitions")
    definition = definitions[index]
    if definition.field_type != field_type:
        raise SchemaConflict(
            f"{owner}: property '{definition.name}' is {definition.field_type.value}, "
            f"not {field_type.value}")
    return index


def _inner_definition_at(owner: Any, definitions: Sequence[PropertyDefinition], index: int) -> InnerObjectsDefinition:
    if not 0 <= index < len(definitions) or not isinstance(definitions[index], InnerObjectsDefinition):
        raise SchemaConflict(f"{owner}: property {index} is not an inner objects property")
    return definitions[index]

##############################
# 1) Writer
##############################

class RepositoryWriter(ABC):
    """Receives an entity's values in definition order."""

    def __init__(self) -> None:
        self._definitions: List[PropertyDefinition] = []
        self._entity: Any = None
        self._inner_writer: Optional["RepositoryWriter"] = None
        self.property_index = -1

    @property
    def entity(self) -> Any:
        return self._entity

    @property
    def property_definitions(self) -> List[PropertyDefinition]:
        return self._definitions

    def reset(self, definitions: Sequence[PropertyDefinition]) -> None:
        self._definitions = list(definitions)
        self._entity = None
        self._inner_writer = None
        self.property_index = -1

    def prepare(self, entity: Any) -> None:
        """Position the writer on a new entity."""
        self._entity = entity
        self._inner_writer = None
        self.property_index = -1

    def write_bool(self, value: Optional[bool]) -> None:
        self._write(FieldType.BOOL, value)

    def write_byte(self, value: Optional[int]) -> None:
        self._write(FieldType.BYTE, value)

    def write_int16(self, value: Optional[int]) -> None:
        self._write(FieldType.INT16, value)

    def write_int32(self, value: Optional[int]) -> None:
        self._write(FieldType.INT32, value)

    def write_int64(self, value: Optional[int]) -> None:
        self._write(FieldType.INT64, value)

    def write_float(self, value: Optional[float]) -> None:
        self._write(FieldType.FLOAT, value)

    def write_double(self, value: Optional[float]) -> None:
        self._write(FieldType.DOUBLE, value)

    def write_char(self, value: Optional[str]) -> None:
        self._write(FieldType.CHAR, value)

    def write_string(self, value: Optional[str]) -> None:
        self._write(FieldType.STRING, value)

    def write_date(self, value: Optional[datetime]) -> None:
        self._write(FieldType.DATE, value)

    def write_image(self, value: Optional[bytes]) -> None:
        self._write(FieldType.IMAGE, value)

    def write_id(self, value: Optional[int]) -> None:
        self._write(FieldType.ID, value)

    def _write(self, field_type: FieldType, value: Any) -> None:
        value = check_value(field_type, value)
        if self._inner_writer is not None:
            self._inner_writer._write(field_type, value)
            return
        self.property_index = _advance(self._entity, self._definitions, self.property_index, field_type)
        self._write_value(self.property_index, field_type, value)

    def begin_write_inner_objects(self) -> None:
        if self._inner_writer is not None:
            raise SchemaConflict(f"{self._entity}: inner objects cannot be nested")
        index = self.property_index + 1
        definition = _inner_definition_at(self._entity, self._definitions, index)
        self.property_index = index
        self._inner_writer = self._open_inner_writer(definition)

    def begin_write_inner_object(self) -> None:
        self._begin_inner_object(self._require_inner_writer())

    def end_write_inner_object(self) -> None:
        self._end_inner_object(self._require_inner_writer())

    def end_write_inner_objects(self) -> None:
        inner = self._require_inner_writer()
        self._inner_writer = None
        self._close_inner_writer(self._definitions[self.property_index], inner)

    def delete_inner_objects(self) -> None:
        index = self.property_index + 1
        definition = _inner_definition_at(self._entity, self._definitions, index)
        self.property_index = index
        self._delete_inner_objects(definition)

    def _require_inner_writer(self) -> "RepositoryWriter":
        if self._inner_writer is None:
            raise SchemaConflict(f"{self._entity}: no inner objects collection is open")
        return self._inner_writer

    @abstractmethod
    def _write_value(self, index: int, field_type: FieldType, value: Any) -> None:
        ...

    @abstractmethod
    def _open_inner_writer(self, definition: InnerObjectsDefinition) -> "RepositoryWriter":
        ...

    @abstractmethod
    def _begin_inner_object(self, inner: "RepositoryWriter") -> None:
        ...

    @abstractmethod
    def _end_inner_object(self, inner: "RepositoryWriter") -> None:
        ...

    @abstractmethod
    def _close_inner_writer(self, definition: InnerObjectsDefinition, inner: "RepositoryWriter") -> None:
        ...

    @abstractmethod
    def _delete_inner_objects(self, definition: InnerObjectsDefinition) -> None:
        ...

##############################
# 2) Reader
##############################

class RepositoryReader(ABC):
    """Hands stored values back to an entity in definition order."""

    def __init__(self) -> None:
        self._definitions: List[PropertyDefinition] = []
        self._entity: Any = None
        self._inner_reader: Optional["RepositoryReader"] = None
        self.property_index = -1

    @property
    def entity(self) -> Any:
        return self._entity

    @property
    def property_definitions(self) -> List[PropertyDefinition]:
        return self._definitions

    def reset(self, definitions: Sequence[PropertyDefinition]) -> None:
        self._definitions = list(definitions)
        self._entity = None
        self._inner_reader = None
        self.property_index = -1

    def prepare(self, entity: Any) -> None:
        """Attach the entity the following values are read into."""
        self._entity = entity

    @abstractmethod
    def begin_object(self) -> bool:
        """Move to the next stored object. Returns False when there is none."""

    def end_object(self) -> None:
        pass

    def read_bool(self) -> Optional[bool]:
        return self._read(FieldType.BOOL)

    def read_byte(self) -> Optional[int]:
        return self._read(FieldType.BYTE)

    def read_int16(self) -> Optional[int]:
        return self._read(FieldType.INT16)

    def read_int32(self) -> Optional[int]:
        return self._read(FieldType.INT32)

    def read_int64(self) -> Optional[int]:
        return self._read(FieldType.INT64)

    def read_float(self) -> Optional[float]:
        return self._read(FieldType.FLOAT)

    def read_double(self) -> Optional[float]:
        return self._read(FieldType.DOUBLE)

    def read_char(self) -> Optional[str]:
        return self._read(FieldType.CHAR)

    def read_string(self) -> str:
        return self._read(FieldType.STRING)

    def read_date(self) -> Optional[datetime]:
        return self._read(FieldType.DATE)

    def read_image(self) -> Optional[bytes]:
        return self._read(FieldType.IMAGE)

    def read_id(self) -> Optional[int]:
        return self._read(FieldType.ID)

    def _read(self, field_type: FieldType) -> Any:
        if self._inner_reader is not None:
            return self._inner_reader._read(field_type)
        self.property_index = _advance(self._entity, self._definitions, self.property_index, field_type)
        value = self._read_value(self.property_index, field_type)
        if field_type == FieldType.STRING and value is None:
            return ""
        return check_value(field_type, value, InvalidRepositoryFormat)

    def begin_read_inner_objects(self) -> None:
        if self._inner_reader is not None:
            raise SchemaConflict(f"{self._entity}: inner objects cannot be nested")
        index = self.property_index + 1
        definition = _inner_definition_at(self._entity, self._definitions, index)
        self.property_index = index
        self._inner_reader = self._open_inner_reader(definition)

    def begin_read_inner_object(self) -> bool:
        return self._begin_inner_object(self._require_inner_reader())

    def end_read_inner_object(self) -> None:
        self._require_inner_reader().end_object()

    def end_read_inner_objects(self) -> None:
        self._require_inner_reader()
        self._inner_reader = None

    def _require_inner_reader(self) -> "RepositoryReader":
        if self._inner_reader is None:
            raise SchemaConflict(f"{self._entity}: no inner objects collection is open")
        return self._inner_reader

    def _begin_inner_object(self, inner: "RepositoryReader") -> bool:
        return inner.begin_object()

    @abstractmethod
    def _read_value(self, index: int, field_type: FieldType) -> Any:
        ...

    @abstractmethod
    def _open_inner_reader(self, definition: InnerObjectsDefinition) -> "RepositoryReader":
        ...

##############################
# 3) Field dispatch
##############################

_WRITERS: Dict[FieldType, str] = {field_type: f"write_{field_type.value}" for field_type in FieldType}
_READERS: Dict[FieldType, str] = {field_type: f"read_{field_type.value}" for field_type in FieldType}


def write_field(writer: RepositoryWriter, field_type: FieldType, value: Any) -> None:
    """Write `value` with the writer method matching `field_type`."""
    getattr(writer, _WRITERS[field_type])(value)


def read_field(reader: RepositoryReader, field_type: FieldType) -> Any:
    """Read a value with the reader method matching `field_type`."""
    return getattr(reader, _READERS[field_type])()


def write_fields(writer: RepositoryWriter, definitions: Sequence[FieldDefinition], values: Dict[str, Any]) -> None:
    for definition in definitions:
        write_field(writer, definition.field_type, values.get(definition.name))

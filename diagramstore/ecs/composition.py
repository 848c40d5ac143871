"""
Delimited string encoding for composable inner objects.

Inner-object collections whose property name is on the composable list are
not stored as child rows but inline, in one column of the owning entity:

    records := record*
    record  := field (',' field)* ';'
    field   := scalar | '(' TypeName ')' integer

Text is percent-escaped so it never contains a separator, booleans are 0/1,
floating point numbers use their shortest round-trip form and dates ISO-8601.
Identifier fields carry an (Int32) or (Int64) prefix. An empty field is None,
which a string field reads back as the empty string.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote, unquote
import logging
import re

from pydantic import BaseModel, ConfigDict

from diagramstore.ecs.entity_type import (
    FieldDefinition, FieldType, InnerObjectsDefinition, PropertyDefinition,
)
from diagramstore.ecs.exceptions import InvalidRepositoryFormat, SchemaConflict
from diagramstore.ecs.repository import (
    INT_RANGES, RepositoryReader, RepositoryWriter, read_field, write_fields,
)

logger = logging.getLogger("Composition")

FIELD_SEPARATOR = ","
RECORD_TERMINATOR = ";"

DEFAULT_COMPOSABLE_PROPERTIES: Tuple[str, ...] = (
    "ConnectionPointMappings",
    "ValueRanges",
    "Vertices",
    "ConnectionPoints",
    "TableColumns",
)

_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")
_WRAPPED_ID = re.compile(r"^\((Int32|Int64)\)(-?\d+)$")

##############################
# 1) Layouts
##############################

class EntityLayout(BaseModel):
    """
    Column position of every property definition.

    Fields and composable inner objects occupy a column each, inner objects
    stored as child rows occupy none.
    """
    columns: Tuple[Optional[int], ...]
    column_count: int

    model_config = ConfigDict(frozen=True)

    def column_of(self, index: int) -> int:
        column = self.columns[index]
        if column is None:
            raise SchemaConflict(f"Property {index} is stored in child rows and has no column")
        return column


class CompositionPolicy:
    """
    Decides which inner-object properties are stored inline and caches the
    resulting layouts. Property names compare case-insensitively.
    """

    def __init__(self, composable_properties: Iterable[str] = DEFAULT_COMPOSABLE_PROPERTIES):
        self._names = frozenset(name.lower() for name in composable_properties)
        self._layouts: Dict[Tuple[PropertyDefinition, ...], EntityLayout] = {}
        logger.debug(f"Composable properties: {sorted(self._names)}")

    @property
    def composable_properties(self) -> frozenset:
        return self._names

    def is_composable(self, definition: PropertyDefinition) -> bool:
        return isinstance(definition, InnerObjectsDefinition) and definition.name.lower() in self._names

    def layout_for(self, definitions: Sequence[PropertyDefinition]) -> EntityLayout:
        key = tuple(definitions)
        layout = self._layouts.get(key)
        if layout is None:
            columns: List[Optional[int]] = []
            count = 0
            for definition in key:
                if isinstance(definition, FieldDefinition) or self.is_composable(definition):
                    columns.append(count)
                    count += 1
                else:
                    columns.append(None)
            layout = EntityLayout(columns=tuple(columns), column_count=count)
            self._layouts[key] = layout
        return layout

##############################
# 2) Scalar codec
##############################

def encode_scalar(field_type: FieldType, value: Any) -> str:
    if value is None:
        return ""
    if field_type == FieldType.BOOL:
        return "1" if value else "0"
    if field_type == FieldType.ID:
        low, high = INT_RANGES[FieldType.INT32]
        type_name = "Int32" if low <= value <= high else "Int64"
        return f"({type_name}){value}"
    if field_type in (FieldType.BYTE, FieldType.INT16, FieldType.INT32, FieldType.INT64):
        return str(value)
    if field_type in (FieldType.FLOAT, FieldType.DOUBLE):
        return repr(float(value))
    if field_type in (FieldType.CHAR, FieldType.STRING):
        return quote(value, safe="")
    if field_type == FieldType.DATE:
        return quote(value.isoformat(), safe="")
    raise SchemaConflict(f"{field_type.value} values cannot be stored in a composition")


def _unescape(token: str) -> str:
    if _BAD_ESCAPE.search(token):
        raise InvalidRepositoryFormat(f"Malformed escape sequence in '{token}'")
    try:
        return unquote(token, errors="strict")
    except UnicodeDecodeError as e:
        raise InvalidRepositoryFormat(f"Escaped text '{token}' is not valid UTF-8") from e


def decode_scalar(field_type: FieldType, token: str) -> Any:
    if token == "":
        return None
    if field_type == FieldType.BOOL:
        if token not in ("0", "1"):
            raise InvalidRepositoryFormat(f"'{token}' is not a boolean")
        return token == "1"
    if field_type == FieldType.ID:
        match = _WRAPPED_ID.match(token)
        if match is None:
            raise InvalidRepositoryFormat(f"'{token}' is not an identifier")
        value = int(match.group(2))
        low, high = INT_RANGES[FieldType.INT32 if match.group(1) == "Int32" else FieldType.INT64]
        if not low <= value <= high:
            raise InvalidRepositoryFormat(f"Identifier {value} is out of range for {match.group(1)}")
        return value
    if field_type in (FieldType.BYTE, FieldType.INT16, FieldType.INT32, FieldType.INT64):
        try:
            return int(token)
        except ValueError as e:
            raise InvalidRepositoryFormat(f"'{token}' is not an integer") from e
    if field_type in (FieldType.FLOAT, FieldType.DOUBLE):
        try:
            return float(token)
        except ValueError as e:
            raise InvalidRepositoryFormat(f"'{token}' is not a number") from e
    if field_type in (FieldType.CHAR, FieldType.STRING):
        return _unescape(token)
    if field_type == FieldType.DATE:
        try:
            return datetime.fromisoformat(_unescape(token))
        except ValueError as e:
            raise InvalidRepositoryFormat(f"'{token}' is not an ISO-8601 date") from e
    raise SchemaConflict(f"{field_type.value} values cannot be stored in a composition")

##############################
# 3) Writer and reader
##############################

class StringWriter(RepositoryWriter):
    """Collects inner records into one delimited string."""

    def __init__(self) -> None:
        super().__init__()
        self._records: List[str] = []
        self._fields: List[str] = []

    @property
    def data(self) -> str:
        return "".join(self._records)

    def reset(self, definitions: Sequence[PropertyDefinition]) -> None:
        super().reset(definitions)
        self._records = []
        self._fields = []

    def prepare(self, entity: Any) -> None:
        super().prepare(entity)
        self._fields = []

    def finish(self) -> None:
        """Close the current record."""
        self._records.append(FIELD_SEPARATOR.join(self._fields) + RECORD_TERMINATOR)
        self._fields = []

    def _write_value(self, index: int, field_type: FieldType, value: Any) -> None:
        self._fields.append(encode_scalar(field_type, value))

    def _open_inner_writer(self, definition: InnerObjectsDefinition) -> RepositoryWriter:
        raise SchemaConflict(f"Inner objects '{definition.name}' cannot be nested inside a composition")

    def _begin_inner_object(self, inner: RepositoryWriter) -> None:
        raise SchemaConflict("Inner objects cannot be nested inside a composition")

    def _end_inner_object(self, inner: RepositoryWriter) -> None:
        raise SchemaConflict("Inner objects cannot be nested inside a composition")

    def _close_inner_writer(self, definition: InnerObjectsDefinition, inner: RepositoryWriter) -> None:
        raise SchemaConflict("Inner objects cannot be nested inside a composition")

    def _delete_inner_objects(self, definition: InnerObjectsDefinition) -> None:
        raise SchemaConflict(f"Inner objects '{definition.name}' cannot be nested inside a composition")


class StringReader(RepositoryReader):
    """Reads inner records back from a delimited string."""

    def __init__(self) -> None:
        super().__init__()
        self._data = ""
        self._position = 0
        self._fields: Optional[List[str]] = None
        self._field_position = 0

    def reset(self, definitions: Sequence[PropertyDefinition], data: Optional[str] = None) -> None:
        super().reset(definitions)
        self._data = data or ""
        self._position = 0
        self._fields = None
        self._field_position = 0

    def begin_object(self) -> bool:
        if self._position >= len(self._data):
            self._fields = None
            return False
        end = self._data.find(RECORD_TERMINATOR, self._position)
        if end < 0:
            raise InvalidRepositoryFormat(
                f"Record at offset {self._position} is not terminated by '{RECORD_TERMINATOR}'")
        record = self._data[self._position:end]
        self._position = end + 1
        has_fields = any(isinstance(d, FieldDefinition) for d in self._definitions)
        self._fields = record.split(FIELD_SEPARATOR) if record or has_fields else []
        self._field_position = 0
        self.property_index = -1
        return True

    def end_object(self) -> None:
        if self._fields is None:
            return
        if self._field_position != len(self._fields):
            raise InvalidRepositoryFormat(
                f"Record has {len(self._fields)} fields but {self._field_position} were expected")
        self._fields = None

    def _read_value(self, index: int, field_type: FieldType) -> Any:
        if self._fields is None:
            raise SchemaConflict("No record is open")
        if self._field_position >= len(self._fields):
            raise InvalidRepositoryFormat(
                f"Read past the end of a record with {len(self._fields)} fields")
        token = self._fields[self._field_position]
        self._field_position += 1
        return decode_scalar(field_type, token)

    def _open_inner_reader(self, definition: InnerObjectsDefinition) -> RepositoryReader:
        raise SchemaConflict(f"Inner objects '{definition.name}' cannot be nested inside a composition")

##############################
# 4) Convenience
##############################

def encode_records(definitions: Sequence[FieldDefinition], records: Iterable[Dict[str, Any]]) -> str:
    """Encode records given as name/value dictionaries."""
    writer = StringWriter()
    writer.reset(definitions)
    for record in records:
        writer.prepare(None)
        write_fields(writer, definitions, record)
        writer.finish()
    return writer.data


def decode_records(definitions: Sequence[FieldDefinition], data: Optional[str]) -> List[Dict[str, Any]]:
    """Decode a delimited string into name/value dictionaries."""
    reader = StringReader()
    reader.reset(definitions, data)
    records = []
    while reader.begin_object():
        record = {}
        for definition in definitions:
            record[definition.name] = read_field(reader, definition.field_type)
        records.append(record)
        reader.end_object()
    return records

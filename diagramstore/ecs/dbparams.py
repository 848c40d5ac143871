"""
Parameter bound reader and writer.

Entity rows and entity commands carry two reserved leading slots, the
identifier and the owner identifier, followed by one slot per column of the
entity layout. Child rows of non-composable inner objects carry a single
reserved slot holding the parent identifier.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional, Protocol, Sequence, Tuple
import logging

from diagramstore.ecs.commands import Command, OperationKind
from diagramstore.ecs.composition import CompositionPolicy, StringReader, StringWriter
from diagramstore.ecs.entity_type import FieldType, InnerObjectsDefinition, PropertyDefinition
from diagramstore.ecs.exceptions import InvalidRepositoryFormat, SchemaConflict, StoreFault
from diagramstore.ecs.repository import RepositoryReader, RepositoryWriter

logger = logging.getLogger("DbParameters")

ENTITY_RESERVED_SLOTS = 2
INNER_RESERVED_SLOTS = 1


class CommandSource(Protocol):
    """The part of the store the parameter backend works against."""
    composition: CompositionPolicy

    def get_command(self, entity_type_name: str, kind: OperationKind) -> Command: ...

    def note_inserted(self, entity: Any) -> None: ...


def _slot(reserved: int, layout: Any, index: int) -> int:
    if index < 0:
        return index + reserved
    return reserved + layout.column_of(index)


def _from_column(field_type: FieldType, value: Any) -> Any:
    if value is None:
        return None
    if field_type == FieldType.DATE and isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError as e:
            raise InvalidRepositoryFormat(f"Column value '{value}' is not a date") from e
    if isinstance(value, Decimal):
        if field_type in (FieldType.FLOAT, FieldType.DOUBLE):
            return float(value)
        return int(value)
    return value

##############################
# 1) Writer
##############################

class DbParameterWriter(RepositoryWriter):
    """Writes entity values into the parameters of one command and runs it on flush."""

    def __init__(self, store: CommandSource, reserved_slots: int = ENTITY_RESERVED_SLOTS,
                 child_rows: bool = False):
        super().__init__()
        self._store = store
        self._reserved = reserved_slots
        self._child_rows = child_rows
        self._layout = store.composition.layout_for(())
        self.command: Optional[Command] = None

    def reset(self, definitions: Sequence[PropertyDefinition]) -> None:
        super().reset(definitions)
        self._layout = self._store.composition.layout_for(self._definitions)

    def prepare(self, entity: Any) -> None:
        super().prepare(entity)
        self.property_index = -self._reserved - 1
        self._require_command().clear_parameters()

    def flush(self) -> None:
        """
        Execute the command for the current entity.

        An entity without identifier is inserted and receives the identifier
        the command returns. Otherwise the command is an update or a delete
        and must affect at least one row.
        """
        command = self._require_command()
        if self._child_rows:
            command.execute_non_query()
            return
        if self._entity.id is None:
            new_id = command.execute_scalar()
            if new_id is None:
                raise StoreFault(f"{command} returned no identifier for {self._entity!r}")
            self._entity.assign_id(int(new_id))
            self._store.note_inserted(self._entity)
            logger.debug(f"Inserted {self._entity!r}")
        elif command.execute_non_query() == 0:
            raise StoreFault(f"{command} affected no rows for {self._entity!r}")

    def _require_command(self) -> Command:
        if self.command is None:
            raise SchemaConflict("No command assigned to the parameter writer")
        return self.command

    def _set(self, index: int, value: Any) -> None:
        command = self._require_command()
        slot = _slot(self._reserved, self._layout, index)
        if slot >= command.parameter_count:
            raise SchemaConflict(
                f"{command} has {command.parameter_count} parameters but {self._entity!r} "
                f"writes slot {slot}")
        command.set_parameter(slot, value)

    def _write_value(self, index: int, field_type: FieldType, value: Any) -> None:
        self._set(index, value)

    def _open_inner_writer(self, definition: InnerObjectsDefinition) -> RepositoryWriter:
        if self._store.composition.is_composable(definition):
            inner = StringWriter()
            inner.reset(definition.fields)
            return inner
        self._delete_child_rows(definition)
        child_writer = DbParameterWriter(self._store, INNER_RESERVED_SLOTS, child_rows=True)
        child_writer.reset(definition.fields)
        child_writer.command = self._store.get_command(definition.entity_type_name, OperationKind.INSERT)
        return child_writer

    def _begin_inner_object(self, inner: RepositoryWriter) -> None:
        inner.prepare(self._entity)
        if isinstance(inner, DbParameterWriter):
            inner.write_id(self._entity.id)

    def _end_inner_object(self, inner: RepositoryWriter) -> None:
        if isinstance(inner, DbParameterWriter):
            inner.flush()
        else:
            inner.finish()

    def _close_inner_writer(self, definition: InnerObjectsDefinition, inner: RepositoryWriter) -> None:
        if isinstance(inner, StringWriter):
            self._set(self.property_index, inner.data)

    def _delete_inner_objects(self, definition: InnerObjectsDefinition) -> None:
        if not self._store.composition.is_composable(definition):
            self._delete_child_rows(definition)

    def _delete_child_rows(self, definition: InnerObjectsDefinition) -> None:
        if self._entity is None or self._entity.id is None:
            raise SchemaConflict(f"Child rows of '{definition.name}' need a parent with an identifier")
        command = self._store.get_command(definition.entity_type_name, OperationKind.DELETE)
        command.clear_parameters()
        command.set_parameter(0, self._entity.id)
        command.execute_non_query()

##############################
# 2) Reader
##############################

class DbParameterReader(RepositoryReader):
    """Reads entity values from result rows shaped like the entity's command parameters."""

    def __init__(self, store: CommandSource, reserved_slots: int = ENTITY_RESERVED_SLOTS):
        super().__init__()
        self._store = store
        self._reserved = reserved_slots
        self._layout = store.composition.layout_for(())
        self._rows: List[Tuple[Any, ...]] = []
        self._row_index = -1
        self._row: Optional[Tuple[Any, ...]] = None

    def reset(self, definitions: Sequence[PropertyDefinition], rows: Sequence[Tuple[Any, ...]] = ()) -> None:
        super().reset(definitions)
        self._layout = self._store.composition.layout_for(self._definitions)
        self._rows = list(rows)
        self._row_index = -1
        self._row = None

    @property
    def row_count(self) -> int:
        return len(self._rows)

    def begin_object(self) -> bool:
        self._row_index += 1
        if self._row_index >= len(self._rows):
            self._row = None
            return False
        self._row = self._rows[self._row_index]
        self.property_index = -self._reserved - 1
        return True

    def _column(self, index: int) -> Any:
        if self._row is None:
            raise SchemaConflict("No row is current")
        slot = _slot(self._reserved, self._layout, index)
        if slot >= len(self._row):
            raise SchemaConflict(f"Row has {len(self._row)} columns but slot {slot} is read")
        return self._row[slot]

    def _read_value(self, index: int, field_type: FieldType) -> Any:
        return _from_column(field_type, self._column(index))

    def _open_inner_reader(self, definition: InnerObjectsDefinition) -> RepositoryReader:
        if self._store.composition.is_composable(definition):
            data = self._column(self.property_index)
            if data is not None and not isinstance(data, str):
                raise InvalidRepositoryFormat(f"Column of '{definition.name}' does not hold text")
            inner = StringReader()
            inner.reset(definition.fields, data)
            return inner
        parent = self._entity
        if parent is None or parent.id is None:
            raise SchemaConflict(f"Child rows of '{definition.name}' need a parent with an identifier")
        command = self._store.get_command(definition.entity_type_name, OperationKind.SELECT_BY_ID)
        command.clear_parameters()
        command.set_parameter(0, parent.id)
        child_reader = DbParameterReader(self._store, INNER_RESERVED_SLOTS)
        child_reader.reset(definition.fields, command.execute_reader())
        child_reader.prepare(parent)
        return child_reader

    def _begin_inner_object(self, inner: RepositoryReader) -> bool:
        if not inner.begin_object():
            return False
        if isinstance(inner, DbParameterReader):
            inner.read_id()
        return True

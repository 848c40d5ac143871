"""
Parameterized commands and the table that maps (entity type, operation) to them.

Commands are positional: the store sets parameter values by index, the
command knows which named placeholder each index feeds. SqlCommand runs a
SQLAlchemy text() statement on the connection the store binds it to.
"""
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, Union, runtime_checkable
import logging
import re

from pydantic import BaseModel
from sqlalchemy import (
    BigInteger, Boolean, DateTime, Float, Integer, LargeBinary, SmallInteger, String, bindparam, text,
)
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from diagramstore.ecs.entity_type import FieldType
from diagramstore.ecs.exceptions import MissingCommand, SchemaConflict, StoreFault
from diagramstore.ecs.tracer import CommandTrace, command_tracer


class OperationKind(str, Enum):
    INSERT = "Insert"
    INSERT_OWNED_BY_PARENT = "InsertOwnedByParent"
    INSERT_DIAGRAM_SHAPE = "InsertDiagramShape"
    INSERT_TEMPLATE_SHAPE = "InsertTemplateShape"
    INSERT_TEMPLATE_MODEL_OBJECT = "InsertTemplateModelObject"
    INSERT_MODEL_MODEL_OBJECT = "InsertModelModelObject"
    INSERT_DIAGRAM_MODEL_OBJECT = "InsertDiagramModelObject"
    UPDATE = "Update"
    UPDATE_OWNER_DIAGRAM = "UpdateOwnerDiagram"
    UPDATE_OWNER_SHAPE = "UpdateOwnerShape"
    UPDATE_OWNER_MODEL = "UpdateOwnerModel"
    UPDATE_OWNER_MODEL_OBJECT = "UpdateOwnerModelObject"
    DELETE = "Delete"
    SELECT_ALL = "SelectAll"
    SELECT_BY_ID = "SelectById"
    SELECT_BY_NAME = "SelectByName"
    SELECT_BY_OWNER_ID = "SelectByOwnerId"
    SELECT_ALL_ROOTS = "SelectAllRoots"
    SELECT_CHILDREN = "SelectChildren"
    SELECT_DIAGRAM_SHAPES = "SelectDiagramShapes"
    SELECT_TEMPLATE_SHAPES = "SelectTemplateShapes"
    SELECT_TEMPLATE_MODEL_OBJECTS = "SelectTemplateModelObjects"
    SELECT_DIAGRAM_MODEL_OBJECTS = "SelectDiagramModelObjects"
    CHECK_TEMPLATE_IN_USE = "CheckTemplateInUse"
    CHECK_STYLE_IN_USE = "CheckStyleInUse"
    CHECK_MODEL_OBJECT_IN_USE = "CheckModelObjectInUse"
    CHECK_SHAPE_TYPE_IN_USE = "CheckShapeTypeInUse"

    @property
    def action(self) -> str:
        """What the store was doing when it needed a command of this kind."""
        if self.name.startswith("INSERT"):
            return "inserting"
        if self.name.startswith("UPDATE"):
            return "updating"
        if self is OperationKind.DELETE:
            return "deleting"
        if self in (OperationKind.SELECT_BY_ID, OperationKind.SELECT_BY_NAME):
            return "loading single"
        if self.name.startswith("SELECT"):
            return "loading multiple"
        return "checking usage of"


class Parameter(BaseModel):
    """A named positional command parameter, optionally typed."""
    name: str
    field_type: Optional[FieldType] = None


@runtime_checkable
class Command(Protocol):
    """What the store needs from a command, whatever runs it."""
    parameters: List[Parameter]
    values: List[Any]
    key: Optional[Tuple[str, OperationKind]]
    trace: Optional[CommandTrace]

    @property
    def parameter_count(self) -> int: ...

    def set_parameter(self, index: int, value: Any) -> None: ...

    def clear_parameters(self) -> None: ...

    def bind(self, connection: Optional[Connection]) -> None: ...

    def execute_scalar(self) -> Any: ...

    def execute_non_query(self) -> int: ...

    def execute_reader(self) -> List[Tuple[Any, ...]]: ...

##############################
# SQL commands
##############################

# Same placeholder syntax as sqlalchemy's text().
_PLACEHOLDER = re.compile(r"(?<![:\w\x5c]):(\w+)(?!:)", re.UNICODE)

_SQL_TYPES = {
    FieldType.BOOL: Boolean,
    FieldType.BYTE: SmallInteger,
    FieldType.INT16: SmallInteger,
    FieldType.INT32: Integer,
    FieldType.INT64: BigInteger,
    FieldType.FLOAT: Float,
    FieldType.DOUBLE: Float,
    FieldType.CHAR: String,
    FieldType.STRING: String,
    FieldType.DATE: DateTime,
    FieldType.IMAGE: LargeBinary,
    FieldType.ID: BigInteger,
}


class SqlCommand:
    """
    A SQL statement with positional parameters.

    Parameters are declared in slot order; the SQL text refers to them by
    name (":Name"). Declared parameters the text never mentions are not bound,
    so a statement may ignore a slot, e.g. the identifier of an insert.
    """

    def __init__(self, sql: str, parameters: Sequence[Union[Parameter, str]] = ()):
        self.sql = sql
        self.parameters: List[Parameter] = [
            p if isinstance(p, Parameter) else Parameter(name=p) for p in parameters
        ]
        self._referenced = set(_PLACEHOLDER.findall(sql))
        undeclared = self._referenced - {p.name for p in self.parameters}
        if undeclared:
            raise SchemaConflict(f"SQL refers to undeclared parameters {sorted(undeclared)}: {sql}")

        binds = [
            bindparam(p.name, type_=_SQL_TYPES[p.field_type]())
            for p in self.parameters
            if p.field_type is not None and p.name in self._referenced
        ]
        self._statement = text(sql).bindparams(*binds) if binds else text(sql)
        self.values: List[Any] = [None] * len(self.parameters)
        self.connection: Optional[Connection] = None
        self.key: Optional[Tuple[str, OperationKind]] = None
        self.trace: Optional[CommandTrace] = None

    @property
    def parameter_count(self) -> int:
        return len(self.parameters)

    def set_parameter(self, index: int, value: Any) -> None:
        if not 0 <= index < len(self.values):
            raise SchemaConflict(f"Parameter {index} is outside the {len(self.values)} parameters of {self}")
        self.values[index] = value

    def clear_parameters(self) -> None:
        self.values = [None] * len(self.parameters)

    def bind(self, connection: Optional[Connection]) -> None:
        self.connection = connection

    def _execute(self) -> Any:
        if self.connection is None:
            raise StoreFault(f"{self} is not bound to a connection")
        params = {
            p.name: value for p, value in zip(self.parameters, self.values) if p.name in self._referenced
        }
        try:
            return self.connection.execute(self._statement, params)
        except SQLAlchemyError as e:
            raise StoreFault(f"{self} failed: {e}") from e

    @command_tracer
    def execute_scalar(self) -> Any:
        """Run the statement and return the first column of the first row, or
        the last inserted row id when the statement returns no rows."""
        result = self._execute()
        try:
            if result.returns_rows:
                return result.scalar()
            return result.lastrowid
        except SQLAlchemyError as e:
            raise StoreFault(f"{self} failed: {e}") from e

    @command_tracer
    def execute_non_query(self) -> int:
        return self._execute().rowcount

    @command_tracer
    def execute_reader(self) -> List[Tuple[Any, ...]]:
        result = self._execute()
        try:
            return [tuple(row) for row in result.fetchall()]
        except SQLAlchemyError as e:
            raise StoreFault(f"{self} failed: {e}") from e

    def __repr__(self) -> str:
        if self.key is None:
            return f"SqlCommand({self.sql!r})"
        return f"SqlCommand({self.key[0]}.{self.key[1].value})"

##############################
# Command table
##############################

class CommandTable:
    """
    Commands keyed by (entity type full name, operation kind).

    The table is handed to the store explicitly; registering a pair again
    replaces the previous command.
    """

    def __init__(self, trace: Optional[CommandTrace] = None):
        self._commands: Dict[Tuple[str, OperationKind], Command] = {}
        self._trace = trace
        self._logger = logging.getLogger("CommandTable")

    @property
    def trace(self) -> Optional[CommandTrace]:
        return self._trace

    def attach_trace(self, trace: Optional[CommandTrace]) -> None:
        self._trace = trace
        for command in self._commands.values():
            command.trace = trace

    def set_command(self, entity_type_name: str, kind: OperationKind, command: Command) -> None:
        key = (entity_type_name, kind)
        if key in self._commands:
            self._logger.debug(f"Replacing {kind.value} command of {entity_type_name}")
        command.key = key
        command.trace = self._trace
        self._commands[key] = command

    def get_command(self, entity_type_name: str, kind: OperationKind) -> Command:
        command = self._commands.get((entity_type_name, kind))
        if command is None:
            raise MissingCommand(entity_type_name, kind, kind.action)
        return command

    def has_command(self, entity_type_name: str, kind: OperationKind) -> bool:
        return (entity_type_name, kind) in self._commands

    def remove_command(self, entity_type_name: str, kind: OperationKind) -> None:
        self._commands.pop((entity_type_name, kind), None)

    def __contains__(self, key: Tuple[str, OperationKind]) -> bool:
        return key in self._commands

    def __len__(self) -> int:
        return len(self._commands)

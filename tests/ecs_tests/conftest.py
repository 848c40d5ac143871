"""
Common fixtures for the in-memory component tests.
Provides a recording command and a command source that need no database.
"""
from typing import Any, Callable, List, Optional, Sequence, Tuple

import pytest

from diagramstore.ecs.commands import CommandTable, OperationKind, Parameter
from diagramstore.ecs.composition import CompositionPolicy
from diagramstore.ecs.tracer import CommandTrace


class RecordingCommand:
    """Command that records what it was executed with and returns scripted results."""

    def __init__(self, parameter_names: Sequence[str], scalar: Any = None, rowcount: int = 1,
                 rows: Sequence[Tuple[Any, ...]] = ()):
        self.parameters = [Parameter(name=name) for name in parameter_names]
        self.values: List[Any] = [None] * len(self.parameters)
        self.key = None
        self.trace: Optional[CommandTrace] = None
        self.connection = None
        self.scalar = scalar
        self.rowcount = rowcount
        self.rows = list(rows)
        self.executed: List[Tuple[str, List[Any]]] = []

    @property
    def parameter_count(self) -> int:
        return len(self.parameters)

    def set_parameter(self, index: int, value: Any) -> None:
        self.values[index] = value

    def clear_parameters(self) -> None:
        self.values = [None] * len(self.parameters)

    def bind(self, connection: Any) -> None:
        self.connection = connection

    def execute_scalar(self) -> Any:
        self.executed.append(("scalar", list(self.values)))
        return self.scalar() if callable(self.scalar) else self.scalar

    def execute_non_query(self) -> int:
        self.executed.append(("non_query", list(self.values)))
        return self.rowcount

    def execute_reader(self) -> List[Tuple[Any, ...]]:
        self.executed.append(("reader", list(self.values)))
        return self.rows


class FakeSource:
    """Command source for readers and writers, backed by a plain command table."""

    def __init__(self, commands: CommandTable, composition: Optional[CompositionPolicy] = None):
        self.commands = commands
        self.composition = composition or CompositionPolicy()
        self.inserted: List[Any] = []

    def get_command(self, entity_type_name: str, kind: OperationKind) -> Any:
        return self.commands.get_command(entity_type_name, kind)

    def note_inserted(self, entity: Any) -> None:
        self.inserted.append(entity)


@pytest.fixture
def command_table() -> CommandTable:
    return CommandTable()


@pytest.fixture
def source(command_table) -> FakeSource:
    return FakeSource(command_table)


@pytest.fixture
def recording_command() -> Callable[..., RecordingCommand]:
    """Provide a factory for recording commands."""
    return RecordingCommand

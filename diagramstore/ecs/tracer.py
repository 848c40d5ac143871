from typing import Any, Callable, List, Optional, Tuple
from functools import wraps
import logging

from pydantic import BaseModel, Field

##############################
# Command tracing
##############################

class CommandExecution(BaseModel):
    """One executed command with the parameter values it was run with."""
    entity_type_name: str
    kind: str
    mode: str
    values: List[Any] = Field(default_factory=list)


class CommandTrace:
    """
    Ordered record of command executions.

    Attach one to a CommandTable to observe the statements a flush or a load
    runs, in the order they ran.
    """

    def __init__(self) -> None:
        self.executions: List[CommandExecution] = []

    def record(self, entity_type_name: str, kind: str, mode: str, values: List[Any]) -> None:
        self.executions.append(CommandExecution(
            entity_type_name=entity_type_name, kind=kind, mode=mode, values=values))

    def clear(self) -> None:
        self.executions.clear()

    def of_kind(self, *kinds: Any) -> List[CommandExecution]:
        names = {getattr(k, "value", k) for k in kinds}
        return [e for e in self.executions if e.kind in names]

    def for_type(self, entity_type_name: str) -> List[CommandExecution]:
        return [e for e in self.executions if e.entity_type_name == entity_type_name]

    def sequence(self) -> List[Tuple[str, str]]:
        return [(e.entity_type_name, e.kind) for e in self.executions]

    def __len__(self) -> int:
        return len(self.executions)


def command_tracer(func: Callable) -> Callable:
    """
    Decorator for command execution methods.

    Records the execution in the command's trace, if it has one, before the
    statement runs, so failed executions are traced as well.
    """
    @wraps(func)
    def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
        logger = logging.getLogger("CommandTracer")
        trace: Optional[CommandTrace] = getattr(self, "trace", None)
        key = getattr(self, "key", None)
        if key is not None:
            entity_type_name, kind = key
            kind_name = getattr(kind, "value", kind)
            logger.debug(f"{func.__name__} {kind_name} for {entity_type_name}: {self.values}")
            if trace is not None:
                trace.record(entity_type_name, kind_name, func.__name__, list(self.values))
        return func(self, *args, **kwargs)

    return wrapper

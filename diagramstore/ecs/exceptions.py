"""
Error taxonomy of the entity store.

Every error raised by the store derives from StoreError so callers can catch
store failures in one place while still telling the kinds apart.
"""
from typing import Any, Optional


class StoreError(Exception):
    """Base class of all errors raised by the entity store."""


class MissingCommand(StoreError):
    """No command is registered for an (entity type, operation kind) pair."""

    def __init__(self, entity_type_name: str, kind: Any, action: Optional[str] = None):
        self.entity_type_name = entity_type_name
        self.kind = kind
        self.action = action or "loading and/or saving"
        kind_name = getattr(kind, "value", kind)
        super().__init__(
            f"No '{kind_name}' command registered for entity type '{entity_type_name}' "
            f"(required for {self.action} entities)."
        )


class SchemaConflict(StoreError):
    """Entity schemas, layouts or commands do not agree with each other."""


class InvalidRepositoryFormat(StoreError):
    """Stored data could not be decoded."""


class NotFound(StoreError):
    """A referenced entity, bucket or connection is not known."""


class EntityTypeNotFound(NotFound):
    """An entity type name is not registered."""

    def __init__(self, entity_type_name: str):
        self.entity_type_name = entity_type_name
        super().__init__(f"Entity type '{entity_type_name}' is not registered.")


class StoreFault(StoreError):
    """The backing store failed; the driver error is chained as __cause__."""


class EntityDeleted(StoreError):
    """A deleted entity was modified or moved."""


class UnresolvedOwner(StoreError):
    """An entity cannot be inserted because its owner never received an identifier."""

"""
diagramstore: persistence and change tracking for owned entity graphs.
"""
from diagramstore.config import StoreSettings, configure_logging, create_store_engine
from diagramstore.ecs.cache import StoreCache
from diagramstore.ecs.commands import CommandTable, OperationKind, Parameter, SqlCommand
from diagramstore.ecs.composition import CompositionPolicy
from diagramstore.ecs.enregistry import EntityTypeRegistry
from diagramstore.ecs.entity import Entity, EntityBucket, GenericEntity, ItemState, ShapeConnection
from diagramstore.ecs.entity_type import (
    EntityCategory, EntityType, FieldDefinition, FieldType, InnerObjectsDefinition,
    MappingKind, StyleKind, define_entity_type,
)
from diagramstore.ecs.exceptions import (
    EntityDeleted, EntityTypeNotFound, InvalidRepositoryFormat, MissingCommand, NotFound,
    SchemaConflict, StoreError, StoreFault, UnresolvedOwner,
)
from diagramstore.ecs.storage import FlushSummary, SqlStore
from diagramstore.ecs.tracer import CommandTrace

__all__ = [
    "StoreSettings", "configure_logging", "create_store_engine",
    "StoreCache", "CommandTable", "OperationKind", "Parameter", "SqlCommand", "CompositionPolicy",
    "EntityTypeRegistry", "Entity", "EntityBucket", "GenericEntity", "ItemState", "ShapeConnection",
    "EntityCategory", "EntityType", "FieldDefinition", "FieldType", "InnerObjectsDefinition",
    "MappingKind", "StyleKind", "define_entity_type",
    "EntityDeleted", "EntityTypeNotFound", "InvalidRepositoryFormat", "MissingCommand", "NotFound",
    "SchemaConflict", "StoreError", "StoreFault", "UnresolvedOwner",
    "FlushSummary", "SqlStore", "CommandTrace",
]

"""
SQL backed entity store.

SqlStore loads entities into a StoreCache and writes the cache's changes back
in one transaction. All statements come from the CommandTable; the store only
decides which command runs when and with which parameter values.

Flush order:
    0. project row insert or update
    1. deletes, owned entities before their owners
    2. inserts, owners before the entities they own; child shapes and nested
       model objects are inserted level by level until nothing is left
    3. new shape connections
    4. owner changes of shapes and model objects
    5. updates, owners before the entities they own
"""
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional
import logging

from pydantic import BaseModel
from sqlalchemy.engine import Connection, Engine

from diagramstore.config import StoreSettings, create_store_engine
from diagramstore.ecs.cache import StoreCache
from diagramstore.ecs.commands import Command, CommandTable, OperationKind
from diagramstore.ecs.composition import CompositionPolicy
from diagramstore.ecs.dbparams import DbParameterReader, DbParameterWriter
from diagramstore.ecs.dependency.graph import EntityDependencyGraph
from diagramstore.ecs.entity import (
    DIAGRAM_MODEL_OBJECT_MIN_VERSION, PROJECT_INFO_TYPE_NAME, PROJECT_SETTINGS_TYPE_NAME,
    SHAPE_CONNECTION_TYPE_NAME, MODEL_OBJECT_TYPE_NAME, SHAPE_TYPE_NAME,
    Entity, EntityBucket, ItemState, ShapeConnection,
)
from diagramstore.ecs.entity_type import (
    DEFAULT_REPOSITORY_VERSION, EntityCategory, EntityType, InnerObjectsDefinition,
    MappingKind, StyleKind,
)
from diagramstore.ecs.exceptions import (
    InvalidRepositoryFormat, NotFound, SchemaConflict, StoreFault, UnresolvedOwner,
)

OwnerPredicate = Callable[[Entity, Optional[Entity]], bool]

_CHANGED_STATES = (ItemState.MODIFIED, ItemState.OWNER_CHANGED)

# Without an owner these rows belong to the project.
_PROJECT_OWNED = (EntityCategory.PROJECT, EntityCategory.DESIGN, EntityCategory.TEMPLATE,
                  EntityCategory.DIAGRAM, EntityCategory.MODEL)
# Shapes may be detached; everything else needs its owner's identifier.
_OWNER_REQUIRED = (EntityCategory.MODEL_OBJECT, EntityCategory.DIAGRAM_MODEL_OBJECT,
                   EntityCategory.STYLE, EntityCategory.MODEL_MAPPING)


class FlushSummary(BaseModel):
    """What one save_changes call wrote."""
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    owners_changed: int = 0
    connections_inserted: int = 0
    connections_deleted: int = 0
    child_shape_passes: int = 0
    nested_model_object_passes: int = 0


def _owned_by(*categories: EntityCategory) -> OwnerPredicate:
    def predicate(entity: Entity, owner: Optional[Entity]) -> bool:
        return owner is not None and owner.category in categories
    return predicate


def _root_owner(entity: Entity) -> Optional[Entity]:
    """First owner up the chain that is not a model object."""
    seen = set()
    owner = entity.owner
    while owner is not None and owner.category == EntityCategory.MODEL_OBJECT:
        if owner.live_id in seen:
            return None
        seen.add(owner.live_id)
        owner = owner.owner
    return owner


class SqlStore:
    """
    Entity store on top of a SQLAlchemy engine.

    Attributes:
        engine: Engine connections are taken from
        commands: Statements per (entity type, operation kind)
        version: Repository version; selects property definitions and gates
            diagram model objects
        composition: Which inner objects are stored inline
    """

    def __init__(self, engine: Engine, commands: CommandTable,
                 version: int = DEFAULT_REPOSITORY_VERSION,
                 composition: Optional[CompositionPolicy] = None):
        self.engine = engine
        self.commands = commands
        self.version = version
        self.composition = composition or CompositionPolicy()
        self._connection: Optional[Connection] = None
        self._inserted: List[Entity] = []
        self._summary = FlushSummary()
        self._logger = logging.getLogger("SqlStore")

    @classmethod
    def from_settings(cls, settings: StoreSettings, commands: CommandTable) -> "SqlStore":
        """Create a store from StoreSettings."""
        return cls(
            create_store_engine(settings),
            commands,
            version=settings.repository_version,
            composition=CompositionPolicy(settings.composable_properties),
        )

    ############################
    # Commands and connections
    ############################

    def get_command(self, entity_type_name: str, kind: OperationKind) -> Command:
        """Fetch a command and bind it to the current connection."""
        command = self.commands.get_command(entity_type_name, kind)
        command.bind(self._connection)
        return command

    def note_inserted(self, entity: Entity) -> None:
        self._inserted.append(entity)

    @contextmanager
    def _connected(self) -> Iterator[Connection]:
        if self._connection is not None:
            yield self._connection
            return
        with self.engine.connect() as connection:
            self._connection = connection
            try:
                yield connection
            finally:
                self._connection = None

    def _run(self, entity_type_name: str, kind: OperationKind, *params: Any) -> Command:
        command = self.get_command(entity_type_name, kind)
        command.clear_parameters()
        for index, value in enumerate(params):
            command.set_parameter(index, value)
        return command

    def _definitions(self, entity_type: EntityType) -> List[Any]:
        return entity_type.get_property_definitions(self.version)

    def _writer(self, entity_type: EntityType, kind: OperationKind) -> DbParameterWriter:
        writer = DbParameterWriter(self)
        writer.reset(self._definitions(entity_type))
        writer.command = self.get_command(entity_type.full_name, kind)
        return writer

    ############################
    # Loading
    ############################

    def read_version(self, cache: StoreCache) -> int:
        """Read identifier and repository version of the cache's project row."""
        with self._connected():
            rows = self._run(PROJECT_INFO_TYPE_NAME, OperationKind.SELECT_BY_NAME, cache.project_name).execute_reader()
        if not rows:
            raise NotFound(f"Project '{cache.project_name}' does not exist in the repository")
        project_id, _, version = rows[0][:3]
        cache.project_id = project_id
        self.version = int(version)
        self._logger.info(f"Project '{cache.project_name}' has id {project_id}, repository version {version}")
        return self.version

    def load_entities(self, cache: StoreCache, entity_type: EntityType,
                      id_filter: Callable[[Any], bool],
                      owner_resolver: Callable[[Any], Optional[Entity]],
                      kind: OperationKind, *params: Any) -> List[EntityBucket]:
        """
        Run a select command and materialize its rows.

        Each row holds the identifier, the owner identifier and the entity's
        columns. Rows whose identifier `id_filter` rejects are skipped. The
        returned buckets are Original and not yet added to the cache.
        """
        definitions = self._definitions(entity_type)
        buckets: List[EntityBucket] = []
        with self._connected():
            rows = self._run(entity_type.full_name, kind, *params).execute_reader()
            reader = DbParameterReader(self)
            reader.reset(definitions, rows)
            while reader.begin_object():
                entity_id = reader.read_id()
                if entity_id is None:
                    raise InvalidRepositoryFormat(f"{entity_type.full_name} row without identifier")
                if not id_filter(entity_id):
                    continue
                owner_id = reader.read_id()
                entity = entity_type.create_instance()
                entity.assign_id(entity_id)
                reader.prepare(entity)
                entity.load_fields(reader, self.version)
                for pix, definition in enumerate(definitions):
                    if isinstance(definition, InnerObjectsDefinition) and self.composition.is_composable(definition):
                        reader.property_index = pix - 1
                        entity.load_inner_objects(definition.name, reader, self.version)
                reader.end_object()
                buckets.append(EntityBucket(entity=entity, owner=owner_resolver(owner_id), state=ItemState.ORIGINAL))

            child_row_properties = [
                (pix, d) for pix, d in enumerate(definitions)
                if isinstance(d, InnerObjectsDefinition) and not self.composition.is_composable(d)
            ]
            if child_row_properties:
                for bucket in buckets:
                    reader.prepare(bucket.entity)
                    for pix, definition in child_row_properties:
                        reader.property_index = pix - 1
                        bucket.entity.load_inner_objects(definition.name, reader, self.version)

        self._logger.debug(f"Loaded {len(buckets)} {entity_type.full_name} entities ({kind.value})")
        return buckets

    def _load_into(self, cache: StoreCache, category: EntityCategory,
                   owner_resolver: Callable[[Any], Optional[Entity]],
                   kind: OperationKind, *params: Any,
                   entity_kind: Optional[Any] = None) -> List[Entity]:
        loaded = cache.loaded(category)
        entities = []
        for entity_type in cache.registry.types_of(category, entity_kind):
            for bucket in self.load_entities(cache, entity_type, lambda i: not loaded.contains(i),
                                             owner_resolver, kind, *params):
                cache.add_loaded(bucket)
                entities.append(bucket.entity)
        return entities

    def _project_id(self, cache: StoreCache, project_id: Optional[int]) -> int:
        if project_id is None:
            project_id = cache.project_id
        if project_id is None:
            raise NotFound(f"Project '{cache.project_name}' has not been stored yet")
        return project_id

    def load_projects(self, cache: StoreCache) -> List[Entity]:
        """Load the project settings entities of the cache's project."""
        with self._connected():
            return self._load_into(cache, EntityCategory.PROJECT, lambda _: None,
                                   OperationKind.SELECT_BY_NAME, cache.project_name)

    def load_designs(self, cache: StoreCache, project_id: Optional[int] = None) -> List[Entity]:
        """Load the designs of a project together with their styles, kind by kind."""
        project_id = self._project_id(cache, project_id)
        with self._connected():
            designs = self._load_into(cache, EntityCategory.DESIGN, lambda _: None,
                                      OperationKind.SELECT_BY_OWNER_ID, project_id)
            for design in designs:
                for style_kind in StyleKind:
                    self._load_into(cache, EntityCategory.STYLE, lambda _, d=design: d,
                                    OperationKind.SELECT_BY_OWNER_ID, design.id, entity_kind=style_kind)
        return designs

    def load_model(self, cache: StoreCache, project_id: Optional[int] = None) -> List[Entity]:
        project_id = self._project_id(cache, project_id)
        with self._connected():
            return self._load_into(cache, EntityCategory.MODEL, lambda _: None,
                                   OperationKind.SELECT_BY_OWNER_ID, project_id)

    def load_templates(self, cache: StoreCache, project_id: Optional[int] = None) -> List[Entity]:
        """
        Load templates with their model objects, shapes and model mappings.

        Raises:
            InvalidRepositoryFormat: when a template has no shape or several
        """
        project_id = self._project_id(cache, project_id)
        with self._connected():
            templates = self._load_into(cache, EntityCategory.TEMPLATE, lambda _: None,
                                        OperationKind.SELECT_BY_OWNER_ID, project_id)
            self.load_template_model_objects(cache, project_id)
            self.load_template_shapes(cache, project_id)
            for template in templates:
                for mapping_kind in MappingKind:
                    self._load_into(cache, EntityCategory.MODEL_MAPPING, lambda _, t=template: t,
                                    OperationKind.SELECT_BY_OWNER_ID, template.id, entity_kind=mapping_kind)
        for template in templates:
            shape_count = sum(1 for s in cache.shapes_owned_by(template) if s.id is not None)
            if shape_count != 1:
                raise InvalidRepositoryFormat(f"{template!r} has {shape_count} shapes instead of one")
        return templates

    def load_template_shapes(self, cache: StoreCache, project_id: Optional[int] = None) -> List[Entity]:
        project_id = self._project_id(cache, project_id)
        with self._connected():
            shapes = self._load_into(cache, EntityCategory.SHAPE,
                                     lambda owner_id: cache.get_entity(EntityCategory.TEMPLATE, owner_id),
                                     OperationKind.SELECT_TEMPLATE_SHAPES, project_id)
            for shape in shapes:
                self.load_child_shapes(cache, shape)
        return shapes

    def load_template_model_objects(self, cache: StoreCache, project_id: Optional[int] = None) -> List[Entity]:
        project_id = self._project_id(cache, project_id)
        with self._connected():
            roots = self._load_into(cache, EntityCategory.MODEL_OBJECT,
                                    lambda owner_id: cache.get_entity(EntityCategory.TEMPLATE, owner_id),
                                    OperationKind.SELECT_TEMPLATE_MODEL_OBJECTS, project_id)
            for root in roots:
                self.load_child_model_objects(cache, root)
        return roots

    def load_diagrams(self, cache: StoreCache, project_id: Optional[int] = None) -> List[Entity]:
        project_id = self._project_id(cache, project_id)
        with self._connected():
            return self._load_into(cache, EntityCategory.DIAGRAM, lambda _: None,
                                   OperationKind.SELECT_BY_OWNER_ID, project_id)

    def load_diagram_shapes(self, cache: StoreCache, diagram: Entity) -> List[Entity]:
        """Load the shapes of a diagram, their child shapes and the diagram's connections."""
        with self._connected():
            shapes = self._load_into(cache, EntityCategory.SHAPE, lambda _: diagram,
                                     OperationKind.SELECT_DIAGRAM_SHAPES, diagram.id)
            for shape in shapes:
                self.load_child_shapes(cache, shape)
            self.load_shape_connections(cache, diagram)
        self._logger.info(f"Loaded {len(shapes)} shapes of {diagram!r}")
        return shapes

    def load_child_shapes(self, cache: StoreCache, parent: Entity) -> List[Entity]:
        """Load the shapes owned by `parent`, recursively."""
        with self._connected():
            children = self._load_into(cache, EntityCategory.SHAPE, lambda _: parent,
                                       OperationKind.SELECT_CHILDREN, parent.id)
            for child in children:
                self.load_child_shapes(cache, child)
        return children

    def load_shape_connections(self, cache: StoreCache, diagram: Entity) -> List[ShapeConnection]:
        with self._connected():
            rows = self._run(SHAPE_CONNECTION_TYPE_NAME, OperationKind.SELECT_BY_OWNER_ID, diagram.id).execute_reader()
        connections = []
        for connector_id, glue_point_id, target_id, target_point_id in (row[:4] for row in rows):
            connection = ShapeConnection(
                connector_shape=cache.get_shape(connector_id),
                glue_point_id=glue_point_id,
                target_shape=cache.get_shape(target_id),
                target_point_id=target_point_id,
            )
            cache.add_loaded_connection(connection)
            connections.append(connection)
        return connections

    def load_model_model_objects(self, cache: StoreCache, model: Entity) -> List[Entity]:
        """Load the root model objects of a model and all their descendants."""
        with self._connected():
            roots = self._load_into(cache, EntityCategory.MODEL_OBJECT, lambda _: model,
                                    OperationKind.SELECT_ALL_ROOTS, model.id)
            for root in roots:
                self.load_child_model_objects(cache, root)
        return roots

    def load_child_model_objects(self, cache: StoreCache, parent: Entity) -> List[Entity]:
        with self._connected():
            children = self._load_into(cache, EntityCategory.MODEL_OBJECT, lambda _: parent,
                                       OperationKind.SELECT_CHILDREN, parent.id)
            for child in children:
                self.load_child_model_objects(cache, child)
        return children

    def load_diagram_model_objects(self, cache: StoreCache, model: Entity) -> List[Entity]:
        if self.version < DIAGRAM_MODEL_OBJECT_MIN_VERSION:
            self._logger.debug(f"Repository version {self.version} has no diagram model objects")
            return []
        with self._connected():
            return self._load_into(cache, EntityCategory.DIAGRAM_MODEL_OBJECT, lambda _: model,
                                   OperationKind.SELECT_DIAGRAM_MODEL_OBJECTS, model.id)

    ############################
    # In-use checks
    ############################

    def _check_in_use(self, cache: StoreCache, entity_type_name: str, kind: OperationKind, *item: Any) -> bool:
        """
        Ask the repository whether unloaded diagrams use an item.

        Only diagrams that are unchanged and have no shapes in the cache are
        asked about; diagrams with cached shapes are assumed to be checked in
        memory by the caller.
        """
        project_id = self._project_id(cache, None)
        with self._connected():
            for bucket in cache.loaded(EntityCategory.DIAGRAM):
                if bucket.state != ItemState.ORIGINAL or cache.shapes_owned_by(bucket.entity):
                    continue
                result = self._run(entity_type_name, kind, project_id, bucket.entity.id, *item).execute_scalar()
                if result:
                    return True
        return False

    def check_template_in_use(self, cache: StoreCache, template: Entity) -> bool:
        return self._check_in_use(cache, PROJECT_SETTINGS_TYPE_NAME, OperationKind.CHECK_TEMPLATE_IN_USE, template.id)

    def check_style_in_use(self, cache: StoreCache, style: Entity) -> bool:
        return self._check_in_use(cache, PROJECT_SETTINGS_TYPE_NAME, OperationKind.CHECK_STYLE_IN_USE, style.id)

    def check_model_object_in_use(self, cache: StoreCache, model_object: Entity) -> bool:
        return self._check_in_use(cache, PROJECT_SETTINGS_TYPE_NAME, OperationKind.CHECK_MODEL_OBJECT_IN_USE,
                                  model_object.id)

    def check_shape_type_in_use(self, cache: StoreCache, shape_type: EntityType) -> bool:
        return self._check_in_use(cache, shape_type.full_name, OperationKind.CHECK_SHAPE_TYPE_IN_USE)

    ############################
    # Saving
    ############################

    def save_changes(self, cache: StoreCache) -> FlushSummary:
        """
        Write every change tracked by `cache` in one transaction.

        On failure the transaction is rolled back, identifiers handed out
        during the call are revoked and the exception propagates unchanged.
        On success the cache accepts the changes.
        """
        for entity in cache.tracked_entities():
            cache.registry.find_by_full_name(entity.type_name)

        project_id_before = cache.project_id
        self._inserted = []
        self._summary = FlushSummary()
        with self.engine.connect() as connection:
            self._connection = connection
            transaction = connection.begin()
            try:
                self._save_project(cache)
                self._delete_phase(cache)
                self._insert_phase(cache)
                self._insert_shape_connections(cache)
                self._update_shape_owners(cache)
                self._update_model_object_owners(cache)
                self._update_phase(cache)
                transaction.commit()
            except Exception as e:
                transaction.rollback()
                for entity in self._inserted:
                    entity._revoke_id()
                cache.project_id = project_id_before
                self._logger.error(f"Saving project '{cache.project_name}' failed, rolled back: {e}")
                raise
            finally:
                self._connection = None
                self._inserted = []

        cache.accept_changes()
        self._logger.info(f"Saved project '{cache.project_name}': {self._summary}")
        return self._summary

    def _save_project(self, cache: StoreCache) -> None:
        if cache.project_id is None:
            project_id = self._run(PROJECT_INFO_TYPE_NAME, OperationKind.INSERT,
                                   cache.project_name, self.version).execute_scalar()
            if project_id is None:
                raise StoreFault(f"Inserting project '{cache.project_name}' returned no identifier")
            cache.project_id = int(project_id)
            self._logger.debug(f"Inserted project '{cache.project_name}' with id {project_id}")
        else:
            self._execute_one(self._run(PROJECT_INFO_TYPE_NAME, OperationKind.UPDATE,
                                        cache.project_id, cache.project_name, self.version),
                              f"project '{cache.project_name}' ({cache.project_id})")

    def _execute_one(self, command: Command, target: str) -> None:
        if command.execute_non_query() == 0:
            raise StoreFault(f"{command} affected no rows for {target}")

    def _owner_id(self, cache: StoreCache, entity: Entity, owner: Optional[Entity]) -> Optional[int]:
        if owner is None:
            if entity.category in _PROJECT_OWNED:
                return cache.project_id
            if entity.category in _OWNER_REQUIRED:
                raise UnresolvedOwner(f"{entity!r} has no owner")
            return None
        if owner.id is None:
            raise UnresolvedOwner(f"Owner {owner!r} of {entity!r} has no identifier")
        return owner.id

    def _write_entity(self, writer: DbParameterWriter, entity: Entity, owner_id: Optional[int]) -> None:
        definitions = writer.property_definitions
        writer.prepare(entity)
        writer.write_id(entity.id)
        writer.write_id(owner_id)
        entity.save_fields(writer, self.version)
        for pix, definition in enumerate(definitions):
            if isinstance(definition, InnerObjectsDefinition) and self.composition.is_composable(definition):
                writer.property_index = pix - 1
                entity.save_inner_objects(definition.name, writer, self.version)
        writer.flush()
        # Child rows need the identifier the flush may just have assigned.
        for pix, definition in enumerate(definitions):
            if isinstance(definition, InnerObjectsDefinition) and not self.composition.is_composable(definition):
                writer.property_index = pix - 1
                entity.save_inner_objects(definition.name, writer, self.version)

    def _delete_entity(self, writer: DbParameterWriter, entity: Entity) -> None:
        writer.prepare(entity)
        writer.write_id(entity.id)
        for pix, definition in enumerate(writer.property_definitions):
            if isinstance(definition, InnerObjectsDefinition) and not self.composition.is_composable(definition):
                writer.property_index = pix - 1
                writer.delete_inner_objects()
        writer.flush()

    ############################
    # Delete phase
    ############################

    def _ordered(self, cache: StoreCache, category: EntityCategory,
                 buckets: List[EntityBucket], reverse: bool = False) -> List[EntityBucket]:
        graph = EntityDependencyGraph.from_owned((b.entity, b.owner) for b in cache.loaded(category))
        by_entity = {b.entity.live_id: b for b in buckets}
        return [by_entity[e.live_id] for e in graph.order([b.entity for b in buckets], reverse=reverse)]

    def _delete_buckets(self, cache: StoreCache, buckets: Iterable[EntityBucket]) -> None:
        writers: Dict[str, DbParameterWriter] = {}
        for bucket in buckets:
            entity_type = cache.registry.find_by_full_name(bucket.entity.type_name)
            writer = writers.get(entity_type.full_name)
            if writer is None:
                writer = writers[entity_type.full_name] = self._writer(entity_type, OperationKind.DELETE)
            self._delete_entity(writer, bucket.entity)
            self._summary.deleted += 1
            self._logger.debug(f"Deleted {bucket.entity!r}")

    def _delete_category(self, cache: StoreCache, category: EntityCategory,
                         kind: Optional[Any] = None, ordered: bool = False) -> None:
        deleted = [b for b in cache.loaded(category).buckets(ItemState.DELETED)
                   if kind is None or b.entity.kind == kind]
        if ordered:
            self._delete_buckets(cache, self._ordered(cache, category, deleted, reverse=True))
            return
        for entity_type in cache.registry.types_of(category, kind):
            self._delete_buckets(cache, [b for b in deleted if b.entity.type_name == entity_type.full_name])

    def _delete_shape_connections(self, cache: StoreCache) -> None:
        connections = cache.deleted_connections
        if not connections:
            return
        command = self.get_command(SHAPE_CONNECTION_TYPE_NAME, OperationKind.DELETE)
        for connection in connections:
            command.clear_parameters()
            command.set_parameter(0, connection.connector_shape.id)
            command.set_parameter(1, connection.glue_point_id)
            self._execute_one(command, repr(connection))
            self._summary.connections_deleted += 1

    def _delete_phase(self, cache: StoreCache) -> None:
        if self.version >= DIAGRAM_MODEL_OBJECT_MIN_VERSION:
            self._delete_category(cache, EntityCategory.DIAGRAM_MODEL_OBJECT)
        self._delete_category(cache, EntityCategory.MODEL_OBJECT, ordered=True)
        self._delete_category(cache, EntityCategory.MODEL)
        self._delete_shape_connections(cache)
        self._delete_category(cache, EntityCategory.SHAPE, ordered=True)
        self._delete_category(cache, EntityCategory.DIAGRAM)
        for mapping_kind in MappingKind:
            self._delete_category(cache, EntityCategory.MODEL_MAPPING, mapping_kind)
        self._delete_category(cache, EntityCategory.TEMPLATE)
        for style_kind in StyleKind:
            self._delete_category(cache, EntityCategory.STYLE, style_kind)
        self._delete_category(cache, EntityCategory.DESIGN)
        self._delete_category(cache, EntityCategory.PROJECT)
        self._logger.info(f"Delete phase: {self._summary.deleted} entities, "
                          f"{self._summary.connections_deleted} connections")

    ############################
    # Insert phase
    ############################

    def _insert_entities(self, cache: StoreCache, entity_type: EntityType, kind: OperationKind,
                         predicate: Optional[OwnerPredicate] = None) -> int:
        writer: Optional[DbParameterWriter] = None
        count = 0
        for entity, owner in cache.new(entity_type.category):
            # Evaluated per entity: an insert earlier in this loop can satisfy a later predicate.
            if entity.type_name != entity_type.full_name or entity.id is not None:
                continue
            if predicate is not None and not predicate(entity, owner):
                continue
            if writer is None:
                writer = self._writer(entity_type, kind)
            self._write_entity(writer, entity, self._owner_id(cache, entity, owner))
            count += 1
        self._summary.inserted += count
        return count

    def _insert_category(self, cache: StoreCache, category: EntityCategory, kind: Optional[Any] = None) -> None:
        for entity_type in cache.registry.types_of(category, kind):
            self._insert_entities(cache, entity_type, OperationKind.INSERT)

    def _insert_level_by_level(self, cache: StoreCache, category: EntityCategory,
                               predicate: OwnerPredicate) -> int:
        """
        Insert entities owned by entities of the same category until a pass
        inserts nothing. Returns the number of passes.
        """
        def ready(entity: Entity, owner: Optional[Entity]) -> bool:
            return (owner is not None and owner.category == category and owner.id is not None
                    and predicate(entity, owner))

        passes = 0
        while True:
            passes += 1
            inserted = 0
            for entity_type in cache.registry.types_of(category):
                inserted += self._insert_entities(cache, entity_type, OperationKind.INSERT_OWNED_BY_PARENT, ready)
            if inserted == 0:
                return passes

    def _require_all_inserted(self, cache: StoreCache, category: EntityCategory) -> None:
        pending = [(e, o) for e, o in cache.new(category) if e.id is None]
        if not pending:
            return
        graph = EntityDependencyGraph.from_owned(pending)
        graph.detect_cycles()
        names = ", ".join(repr(e) for e, _ in pending)
        raise UnresolvedOwner(
            f"{len(pending)} {category.value} entities could not be inserted because their owners "
            f"have no identifier: {names} (ownership cycles: {len(graph.cycles)})")

    def _insert_phase(self, cache: StoreCache) -> None:
        registry = cache.registry
        self._insert_category(cache, EntityCategory.PROJECT)
        self._insert_category(cache, EntityCategory.DESIGN)
        for style_kind in StyleKind:
            self._insert_category(cache, EntityCategory.STYLE, style_kind)
        self._insert_category(cache, EntityCategory.TEMPLATE)

        for entity_type in registry.types_of(EntityCategory.MODEL_OBJECT):
            self._insert_entities(cache, entity_type, OperationKind.INSERT_TEMPLATE_MODEL_OBJECT,
                                  _owned_by(EntityCategory.TEMPLATE))
        self._summary.nested_model_object_passes += self._insert_level_by_level(
            cache, EntityCategory.MODEL_OBJECT,
            lambda e, o: _root_owner(e) is not None and _root_owner(e).category == EntityCategory.TEMPLATE)
        for entity_type in registry.types_of(EntityCategory.SHAPE):
            self._insert_entities(cache, entity_type, OperationKind.INSERT_TEMPLATE_SHAPE,
                                  _owned_by(EntityCategory.TEMPLATE))
        for mapping_kind in MappingKind:
            self._insert_category(cache, EntityCategory.MODEL_MAPPING, mapping_kind)

        self._insert_category(cache, EntityCategory.MODEL)
        for entity_type in registry.types_of(EntityCategory.MODEL_OBJECT):
            self._insert_entities(cache, entity_type, OperationKind.INSERT_MODEL_MODEL_OBJECT,
                                  lambda e, o: o is None or o.category == EntityCategory.MODEL)
        self._summary.nested_model_object_passes += self._insert_level_by_level(
            cache, EntityCategory.MODEL_OBJECT, lambda e, o: True)
        self._require_all_inserted(cache, EntityCategory.MODEL_OBJECT)

        if self.version >= DIAGRAM_MODEL_OBJECT_MIN_VERSION:
            for entity_type in registry.types_of(EntityCategory.DIAGRAM_MODEL_OBJECT):
                self._insert_entities(cache, entity_type, OperationKind.INSERT_DIAGRAM_MODEL_OBJECT)
        elif len(cache.new(EntityCategory.DIAGRAM_MODEL_OBJECT)):
            self._logger.warning(f"Repository version {self.version} cannot store diagram model objects; "
                                 f"{len(cache.new(EntityCategory.DIAGRAM_MODEL_OBJECT))} stay unsaved")

        self._insert_category(cache, EntityCategory.DIAGRAM)
        for entity_type in registry.types_of(EntityCategory.SHAPE):
            self._insert_entities(cache, entity_type, OperationKind.INSERT_DIAGRAM_SHAPE,
                                  _owned_by(EntityCategory.DIAGRAM))
        self._summary.child_shape_passes = self._insert_level_by_level(
            cache, EntityCategory.SHAPE, lambda e, o: True)
        self._require_all_inserted(cache, EntityCategory.SHAPE)
        self._logger.info(f"Insert phase: {self._summary.inserted} entities, "
                          f"{self._summary.child_shape_passes} child shape passes")

    def _insert_shape_connections(self, cache: StoreCache) -> None:
        connections = cache.new_connections
        if not connections:
            return
        command = self.get_command(SHAPE_CONNECTION_TYPE_NAME, OperationKind.INSERT)
        for connection in connections:
            connector, target = connection.connector_shape, connection.target_shape
            if connector.id is None or target.id is None:
                raise UnresolvedOwner(f"{connection!r} connects shapes that were not inserted")
            command.clear_parameters()
            command.set_parameter(0, connector.id)
            command.set_parameter(1, connection.glue_point_id)
            command.set_parameter(2, target.id)
            command.set_parameter(3, connection.target_point_id)
            command.execute_non_query()
            self._summary.connections_inserted += 1

    ############################
    # Owner updates
    ############################

    def _update_owner(self, entity_type_name: str, kind: OperationKind, bucket: EntityBucket) -> None:
        owner = bucket.owner
        if owner is not None and owner.id is None:
            raise UnresolvedOwner(f"New owner {owner!r} of {bucket.entity!r} has no identifier")
        self._execute_one(self._run(entity_type_name, kind, bucket.entity.id,
                                    owner.id if owner is not None else None), repr(bucket.entity))
        self._summary.owners_changed += 1

    def _update_shape_owners(self, cache: StoreCache) -> None:
        moved = cache.loaded(EntityCategory.SHAPE).buckets(ItemState.OWNER_CHANGED)
        for bucket in self._ordered(cache, EntityCategory.SHAPE, moved):
            owner = bucket.owner
            if owner is None or owner.category == EntityCategory.SHAPE:
                kind = OperationKind.UPDATE_OWNER_SHAPE
            elif owner.category == EntityCategory.DIAGRAM:
                kind = OperationKind.UPDATE_OWNER_DIAGRAM
            else:
                raise SchemaConflict(f"Shapes cannot be owned by {owner!r}")
            self._update_owner(SHAPE_TYPE_NAME, kind, bucket)

    def _update_model_object_owners(self, cache: StoreCache) -> None:
        moved = cache.loaded(EntityCategory.MODEL_OBJECT).buckets(ItemState.OWNER_CHANGED)
        for bucket in self._ordered(cache, EntityCategory.MODEL_OBJECT, moved):
            owner = bucket.owner
            if owner is not None and owner.category == EntityCategory.MODEL_OBJECT:
                kind = OperationKind.UPDATE_OWNER_MODEL_OBJECT
            elif owner is None:
                raise UnresolvedOwner(f"{bucket.entity!r} cannot be detached from its model")
            elif owner.category == EntityCategory.MODEL:
                kind = OperationKind.UPDATE_OWNER_MODEL
            else:
                raise SchemaConflict(f"Model objects cannot be moved to {owner!r}")
            self._update_owner(MODEL_OBJECT_TYPE_NAME, kind, bucket)

    ############################
    # Update phase
    ############################

    def _update_buckets(self, cache: StoreCache, buckets: Iterable[EntityBucket]) -> None:
        writers: Dict[str, DbParameterWriter] = {}
        for bucket in buckets:
            entity_type = cache.registry.find_by_full_name(bucket.entity.type_name)
            writer = writers.get(entity_type.full_name)
            if writer is None:
                writer = writers[entity_type.full_name] = self._writer(entity_type, OperationKind.UPDATE)
            self._write_entity(writer, bucket.entity, self._owner_id(cache, bucket.entity, bucket.owner))
            self._summary.updated += 1
            self._logger.debug(f"Updated {bucket.entity!r}")

    def _changed(self, cache: StoreCache, category: EntityCategory) -> List[EntityBucket]:
        return [b for b in cache.loaded(category) if b.state in _CHANGED_STATES]

    def _update_category(self, cache: StoreCache, category: EntityCategory,
                         kind: Optional[Any] = None, ordered: bool = False) -> None:
        changed = [b for b in self._changed(cache, category) if kind is None or b.entity.kind == kind]
        if ordered:
            self._update_buckets(cache, self._ordered(cache, category, changed))
            return
        for entity_type in cache.registry.types_of(category, kind):
            self._update_buckets(cache, [b for b in changed if b.entity.type_name == entity_type.full_name])

    def _update_phase(self, cache: StoreCache) -> None:
        self._update_category(cache, EntityCategory.PROJECT)
        self._update_category(cache, EntityCategory.DESIGN)
        for style_kind in StyleKind:
            self._update_category(cache, EntityCategory.STYLE, style_kind)
        self._update_category(cache, EntityCategory.MODEL)
        self._update_category(cache, EntityCategory.MODEL_OBJECT, ordered=True)
        if self.version >= DIAGRAM_MODEL_OBJECT_MIN_VERSION:
            self._update_category(cache, EntityCategory.DIAGRAM_MODEL_OBJECT)
        self._update_category(cache, EntityCategory.TEMPLATE)
        for mapping_kind in MappingKind:
            self._update_category(cache, EntityCategory.MODEL_MAPPING, mapping_kind)
        self._update_category(cache, EntityCategory.DIAGRAM)
        self._update_category(cache, EntityCategory.SHAPE, ordered=True)
        self._logger.info(f"Update phase: {self._summary.updated} entities")

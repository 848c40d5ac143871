"""
Example usage of diagramstore illustrating:
 - Entity type registration
 - Commands for an SQLite repository
 - Tracking new and modified entities in a StoreCache
 - Flushing with save_changes and loading into a fresh cache
"""
import logging

from sqlalchemy import create_engine

from diagramstore import (
    CommandTable, CommandTrace, EntityCategory, EntityTypeRegistry, FieldDefinition, FieldType,
    OperationKind, Parameter, SqlCommand, SqlStore, StoreCache, configure_logging, define_entity_type,
)
from diagramstore.ecs.entity import PROJECT_INFO_TYPE_NAME, SHAPE_CONNECTION_TYPE_NAME

SCHEMA = [
    "CREATE TABLE project_info (id INTEGER PRIMARY KEY, name TEXT UNIQUE, version INTEGER)",
    "CREATE TABLE diagram (id INTEGER PRIMARY KEY, project_id INTEGER, name TEXT)",
    "CREATE TABLE shape (id INTEGER PRIMARY KEY, diagram_id INTEGER, parent_id INTEGER, caption TEXT)",
    "CREATE TABLE shape_connection (connector_id INTEGER, glue_point_id INTEGER, target_id INTEGER, "
    "target_point_id INTEGER)",
]


def create_commands(trace: CommandTrace) -> CommandTable:
    """Statements for a project with diagrams and nested note shapes."""
    commands = CommandTable(trace)
    caption = Parameter(name="caption", field_type=FieldType.STRING)
    name = Parameter(name="name", field_type=FieldType.STRING)

    commands.set_command(PROJECT_INFO_TYPE_NAME, OperationKind.INSERT, SqlCommand(
        "INSERT INTO project_info (name, version) VALUES (:project, :version)", ["project", "version"]))
    commands.set_command(PROJECT_INFO_TYPE_NAME, OperationKind.UPDATE, SqlCommand(
        "UPDATE project_info SET name = :project, version = :version WHERE id = :id", ["id", "project", "version"]))
    commands.set_command(PROJECT_INFO_TYPE_NAME, OperationKind.SELECT_BY_NAME, SqlCommand(
        "SELECT id, name, version FROM project_info WHERE name = :project", ["project"]))

    commands.set_command("Demo.Diagram", OperationKind.INSERT, SqlCommand(
        "INSERT INTO diagram (project_id, name) VALUES (:owner, :name)", ["id", "owner", name]))
    commands.set_command("Demo.Diagram", OperationKind.SELECT_BY_OWNER_ID, SqlCommand(
        "SELECT id, project_id, name FROM diagram WHERE project_id = :project_id", ["project_id"]))

    commands.set_command("Demo.Note", OperationKind.INSERT_DIAGRAM_SHAPE, SqlCommand(
        "INSERT INTO shape (diagram_id, caption) VALUES (:owner, :caption)", ["id", "owner", caption]))
    commands.set_command("Demo.Note", OperationKind.INSERT_OWNED_BY_PARENT, SqlCommand(
        "INSERT INTO shape (parent_id, caption) VALUES (:owner, :caption)", ["id", "owner", caption]))
    commands.set_command("Demo.Note", OperationKind.UPDATE, SqlCommand(
        "UPDATE shape SET caption = :caption WHERE id = :id", ["id", "owner", caption]))
    commands.set_command("Demo.Note", OperationKind.DELETE, SqlCommand(
        "DELETE FROM shape WHERE id = :id", ["id"]))
    commands.set_command("Demo.Note", OperationKind.SELECT_DIAGRAM_SHAPES, SqlCommand(
        "SELECT id, diagram_id, caption FROM shape WHERE diagram_id = :diagram_id ORDER BY id", ["diagram_id"]))
    commands.set_command("Demo.Note", OperationKind.SELECT_CHILDREN, SqlCommand(
        "SELECT id, parent_id, caption FROM shape WHERE parent_id = :parent_id ORDER BY id", ["parent_id"]))
    commands.set_command(SHAPE_CONNECTION_TYPE_NAME, OperationKind.SELECT_BY_OWNER_ID, SqlCommand(
        "SELECT c.connector_id, c.glue_point_id, c.target_id, c.target_point_id FROM shape_connection c "
        "JOIN shape s ON c.connector_id = s.id WHERE s.diagram_id = :diagram_id", ["diagram_id"]))
    return commands


def main():
    configure_logging("INFO")
    logger = logging.getLogger("DiagramStoreExample")

    registry = EntityTypeRegistry()
    diagram_type = registry.register(define_entity_type("Demo.Diagram", EntityCategory.DIAGRAM, [
        FieldDefinition(name="Name", field_type=FieldType.STRING),
    ]))
    note_type = registry.register(define_entity_type("Demo.Note", EntityCategory.SHAPE, [
        FieldDefinition(name="Caption", field_type=FieldType.STRING),
    ]))

    engine = create_engine("sqlite://")
    with engine.begin() as conn:
        for statement in SCHEMA:
            conn.exec_driver_sql(statement)

    trace = CommandTrace()
    store = SqlStore(engine, create_commands(trace))

    # Build a diagram with a note that owns a second note
    cache = StoreCache(registry, "Example Project")
    diagram = diagram_type.create_instance()
    diagram.set_field("Name", "Overview")
    outer = note_type.create_instance()
    outer.set_field("Caption", "Outer note")
    inner = note_type.create_instance()
    inner.set_field("Caption", "Inner note")
    cache.add_new(inner, outer)
    cache.add_new(diagram)
    cache.add_new(outer, diagram)

    summary = store.save_changes(cache)
    logger.info(f"First flush: {summary}")
    for execution in trace.executions:
        logger.info(f"  {execution.entity_type_name} {execution.kind} {execution.values}")

    # Rename the inner note and read everything back
    inner.set_field("Caption", "Renamed inner note")
    cache.mark_modified(inner)
    store.save_changes(cache)

    fresh = StoreCache(registry, "Example Project")
    store.read_version(fresh)
    for loaded_diagram in store.load_diagrams(fresh):
        for shape in store.load_diagram_shapes(fresh, loaded_diagram):
            logger.info(f"{loaded_diagram.get_field('Name')}: {shape.get_field('Caption')}")
            for child in fresh.shapes_owned_by(shape):
                logger.info(f"  owns {child.get_field('Caption')}")

    engine.dispose()


if __name__ == "__main__":
    main()

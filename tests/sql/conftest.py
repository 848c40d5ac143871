"""
Common fixtures for the SQL store tests.
Provides an in-memory SQLite repository with a schema for the test entity
types and a command table whose statements run against it.
"""
from typing import Any, List, Optional, Sequence, Tuple

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from diagramstore.ecs.commands import CommandTable, OperationKind, Parameter, SqlCommand
from diagramstore.ecs.entity import (
    MODEL_OBJECT_TYPE_NAME, PROJECT_INFO_TYPE_NAME, PROJECT_SETTINGS_TYPE_NAME,
    SHAPE_CONNECTION_TYPE_NAME, SHAPE_TYPE_NAME,
)
from diagramstore.ecs.entity_type import FieldType
from diagramstore.ecs.storage import SqlStore
from diagramstore.ecs.tracer import CommandTrace

SCHEMA = [
    """CREATE TABLE project_info (
        id INTEGER PRIMARY KEY, name TEXT NOT NULL UNIQUE, version INTEGER NOT NULL)""",
    """CREATE TABLE project_settings (
        id INTEGER PRIMARY KEY, project_id INTEGER NOT NULL REFERENCES project_info(id), name TEXT)""",
    """CREATE TABLE design (
        id INTEGER PRIMARY KEY, project_id INTEGER NOT NULL REFERENCES project_info(id), name TEXT)""",
    """CREATE TABLE style (
        id INTEGER PRIMARY KEY, design_id INTEGER NOT NULL REFERENCES design(id), type TEXT NOT NULL,
        name TEXT, color INTEGER, cap_shape INTEGER, color_style_id INTEGER)""",
    """CREATE TABLE template (
        id INTEGER PRIMARY KEY, project_id INTEGER NOT NULL REFERENCES project_info(id),
        name TEXT, title TEXT)""",
    """CREATE TABLE model (
        id INTEGER PRIMARY KEY, project_id INTEGER NOT NULL REFERENCES project_info(id), name TEXT)""",
    """CREATE TABLE model_object (
        id INTEGER PRIMARY KEY, model_id INTEGER REFERENCES model(id),
        template_id INTEGER REFERENCES template(id), parent_id INTEGER REFERENCES model_object(id),
        name TEXT, value REAL)""",
    """CREATE TABLE diagram_model_object (
        id INTEGER PRIMARY KEY, model_id INTEGER NOT NULL REFERENCES model(id), name TEXT)""",
    """CREATE TABLE model_mapping (
        id INTEGER PRIMARY KEY, template_id INTEGER NOT NULL REFERENCES template(id), type TEXT NOT NULL,
        shape_property INTEGER, model_property INTEGER)""",
    """CREATE TABLE diagram (
        id INTEGER PRIMARY KEY, project_id INTEGER NOT NULL REFERENCES project_info(id),
        name TEXT, width INTEGER, height INTEGER)""",
    """CREATE TABLE shape (
        id INTEGER PRIMARY KEY, type TEXT NOT NULL,
        diagram_id INTEGER REFERENCES diagram(id), template_id INTEGER REFERENCES template(id),
        parent_id INTEGER REFERENCES shape(id),
        x INTEGER, y INTEGER, template_ref INTEGER, model_object_ref INTEGER,
        caption TEXT, visible BOOLEAN, alpha INTEGER, angle INTEGER, size BIGINT, scale REAL, ratio REAL,
        mark TEXT, created DATETIME, icon BLOB, fill_style_id INTEGER,
        line_width INTEGER, vertices TEXT)""",
    """CREATE TABLE label (
        shape_id INTEGER NOT NULL REFERENCES shape(id), text TEXT, position REAL)""",
    """CREATE TABLE shape_connection (
        connector_id INTEGER NOT NULL REFERENCES shape(id), glue_point_id INTEGER NOT NULL,
        target_id INTEGER NOT NULL REFERENCES shape(id), target_point_id INTEGER NOT NULL,
        PRIMARY KEY (connector_id, glue_point_id))""",
]

# (parameter name, column, field type) in the order of the entity layout
Column = Tuple[str, str, FieldType]

SHAPE_BASE_COLUMNS: List[Column] = [
    ("X", "x", FieldType.INT32),
    ("Y", "y", FieldType.INT32),
    ("Template", "template_ref", FieldType.ID),
    ("ModelObject", "model_object_ref", FieldType.ID),
]
BOX_COLUMNS: List[Column] = SHAPE_BASE_COLUMNS + [
    ("Caption", "caption", FieldType.STRING),
    ("Visible", "visible", FieldType.BOOL),
    ("Alpha", "alpha", FieldType.BYTE),
    ("Angle", "angle", FieldType.INT16),
    ("Size", "size", FieldType.INT64),
    ("Scale", "scale", FieldType.FLOAT),
    ("Ratio", "ratio", FieldType.DOUBLE),
    ("Mark", "mark", FieldType.CHAR),
    ("Created", "created", FieldType.DATE),
    ("Icon", "icon", FieldType.IMAGE),
    ("FillStyle", "fill_style_id", FieldType.ID),
]
POLYLINE_COLUMNS: List[Column] = SHAPE_BASE_COLUMNS + [
    ("LineWidth", "line_width", FieldType.INT32),
    ("Vertices", "vertices", FieldType.STRING),
]
NAME_COLUMNS: List[Column] = [("Name", "name", FieldType.STRING)]

##############################
# Statement builders
##############################

def entity_parameters(columns: Sequence[Column]) -> List[Any]:
    return ["id", "owner"] + [Parameter(name=p, field_type=t) for p, _, t in columns]


def insert_command(table: str, owner_column: str, columns: Sequence[Column],
                   type_name: Optional[str] = None) -> SqlCommand:
    names = ["id", owner_column] + [c for _, c, _ in columns]
    values = [":id", ":owner"] + [f":{p}" for p, _, _ in columns]
    if type_name is not None:
        names.append("type")
        values.append(f"'{type_name}'")
    return SqlCommand(f"INSERT INTO {table} ({', '.join(names)}) VALUES ({', '.join(values)})",
                      entity_parameters(columns))


def update_command(table: str, columns: Sequence[Column], owner_column: Optional[str] = None) -> SqlCommand:
    assignments = [f"{c} = :{p}" for p, c, _ in columns]
    if owner_column is not None:
        assignments.insert(0, f"{owner_column} = :owner")
    return SqlCommand(f"UPDATE {table} SET {', '.join(assignments)} WHERE id = :id",
                      entity_parameters(columns))


def delete_command(table: str) -> SqlCommand:
    return SqlCommand(f"DELETE FROM {table} WHERE id = :id", ["id"])


def select_command(table: str, owner_column: str, columns: Sequence[Column], where: str,
                   parameters: Sequence[str], join: str = "") -> SqlCommand:
    selected = ", ".join(["e.id", f"e.{owner_column}"] + [f"e.{c}" for _, c, _ in columns])
    return SqlCommand(f"SELECT {selected} FROM {table} e {join} WHERE {where} ORDER BY e.id", parameters)


def _set(commands: CommandTable, type_name: str, kind: OperationKind, command: SqlCommand) -> None:
    commands.set_command(type_name, kind, command)


def _project_owned(commands: CommandTable, type_name: str, table: str, columns: Sequence[Column]) -> None:
    _set(commands, type_name, OperationKind.INSERT, insert_command(table, "project_id", columns))
    _set(commands, type_name, OperationKind.UPDATE, update_command(table, columns, "project_id"))
    _set(commands, type_name, OperationKind.DELETE, delete_command(table))
    _set(commands, type_name, OperationKind.SELECT_BY_OWNER_ID, select_command(
        table, "project_id", columns, "e.project_id = :project_id", ["project_id"]))


def _typed_child(commands: CommandTable, type_name: str, table: str, owner_column: str,
                 columns: Sequence[Column]) -> None:
    """Entities of a table shared by several types, owned by one parent column."""
    _set(commands, type_name, OperationKind.INSERT, insert_command(table, owner_column, columns, type_name))
    _set(commands, type_name, OperationKind.UPDATE, update_command(table, columns, owner_column))
    _set(commands, type_name, OperationKind.DELETE, delete_command(table))
    _set(commands, type_name, OperationKind.SELECT_BY_OWNER_ID, select_command(
        table, owner_column, columns, f"e.type = '{type_name}' AND e.{owner_column} = :owner_id", ["owner_id"]))


def _shape_commands(commands: CommandTable, type_name: str, columns: Sequence[Column]) -> None:
    type_filter = f"e.type = '{type_name}'"
    _set(commands, type_name, OperationKind.INSERT_DIAGRAM_SHAPE,
         insert_command("shape", "diagram_id", columns, type_name))
    _set(commands, type_name, OperationKind.INSERT_TEMPLATE_SHAPE,
         insert_command("shape", "template_id", columns, type_name))
    _set(commands, type_name, OperationKind.INSERT_OWNED_BY_PARENT,
         insert_command("shape", "parent_id", columns, type_name))
    _set(commands, type_name, OperationKind.UPDATE, update_command("shape", columns))
    _set(commands, type_name, OperationKind.DELETE, delete_command("shape"))
    _set(commands, type_name, OperationKind.SELECT_DIAGRAM_SHAPES, select_command(
        "shape", "diagram_id", columns, f"{type_filter} AND e.diagram_id = :diagram_id", ["diagram_id"]))
    _set(commands, type_name, OperationKind.SELECT_CHILDREN, select_command(
        "shape", "parent_id", columns, f"{type_filter} AND e.parent_id = :parent_id", ["parent_id"]))
    _set(commands, type_name, OperationKind.SELECT_TEMPLATE_SHAPES, select_command(
        "shape", "template_id", columns, f"{type_filter} AND t.project_id = :project_id", ["project_id"],
        join="JOIN template t ON e.template_id = t.id"))
    _set(commands, type_name, OperationKind.CHECK_SHAPE_TYPE_IN_USE, SqlCommand(
        f"SELECT COUNT(*) FROM shape WHERE type = '{type_name}' AND diagram_id = :diagram_id",
        ["project_id", "diagram_id"]))


def build_command_table(trace: Optional[CommandTrace] = None) -> CommandTable:
    """Statements for every test entity type."""
    commands = CommandTable(trace)

    _set(commands, PROJECT_INFO_TYPE_NAME, OperationKind.INSERT, SqlCommand(
        "INSERT INTO project_info (name, version) VALUES (:name, :version)", ["name", "version"]))
    _set(commands, PROJECT_INFO_TYPE_NAME, OperationKind.UPDATE, SqlCommand(
        "UPDATE project_info SET name = :name, version = :version WHERE id = :id", ["id", "name", "version"]))
    _set(commands, PROJECT_INFO_TYPE_NAME, OperationKind.SELECT_BY_NAME, SqlCommand(
        "SELECT id, name, version FROM project_info WHERE name = :name", ["name"]))

    _project_owned(commands, PROJECT_SETTINGS_TYPE_NAME, "project_settings", NAME_COLUMNS)
    _set(commands, PROJECT_SETTINGS_TYPE_NAME, OperationKind.SELECT_BY_NAME, select_command(
        "project_settings", "project_id", NAME_COLUMNS, "p.name = :name", ["name"],
        join="JOIN project_info p ON e.project_id = p.id"))
    _set(commands, PROJECT_SETTINGS_TYPE_NAME, OperationKind.CHECK_TEMPLATE_IN_USE, SqlCommand(
        "SELECT COUNT(*) FROM shape WHERE diagram_id = :diagram_id AND template_ref = :item_id",
        ["project_id", "diagram_id", "item_id"]))
    _set(commands, PROJECT_SETTINGS_TYPE_NAME, OperationKind.CHECK_STYLE_IN_USE, SqlCommand(
        "SELECT COUNT(*) FROM shape WHERE diagram_id = :diagram_id AND fill_style_id = :item_id",
        ["project_id", "diagram_id", "item_id"]))
    _set(commands, PROJECT_SETTINGS_TYPE_NAME, OperationKind.CHECK_MODEL_OBJECT_IN_USE, SqlCommand(
        "SELECT COUNT(*) FROM shape WHERE diagram_id = :diagram_id AND model_object_ref = :item_id",
        ["project_id", "diagram_id", "item_id"]))

    _project_owned(commands, "Core.Design", "design", NAME_COLUMNS)
    _typed_child(commands, "Core.ColorStyle", "style", "design_id", NAME_COLUMNS + [
        ("Color", "color", FieldType.INT32),
    ])
    _typed_child(commands, "Core.CapStyle", "style", "design_id", NAME_COLUMNS + [
        ("CapShape", "cap_shape", FieldType.BYTE),
        ("ColorStyle", "color_style_id", FieldType.ID),
    ])
    _project_owned(commands, "Core.Template", "template", NAME_COLUMNS + [("Title", "title", FieldType.STRING)])
    _typed_child(commands, "Core.NumericModelMapping", "model_mapping", "template_id", [
        ("ShapeProperty", "shape_property", FieldType.INT32),
        ("ModelProperty", "model_property", FieldType.INT32),
    ])
    _project_owned(commands, "Core.Model", "model", NAME_COLUMNS)
    _project_owned(commands, "Core.Diagram", "diagram", NAME_COLUMNS + [
        ("Width", "width", FieldType.INT32),
        ("Height", "height", FieldType.INT32),
    ])

    mo_columns = NAME_COLUMNS + [("Value", "value", FieldType.DOUBLE)]
    mo_type = "Core.GenericModelObject"
    _set(commands, mo_type, OperationKind.INSERT_TEMPLATE_MODEL_OBJECT,
         insert_command("model_object", "template_id", mo_columns))
    _set(commands, mo_type, OperationKind.INSERT_MODEL_MODEL_OBJECT,
         insert_command("model_object", "model_id", mo_columns))
    _set(commands, mo_type, OperationKind.INSERT_OWNED_BY_PARENT,
         insert_command("model_object", "parent_id", mo_columns))
    _set(commands, mo_type, OperationKind.UPDATE, update_command("model_object", mo_columns))
    _set(commands, mo_type, OperationKind.DELETE, delete_command("model_object"))
    _set(commands, mo_type, OperationKind.SELECT_ALL_ROOTS, select_command(
        "model_object", "model_id", mo_columns, "e.model_id = :model_id AND e.parent_id IS NULL", ["model_id"]))
    _set(commands, mo_type, OperationKind.SELECT_CHILDREN, select_command(
        "model_object", "parent_id", mo_columns, "e.parent_id = :parent_id", ["parent_id"]))
    _set(commands, mo_type, OperationKind.SELECT_TEMPLATE_MODEL_OBJECTS, select_command(
        "model_object", "template_id", mo_columns, "t.project_id = :project_id", ["project_id"],
        join="JOIN template t ON e.template_id = t.id"))
    _set(commands, MODEL_OBJECT_TYPE_NAME, OperationKind.UPDATE_OWNER_MODEL, SqlCommand(
        "UPDATE model_object SET model_id = :owner, parent_id = NULL, template_id = NULL WHERE id = :id",
        ["id", "owner"]))
    _set(commands, MODEL_OBJECT_TYPE_NAME, OperationKind.UPDATE_OWNER_MODEL_OBJECT, SqlCommand(
        "UPDATE model_object SET parent_id = :owner, model_id = NULL, template_id = NULL WHERE id = :id",
        ["id", "owner"]))

    dmo_type = "Core.DiagramModelObject"
    _set(commands, dmo_type, OperationKind.INSERT_DIAGRAM_MODEL_OBJECT,
         insert_command("diagram_model_object", "model_id", NAME_COLUMNS))
    _set(commands, dmo_type, OperationKind.UPDATE, update_command("diagram_model_object", NAME_COLUMNS))
    _set(commands, dmo_type, OperationKind.DELETE, delete_command("diagram_model_object"))
    _set(commands, dmo_type, OperationKind.SELECT_DIAGRAM_MODEL_OBJECTS, select_command(
        "diagram_model_object", "model_id", NAME_COLUMNS, "e.model_id = :model_id", ["model_id"]))

    _shape_commands(commands, "Core.Box", BOX_COLUMNS)
    _shape_commands(commands, "Core.Polyline", POLYLINE_COLUMNS)
    _set(commands, SHAPE_TYPE_NAME, OperationKind.UPDATE_OWNER_SHAPE, SqlCommand(
        "UPDATE shape SET parent_id = :owner, diagram_id = NULL WHERE id = :id", ["id", "owner"]))
    _set(commands, SHAPE_TYPE_NAME, OperationKind.UPDATE_OWNER_DIAGRAM, SqlCommand(
        "UPDATE shape SET diagram_id = :owner, parent_id = NULL WHERE id = :id", ["id", "owner"]))

    label_parameters = [
        "shape_id",
        Parameter(name="text", field_type=FieldType.STRING),
        Parameter(name="position", field_type=FieldType.DOUBLE),
    ]
    _set(commands, "Core.Label", OperationKind.INSERT, SqlCommand(
        "INSERT INTO label (shape_id, text, position) VALUES (:shape_id, :text, :position)", label_parameters))
    _set(commands, "Core.Label", OperationKind.DELETE, SqlCommand(
        "DELETE FROM label WHERE shape_id = :shape_id", ["shape_id"]))
    _set(commands, "Core.Label", OperationKind.SELECT_BY_ID, SqlCommand(
        "SELECT shape_id, text, position FROM label WHERE shape_id = :shape_id ORDER BY rowid", ["shape_id"]))

    connection_parameters = ["connector_id", "glue_point_id", "target_id", "target_point_id"]
    _set(commands, SHAPE_CONNECTION_TYPE_NAME, OperationKind.INSERT, SqlCommand(
        "INSERT INTO shape_connection (connector_id, glue_point_id, target_id, target_point_id) "
        "VALUES (:connector_id, :glue_point_id, :target_id, :target_point_id)", connection_parameters))
    _set(commands, SHAPE_CONNECTION_TYPE_NAME, OperationKind.DELETE, SqlCommand(
        "DELETE FROM shape_connection WHERE connector_id = :connector_id AND glue_point_id = :glue_point_id",
        connection_parameters[:2]))
    _set(commands, SHAPE_CONNECTION_TYPE_NAME, OperationKind.SELECT_BY_OWNER_ID, SqlCommand(
        "SELECT c.connector_id, c.glue_point_id, c.target_id, c.target_point_id FROM shape_connection c "
        "JOIN shape s ON c.connector_id = s.id WHERE s.diagram_id = :diagram_id "
        "ORDER BY c.connector_id, c.glue_point_id", ["diagram_id"]))
    return commands

##############################
# Fixtures
##############################

def _enable_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@pytest.fixture
def engine() -> Engine:
    """Provide an in-memory repository with the test schema."""
    engine = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    event.listen(engine, "connect", _enable_foreign_keys)
    with engine.begin() as conn:
        for statement in SCHEMA:
            conn.exec_driver_sql(statement)
    yield engine
    engine.dispose()


@pytest.fixture
def trace() -> CommandTrace:
    return CommandTrace()


@pytest.fixture
def commands(trace) -> CommandTable:
    return build_command_table(trace)


@pytest.fixture
def store(engine, commands) -> SqlStore:
    return SqlStore(engine, commands)


@pytest.fixture
def legacy_store(engine, commands) -> SqlStore:
    """A store for a repository version without diagram model objects."""
    return SqlStore(engine, commands, version=6)


@pytest.fixture
def query(engine):
    """Provide a helper that returns all rows of a SQL query."""
    def run(sql: str) -> List[Tuple[Any, ...]]:
        with engine.connect() as conn:
            return [tuple(row) for row in conn.exec_driver_sql(sql).fetchall()]
    return run

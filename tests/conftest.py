# conftest.py
import logging
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from diagramstore.ecs.cache import StoreCache
from diagramstore.ecs.enregistry import EntityTypeRegistry
from diagramstore.ecs.entity import GenericEntity
from diagramstore.ecs.entity_type import (
    EntityCategory, EntityType, FieldDefinition, FieldType, InnerObjectsDefinition,
    MappingKind, StyleKind, define_entity_type,
)

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

PROJECT_NAME = "Test Project"


# Custom test markers
def pytest_configure(config):
    """Configure custom markers."""
    markers = [
        "slow: marks tests as slow",
        "integration: marks tests that flush to a database",
    ]
    for marker in markers:
        config.addinivalue_line("markers", marker)


def _field(name: str, field_type: FieldType, min_version: int = 0) -> FieldDefinition:
    return FieldDefinition(name=name, field_type=field_type, min_version=min_version)


def build_entity_types() -> SimpleNamespace:
    """The entity types the test suites persist."""
    shape_base = EntityType(
        full_name="Core.ShapeBase",
        category=EntityCategory.SHAPE,
        definitions=(
            _field("X", FieldType.INT32),
            _field("Y", FieldType.INT32),
            _field("Template", FieldType.ID),
            _field("ModelObject", FieldType.ID),
        ),
    )
    box = define_entity_type("Core.Box", EntityCategory.SHAPE, base=shape_base, definitions=[
        _field("Caption", FieldType.STRING),
        _field("Visible", FieldType.BOOL),
        _field("Alpha", FieldType.BYTE),
        _field("Angle", FieldType.INT16),
        _field("Size", FieldType.INT64),
        _field("Scale", FieldType.FLOAT),
        _field("Ratio", FieldType.DOUBLE),
        _field("Mark", FieldType.CHAR),
        _field("Created", FieldType.DATE),
        _field("Icon", FieldType.IMAGE),
        _field("FillStyle", FieldType.ID),
    ])
    polyline = define_entity_type("Core.Polyline", EntityCategory.SHAPE, base=shape_base, definitions=[
        _field("LineWidth", FieldType.INT32),
        InnerObjectsDefinition(name="Vertices", entity_type_name="Core.Vertex", fields=(
            _field("PointIndex", FieldType.INT32),
            _field("PointId", FieldType.ID),
            _field("X", FieldType.INT32),
            _field("Y", FieldType.INT32),
        )),
        InnerObjectsDefinition(name="Labels", entity_type_name="Core.Label", fields=(
            _field("Text", FieldType.STRING),
            _field("Position", FieldType.DOUBLE),
        )),
    ])
    return SimpleNamespace(
        project=define_entity_type("Core.Project", EntityCategory.PROJECT, [_field("Name", FieldType.STRING)]),
        design=define_entity_type("Core.Design", EntityCategory.DESIGN, [_field("Name", FieldType.STRING)]),
        color_style=define_entity_type("Core.ColorStyle", EntityCategory.STYLE, [
            _field("Name", FieldType.STRING),
            _field("Color", FieldType.INT32),
        ], kind=StyleKind.COLOR),
        cap_style=define_entity_type("Core.CapStyle", EntityCategory.STYLE, [
            _field("Name", FieldType.STRING),
            _field("CapShape", FieldType.BYTE),
            _field("ColorStyle", FieldType.ID),
        ], kind=StyleKind.CAP),
        template=define_entity_type("Core.Template", EntityCategory.TEMPLATE, [
            _field("Name", FieldType.STRING),
            _field("Title", FieldType.STRING),
        ]),
        numeric_mapping=define_entity_type("Core.NumericModelMapping", EntityCategory.MODEL_MAPPING, [
            _field("ShapeProperty", FieldType.INT32),
            _field("ModelProperty", FieldType.INT32),
        ], kind=MappingKind.NUMERIC),
        model=define_entity_type("Core.Model", EntityCategory.MODEL, [_field("Name", FieldType.STRING)]),
        model_object=define_entity_type("Core.GenericModelObject", EntityCategory.MODEL_OBJECT, [
            _field("Name", FieldType.STRING),
            _field("Value", FieldType.DOUBLE),
        ]),
        diagram_model_object=define_entity_type("Core.DiagramModelObject", EntityCategory.DIAGRAM_MODEL_OBJECT, [
            _field("Name", FieldType.STRING),
        ]),
        diagram=define_entity_type("Core.Diagram", EntityCategory.DIAGRAM, [
            _field("Name", FieldType.STRING),
            _field("Width", FieldType.INT32),
            _field("Height", FieldType.INT32),
        ]),
        box=box,
        polyline=polyline,
    )


@pytest.fixture
def types() -> SimpleNamespace:
    """Provide the test entity types."""
    return build_entity_types()


@pytest.fixture
def registry(types) -> EntityTypeRegistry:
    """Provide a registry with every test entity type registered."""
    reg = EntityTypeRegistry()
    for entity_type in vars(types).values():
        reg.register(entity_type)
    return reg


@pytest.fixture
def cache(registry) -> StoreCache:
    """Provide an empty cache for a project that was never stored."""
    return StoreCache(registry, PROJECT_NAME)


@pytest.fixture
def make_entity():
    """Provide a factory for schema driven entities."""
    def make(entity_type: EntityType, inner: Optional[Dict[str, List[Dict[str, Any]]]] = None,
             **field_values: Any) -> GenericEntity:
        entity = entity_type.create_instance()
        entity.field_values.update(field_values)
        if inner:
            entity.inner_records.update(inner)
        return entity
    return make

"""
Shared test fixtures: test client, sample catalog and modules.
"""

import pytest
from fastapi.testclient import TestClient

from estimator.catalog import Catalog
from estimator.main import app
from estimator.schemas import (
    CalculationModule,
    ComputedOutput,
    Field,
    FunctionParameter,
    Labor,
    Material,
    Property,
    SharedFunction,
)


@pytest.fixture
def client():
    """FastAPI test client."""
    return TestClient(app)


@pytest.fixture
def materials():
    """Lumber, paint and a tile with a text property."""
    return [
        Material(
            id="m1", name="Lumber 2x4", variable_name="lumber_price", category="lumber",
            unit="m", price=10.0,
            properties=[Property(name="length", type="number", value=2400, unit_symbol="mm")],
        ),
        Material(
            id="m2", name="Wall Paint", variable_name="wall_paint", category="paint",
            unit="liters", price=25.0,
            properties=[
                Property(name="coverage", type="number", value=12),
                Property(name="finish", type="string", value="matte"),
                Property(name="voc_free", type="boolean", value=True),
            ],
        ),
        Material(
            id="m3", name="Ceiling Paint", variable_name="ceiling_paint", category="paint",
            unit="liters", price=18.0,
            properties=[Property(name="coverage", type="number", value=10)],
        ),
    ]


@pytest.fixture
def labor():
    return [
        Labor(
            id="l1", name="Painter", variable_name="painter", category="finishing", cost=40.0,
            properties=[Property(name="rate_per_m2", type="price", value=3.5)],
        ),
    ]


@pytest.fixture
def catalog(materials, labor):
    return Catalog(materials, labor)


@pytest.fixture
def functions():
    return [
        SharedFunction(
            name="m2",
            parameters=[
                FunctionParameter(name="w", unit_symbol="m"),
                FunctionParameter(name="h", unit_symbol="m"),
            ],
            formula="w * h",
        ),
    ]


@pytest.fixture
def wall_module():
    """Width x height wall with a paint selection and two computed outputs."""
    return CalculationModule(
        id="wall",
        name="Wall",
        fields=[
            Field(id="f1", label="Width", variable_name="width", type="number", unit_symbol="m", required=True),
            Field(id="f2", label="Height", variable_name="height", type="number", unit_symbol="m", required=True),
            Field(id="f3", label="Paint", variable_name="paint", type="material", catalog_category="paint"),
        ],
        computed_outputs=[
            ComputedOutput(id="o1", label="Area", variable_name="area", expression="width * height", unit_symbol="m2"),
            ComputedOutput(id="o2", label="Cost", variable_name="cost", expression="area * 5"),
        ],
        formula="out.area * 2 + out.cost",
    )


@pytest.fixture
def floor_module():
    """A module with a single length field; used as a link target."""
    return CalculationModule(
        id="floor",
        name="Floor",
        fields=[
            Field(id="g1", label="Width", variable_name="width", type="number", unit_symbol="m"),
            Field(id="g2", label="Height", variable_name="height", type="number", unit_symbol="m"),
        ],
        formula="width * height * 3",
    )

"""
Module definition API.

POST /api/modules/validate     every computed output in order, then the main formula
POST /api/modules/preview      cost of a module from preview values, no workspace
POST /api/modules/output-name  unique computed output variable name for a label
"""

from fastapi import APIRouter
from pydantic import BaseModel

from ..catalog import Catalog
from ..computed_outputs import (
    generate_computed_output_variable_name,
    validate_computed_output_variable_name,
)
from ..module_cost import evaluate_module_cost, validate_module
from ..schemas import (
    CalculationModule,
    CatalogSnapshot,
    FieldValue,
    InstanceCost,
    ModuleValidation,
)

router = APIRouter(prefix="/modules", tags=["modules"])


# --- Request/Response schemas ---

class ModuleRequest(CatalogSnapshot):
    module: CalculationModule


class PreviewRequest(ModuleRequest):
    field_values: dict[str, FieldValue] = {}


class OutputNameRequest(BaseModel):
    label: str
    module: CalculationModule


# --- Endpoints ---

@router.post("/validate", response_model=ModuleValidation)
def validate(request: ModuleRequest):
    return validate_module(
        request.module,
        functions=request.functions,
        catalog=Catalog(request.materials, request.labor),
    )


@router.post("/preview", response_model=InstanceCost)
def preview(request: PreviewRequest):
    """
    Evaluate the module with the editor's preview values.

    A formula that cannot be calculated is a normal result here (error set,
    cost None), not an error status.
    """
    return evaluate_module_cost(
        request.module,
        request.field_values,
        catalog=Catalog(request.materials, request.labor),
        functions=request.functions,
    )


@router.post("/output-name")
def output_name(request: OutputNameRequest):
    fields = request.module.fields
    outputs = request.module.computed_outputs
    name = generate_computed_output_variable_name(request.label, outputs, fields)
    validation = validate_computed_output_variable_name(name, outputs, fields)
    return {"variable_name": name, "valid": validation.valid, "error": validation.error}

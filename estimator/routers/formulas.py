"""
Formula API: evaluate, validate, analyze and autocomplete single formulas.

POST /api/formulas/evaluate  numeric result or a typed 400
POST /api/formulas/validate  ValidationResult (never an error status)
POST /api/formulas/analyze   identifier classification for debug panels
POST /api/formulas/suggest   ranked identifier suggestions
"""

from typing import Optional

from fastapi import APIRouter

from ..catalog import Catalog
from ..errors import FormulaError
from ..formula.analyzer import (
    analyze_formula_variables,
    build_candidates,
    suggest_variables,
    validate_formula,
)
from ..formula.evaluator import EvaluationContext, evaluate_formula
from ..schemas import (
    CatalogSnapshot,
    ComputedOutput,
    Field,
    FieldValue,
    FormulaAnalysis,
    ValidationResult,
)
from . import bad_request

router = APIRouter(prefix="/formulas", tags=["formulas"])


# --- Request/Response schemas ---

class EvaluateRequest(CatalogSnapshot):
    formula: str
    variables: dict[str, FieldValue] = {}
    fields: list[Field] = []


class ValidateRequest(CatalogSnapshot):
    formula: str
    available_variables: list[str] = []
    fields: list[Field] = []
    computed_outputs: list[ComputedOutput] = []
    allow_bare_outputs: bool = False


class SuggestRequest(CatalogSnapshot):
    word: str = ""
    available_variables: list[str] = []
    fields: list[Field] = []
    recent: list[str] = []
    limit: Optional[int] = None


# --- Endpoints ---

@router.post("/evaluate")
def evaluate(request: EvaluateRequest):
    context = EvaluationContext(
        request.variables,
        fields=request.fields,
        catalog=Catalog(request.materials, request.labor),
        functions=request.functions,
    )
    try:
        result = evaluate_formula(request.formula, context)
    except FormulaError as e:
        raise bad_request(e)
    return {"result": result}


@router.post("/validate", response_model=ValidationResult)
def validate(request: ValidateRequest):
    return validate_formula(
        request.formula,
        request.available_variables,
        fields=request.fields,
        functions=request.functions,
        computed_outputs=request.computed_outputs,
        catalog=Catalog(request.materials, request.labor),
        allow_bare_outputs=request.allow_bare_outputs,
    )


@router.post("/analyze", response_model=FormulaAnalysis)
def analyze(request: ValidateRequest):
    available = list(request.available_variables) + [o.key for o in request.computed_outputs]
    return analyze_formula_variables(
        request.formula,
        available,
        fields=request.fields,
        functions=request.functions,
        catalog=Catalog(request.materials, request.labor),
    )


@router.post("/suggest")
def suggest(request: SuggestRequest):
    candidates = build_candidates(
        request.available_variables,
        request.fields,
        Catalog(request.materials, request.labor),
        request.functions,
    )
    return {"suggestions": suggest_variables(request.word, candidates, request.recent, request.limit)}

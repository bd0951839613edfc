"""
Formula evaluator tests.

Tests:
1-5.   Arithmetic, built-ins and constants
6-10.  Field value coercion by declared type
11-15. Catalog references (materials, labor, selected items)
16-19. Shared functions
20-26. Runtime failures
"""

import math

import pytest

from estimator.errors import (
    ArityError,
    BrokenLinkError,
    ErrorKind,
    EvaluationError,
    MissingCatalogSelectionError,
    MissingRequiredInputError,
    UnknownVariableError,
)
from estimator.formula.evaluator import BrokenValue, EvaluationContext, evaluate_formula
from estimator.schemas import Field, FunctionParameter, SharedFunction


def _fields():
    return [
        Field(id="1", label="Width", variable_name="width", type="number", unit_symbol="m"),
        Field(id="2", label="Height", variable_name="height", type="number", unit_symbol="m"),
        Field(id="3", label="Paint", variable_name="paint", type="material", catalog_category="paint"),
        Field(id="4", label="Primer", variable_name="primer", type="boolean"),
        Field(id="5", label="Notes", variable_name="notes", type="text"),
        Field(id="6", label="Coats", variable_name="coats", type="dropdown",
              dropdown_mode="numeric", options=["1", "2", "3"]),
        Field(id="7", label="Crew", variable_name="crew", type="labor"),
    ]


# ============================================================
# 1-5. Arithmetic
# ============================================================

def test_width_height_lumber_price(catalog):
    """width=3 m, height=2 m, lumber_price=10 -> 60."""
    context = EvaluationContext({"width": 3, "height": 2}, fields=_fields(), catalog=catalog)
    assert evaluate_formula("width * height * lumber_price", context) == 60


def test_plain_dict_context():
    assert evaluate_formula("a * (b + 1) - 2 / 4", {"a": 2, "b": 3}) == pytest.approx(7.5)


def test_builtins():
    assert evaluate_formula("sqrt(16) + abs(-2)") == 6
    assert evaluate_formula("max(1, 7, 3) - min(4, 2)") == 5
    assert evaluate_formula("ceil(1.2) + floor(1.8)") == 3
    assert evaluate_formula("log(100, 10)") == pytest.approx(2)
    assert evaluate_formula("exp(0) + cos(0) + sin(0) + tan(0)") == pytest.approx(2)


def test_round_is_half_up_with_optional_decimals():
    assert evaluate_formula("round(2.5)") == 3
    assert evaluate_formula("round(-2.5)") == -2
    assert evaluate_formula("round(3.14159, 2)") == pytest.approx(3.14)
    assert evaluate_formula("round(1250, -2)") == pytest.approx(1300)
    # fractional decimals round to the nearest whole place count first
    assert evaluate_formula("round(1.2345, 1.5)") == pytest.approx(1.23)
    assert evaluate_formula("round(2.5, 0.4)") == 3


def test_constants():
    assert evaluate_formula("pi") == pytest.approx(math.pi)
    assert evaluate_formula("e ^ 2") == pytest.approx(math.e ** 2)


# ============================================================
# 6-10. Coercion
# ============================================================

def test_boolean_field_is_zero_or_one():
    fields = _fields()
    assert evaluate_formula("primer * 10", EvaluationContext({"primer": True}, fields=fields)) == 10
    assert evaluate_formula("primer * 10", EvaluationContext({"primer": "false"}, fields=fields)) == 0
    assert evaluate_formula("primer * 10", EvaluationContext({}, fields=fields)) == 0


def test_text_field_in_arithmetic_is_an_error():
    context = EvaluationContext({"notes": "north wall"}, fields=_fields())
    with pytest.raises(EvaluationError):
        evaluate_formula("notes * 2", context)


def test_numeric_dropdown_parses_option():
    context = EvaluationContext({"coats": "2"}, fields=_fields())
    assert evaluate_formula("coats * 3", context) == 6


def test_declared_field_without_value_is_missing_input():
    context = EvaluationContext({"width": 3}, fields=_fields())
    with pytest.raises(MissingRequiredInputError) as exc:
        evaluate_formula("width * height", context)
    assert exc.value.subject == "height"


def test_default_value_fills_blank_field():
    fields = [Field(id="1", label="Waste", variable_name="waste", type="number", default_value=1.1)]
    context = EvaluationContext({"waste": ""}, fields=fields)
    assert evaluate_formula("waste * 10", context) == pytest.approx(11)


# ============================================================
# 11-15. Catalog references
# ============================================================

def test_selected_material_property(catalog):
    context = EvaluationContext({"paint": "wall_paint", "width": 3, "height": 2}, fields=_fields(), catalog=catalog)
    assert evaluate_formula("width * height / paint.coverage", context) == pytest.approx(0.5)


def test_bare_material_field_reads_price(catalog):
    context = EvaluationContext({"paint": "ceiling_paint"}, fields=_fields(), catalog=catalog)
    assert evaluate_formula("paint * 2", context) == 36


def test_no_selection_is_missing_catalog_selection(catalog):
    """paint.coverage * 2 with nothing selected fails, never NaN."""
    context = EvaluationContext({}, fields=_fields(), catalog=catalog)
    with pytest.raises(MissingCatalogSelectionError) as exc:
        evaluate_formula("paint.coverage * 2", context)
    assert exc.value.kind == ErrorKind.MISSING_CATALOG_SELECTION


def test_direct_catalog_references(catalog):
    """Properties are base-normalized: 2400 mm reads as 2.4."""
    assert evaluate_formula("lumber_price.length", EvaluationContext(catalog=catalog)) == pytest.approx(2.4)
    assert evaluate_formula("painter + painter.rate_per_m2", EvaluationContext(catalog=catalog)) == pytest.approx(43.5)
    assert evaluate_formula("wall_paint.voc_free", EvaluationContext(catalog=catalog)) == 1


def test_labor_field_reads_hourly_cost(catalog):
    context = EvaluationContext({"crew": "painter"}, fields=_fields(), catalog=catalog)
    assert evaluate_formula("crew * 8", context) == 320


# ============================================================
# 16-19. Shared functions
# ============================================================

def test_shared_function_call(functions):
    context = EvaluationContext({"width": 4, "height": 2.5}, fields=_fields(), functions=functions)
    assert evaluate_formula("m2(width, height) * 2", context) == 20


def test_shared_function_arguments_are_expressions(functions):
    context = EvaluationContext({"width": 4}, fields=_fields(), functions=functions)
    assert evaluate_formula("m2(width + 1, m2(2, 3))", context) == 30


def test_shared_function_wrong_arity(functions):
    with pytest.raises(ArityError):
        evaluate_formula("m2(3)", EvaluationContext(functions=functions))


def test_shared_function_body_does_not_see_caller_fields():
    leaky = SharedFunction(name="leaky", parameters=[FunctionParameter(name="x")], formula="x * width")
    context = EvaluationContext({"width": 2}, functions=[leaky])
    with pytest.raises(UnknownVariableError) as exc:
        evaluate_formula("leaky(3)", context)
    assert "Error evaluating function 'leaky'" in exc.value.message


def test_recursive_shared_function_is_bounded():
    loop = SharedFunction(name="loop", parameters=[FunctionParameter(name="x")], formula="loop(x) + 1")
    with pytest.raises(EvaluationError):
        evaluate_formula("loop(1)", EvaluationContext(functions=[loop]))


# ============================================================
# 20-26. Failures
# ============================================================

def test_division_by_zero_names_subexpression():
    with pytest.raises(EvaluationError) as exc:
        evaluate_formula("width / (height - height)", {"width": 2, "height": 1})
    assert exc.value.subject == "width / (height - height)"


def test_unknown_identifier():
    with pytest.raises(UnknownVariableError) as exc:
        evaluate_formula("widht * 2", {"width": 2})
    assert exc.value.subject == "widht"


def test_builtin_arity_and_domain_errors():
    with pytest.raises(ArityError):
        evaluate_formula("sqrt(1, 2)")
    with pytest.raises(EvaluationError):
        evaluate_formula("sqrt(-1)")
    with pytest.raises(EvaluationError):
        evaluate_formula("log(0)")


def test_round_with_out_of_range_decimals_is_an_evaluation_error():
    with pytest.raises(EvaluationError, match="decimals"):
        evaluate_formula("round(5, -400)")
    with pytest.raises(EvaluationError):
        evaluate_formula("round(5, 400)")


def test_nested_calls_within_the_nesting_limit_evaluate():
    formula = "abs(" * 90 + "1" + ")" * 90
    assert evaluate_formula(formula) == 1


def test_broken_link_value_raises_only_when_referenced():
    context = EvaluationContext({"width": BrokenValue("cycle", 3), "height": 2}, fields=_fields())
    with pytest.raises(BrokenLinkError):
        evaluate_formula("width * height", context)
    assert evaluate_formula("height * 2", context) == 4


def test_evaluation_is_deterministic(catalog, functions):
    context = EvaluationContext({"width": 3.3, "height": 1.7, "paint": "wall_paint"},
                                fields=_fields(), catalog=catalog, functions=functions)
    formula = "m2(width, height) / paint.coverage * paint + sqrt(width)"
    results = {evaluate_formula(formula, context) for _ in range(5)}
    assert len(results) == 1

"""
Computed outputs: named intermediate values of a module.

Outputs form a linear chain by declared order. Output i may reference the
module's fields and outputs 0..i-1, bare (`area`) or prefixed (`out.area`).
Anything at index >= i is rejected by validate_computed_output_expression()
before evaluation is ever attempted.

evaluate_computed_outputs() runs the chain with partial-failure semantics:
a failed output is recorded, left out of the context, and the rest of the
list is still evaluated.
"""

import logging
import re
from typing import Iterable, Optional

from .catalog import Catalog
from .config import settings
from .errors import FormulaError, UnknownVariableError
from .formula.analyzer import validate_formula
from .formula.evaluator import EvaluationContext, evaluate_formula
from .formula.parser import parse_formula, referenced_names
from .schemas import (
    COMPUTED_PREFIX,
    IDENTIFIER_RE,
    CalculationModule,
    ComputedOutput,
    ComputedOutputResult,
    Field,
    FunctionParameter,
    ValidationResult,
)

logger = logging.getLogger(__name__)


# --- Naming ---

def label_to_variable_name(label: str) -> str:
    """
    "Material Type" -> "material_type", "2x4 Lumber" -> "_2x4_lumber".

    Returns "" when nothing usable is left.
    """
    if not label or not label.strip():
        return ""
    result = re.sub(r"\s+", "_", label.strip())
    result = result.replace("-", "_")
    result = re.sub(r"[^A-Za-z0-9_]", "", result)
    result = re.sub(r"_+", "_", result).strip("_")
    if not result:
        return ""
    if result[0].isdigit():
        result = "_" + result
    return result.lower()


def _unique_name(base: str, taken: set[str]) -> str:
    if base.lower() not in taken:
        return base
    counter = 1
    candidate = f"{base}_{counter}"
    while candidate.lower() in taken and counter < 1000:
        counter += 1
        candidate = f"{base}_{counter}"
    return candidate


def _invalid(message: str) -> ValidationResult:
    return ValidationResult(valid=False, error=message)


def validate_computed_output_variable_name(
    name: str,
    existing_outputs: Iterable[ComputedOutput] = (),
    existing_fields: Iterable[Field] = (),
) -> ValidationResult:
    if not name or not name.strip():
        return _invalid("Variable name is required")
    name = name.strip()
    if name.startswith(COMPUTED_PREFIX):
        return _invalid(f"Variable name cannot start with '{COMPUTED_PREFIX}'")
    if not IDENTIFIER_RE.match(name):
        return _invalid(
            "Variable name must start with a letter or underscore and contain "
            "only letters, numbers, and underscores"
        )
    if name.lower() in {o.variable_name.lower() for o in existing_outputs}:
        return _invalid("Variable name must be unique (already used by another computed output)")
    if name.lower() in {f.variable_name.lower() for f in existing_fields}:
        return _invalid("Variable name must be unique (already used by a field)")
    return ValidationResult(valid=True)


def generate_computed_output_variable_name(
    label: str,
    existing_outputs: Iterable[ComputedOutput] = (),
    existing_fields: Iterable[Field] = (),
) -> str:
    base = label_to_variable_name(label)
    if not base:
        return ""
    taken = {o.variable_name.lower() for o in existing_outputs}
    taken |= {f.variable_name.lower() for f in existing_fields}
    return _unique_name(base, taken)


def validate_parameter_name(
    name: str,
    existing_parameters: Iterable[FunctionParameter] = (),
    exclude_index: Optional[int] = None,
) -> ValidationResult:
    if not name or not name.strip():
        return _invalid("Parameter name is required")
    name = name.strip()
    if not IDENTIFIER_RE.match(name):
        return _invalid(
            "Parameter name must start with a letter or underscore and contain "
            "only letters, numbers, and underscores"
        )
    taken = {p.name.lower() for i, p in enumerate(existing_parameters) if i != exclude_index}
    if name.lower() in taken:
        return _invalid("Parameter name must be unique")
    return ValidationResult(valid=True)


def generate_parameter_name(
    label: str,
    existing_parameters: Iterable[FunctionParameter] = (),
    exclude_index: Optional[int] = None,
) -> str:
    base = label_to_variable_name(label)
    if not base:
        return ""
    taken = {p.name.lower() for i, p in enumerate(existing_parameters) if i != exclude_index}
    return _unique_name(base, taken)


# --- Validation ---

def _output_index(outputs: list[ComputedOutput], name: str) -> int:
    if name.startswith(COMPUTED_PREFIX):
        name = name[len(COMPUTED_PREFIX):]
    lowered = name.lower()
    return next((i for i, o in enumerate(outputs) if o.variable_name.lower() == lowered), -1)


def validate_computed_output_expression(
    expression: str,
    fields: Iterable[Field],
    computed_outputs: Iterable[ComputedOutput],
    functions=None,
    materials=(),
    labor=(),
    current_output_id: Optional[str] = None,
    catalog: Optional[Catalog] = None,
) -> ValidationResult:
    """
    Validate output expression `current_output_id` against fields and earlier outputs.

    Without `current_output_id` (an output not yet added to the module) every
    listed output counts as earlier.
    """
    if not expression or not expression.strip():
        return ValidationResult(valid=False, error="Expression is required")
    fields = list(fields)
    outputs = list(computed_outputs)
    current = len(outputs)
    if current_output_id is not None:
        current = next((i for i, o in enumerate(outputs) if o.id == current_output_id), len(outputs))

    field_names = {f.variable_name.lower() for f in fields}
    try:
        tree = parse_formula(expression)
    except FormulaError:
        tree = None
    if tree is not None:
        for name in referenced_names(tree):
            if "." in name and not name.startswith(COMPUTED_PREFIX):
                continue
            if name.lower() in field_names:
                continue
            index = _output_index(outputs, name)
            if index >= current:
                error = UnknownVariableError(
                    f"Expression cannot reference computed output '{outputs[index].variable_name}' "
                    f"because it is defined after this one or is the same output. Computed outputs "
                    f"can only reference previously defined computed outputs.",
                    subject=name,
                )
                return ValidationResult(
                    valid=False, error=error.message, error_kind=error.kind, subject=error.subject
                )

    return validate_formula(
        expression,
        [f.variable_name for f in fields],
        fields=fields,
        functions=functions,
        computed_outputs=outputs[:current],
        catalog=Catalog.coerce(catalog, materials, labor),
        allow_bare_outputs=True,
    )


def output_dependencies(module: CalculationModule, output_name: str) -> list[str]:
    """
    Field names that computed output `output_name` depends on, directly or
    through the earlier outputs it references.
    """
    index = _output_index(module.computed_outputs, output_name)
    if index < 0:
        return []
    pending = [module.computed_outputs[index]]
    seen_outputs: set[str] = set()
    fields: list[str] = []
    while pending:
        output = pending.pop()
        if output.variable_name in seen_outputs:
            continue
        seen_outputs.add(output.variable_name)
        try:
            names = referenced_names(parse_formula(output.expression))
        except FormulaError:
            continue
        for name in names:
            base = name.split(".", 1)[0]
            if module.get_field(base) is not None:
                if base not in fields:
                    fields.append(base)
                continue
            earlier = _output_index(module.computed_outputs, name)
            if 0 <= earlier < index:
                pending.append(module.computed_outputs[earlier])
    return fields


# --- Evaluation ---

def evaluate_computed_outputs(
    module: CalculationModule,
    resolved_field_values: dict,
    materials=(),
    labor=(),
    functions=None,
    catalog: Optional[Catalog] = None,
) -> ComputedOutputResult:
    """
    Evaluate the module's outputs in order.

    Returns values keyed `out.<name>` rounded to COMPUTED_OUTPUT_DECIMALS and
    errors keyed by the bare output name.
    """
    result = ComputedOutputResult()
    if not module.computed_outputs:
        return result

    base = EvaluationContext(
        resolved_field_values,
        fields=module.fields,
        catalog=Catalog.coerce(catalog, materials, labor),
        functions=functions,
    )
    available: dict[str, float] = {}
    for output in module.computed_outputs:
        try:
            value = evaluate_formula(output.expression, base.extend(available))
        except FormulaError as exc:
            logger.warning(
                "Computed output '%s' of module '%s' failed: %s", output.label, module.name, exc.message
            )
            result.errors[output.variable_name] = exc.to_detail()
            continue
        value = round(value, settings.COMPUTED_OUTPUT_DECIMALS)
        result.computed_values[output.key] = value
        available[output.key] = value
        available[output.variable_name] = value
    return result

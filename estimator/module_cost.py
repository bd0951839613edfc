"""
Module cost evaluation and the workspace-wide recompute.

Per instance:
    1. resolved field values (field links, whole workspace in one pass)
    2. computed outputs from those values
    3. one context holding fields and `out.*`
    4. the module's main formula

Any edit to a field, a link, a module or the catalog recomputes the whole
workspace. Failures are per instance: an instance that cannot be calculated
gets cost None and an ErrorDetail while its siblings compute normally.
"""

import logging
from typing import Iterable, Optional

from .catalog import Catalog
from .config import settings
from .computed_outputs import evaluate_computed_outputs, validate_computed_output_expression
from .errors import (
    BrokenLinkError,
    EvaluationError,
    FormulaError,
    MissingRequiredInputError,
)
from .field_links import resolve_field_links
from .formula.analyzer import available_for, validate_formula
from .formula.evaluator import BrokenValue, EvaluationContext, evaluate_formula
from .schemas import (
    CalculationModule,
    InstanceCost,
    ModuleInstance,
    ModuleValidation,
    WorkspaceResult,
)

logger = logging.getLogger(__name__)


def validate_module(
    module: CalculationModule,
    materials=(),
    labor=(),
    functions=None,
    catalog: Optional[Catalog] = None,
) -> ModuleValidation:
    """Validate every computed output in order, then the main formula."""
    catalog = Catalog.coerce(catalog, materials, labor)
    outputs = {}
    for output in module.computed_outputs:
        outputs[output.variable_name] = validate_computed_output_expression(
            output.expression,
            module.fields,
            module.computed_outputs,
            functions=functions,
            current_output_id=output.id,
            catalog=catalog,
        )
    formula = validate_formula(
        module.formula,
        available_for(module.fields, module.computed_outputs),
        fields=module.fields,
        functions=functions,
        computed_outputs=module.computed_outputs,
        catalog=catalog,
    )
    valid = formula.valid and all(result.valid for result in outputs.values())
    return ModuleValidation(valid=valid, formula=formula, computed_outputs=outputs)


def _check_required(module: CalculationModule, values: dict):
    for field in module.fields:
        if not field.required:
            continue
        value = values.get(field.variable_name)
        if isinstance(value, BrokenValue):
            raise BrokenLinkError(
                f"Required field '{field.label}' is linked to a source that is unavailable ({value.reason})",
                subject=field.variable_name,
            )
        if value is None or (isinstance(value, str) and not value.strip()):
            if field.default_value is not None and field.default_value != "":
                continue
            raise MissingRequiredInputError(
                f"Required field '{field.label}' has no value", subject=field.variable_name
            )


def evaluate_module_cost(
    module: CalculationModule,
    resolved_values: dict,
    catalog: Optional[Catalog] = None,
    functions=None,
    materials=(),
    labor=(),
    instance_id: str = "",
) -> InstanceCost:
    """Cost of one instance from its already-resolved field values. Never raises FormulaError."""
    catalog = Catalog.coerce(catalog, materials, labor)
    outputs = evaluate_computed_outputs(module, resolved_values, catalog=catalog, functions=functions)
    result = InstanceCost(
        instance_id=instance_id,
        computed_values=outputs.computed_values,
        computed_errors=outputs.errors,
    )
    try:
        _check_required(module, resolved_values)
        context = EvaluationContext(
            resolved_values, fields=module.fields, catalog=catalog, functions=functions
        ).extend(outputs.computed_values)
        result.cost = evaluate_formula(module.formula, context)
    except FormulaError as exc:
        logger.info("Cannot calculate '%s' (%s): %s", module.name, instance_id or "preview", exc.message)
        result.error = exc.to_detail()
    return result


def _display_value(value):
    if isinstance(value, BrokenValue):
        return value.fallback
    return value


def recalculate_workspace(
    instances: Iterable[ModuleInstance],
    modules: Iterable[CalculationModule],
    materials=(),
    labor=(),
    functions=None,
    catalog: Optional[Catalog] = None,
) -> WorkspaceResult:
    """
    Recompute every instance of a workspace as one unit.

    Returns updated instances (calculated_cost set, None on failure), per
    instance cost details, resolved values for display and broken links.
    """
    instances = list(instances)
    modules = list(modules)
    module_map = {m.id: m for m in modules}
    catalog = Catalog.coerce(catalog, materials, labor)

    values, broken = resolve_field_links(instances, modules, catalog=catalog, functions=functions)

    result = WorkspaceResult(broken_links=broken)
    for instance in instances:
        module = module_map.get(instance.module_id)
        if module is None:
            error = EvaluationError(f"Module '{instance.module_id}' not found", subject=instance.module_id)
            cost = InstanceCost(instance_id=instance.id, error=error.to_detail())
        else:
            cost = evaluate_module_cost(
                module, values[instance.id], catalog=catalog, functions=functions, instance_id=instance.id
            )
        result.costs[instance.id] = cost
        result.instances.append(instance.model_copy(update={"calculated_cost": cost.cost}))
        result.resolved_values[instance.id] = {
            name: _display_value(value) for name, value in values[instance.id].items()
        }
    return result


def field_summary(module: CalculationModule, field_values: dict, count: Optional[int] = None) -> str:
    """Short "Label: value" summary of the first fields, "No details" when there are none."""
    count = settings.FIELD_SUMMARY_COUNT if count is None else count
    parts = []
    for field in module.fields[:count]:
        parts.append(f"{field.label}: {format_value(field_values.get(field.variable_name))}")
    return ", ".join(parts) or "No details"


def format_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)

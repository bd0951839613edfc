"""
Static analysis of formulas: classification, validation and suggestions.

Nothing here evaluates. analyze_formula_variables() is lenient and works on
half-typed text (autocomplete, debug panels). validate_formula() parses and
decides whether a formula may be accepted; it returns a ValidationResult
instead of raising.

A formula is valid when it parses and every identifier resolves to exactly
one of: a field, `<catalogField>.<property>`, `<materialVar>.<property>` /
`<laborVar>.<property>`, an available computed output, a built-in
function/constant, or a shared function called with the right arity.
"""

import difflib
from typing import Iterable, Optional

from ..catalog import Catalog
from ..config import settings
from ..errors import (
    ArityError,
    FormulaError,
    UnitMismatchError,
    UnknownVariableError,
)
from ..schemas import (
    ComputedOutput,
    Field,
    FormulaAnalysis,
    FunctionCallInfo,
    PropertyRef,
    SharedFunction,
    ValidationResult,
)
from ..units import UNITLESS_CATEGORIES, divide_units, multiply_units
from .evaluator import BUILTIN_FUNCTIONS, CONSTANTS, MATH_FUNCTIONS
from .parser import (
    BinOp,
    Call,
    Name,
    Node,
    Num,
    UnaryOp,
    function_calls,
    parse_formula,
    scan_identifiers,
    walk,
)


def _function_map(functions) -> dict[str, SharedFunction]:
    if isinstance(functions, dict):
        return dict(functions)
    return {f.name: f for f in functions or ()}


def _dedupe(items: list) -> list:
    seen = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


# --- Classification ---

def analyze_formula_variables(
    formula: str,
    available_variables: Iterable[str] = (),
    materials=(),
    fields: Optional[Iterable[Field]] = None,
    functions=None,
    labor=(),
    catalog: Optional[Catalog] = None,
) -> FormulaAnalysis:
    """Classify every identifier in `formula` against the known universes."""
    catalog = Catalog.coerce(catalog, materials, labor)
    field_map = {f.variable_name: f for f in fields or ()}
    function_map = _function_map(functions)
    available = set(available_variables) | set(field_map)

    result = FormulaAnalysis()
    for token in scan_identifiers(formula or ""):
        if token.is_call:
            if token.text in BUILTIN_FUNCTIONS:
                result.math_functions.append(token.text)
            elif token.text in function_map:
                continue  # arity is filled in from the AST below
            else:
                result.unknown_variables.append(token.text)
            continue

        if token.has_dot:
            ref = PropertyRef(full=token.text, base=token.base, property=token.property)
            if token.text in available:
                bucket = result.computed_outputs if token.base == "out" else result.variables
                bucket.append(token.text)
            elif token.base in field_map and field_map[token.base].is_catalog:
                result.field_property_refs.append(ref)
            elif catalog.material(token.base) is not None:
                result.material_property_refs.append(ref)
            elif catalog.labor_item(token.base) is not None:
                result.labor_property_refs.append(ref)
            else:
                result.unknown_variables.append(token.text)
            continue

        if token.text in available or catalog.find(token.text)[1] is not None:
            result.variables.append(token.text)
        elif token.text in CONSTANTS:
            result.math_functions.append(token.text)
        else:
            result.unknown_variables.append(token.text)

    result.function_calls = _function_calls(formula, function_map)
    result.variables = _dedupe(result.variables)
    result.computed_outputs = _dedupe(result.computed_outputs)
    result.unknown_variables = _dedupe(result.unknown_variables)
    result.math_functions = _dedupe(result.math_functions)
    result.field_property_refs = _dedupe(result.field_property_refs)
    result.material_property_refs = _dedupe(result.material_property_refs)
    result.labor_property_refs = _dedupe(result.labor_property_refs)
    return result


def _function_calls(formula: str, function_map: dict) -> list[FunctionCallInfo]:
    try:
        tree = parse_formula(formula)
    except FormulaError:
        names = [t.text for t in scan_identifiers(formula or "") if t.is_call and t.text in function_map]
        return [FunctionCallInfo(name=n) for n in _dedupe(names)]
    calls = [FunctionCallInfo(name=n.name, arity=len(n.args))
             for n in function_calls(tree) if n.name in function_map]
    return _dedupe(calls)


# --- Validation ---

class _Scope:
    """Name universe for one validation call."""

    def __init__(self, available, fields, catalog, functions, computed_outputs, allow_bare_outputs):
        self.fields: dict[str, Field] = {f.variable_name: f for f in fields or ()}
        self.catalog = catalog
        self.functions = functions
        self.outputs: dict[str, ComputedOutput] = {}
        for output in computed_outputs or ():
            self.outputs[output.key] = output
            if allow_bare_outputs:
                self.outputs[output.variable_name] = output
        self.available = set(available) | set(self.fields) | set(self.outputs)

    def candidates(self) -> list[str]:
        return build_candidates(
            self.available, self.fields.values(), self.catalog, self.functions.values()
        )


def validate_formula(
    formula: str,
    available_variables: Iterable[str] = (),
    materials=(),
    fields: Optional[Iterable[Field]] = None,
    functions=None,
    labor=(),
    computed_outputs: Optional[Iterable[ComputedOutput]] = None,
    catalog: Optional[Catalog] = None,
    allow_bare_outputs: bool = False,
) -> ValidationResult:
    """
    Parse and resolve every identifier, then check unit compatibility.

    `computed_outputs` are the outputs visible to this formula, always as
    `out.<name>` and also bare when `allow_bare_outputs` is set (computed
    output expressions referencing earlier outputs).
    """
    scope = _Scope(
        available_variables,
        fields,
        Catalog.coerce(catalog, materials, labor),
        _function_map(functions),
        computed_outputs,
        allow_bare_outputs,
    )
    try:
        tree = parse_formula(formula)
        warnings = _check_references(tree, scope)
        _infer_unit(tree, scope)
    except UnknownVariableError as exc:
        return ValidationResult(
            valid=False,
            error=exc.message,
            error_kind=exc.kind,
            subject=exc.subject,
            suggestions=suggest_variables(exc.subject or "", scope.candidates()),
        )
    except FormulaError as exc:
        return ValidationResult(valid=False, error=exc.message, error_kind=exc.kind, subject=exc.subject)
    return ValidationResult(valid=True, warnings=warnings)


def _check_references(tree: Node, scope: _Scope) -> list[str]:
    warnings: list[str] = []
    for node in walk(tree):
        if isinstance(node, Call):
            _check_call(node, scope)
        elif isinstance(node, Name):
            warning = _check_name(node, scope)
            if warning:
                warnings.append(warning)
    return _dedupe(warnings)


def _check_call(node: Call, scope: _Scope):
    count = len(node.args)
    builtin = BUILTIN_FUNCTIONS.get(node.name)
    if builtin is not None:
        min_args, max_args, _ = builtin
        if count < min_args or (max_args is not None and count > max_args):
            raise ArityError(
                f"{node.name}() called with {count} argument(s)", subject=node.source()
            )
        return
    function = scope.functions.get(node.name)
    if function is None:
        raise UnknownVariableError(f"Unknown function '{node.name}'", subject=node.name)
    required = sum(1 for p in function.parameters if p.required)
    if count < required or count > len(function.parameters):
        expected = ", ".join(p.name for p in function.parameters)
        raise ArityError(
            f"Function '{node.name}' expects ({expected}) but was called with {count} argument(s)",
            subject=node.source(),
        )


def _check_name(node: Name, scope: _Scope) -> Optional[str]:
    name, base, prop = node.name, node.base, node.property
    catalog = scope.catalog

    if prop is None:
        if name in scope.available:
            field = scope.fields.get(name)
            if field is not None and field.is_catalog:
                reads = "price" if field.type == "material" else "hourly cost"
                return f"'{name}' uses the selected {field.type} item's {reads}"
            return None
        if catalog.find(name)[1] is not None or name in CONSTANTS:
            return None
        if name in BUILTIN_FUNCTIONS or name in scope.functions:
            raise UnknownVariableError(f"'{name}' is a function and must be called with arguments", subject=name)
        raise UnknownVariableError(f"Unknown variable '{name}'", subject=name)

    if name in scope.available:
        return None
    if base == "out":
        raise UnknownVariableError(
            f"Computed output '{prop}' is not defined or is not available here", subject=name
        )
    field = scope.fields.get(base)
    if field is not None:
        if not field.is_catalog:
            raise UnknownVariableError(
                f"Field '{base}' is a {field.type} field; only material and labor fields have properties",
                subject=name,
            )
        if not catalog.field_has_property(field, prop):
            where = f" in category '{field.catalog_category}'" if field.catalog_category else ""
            raise UnknownVariableError(
                f"Property '{prop}' does not exist on any {field.type} item{where}", subject=name
            )
        return None
    kind, item = catalog.find(base)
    if item is not None:
        if catalog.get_property(kind, base, prop) is None:
            raise UnknownVariableError(f"Property '{prop}' not found on {kind} '{base}'", subject=name)
        return None
    raise UnknownVariableError(f"Unknown variable '{name}'", subject=name)


# --- Units ---

def _name_unit(node: Name, scope: _Scope) -> Optional[str]:
    output = scope.outputs.get(node.name)
    if output is not None:
        return output.unit_category
    field = scope.fields.get(node.name)
    if field is not None:
        return field.unit_category if field.is_numeric else None
    if node.property is None:
        return None
    field = scope.fields.get(node.base)
    if field is not None and field.is_catalog:
        return scope.catalog.field_property_category(field, node.property)
    kind, item = scope.catalog.find(node.base)
    if item is not None:
        return scope.catalog.property_category(kind, node.base, node.property)
    return None


def _infer_unit(node: Node, scope: _Scope) -> Optional[str]:
    """Unit category of an expression, None when unit-less. Raises UnitMismatchError."""
    if isinstance(node, Num):
        return None
    if isinstance(node, Name):
        return _name_unit(node, scope)
    if isinstance(node, UnaryOp):
        return _infer_unit(node.operand, scope)
    if isinstance(node, Call):
        for arg in node.args:
            _infer_unit(arg, scope)
        return None

    left = _infer_unit(node.left, scope)
    right = _infer_unit(node.right, scope)
    if node.op in ("+", "-"):
        if left and right and left != right and left not in UNITLESS_CATEGORIES and right not in UNITLESS_CATEGORIES:
            verb = "add" if node.op == "+" else "subtract"
            raise UnitMismatchError(
                f"Cannot {verb} {left} ({node.left.source()}) and {right} ({node.right.source()})",
                subject=node.source(),
            )
        if left and left not in UNITLESS_CATEGORIES:
            return left
        return right or left
    if node.op == "*":
        if left and right:
            return multiply_units(left, right)
        return left or right
    if node.op == "/":
        if left and right:
            result = divide_units(left, right)
            if result is None:
                if left in UNITLESS_CATEGORIES:
                    message = f"Cannot divide unitless ({node.left.source()}) by {right} ({node.right.source()})"
                else:
                    message = f"Cannot divide {left} ({node.left.source()}) by {right} ({node.right.source()})"
                raise UnitMismatchError(message, subject=node.source())
            return result
        return left if right is None else None
    return None


# --- Suggestions ---

def build_candidates(
    available_variables: Iterable[str] = (),
    fields: Optional[Iterable[Field]] = None,
    catalog: Optional[Catalog] = None,
    functions: Optional[Iterable[SharedFunction]] = None,
) -> list[str]:
    """Every identifier a formula in this scope could use, for autocomplete."""
    catalog = catalog or Catalog()
    names: list[str] = list(available_variables)
    for field in fields or ():
        names.append(field.variable_name)
        if field.is_catalog:
            for item in catalog.items_for_field(field):
                names.extend(f"{field.variable_name}.{p}"
                             for p in catalog.property_names(field.type, item.variable_name))
    for kind in ("material", "labor"):
        for var in catalog.variable_names(kind):
            names.append(var)
            names.extend(f"{var}.{p}" for p in catalog.property_names(kind, var))
    names.extend(f.name for f in functions or ())
    names.extend(sorted(MATH_FUNCTIONS))
    return _dedupe(names)


def suggest_variables(
    word: str,
    candidates: Iterable[str],
    recent: Iterable[str] = (),
    limit: Optional[int] = None,
) -> list[str]:
    """
    Rank candidates for a partially typed or misspelled identifier.

    Tiers: exact, recently used, prefix, built-in function/constant,
    substring, close misspelling. At most `limit` (SUGGESTION_LIMIT) results.
    """
    limit = settings.SUGGESTION_LIMIT if limit is None else limit
    candidates = _dedupe(list(candidates))
    recent = [r for r in list(recent)[: settings.RECENT_VARIABLES_LIMIT] if r in candidates]
    needle = (word or "").strip().lower()

    if not needle:
        return _dedupe(recent + candidates)[:limit]

    def lower(name: str) -> str:
        return name.lower()

    exact = [c for c in candidates if lower(c) == needle]
    recent_hits = [r for r in recent if needle in lower(r)]
    prefix = [c for c in candidates if lower(c).startswith(needle)]
    builtins = [c for c in candidates if c in MATH_FUNCTIONS and needle in lower(c)]
    substring = [c for c in candidates if needle in lower(c)]

    ranked = _dedupe(exact + recent_hits + prefix + builtins + substring)
    if len(ranked) < limit:
        remaining = [c for c in candidates if c not in ranked]
        by_lower = {lower(c): c for c in remaining}
        close = difflib.get_close_matches(needle, list(by_lower), n=limit, cutoff=0.6)
        ranked.extend(by_lower[c] for c in close)
    return ranked[:limit]


def available_for(
    fields: Iterable[Field],
    computed_outputs: Iterable[ComputedOutput] = (),
    include_outputs: bool = True,
) -> list[str]:
    """Variable names a module formula sees: field names plus `out.<name>`."""
    names = [f.variable_name for f in fields]
    if include_outputs:
        names.extend(o.key for o in computed_outputs)
    return names


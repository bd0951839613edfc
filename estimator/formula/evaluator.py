"""
Numeric evaluation of parsed formulas.

EvaluationContext does the one-time coercion of raw field values into tagged
values keyed by the field's declared type:

    number / numeric dropdown -> float (already in base units)
    boolean                   -> 1.0 / 0.0
    text / string dropdown    -> TextValue (error in arithmetic)
    material / labor          -> CatalogRef (selected item variable name or None)
    linked field gone bad     -> BrokenValue (error when referenced)
    declared, no value        -> MISSING (MissingRequiredInput when referenced)

The evaluator itself is a straight walk over the AST. It never returns a
partial number: any fault raises a FormulaError subclass.
"""

import math
from typing import Any, Iterable, NamedTuple, Optional, Union

from ..catalog import Catalog
from ..config import settings
from ..errors import (
    ArityError,
    BrokenLinkError,
    EvaluationError,
    FormulaError,
    MissingCatalogSelectionError,
    MissingRequiredInputError,
    UnknownVariableError,
)
from ..schemas import CATALOG_FIELD_TYPES, COMPUTED_PREFIX, Field, SharedFunction
from .parser import BinOp, Call, Name, Node, Num, UnaryOp, parse_formula


# --- Tagged values ---

class TextValue(NamedTuple):
    text: str


class CatalogRef(NamedTuple):
    kind: str                # "material" | "labor"
    key: Optional[str]       # selected item's variable_name


class BrokenValue(NamedTuple):
    reason: str
    fallback: Any = None     # the instance's own stored value, for display only


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()

Value = Union[float, TextValue, CatalogRef, BrokenValue, _Missing]


# --- Built-ins ---

def _round_half_up(x: float, decimals: float = 0) -> float:
    places = math.floor(decimals + 0.5)
    if abs(places) > 300:
        raise ValueError(f"round() decimals must be between -300 and 300, got {places}")
    factor = 10.0 ** places
    return math.floor(x * factor + 0.5) / factor


def _sqrt(x: float) -> float:
    if x < 0:
        raise ValueError("sqrt() of a negative number")
    return math.sqrt(x)


def _log(x: float, base: Optional[float] = None) -> float:
    if x <= 0:
        raise ValueError("log() of a non-positive number")
    if base is None:
        return math.log(x)
    if base <= 0 or base == 1:
        raise ValueError("log() base must be positive and not 1")
    return math.log(x, base)


# name -> (min args, max args or None, implementation)
BUILTIN_FUNCTIONS = {
    "sqrt": (1, 1, _sqrt),
    "abs": (1, 1, abs),
    "round": (1, 2, _round_half_up),
    "ceil": (1, 1, lambda x: float(math.ceil(x))),
    "floor": (1, 1, lambda x: float(math.floor(x))),
    "max": (1, None, max),
    "min": (1, None, min),
    "sin": (1, 1, math.sin),
    "cos": (1, 1, math.cos),
    "tan": (1, 1, math.tan),
    "log": (1, 2, _log),
    "exp": (1, 1, math.exp),
}

CONSTANTS = {"pi": math.pi, "e": math.e}

MATH_FUNCTIONS = frozenset(BUILTIN_FUNCTIONS) | frozenset(CONSTANTS)


# --- Value coercion ---

def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _truthy(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _to_number(value) -> Union[float, TextValue]:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return TextValue(str(value))


def coerce_field_value(field: Field, value) -> Value:
    """Tag a raw stored value according to the field's declared type."""
    if isinstance(value, BrokenValue):
        return value
    if _is_blank(value):
        value = field.default_value
    if field.type in CATALOG_FIELD_TYPES:
        return CatalogRef(field.type, None if _is_blank(value) else str(value))
    if field.type == "boolean":
        return 1.0 if _truthy(value) else 0.0
    if _is_blank(value):
        return MISSING
    if field.type == "text":
        return TextValue(str(value))
    return _to_number(value)


def coerce_value(value) -> Value:
    """Tag a value that has no field declaration (computed outputs, function arguments)."""
    if isinstance(value, (TextValue, CatalogRef, BrokenValue, _Missing)):
        return value
    if _is_blank(value):
        return MISSING
    return _to_number(value)


class EvaluationContext:
    """
    Everything a formula may reference.

    `variables` are raw values by name (fields in base units, computed outputs
    under `out.<name>`). `fields` are the declarations used to tag them; names
    with no declaration are tagged by their Python type.
    """

    def __init__(
        self,
        variables: Optional[dict] = None,
        fields: Optional[Iterable[Field]] = None,
        catalog: Optional[Catalog] = None,
        materials=(),
        labor=(),
        functions: Union[Iterable[SharedFunction], dict, None] = None,
        depth: int = 0,
    ):
        self.catalog = Catalog.coerce(catalog, materials, labor)
        if isinstance(functions, dict):
            self.functions: dict[str, SharedFunction] = dict(functions)
        else:
            self.functions = {f.name: f for f in functions or ()}
        self.fields: dict[str, Field] = {f.variable_name: f for f in fields or ()}
        self.depth = depth

        raw = dict(variables or {})
        self.values: dict[str, Value] = {}
        for name, field in self.fields.items():
            self.values[name] = coerce_field_value(field, raw.get(name))
        for name, value in raw.items():
            if name not in self.fields:
                self.values[name] = coerce_value(value)

    def extend(self, extra: dict) -> "EvaluationContext":
        """Copy of this context with extra untyped values (e.g. computed outputs) added."""
        child = EvaluationContext(catalog=self.catalog, functions=self.functions, depth=self.depth)
        child.fields = self.fields
        child.values = dict(self.values)
        for name, value in extra.items():
            child.values[name] = coerce_value(value)
        return child

    def function_scope(self, arguments: dict) -> "EvaluationContext":
        """Fresh scope for a shared function body: parameters only, same catalog and registry."""
        scope = EvaluationContext(catalog=self.catalog, functions=self.functions, depth=self.depth + 1)
        scope.values = dict(arguments)
        return scope

    # --- Lookup ---

    def resolve(self, name: str) -> float:
        if "." in name:
            return self._resolve_dotted(name)
        if name in self.values:
            return self._numeric(name, self.values[name])
        kind, item = self.catalog.find(name)
        if item is not None:
            return Catalog.base_value(kind, item)
        if name in CONSTANTS:
            return CONSTANTS[name]
        if name in self.functions or name in BUILTIN_FUNCTIONS:
            raise UnknownVariableError(
                f"'{name}' is a function and must be called with arguments", subject=name
            )
        raise UnknownVariableError(f"Unknown variable '{name}'", subject=name)

    def _resolve_dotted(self, name: str) -> float:
        if name in self.values:
            return self._numeric(name, self.values[name])
        base, prop = name.split(".", 1)

        if base in self.values:
            value = self.values[base]
            if isinstance(value, BrokenValue):
                raise _broken(base, value)
            if not isinstance(value, CatalogRef):
                raise UnknownVariableError(
                    f"Field '{base}' is not a material or labor field and has no property '{prop}'",
                    subject=name,
                )
            self._selected_item(base, value, needed_for=name)
            number = self.catalog.property_value(value.kind, value.key, prop)
            if number is None:
                raise UnknownVariableError(
                    f"Property '{prop}' not found on {value.kind} '{value.key}'", subject=name
                )
            return number

        kind, item = self.catalog.find(base)
        if item is not None:
            number = self.catalog.property_value(kind, base, prop)
            if number is None:
                raise UnknownVariableError(f"Property '{prop}' not found on {kind} '{base}'", subject=name)
            return number

        if name.startswith(COMPUTED_PREFIX):
            raise UnknownVariableError(f"Computed output '{prop}' is not available", subject=name)
        raise UnknownVariableError(f"Unknown variable '{name}'", subject=name)

    def _selected_item(self, field_name: str, ref: CatalogRef, needed_for: str):
        if ref.key is None:
            raise MissingCatalogSelectionError(
                f"No {ref.kind} selected for field '{field_name}' (needed for '{needed_for}')",
                subject=needed_for,
            )
        item = self.catalog.get(ref.kind, ref.key)
        if item is None:
            raise MissingCatalogSelectionError(
                f"Selected {ref.kind} '{ref.key}' for field '{field_name}' is not in the catalog",
                subject=needed_for,
            )
        return item

    def _numeric(self, name: str, value: Value) -> float:
        if isinstance(value, float):
            return value
        if isinstance(value, BrokenValue):
            raise _broken(name, value)
        if isinstance(value, _Missing):
            raise MissingRequiredInputError(f"Field '{name}' has no value", subject=name)
        if isinstance(value, TextValue):
            raise EvaluationError(
                f"Field '{name}' holds text ({value.text!r}) and cannot be used in arithmetic",
                subject=name,
            )
        # CatalogRef: bare material/labor field reads the selected item's price/cost
        item = self._selected_item(name, value, needed_for=name)
        return Catalog.base_value(value.kind, item)


def _broken(name: str, value: BrokenValue) -> BrokenLinkError:
    return BrokenLinkError(
        f"Field '{name}' is linked to a source that is unavailable ({value.reason})", subject=name
    )


# --- Evaluation ---

def _evaluate(node: Node, context: EvaluationContext) -> float:
    if isinstance(node, Num):
        return node.value
    if isinstance(node, Name):
        return context.resolve(node.name)
    if isinstance(node, UnaryOp):
        return -_evaluate(node.operand, context)
    if isinstance(node, BinOp):
        return _binary(node, _evaluate(node.left, context), _evaluate(node.right, context))
    if isinstance(node, Call):
        return _call(node, context)
    raise EvaluationError(f"Unsupported expression node {type(node).__name__}")


def _binary(node: BinOp, left: float, right: float) -> float:
    if node.op == "+":
        return left + right
    if node.op == "-":
        return left - right
    if node.op == "*":
        return left * right
    if node.op == "/":
        if right == 0:
            raise EvaluationError(f"Division by zero in '{node.source()}'", subject=node.source())
        return left / right
    # ^
    try:
        return math.pow(left, right)
    except (ValueError, OverflowError):
        raise EvaluationError(f"Invalid power in '{node.source()}'", subject=node.source())


def _call(node: Call, context: EvaluationContext) -> float:
    builtin = BUILTIN_FUNCTIONS.get(node.name)
    if builtin is not None:
        return _call_builtin(node, builtin, context)
    function = context.functions.get(node.name)
    if function is not None:
        return _call_shared(node, function, context)
    raise UnknownVariableError(f"Unknown function '{node.name}'", subject=node.name)


def _call_builtin(node: Call, builtin, context: EvaluationContext) -> float:
    min_args, max_args, impl = builtin
    count = len(node.args)
    if count < min_args or (max_args is not None and count > max_args):
        raise ArityError(
            f"{node.name}() expects {_arity_text(min_args, max_args)}, got {count}",
            subject=node.source(),
        )
    args = [_evaluate(arg, context) for arg in node.args]
    try:
        return float(impl(*args))
    except (ValueError, OverflowError) as exc:
        raise EvaluationError(f"Invalid argument in '{node.source()}': {exc}", subject=node.source())


def _arity_text(min_args: int, max_args: Optional[int]) -> str:
    if max_args is None:
        return f"at least {min_args} argument(s)"
    if min_args == max_args:
        return f"{min_args} argument(s)"
    return f"{min_args} to {max_args} arguments"


def _call_shared(node: Call, function: SharedFunction, context: EvaluationContext) -> float:
    params = function.parameters
    required = sum(1 for p in params if p.required)
    count = len(node.args)
    if count < required or count > len(params):
        raise ArityError(
            f"Function '{function.name}' expects {_arity_text(required, len(params))}, got {count}",
            subject=node.source(),
        )
    if context.depth >= settings.MAX_FUNCTION_DEPTH:
        raise EvaluationError(
            f"Function '{function.name}' is nested too deeply (recursive shared function?)",
            subject=function.name,
        )
    prefix = f"Error evaluating function '{function.name}'"
    try:
        arguments: dict[str, Value] = {p.name: MISSING for p in params}
        for param, arg in zip(params, node.args):
            arguments[param.name] = _evaluate(arg, context)
        scope = context.function_scope(arguments)
        return _evaluate(parse_formula(function.formula), scope)
    except FormulaError as exc:
        if exc.message.startswith("Error evaluating function"):
            raise
        raise exc.with_prefix(prefix) from exc


def evaluate_formula(formula: str, context: Union[EvaluationContext, dict, None] = None) -> float:
    """
    Evaluate formula text to a finite float.

    `context` may be a plain dict of variables for formulas that reference no
    catalog items or shared functions.
    """
    if not isinstance(context, EvaluationContext):
        context = EvaluationContext(context)
    tree = parse_formula(formula)
    try:
        result = _evaluate(tree, context)
    except RecursionError:
        raise EvaluationError(f"Formula '{formula}' is nested too deeply to evaluate", subject=formula)
    if not math.isfinite(result):
        raise EvaluationError(f"Formula '{formula}' did not produce a finite number", subject=formula)
    return result

import re
from typing import Annotated, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, field_validator, model_validator

from .errors import ErrorKind
from .units import get_unit, normalize_to_base

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
COMPUTED_PREFIX = "out."

FieldType = Literal["number", "text", "boolean", "dropdown", "material", "labor"]
PropertyType = Literal["number", "price", "string", "boolean"]
CatalogKind = Literal["material", "labor"]

# Raw value as entered in the UI. Numbers with a unit are stored in base units.
FieldValue = Union[bool, float, str, None]

CATALOG_FIELD_TYPES = ("material", "labor")


def _check_identifier(value: str) -> str:
    value = value.strip()
    if value.startswith(COMPUTED_PREFIX):
        raise ValueError(f"Variable name cannot start with '{COMPUTED_PREFIX}'")
    if not IDENTIFIER_RE.match(value):
        raise ValueError(
            "Variable name must start with a letter or underscore and contain "
            "only letters, numbers, and underscores"
        )
    return value


VariableName = Annotated[str, AfterValidator(_check_identifier)]


def _unit_category_for(symbol: Optional[str], category: Optional[str]) -> Optional[str]:
    """Validates the symbol and returns its category (symbol wins over a stale category)."""
    if symbol:
        return get_unit(symbol).category
    return category


# --- Catalog ---

class Property(BaseModel):
    id: Optional[str] = None
    name: str
    type: PropertyType = "number"
    value: FieldValue = None
    unit_symbol: Optional[str] = None
    unit_category: Optional[str] = None
    stored_value: Optional[float] = None

    @model_validator(mode="after")
    def _sync_stored_value(self):
        self.unit_category = _unit_category_for(self.unit_symbol, self.unit_category)
        if self.type in ("number", "price") and self.value is not None and not isinstance(self.value, bool):
            try:
                raw = float(self.value)
            except (TypeError, ValueError):
                raise ValueError(f"Property '{self.name}' value must be numeric")
            self.stored_value = normalize_to_base(raw, self.unit_symbol) if self.unit_symbol else raw
        return self


class Material(BaseModel):
    id: str
    name: str
    variable_name: VariableName
    category: str = ""
    unit: str = ""
    price: float = 0.0
    sku: Optional[str] = None
    supplier: Optional[str] = None
    description: Optional[str] = None
    properties: list[Property] = []


class Labor(BaseModel):
    id: str
    name: str
    variable_name: VariableName
    category: str = ""
    cost: float = 0.0  # hourly
    description: Optional[str] = None
    properties: list[Property] = []

    @field_validator("properties")
    @classmethod
    def _numeric_properties(cls, properties: list[Property]) -> list[Property]:
        for prop in properties:
            if prop.type not in ("number", "price"):
                raise ValueError(f"Labor property '{prop.name}' must be numeric")
        return properties


# --- Shared functions ---

class FunctionParameter(BaseModel):
    name: VariableName
    label: str = ""
    unit_symbol: Optional[str] = None
    unit_category: Optional[str] = None
    required: bool = True

    @model_validator(mode="after")
    def _sync_unit(self):
        self.unit_category = _unit_category_for(self.unit_symbol, self.unit_category)
        return self


class SharedFunction(BaseModel):
    id: Optional[str] = None
    name: VariableName
    description: Optional[str] = None
    category: Optional[str] = None
    parameters: list[FunctionParameter] = []
    formula: str

    @field_validator("parameters")
    @classmethod
    def _unique_parameters(cls, parameters: list[FunctionParameter]) -> list[FunctionParameter]:
        seen = set()
        for param in parameters:
            key = param.name.lower()
            if key in seen:
                raise ValueError(f"Parameter name must be unique: {param.name}")
            seen.add(key)
        return parameters


# --- Module definitions ---

class Field(BaseModel):
    id: str
    label: str
    variable_name: VariableName
    type: FieldType = "number"
    required: bool = False
    default_value: FieldValue = None
    options: list[str] = []
    dropdown_mode: Literal["numeric", "string"] = "string"
    unit_symbol: Optional[str] = None
    unit_category: Optional[str] = None
    catalog_category: Optional[str] = None  # restricts material/labor selection
    description: Optional[str] = None

    @model_validator(mode="after")
    def _check_unit(self):
        if self.unit_symbol or self.unit_category:
            numeric = self.type == "number" or (self.type == "dropdown" and self.dropdown_mode == "numeric")
            if not numeric:
                raise ValueError(f"Field '{self.variable_name}' of type {self.type} cannot carry a unit")
        self.unit_category = _unit_category_for(self.unit_symbol, self.unit_category)
        return self

    @property
    def is_catalog(self) -> bool:
        return self.type in CATALOG_FIELD_TYPES

    @property
    def is_numeric(self) -> bool:
        return self.type == "number" or (self.type == "dropdown" and self.dropdown_mode == "numeric")


class ComputedOutput(BaseModel):
    id: str
    label: str
    variable_name: VariableName
    expression: str
    unit_symbol: Optional[str] = None
    unit_category: Optional[str] = None
    show_in_quote: bool = True

    @model_validator(mode="after")
    def _sync_unit(self):
        self.unit_category = _unit_category_for(self.unit_symbol, self.unit_category)
        return self

    @property
    def key(self) -> str:
        return f"{COMPUTED_PREFIX}{self.variable_name}"


class CalculationModule(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    fields: list[Field] = []
    computed_outputs: list[ComputedOutput] = []
    formula: str = ""

    @model_validator(mode="after")
    def _unique_variable_names(self):
        seen = set()
        for name in [f.variable_name for f in self.fields] + [o.variable_name for o in self.computed_outputs]:
            key = name.lower()
            if key in seen:
                raise ValueError(f"Variable name '{name}' is used more than once in module '{self.name}'")
            seen.add(key)
        return self

    def get_field(self, variable_name: str) -> Optional[Field]:
        return next((f for f in self.fields if f.variable_name == variable_name), None)

    def get_output(self, variable_name: str) -> Optional[ComputedOutput]:
        if variable_name.startswith(COMPUTED_PREFIX):
            variable_name = variable_name[len(COMPUTED_PREFIX):]
        return next((o for o in self.computed_outputs if o.variable_name == variable_name), None)


# --- Workspace ---

class FieldLink(BaseModel):
    target_instance_id: str
    target_variable_name: str  # field name or out.<computed output>


class ModuleInstance(BaseModel):
    id: str
    module_id: str
    field_values: dict[str, FieldValue] = {}
    field_links: dict[str, FieldLink] = {}
    calculated_cost: Optional[float] = None


class QuoteLineItem(BaseModel):
    id: str
    module_id: str
    module_name: str
    field_values: dict[str, FieldValue] = {}
    field_summary: str = ""
    cost: float


# --- Engine results ---

class ErrorDetail(BaseModel):
    kind: ErrorKind
    message: str
    subject: Optional[str] = None


class ValidationResult(BaseModel):
    valid: bool
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    subject: Optional[str] = None
    warnings: list[str] = []
    suggestions: list[str] = []


class PropertyRef(BaseModel):
    full: str
    base: str
    property: str


class FunctionCallInfo(BaseModel):
    name: str
    arity: Optional[int] = None  # None when the formula does not parse


class FormulaAnalysis(BaseModel):
    variables: list[str] = []
    computed_outputs: list[str] = []
    unknown_variables: list[str] = []
    field_property_refs: list[PropertyRef] = []
    material_property_refs: list[PropertyRef] = []
    labor_property_refs: list[PropertyRef] = []
    math_functions: list[str] = []
    function_calls: list[FunctionCallInfo] = []


class ComputedOutputResult(BaseModel):
    computed_values: dict[str, float] = {}   # out.<name> -> value
    errors: dict[str, ErrorDetail] = {}      # <name> -> failure


class ModuleValidation(BaseModel):
    valid: bool
    formula: ValidationResult
    computed_outputs: dict[str, ValidationResult] = {}


class InstanceCost(BaseModel):
    instance_id: str
    cost: Optional[float] = None
    error: Optional[ErrorDetail] = None
    computed_values: dict[str, float] = {}
    computed_errors: dict[str, ErrorDetail] = {}

    @property
    def ok(self) -> bool:
        return self.error is None and self.cost is not None


class BrokenLinkInfo(BaseModel):
    instance_id: str
    field_name: str
    target_instance_id: str
    target_variable_name: str
    reason: Literal["missing_instance", "missing_target", "cycle", "target_failed", "upstream_broken"]


class LinkCheck(BaseModel):
    valid: bool
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


class LinkOption(BaseModel):
    value: str          # "<instance_id>.<variable_name>"
    label: str
    instance_id: str
    variable_name: str  # field name or out.<computed output>


class WorkspaceResult(BaseModel):
    instances: list[ModuleInstance] = []
    costs: dict[str, InstanceCost] = {}
    resolved_values: dict[str, dict[str, FieldValue]] = {}
    broken_links: list[BrokenLinkInfo] = []


class QuoteTotals(BaseModel):
    subtotal: float
    markup_percent: float
    markup_amount: float
    tax_rate: float
    tax_amount: float
    total: float
    line_count: int = 0


# --- Request payloads ---

class CatalogSnapshot(BaseModel):
    """Catalog and shared-function state the caller posts with engine requests."""
    materials: list[Material] = []
    labor: list[Labor] = []
    functions: list[SharedFunction] = []

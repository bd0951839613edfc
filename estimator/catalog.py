"""
Catalog lookup for material and labor items.

Indexes are built once per catalog snapshot: variable_name -> item and,
per item, property name -> Property. Formula analysis and evaluation then do
dict lookups instead of scanning the item lists for every identifier.

Numeric property values are always base-normalized (Property.stored_value).
"""

from typing import Iterable, Optional, Union

from .errors import EvaluationError
from .schemas import Field, Labor, Material, Property

CatalogItem = Union[Material, Labor]


class Catalog:
    """Read-only view over one snapshot of the material and labor catalogs."""

    def __init__(self, materials: Iterable[Material] = (), labor: Iterable[Labor] = ()):
        self.materials: list[Material] = list(materials)
        self.labor: list[Labor] = list(labor)
        self._items: dict[str, dict[str, CatalogItem]] = {
            "material": {m.variable_name: m for m in self.materials},
            "labor": {l.variable_name: l for l in self.labor},
        }
        self._properties: dict[tuple[str, str], dict[str, Property]] = {}
        for kind, items in self._items.items():
            for var, item in items.items():
                self._properties[(kind, var)] = {p.name: p for p in item.properties}

    @classmethod
    def coerce(cls, catalog: Optional["Catalog"] = None, materials=(), labor=()) -> "Catalog":
        """Reuse an existing snapshot or build one from plain lists."""
        if catalog is not None:
            return catalog
        return cls(materials or (), labor or ())

    # --- Item lookup ---

    def get(self, kind: str, variable_name: str) -> Optional[CatalogItem]:
        return self._items.get(kind, {}).get(variable_name)

    def material(self, variable_name: str) -> Optional[Material]:
        return self._items["material"].get(variable_name)

    def labor_item(self, variable_name: str) -> Optional[Labor]:
        return self._items["labor"].get(variable_name)

    def find(self, variable_name: str) -> tuple[Optional[str], Optional[CatalogItem]]:
        """(kind, item) for a direct catalog reference. Materials win over labor."""
        for kind in ("material", "labor"):
            item = self._items[kind].get(variable_name)
            if item is not None:
                return kind, item
        return None, None

    def variable_names(self, kind: Optional[str] = None) -> list[str]:
        kinds = [kind] if kind else ["material", "labor"]
        names: list[str] = []
        for k in kinds:
            names.extend(self._items[k].keys())
        return names

    def items_for(self, kind: str, category: Optional[str] = None) -> list[CatalogItem]:
        """Items a material/labor field may select, honouring its category restriction."""
        items = list(self._items.get(kind, {}).values())
        if category and category.strip():
            items = [i for i in items if i.category == category]
        return items

    def items_for_field(self, field: Field) -> list[CatalogItem]:
        return self.items_for(field.type, field.catalog_category)

    # --- Values ---

    @staticmethod
    def base_value(kind: str, item: CatalogItem) -> float:
        """What a bare catalog reference evaluates to: material price or labor hourly cost."""
        if kind == "labor":
            return float(item.cost)
        return float(item.price)

    def get_property(self, kind: str, variable_name: str, name: str) -> Optional[Property]:
        return self._properties.get((kind, variable_name), {}).get(name)

    def property_value(self, kind: str, variable_name: str, name: str) -> Optional[float]:
        """
        Numeric, base-normalized value of an item's property.

        Returns None when the item or property does not exist.
        Raises EvaluationError for a text property that is not a number.
        """
        prop = self.get_property(kind, variable_name, name)
        if prop is None:
            return None
        return property_number(prop, f"{variable_name}.{name}")

    def property_category(self, kind: str, variable_name: str, name: str) -> Optional[str]:
        prop = self.get_property(kind, variable_name, name)
        return prop.unit_category if prop else None

    def field_has_property(self, field: Field, name: str) -> bool:
        """Does at least one item reachable by this field define `name`?"""
        return any(
            self.get_property(field.type, item.variable_name, name) is not None
            for item in self.items_for_field(field)
        )

    def field_property_category(self, field: Field, name: str) -> Optional[str]:
        for item in self.items_for_field(field):
            category = self.property_category(field.type, item.variable_name, name)
            if category:
                return category
        return None

    def property_names(self, kind: str, variable_name: str) -> list[str]:
        return list(self._properties.get((kind, variable_name), {}).keys())


def property_number(prop: Property, subject: str) -> float:
    if prop.type in ("number", "price"):
        if prop.stored_value is not None:
            return prop.stored_value
        if prop.value is None:
            raise EvaluationError(f"Property '{subject}' has no value", subject=subject)
        return float(prop.value)
    if prop.type == "boolean":
        return 1.0 if prop.value is True or prop.value == "true" else 0.0
    # string
    try:
        return float(str(prop.value).strip())
    except (TypeError, ValueError):
        raise EvaluationError(
            f"Property '{subject}' is text ({prop.value!r}) and cannot be used in arithmetic",
            subject=subject,
        )

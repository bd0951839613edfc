"""
Unit registry: categories, base units and conversions.

Every numeric value that carries a unit is stored in its category's base
unit (m, m², m³, kg). Formula arithmetic only ever sees base values; the UI
converts back with convert_from_base() for display.

Unknown symbols are configuration errors and raise UnknownUnitError
immediately instead of silently passing the value through.
"""

from dataclasses import dataclass
from typing import Literal, Optional

UnitCategory = Literal["length", "area", "volume", "weight", "percentage", "count"]

UNIT_CATEGORIES: tuple[str, ...] = ("length", "area", "volume", "weight", "percentage", "count")

# Categories that behave as plain scalars in unit algebra
UNITLESS_CATEGORIES = frozenset({"count", "percentage"})


class UnknownUnitError(ValueError):
    """Raised for a unit symbol that is not in UNITS."""


@dataclass(frozen=True)
class Unit:
    key: str
    category: str
    symbol: str         # display symbol
    scale: float        # display units per base unit

    def to_base(self, value: float) -> float:
        if self.scale == 1.0:
            return value
        return value / self.scale

    def from_base(self, value: float) -> float:
        if self.scale == 1.0:
            return value
        return value * self.scale


UNITS: dict[str, Unit] = {
    # Length (base: meters)
    "mm": Unit("mm", "length", "mm", 1000.0),
    "cm": Unit("cm", "length", "cm", 100.0),
    "m": Unit("m", "length", "m", 1.0),
    # Area (base: square meters)
    "m2": Unit("m2", "area", "m²", 1.0),
    # Volume (base: cubic meters)
    "m3": Unit("m3", "volume", "m³", 1.0),
    "l": Unit("l", "volume", "L", 1000.0),
    # Weight (base: kg)
    "kg": Unit("kg", "weight", "kg", 1.0),
    # Percentage kept as 0-100, no conversion
    "%": Unit("%", "percentage", "%", 1.0),
    # Count: unitless. "liters" and "price" count containers / currency, never converted
    "pcs": Unit("pcs", "count", "pcs", 1.0),
    "liters": Unit("liters", "count", "L", 1.0),
    "price": Unit("price", "count", "$", 1.0),
}


def get_unit(symbol: str) -> Unit:
    """Look up a unit by its registry key. Raises UnknownUnitError."""
    unit = UNITS.get(symbol)
    if unit is None:
        raise UnknownUnitError(
            f"Unknown unit symbol: {symbol!r}. Available: {list(UNITS.keys())}"
        )
    return unit


def get_unit_category(symbol: Optional[str]) -> Optional[str]:
    """Category for a unit symbol; None when no symbol is given."""
    if not symbol:
        return None
    return get_unit(symbol).category


def normalize_to_base(value: float, unit_symbol: str) -> float:
    """Convert a display value to its category's base unit."""
    return get_unit(unit_symbol).to_base(value)


def convert_from_base(base_value: float, unit_symbol: str) -> float:
    """Inverse of normalize_to_base()."""
    return get_unit(unit_symbol).from_base(base_value)


def convert(value: float, from_unit: str, to_unit: str) -> float:
    """Convert between two units of the same category."""
    source = get_unit(from_unit)
    target = get_unit(to_unit)
    if source.category != target.category:
        raise ValueError(
            f"Cannot convert between different unit categories: "
            f"{source.category} and {target.category}"
        )
    return target.from_base(source.to_base(value))


def are_compatible(unit_a: str, unit_b: str) -> bool:
    """Two units are compatible when both exist and share a category."""
    if unit_a not in UNITS or unit_b not in UNITS:
        return False
    return UNITS[unit_a].category == UNITS[unit_b].category


def get_units_by_category(category: str) -> list[str]:
    return [key for key, unit in UNITS.items() if unit.category == category]


def get_all_unit_symbols() -> list[str]:
    return list(UNITS.keys())


def multiply_units(cat1: str, cat2: str) -> str:
    """
    Result category of cat1 * cat2.

    length*length -> area, area*length -> volume, unitless acts as a scalar,
    any other cross-category product degrades to count.
    """
    if cat1 == "length" and cat2 == "length":
        return "area"
    if (cat1, cat2) in (("area", "length"), ("length", "area")):
        return "volume"
    if cat1 in UNITLESS_CATEGORIES:
        return cat2
    if cat2 in UNITLESS_CATEGORIES:
        return cat1
    return "count"


def divide_units(cat1: str, cat2: str) -> Optional[str]:
    """
    Result category of cat1 / cat2, or None when the division is not allowed.

    Same dimension -> count; unit / unitless -> unit;
    unitless / unit and cross-dimension division are rejected.
    """
    if cat1 == cat2 and cat1 not in UNITLESS_CATEGORIES:
        return "count"
    if cat2 in UNITLESS_CATEGORIES:
        return cat1
    return None

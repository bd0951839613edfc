"""
Unit registry API.

GET  /api/units            categories and every known unit
POST /api/units/convert    convert a value between two units of one category
POST /api/units/normalize  display value -> base unit, or back with to_display
"""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from .. import units

router = APIRouter(prefix="/units", tags=["units"])


# --- Request/Response schemas ---

class ConvertRequest(BaseModel):
    value: float
    from_unit: str
    to_unit: str


class NormalizeRequest(BaseModel):
    value: float
    unit_symbol: str
    to_display: bool = False  # True: base value -> display value


# --- Endpoints ---

@router.get("")
def list_units():
    return {
        "categories": list(units.UNIT_CATEGORIES),
        "units": [
            {"key": u.key, "category": u.category, "symbol": u.symbol}
            for u in units.UNITS.values()
        ],
    }


@router.post("/convert")
def convert_value(request: ConvertRequest):
    try:
        value = units.convert(request.value, request.from_unit, request.to_unit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"value": value, "unit": request.to_unit}


@router.post("/normalize")
def normalize_value(request: NormalizeRequest):
    try:
        if request.to_display:
            value = units.convert_from_base(request.value, request.unit_symbol)
        else:
            value = units.normalize_to_base(request.value, request.unit_symbol)
        category = units.get_unit_category(request.unit_symbol)
    except units.UnknownUnitError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"value": value, "unit_symbol": request.unit_symbol, "category": category}

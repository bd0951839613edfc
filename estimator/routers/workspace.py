"""
Workspace API: a quote or template's module instances and their links.

POST /api/workspace/calculate     full recompute: costs, resolved values, broken links
POST /api/workspace/links/check   may a proposed link be stored?
POST /api/workspace/links/options link targets for one field
POST /api/workspace/line-item     snapshot a calculated instance as a quote line item
POST /api/workspace/totals        subtotal, markup, tax, total
"""

from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from ..catalog import Catalog
from ..errors import FormulaError
from ..field_links import build_link_options, can_link_fields, get_link_display_name, is_link_broken
from ..module_cost import recalculate_workspace
from ..pricing import PricingEngine
from ..schemas import (
    CalculationModule,
    CatalogSnapshot,
    LinkCheck,
    ModuleInstance,
    QuoteLineItem,
    QuoteTotals,
    WorkspaceResult,
)
from . import bad_request

router = APIRouter(prefix="/workspace", tags=["workspace"])

# Singleton engine: defaults from settings, no state
pricing_engine = PricingEngine()


# --- Request/Response schemas ---

class WorkspaceRequest(CatalogSnapshot):
    instances: list[ModuleInstance] = []
    modules: list[CalculationModule] = []


class LinkCheckRequest(WorkspaceRequest):
    instance_id: str
    field_name: str
    target_instance_id: str
    target_variable_name: str


class LinkOptionsRequest(WorkspaceRequest):
    instance_id: str
    field_name: str


class LineItemRequest(WorkspaceRequest):
    instance_id: str


class TotalsRequest(BaseModel):
    line_items: list[QuoteLineItem] = []
    markup_percent: Optional[float] = None
    tax_rate: Optional[float] = None


def _find_instance(request: WorkspaceRequest, instance_id: str) -> ModuleInstance:
    instance = next((i for i in request.instances if i.id == instance_id), None)
    if instance is None:
        raise HTTPException(status_code=404, detail=f"Module instance {instance_id} not found")
    return instance


# --- Endpoints ---

@router.post("/calculate", response_model=WorkspaceResult)
def calculate(request: WorkspaceRequest):
    return recalculate_workspace(
        request.instances,
        request.modules,
        functions=request.functions,
        catalog=Catalog(request.materials, request.labor),
    )


@router.post("/links/check", response_model=LinkCheck)
def check_link(request: LinkCheckRequest):
    return can_link_fields(
        request.instances,
        request.modules,
        request.instance_id,
        request.field_name,
        request.target_instance_id,
        request.target_variable_name,
    )


@router.post("/links/options")
def link_options(request: LinkOptionsRequest):
    instance = _find_instance(request, request.instance_id)
    return {
        "options": build_link_options(instance, request.field_name, request.instances, request.modules),
        "linked": request.field_name in instance.field_links,
        "broken": is_link_broken(instance, request.field_name, request.instances, request.modules),
        "display_name": get_link_display_name(instance, request.field_name, request.instances, request.modules),
    }


@router.post("/line-item", response_model=QuoteLineItem)
def line_item(request: LineItemRequest):
    instance = _find_instance(request, request.instance_id)
    module = next((m for m in request.modules if m.id == instance.module_id), None)
    if module is None:
        raise HTTPException(status_code=404, detail=f"Module {instance.module_id} not found")

    result = recalculate_workspace(
        request.instances,
        request.modules,
        functions=request.functions,
        catalog=Catalog(request.materials, request.labor),
    )
    try:
        return pricing_engine.build_line_item(instance, module, result.costs[instance.id])
    except FormulaError as e:
        raise bad_request(e)


@router.post("/totals", response_model=QuoteTotals)
def totals(request: TotalsRequest):
    return pricing_engine.summarize(request.line_items, request.markup_percent, request.tax_rate)

"""
Quote pricing: line items and totals.

A line item is a snapshot of one calculated module instance: field values,
a short field summary and the cost at the time it was added. Totals are
pure math over the line items:

    subtotal -> markup (percent of subtotal) -> tax on (subtotal + markup) -> total
"""

import uuid
from typing import Iterable, Optional

from .config import settings
from .errors import EvaluationError, FormulaError, error_for
from .module_cost import field_summary
from .schemas import (
    CalculationModule,
    InstanceCost,
    ModuleInstance,
    QuoteLineItem,
    QuoteTotals,
)


class PricingEngine:
    """
    Turns calculated instances into quote line items and quote totals.
    """

    def __init__(self, tax_rate: Optional[float] = None, markup_percent: Optional[float] = None):
        self.tax_rate = settings.DEFAULT_TAX_RATE if tax_rate is None else tax_rate
        self.markup_percent = settings.DEFAULT_MARKUP_PERCENT if markup_percent is None else markup_percent

    def build_line_item(
        self,
        instance: ModuleInstance,
        module: CalculationModule,
        cost: InstanceCost,
    ) -> QuoteLineItem:
        """
        Snapshot an instance into a line item.

        An instance that cannot be calculated cannot be added: the instance's
        FormulaError is re-raised with its original kind.
        """
        if cost.error is not None:
            raise _error_from_detail(cost)
        if cost.cost is None:
            raise EvaluationError(f"Module '{module.name}' has no calculated cost")
        return QuoteLineItem(
            id=uuid.uuid4().hex,
            module_id=instance.module_id,
            module_name=module.name,
            field_values=dict(instance.field_values),
            field_summary=field_summary(module, instance.field_values),
            cost=cost.cost,
        )

    def summarize(
        self,
        line_items: Iterable[QuoteLineItem],
        markup_percent: Optional[float] = None,
        tax_rate: Optional[float] = None,
    ) -> QuoteTotals:
        line_items = list(line_items)
        markup_percent = self.markup_percent if markup_percent is None else markup_percent
        tax_rate = self.tax_rate if tax_rate is None else tax_rate
        markup_percent = max(0.0, markup_percent)

        subtotal = self._calculate_subtotal(line_items)
        markup_amount = round(subtotal * (markup_percent / 100.0), 2)
        tax_amount = round((subtotal + markup_amount) * tax_rate, 2)
        return QuoteTotals(
            subtotal=subtotal,
            markup_percent=markup_percent,
            markup_amount=markup_amount,
            tax_rate=tax_rate,
            tax_amount=tax_amount,
            total=round(subtotal + markup_amount + tax_amount, 2),
            line_count=len(line_items),
        )

    def _calculate_subtotal(self, line_items: list) -> float:
        """Sum of line item costs."""
        return round(sum(item.cost for item in line_items), 2)


def _error_from_detail(cost: InstanceCost) -> FormulaError:
    detail = cost.error
    return error_for(detail.kind, f"Cannot add item: {detail.message}", subject=detail.subject)


_default_engine = PricingEngine()


def build_line_item(instance: ModuleInstance, module: CalculationModule, cost: InstanceCost) -> QuoteLineItem:
    return _default_engine.build_line_item(instance, module, cost)


def summarize_quote(
    line_items: Iterable[QuoteLineItem],
    markup_percent: Optional[float] = None,
    tax_rate: Optional[float] = None,
) -> QuoteTotals:
    return _default_engine.summarize(line_items, markup_percent, tax_rate)

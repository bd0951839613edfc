"""
Quote pricing tests.

Tests:
1-4.   Totals: subtotal -> markup -> tax -> total
5-7.   Line items from calculated instances
"""

import pytest

from estimator.errors import MissingRequiredInputError
from estimator.module_cost import evaluate_module_cost
from estimator.pricing import PricingEngine, build_line_item, summarize_quote
from estimator.schemas import ModuleInstance, QuoteLineItem


def _sample_line_items(*costs):
    return [
        QuoteLineItem(id=f"li{i}", module_id="wall", module_name="Wall", cost=cost)
        for i, cost in enumerate(costs)
    ]


# ============================================================
# 1-4. Totals
# ============================================================

def test_markup_then_tax():
    """100 subtotal, 10% markup, 10% tax on (subtotal + markup) -> 121."""
    engine = PricingEngine(tax_rate=0.10)
    totals = engine.summarize(_sample_line_items(60.0, 40.0), markup_percent=10)
    assert totals.subtotal == 100.0
    assert totals.markup_amount == 10.0
    assert totals.tax_amount == 11.0
    assert totals.total == 121.0
    assert totals.line_count == 2


def test_negative_markup_is_clamped():
    totals = PricingEngine(tax_rate=0.10).summarize(_sample_line_items(100.0), markup_percent=-25)
    assert totals.markup_percent == 0.0
    assert totals.markup_amount == 0.0
    assert totals.total == 110.0


def test_amounts_round_to_cents():
    totals = PricingEngine(tax_rate=0.0825).summarize(_sample_line_items(19.99, 0.015), markup_percent=12.5)
    assert totals.subtotal == pytest.approx(20.0, abs=0.01)
    assert totals.markup_amount == round(totals.subtotal * 0.125, 2)
    assert totals.total == round(totals.subtotal + totals.markup_amount + totals.tax_amount, 2)


def test_empty_quote_and_defaults():
    totals = summarize_quote([])
    assert totals.subtotal == 0.0
    assert totals.total == 0.0
    assert totals.line_count == 0
    assert totals.tax_rate == 0.10
    assert totals.markup_percent == 0.0


# ============================================================
# 5-7. Line items
# ============================================================

def test_line_item_snapshot(wall_module):
    instance = ModuleInstance(id="w1", module_id="wall", field_values={"width": 4, "height": 2})
    cost = evaluate_module_cost(wall_module, instance.field_values, instance_id="w1")
    item = build_line_item(instance, wall_module, cost)
    assert item.cost == 56
    assert item.module_name == "Wall"
    assert item.field_summary == "Width: 4, Height: 2, Paint: "
    assert item.field_values == {"width": 4, "height": 2}
    assert item.id


def test_line_item_ids_are_unique(wall_module):
    instance = ModuleInstance(id="w1", module_id="wall", field_values={"width": 4, "height": 2})
    cost = evaluate_module_cost(wall_module, instance.field_values)
    engine = PricingEngine()
    assert engine.build_line_item(instance, wall_module, cost).id != engine.build_line_item(instance, wall_module, cost).id


def test_failed_instance_cannot_be_added(wall_module):
    instance = ModuleInstance(id="w1", module_id="wall", field_values={"height": 2})
    cost = evaluate_module_cost(wall_module, instance.field_values)
    with pytest.raises(MissingRequiredInputError) as exc:
        build_line_item(instance, wall_module, cost)
    assert exc.value.message.startswith("Cannot add item:")
    assert exc.value.subject == "width"

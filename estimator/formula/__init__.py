"""
Formula language: parser, evaluator and static analyzer.

Grammar: + - * / ^, unary minus, parentheses, calls `name(a, b)`, numbers,
and identifiers with at most one dot (`matVar.prop`, `out.area`).
"""

from .analyzer import analyze_formula_variables, suggest_variables, validate_formula
from .evaluator import EvaluationContext, evaluate_formula
from .parser import parse_formula

__all__ = [
    "EvaluationContext",
    "analyze_formula_variables",
    "evaluate_formula",
    "parse_formula",
    "suggest_variables",
    "validate_formula",
]

"""
Typed failures raised by the formula engine.

Parse/validate-time kinds (SyntaxError, UnknownVariable, ArityError,
IncompatibleLink, UnitMismatch) block acceptance of a formula or link in the
editor. Evaluation-time kinds (EvaluationError, MissingRequiredInput,
MissingCatalogSelection, BrokenLink) are caught per module instance so a
failing instance never takes its siblings down with it.
"""

import enum
from typing import Optional


class ErrorKind(str, enum.Enum):
    SYNTAX_ERROR = "SyntaxError"
    UNKNOWN_VARIABLE = "UnknownVariable"
    ARITY_ERROR = "ArityError"
    EVALUATION_ERROR = "EvaluationError"
    MISSING_REQUIRED_INPUT = "MissingRequiredInput"
    MISSING_CATALOG_SELECTION = "MissingCatalogSelection"
    BROKEN_LINK = "BrokenLink"
    INCOMPATIBLE_LINK = "IncompatibleLink"
    UNIT_MISMATCH = "UnitMismatch"


class FormulaError(Exception):
    """Base class. `subject` is the identifier or sub-expression at fault."""

    kind: ErrorKind = ErrorKind.EVALUATION_ERROR

    def __init__(self, message: str, subject: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.subject = subject

    def with_prefix(self, prefix: str) -> "FormulaError":
        """Same kind and subject, message prefixed with where it happened."""
        return type(self)(f"{prefix}: {self.message}", subject=self.subject)

    def to_detail(self):
        from .schemas import ErrorDetail
        return ErrorDetail(kind=self.kind, message=self.message, subject=self.subject)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class FormulaSyntaxError(FormulaError):
    kind = ErrorKind.SYNTAX_ERROR


class UnknownVariableError(FormulaError):
    kind = ErrorKind.UNKNOWN_VARIABLE


class ArityError(FormulaError):
    kind = ErrorKind.ARITY_ERROR


class EvaluationError(FormulaError):
    kind = ErrorKind.EVALUATION_ERROR


class MissingRequiredInputError(FormulaError):
    kind = ErrorKind.MISSING_REQUIRED_INPUT


class MissingCatalogSelectionError(FormulaError):
    kind = ErrorKind.MISSING_CATALOG_SELECTION


class BrokenLinkError(FormulaError):
    kind = ErrorKind.BROKEN_LINK


class IncompatibleLinkError(FormulaError):
    kind = ErrorKind.INCOMPATIBLE_LINK


class UnitMismatchError(FormulaError):
    kind = ErrorKind.UNIT_MISMATCH


_BY_KIND = {cls.kind: cls for cls in FormulaError.__subclasses__()}


def error_for(kind, message: str, subject: Optional[str] = None) -> FormulaError:
    """Rebuild the exception for a serialized ErrorDetail."""
    cls = _BY_KIND.get(ErrorKind(kind), EvaluationError)
    return cls(message, subject=subject)

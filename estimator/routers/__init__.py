"""
HTTP routers over the formula engine. Every endpoint is stateless: the
caller posts the catalog, module and workspace snapshot it owns.
"""

from fastapi import HTTPException

from ..errors import FormulaError


def bad_request(exc: FormulaError) -> HTTPException:
    """400 carrying the typed error descriptor."""
    return HTTPException(status_code=400, detail=exc.to_detail().model_dump(mode="json"))

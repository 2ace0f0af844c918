"""
api/errors.py -- Rendering of domain errors into the ErrorResponse envelope.

Route handlers raise core.errors.PortalError subclasses; the exception handler
registered in api/main.py calls error_response() to turn them into JSON. The
login route also calls it directly so it can add Cache-Control to failures.
"""

from __future__ import annotations

from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse
from core.errors import PortalError, Unauthenticated


def error_response(exc: PortalError) -> JSONResponse:
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=exc.code, message=exc.message, detail=exc.detail),
        ).model_dump(),
    )
    if isinstance(exc, Unauthenticated):
        response.headers["WWW-Authenticate"] = "Bearer"
    return response

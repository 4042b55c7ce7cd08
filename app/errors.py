"""
Map typed service errors onto HTTP responses.
"""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import core.config as config
from core.errors import ConflictError, NotFoundError, StoreUnavailable, ValidationIssue


def _error_response(status_code: int, error_type: str, exc: Exception) -> JSONResponse:
    body = {"error": error_type, "message": str(exc)}
    field = getattr(exc, "field", None)
    if field:
        body["field"] = field
    return JSONResponse(status_code=status_code, content=body)


async def _validation_handler(request: Request, exc: ValidationIssue) -> JSONResponse:
    return _error_response(400, exc.error_type or "validation_error", exc)


async def _not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error_response(404, "not_found", exc)


async def _conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
    return _error_response(409, "conflict", exc)


async def _unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    config.logger.warning(
        "http_store_unavailable",
        extra={"path": request.url.path, "error": str(exc)},
    )
    return _error_response(503, "unavailable", exc)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ValidationIssue, _validation_handler)
    app.add_exception_handler(NotFoundError, _not_found_handler)
    app.add_exception_handler(ConflictError, _conflict_handler)
    app.add_exception_handler(StoreUnavailable, _unavailable_handler)

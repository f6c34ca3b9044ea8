"""Global exception handlers mapping ledger errors onto the response envelope."""

import logging

import psycopg2
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.responses import JSONResponse

from api.base import error_response, ErrorCodes
from core.exceptions import AllocationError, NotFoundError

logger = logging.getLogger(__name__)


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _error(request: Request, status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_response(code, message, _request_id(request)).model_dump(mode="json"),
    )


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the app."""

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error(request, 404, ErrorCodes.NOT_FOUND, str(exc))

    @app.exception_handler(AllocationError)
    async def allocation_error_handler(request: Request, exc: AllocationError):
        return _error(request, 409, ErrorCodes.ALLOCATION_REJECTED, str(exc))

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return _error(request, 400, ErrorCodes.INVALID_REQUEST, str(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return _error(request, 422, ErrorCodes.VALIDATION_ERROR, str(exc.errors()))

    @app.exception_handler(psycopg2.OperationalError)
    async def database_unavailable_handler(request: Request, exc: psycopg2.OperationalError):
        logger.error("Database unavailable: %s", exc)
        return _error(request, 503, ErrorCodes.SERVICE_UNAVAILABLE, "Database unavailable")

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception")
        return _error(request, 500, ErrorCodes.INTERNAL_ERROR, "An internal error occurred")

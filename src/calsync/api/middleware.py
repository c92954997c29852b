"""API error handling: every failure leaves as the standard error envelope.

Status code mapping:
- ``CalendarSyncError`` subclasses → their own ``status_code`` / ``code``
- ``RequestValidationError`` / ``ValueError`` → 400 ``VALIDATION_ERROR``
- pydantic ``ValidationError`` raised inside the service → 500 ``INTERNAL_ERROR``
- ``ServiceUnavailableError`` → 503
- Any other ``Exception`` → 500 ``INTERNAL_ERROR``
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from calsync.api.deps import ServiceUnavailableError
from calsync.api.models import ErrorDetail, ErrorResponse
from calsync.errors import CalendarSyncError

logger = logging.getLogger(__name__)


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


async def _handle_calendar_sync_error(request: Request, exc: CalendarSyncError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc)
    else:
        logger.info("%s on %s %s", exc.code, request.method, request.url.path)
    return _error_response(exc.status_code, exc.code, str(exc))


async def _handle_request_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    if location:
        message = f"{location}: {message}"
    return _error_response(400, "VALIDATION_ERROR", message)


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    if isinstance(exc, ValidationError):
        # Request bodies are validated by FastAPI; this is a model built internally.
        logger.error(
            "Internal model validation failed on %s %s",
            request.method,
            request.url.path,
            exc_info=exc,
        )
        return _error_response(500, "INTERNAL_ERROR", "Internal server error")
    logger.info("Validation error: %s", exc)
    return _error_response(400, "VALIDATION_ERROR", str(exc))


async def _handle_service_unavailable(
    request: Request, exc: ServiceUnavailableError
) -> JSONResponse:
    logger.error("Request to %s before service initialization", request.url.path)
    return _error_response(503, "SERVICE_UNAVAILABLE", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Converts any unhandled exception into a 500 error envelope."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to *app*. Call from ``create_app()``."""
    handlers = {
        CalendarSyncError: _handle_calendar_sync_error,
        RequestValidationError: _handle_request_validation_error,
        ValueError: _handle_value_error,
        ServiceUnavailableError: _handle_service_unavailable,
    }
    for exc_class, handler in handlers.items():
        app.add_exception_handler(exc_class, handler)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)

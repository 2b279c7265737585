"""API error handling: consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "..."}}`` JSON responses.

Status code mapping:
- ``ValueError`` → 400 Bad Request
- ``KeyError`` (unknown event) → 404 Not Found
- ``NotConnectedError`` → 409 Conflict
- ``SyncInProgressError`` → 409 Conflict
- ``ProviderError`` → 502 Bad Gateway
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from wedsync.api.models import ErrorDetail, ErrorResponse
from wedsync.calendar.errors import (
    NotConnectedError,
    ProviderError,
    SyncInProgressError,
    sanitize_error_message,
)

logger = logging.getLogger(__name__)


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error_response(400, "VALIDATION_ERROR", sanitize_error_message(exc))


async def _handle_key_error(request: Request, exc: KeyError) -> JSONResponse:
    """Return 404 when an event id is unknown for the tenant."""
    event_id = exc.args[0] if exc.args else None
    logger.info("Calendar event not found: %s", event_id)
    return _error_response(404, "EVENT_NOT_FOUND", f"Calendar event not found: {event_id}")


async def _handle_not_connected(request: Request, exc: NotConnectedError) -> JSONResponse:
    """Return 409 when the operation needs a Google connection the tenant lacks."""
    logger.info("Tenant %s has no calendar connection", exc.tenant_id)
    return _error_response(409, "NOT_CONNECTED", "Google Calendar is not connected")


async def _handle_in_progress(request: Request, exc: SyncInProgressError) -> JSONResponse:
    """Return 409 while a sync pass holds the tenant's lease."""
    logger.info("Rejected %s: sync pass in progress", request.url.path)
    return _error_response(409, "SYNC_IN_PROGRESS", "A calendar sync is in progress; retry shortly")


async def _handle_provider_error(request: Request, exc: ProviderError) -> JSONResponse:
    """Return 502 when Google Calendar rejects or fails a call."""
    logger.warning("Calendar provider error on %s: %s", request.url.path, exc)
    return _error_response(502, "PROVIDER_ERROR", sanitize_error_message(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    Sits above the Starlette exception handler layer so exceptions without a
    registered handler still get the standard error envelope.
    """

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
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_exception_handler(KeyError, _handle_key_error)  # type: ignore[arg-type]
    app.add_exception_handler(NotConnectedError, _handle_not_connected)  # type: ignore[arg-type]
    app.add_exception_handler(SyncInProgressError, _handle_in_progress)  # type: ignore[arg-type]
    app.add_exception_handler(ProviderError, _handle_provider_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)

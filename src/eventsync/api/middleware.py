"""API error handling: domain exceptions to the ``{"error": {...}}`` envelope.

Status code mapping:
- ``SyncConfigNotFoundError`` → 404 Not Found
- ``UnknownProviderError`` → 404 Not Found
- configuration problems (``ProviderConfigurationError``,
  ``SyncConfigDisabledError``, ``ReconnectRequiredError``,
  ``UnsupportedOperationError``) and ``ValueError`` → 400 Bad Request
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from eventsync.api.models import ErrorDetail, ErrorResponse
from eventsync.sync.errors import (
    ProviderConfigurationError,
    ReconnectRequiredError,
    SyncConfigDisabledError,
    SyncConfigNotFoundError,
    UnknownProviderError,
    UnsupportedOperationError,
)

logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_config_not_found(request: Request, exc: SyncConfigNotFoundError) -> JSONResponse:
    logger.info("Sync configuration not found: %s", exc.config_id)
    return _error(404, "CONFIG_NOT_FOUND", str(exc))


async def _handle_unknown_provider(request: Request, exc: UnknownProviderError) -> JSONResponse:
    logger.info("Unknown provider type on %s: %s", request.url.path, exc.provider_type)
    return _error(404, "UNKNOWN_PROVIDER", str(exc))


async def _handle_config_disabled(request: Request, exc: SyncConfigDisabledError) -> JSONResponse:
    return _error(400, "CONFIG_DISABLED", str(exc))


async def _handle_provider_configuration(
    request: Request,
    exc: ProviderConfigurationError,
) -> JSONResponse:
    logger.info("Provider configuration error: %s", exc)
    return _error(400, "PROVIDER_CONFIG", str(exc))


async def _handle_reconnect_required(request: Request, exc: ReconnectRequiredError) -> JSONResponse:
    logger.info("Provider credentials need reconnecting: %s", exc)
    return _error(400, "RECONNECT_REQUIRED", str(exc))


async def _handle_unsupported(request: Request, exc: UnsupportedOperationError) -> JSONResponse:
    return _error(400, "UNSUPPORTED_OPERATION", str(exc))


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error(400, "VALIDATION_ERROR", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Convert any exception the handlers above did not claim into a 500 envelope."""

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
            return _error(500, "INTERNAL_ERROR", "Internal server error")


_HANDLERS = (
    (SyncConfigNotFoundError, _handle_config_not_found),
    (UnknownProviderError, _handle_unknown_provider),
    (SyncConfigDisabledError, _handle_config_disabled),
    (ProviderConfigurationError, _handle_provider_configuration),
    (ReconnectRequiredError, _handle_reconnect_required),
    (UnsupportedOperationError, _handle_unsupported),
    (ValueError, _handle_value_error),
)


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Domain exceptions are registered via ``add_exception_handler``; the
    catch-all is an ASGI middleware wrapping the whole app so unhandled
    errors still leave in the standard envelope.
    """
    for exc_class, handler in _HANDLERS:
        app.add_exception_handler(exc_class, handler)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)

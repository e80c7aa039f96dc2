"""API error handling: consistent ``{"error": {"code", "message"}}`` responses.

Status code mapping:
- ``WebhookAuthError`` → 403 Forbidden
- ``LookupError`` (unknown reservation, integration, webhook) → 404 Not Found
- ``ValueError`` (including pydantic validation) → 400 Bad Request
- ``ProviderError`` (calendar provider call failed) → 502 Bad Gateway
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from fieldsync.api.models import ErrorDetail, ErrorResponse
from fieldsync.providers.base import ProviderError, sanitize_error
from fieldsync.webhooks import WebhookAuthError

logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_webhook_auth_error(
    request: Request,
    exc: WebhookAuthError,
) -> JSONResponse:
    logger.warning("Rejected webhook on %s: %s", request.url.path, exc)
    return _error(403, "FORBIDDEN", "Notification client state does not match")


async def _handle_lookup_error(
    request: Request,
    exc: LookupError,
) -> JSONResponse:
    message = str(exc.args[0]) if exc.args else "Not found"
    logger.info("Not found: %s", message)
    return _error(404, "NOT_FOUND", message)


async def _handle_value_error(
    request: Request,
    exc: ValueError,
) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error(400, "VALIDATION_ERROR", str(exc))


async def _handle_provider_error(
    request: Request,
    exc: ProviderError,
) -> JSONResponse:
    message = sanitize_error(exc)
    logger.warning("Calendar provider error on %s: %s", request.url.path, message)
    return _error(502, "PROVIDER_ERROR", message)


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Converts any unhandled exception into the standard 500 envelope.

    Sits above the Starlette exception handler layer so nothing bubbles up
    as a raw plain-text 500.
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
            return _error(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(
        WebhookAuthError, _handle_webhook_auth_error  # type: ignore[arg-type]
    )
    app.add_exception_handler(LookupError, _handle_lookup_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_exception_handler(ProviderError, _handle_provider_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)

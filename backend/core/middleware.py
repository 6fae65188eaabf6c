"""FastAPI middleware for request tracking, timing, and error handling.

Adds:
- X-Request-ID header (generated if not provided), bound to every log line
- X-Process-Time header (request duration)
- JSON error responses for the ``CampaignException`` hierarchy
"""

import logging
import time
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import get_settings
from core.exceptions import (
    CampaignException,
    ConflictError,
    FlowValidationError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_QUIET_PATHS = ("/api/health", "/api/v1/health", "/health")


class RequestTrackingMiddleware(BaseHTTPMiddleware):
    """Add request ID and timing to every request/response."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid4()))
        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id)

        start_time = time.monotonic()
        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.monotonic() - start_time) * 1000
            logger.error(
                f"Unhandled exception on {request.method} {request.url.path} "
                f"after {duration_ms:.0f}ms: {exc}",
                exc_info=True,
            )
            # In production, don't expose error details to client
            if get_settings().is_production:
                error_detail = "Internal server error"
            else:
                error_detail = str(exc) or "Internal server error"

            return JSONResponse(
                status_code=500,
                content={"detail": error_detail, "request_id": request_id},
                headers={"X-Request-ID": request_id},
            )
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        duration_ms = (time.monotonic() - start_time) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.2f}ms"

        if request.url.path not in _QUIET_PATHS:
            log_level = logging.WARNING if response.status_code >= 400 else logging.INFO
            logger.log(
                log_level,
                f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.0f}ms)",
            )

        return response


def _error_response(request: Request, status_code: int, detail: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": detail,
            **extra,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error_response(request, 404, str(exc))

    @app.exception_handler(FlowValidationError)
    async def flow_validation_handler(request: Request, exc: FlowValidationError):
        return _error_response(request, 422, str(exc), warnings=exc.warnings)

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return _error_response(request, 422, str(exc))

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        return _error_response(request, 409, str(exc))

    @app.exception_handler(CampaignException)
    async def campaign_error_handler(request: Request, exc: CampaignException):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return _error_response(request, exc.status_code, str(exc))

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return _error_response(request, 400, str(exc))

"""
Shared API Middleware
======================

Common middleware and exception handlers for the FastAPI application.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from hawkops.core import (
    ApplicationException,
    CollaboratorUnavailable,
    ConcurrentModification,
    InvalidTransition,
    InvariantViolation,
    ResourceNotFoundException,
    ValidationException,
)
from hawkops.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """
    Adds correlation ID to requests for tracing.

    The ID is taken from ``X-Correlation-ID`` when the caller sends one.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    One log line per request with its latency.

    Health probes are logged at debug so they do not drown out game traffic.
    """

    QUIET_PATHS = ("/health",)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        fields = {
            "correlation_id": getattr(request.state, "correlation_id", "unknown"),
            "method": request.method,
            "path": request.url.path,
        }
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            fields["latency_ms"] = round((time.perf_counter() - started) * 1000, 2)
            logger.error("Request failed", extra={**fields, "error": str(e)})
            raise

        fields["status_code"] = response.status_code
        fields["latency_ms"] = round((time.perf_counter() - started) * 1000, 2)
        log = logger.debug if request.url.path in self.QUIET_PATHS else logger.info
        log("Request handled", extra=fields)
        return response


def status_code_for(exc: ApplicationException) -> int:
    """HTTP status for an application error kind."""
    if isinstance(exc, ResourceNotFoundException):
        return 404
    if isinstance(exc, (InvalidTransition, ConcurrentModification)):
        return 409
    if isinstance(exc, (ValidationException, InvariantViolation)):
        return 422
    if isinstance(exc, CollaboratorUnavailable):
        return 503
    return 500


async def application_exception_handler(request: Request, exc: ApplicationException) -> JSONResponse:
    """Render application errors with their kind and details."""
    correlation_id = getattr(request.state, "correlation_id", "unknown")
    status_code = status_code_for(exc)

    logger.warning(
        "Request rejected",
        extra={
            "correlation_id": correlation_id,
            "path": request.url.path,
            "error_type": type(exc).__name__,
            "status_code": status_code,
        }
    )

    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.message,
            "error_type": type(exc).__name__,
            "details": exc.details,
            "correlation_id": correlation_id,
        }
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler: a 500 with the correlation id, details only in development."""
    correlation_id = getattr(request.state, "correlation_id", "unknown")

    logger.error(
        "Unhandled exception",
        extra={
            "correlation_id": correlation_id,
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
            "error_message": str(exc)
        },
        exc_info=True,
    )

    is_dev = getattr(getattr(request.app.state, "settings", None), "environment", None) == "development"

    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "correlation_id": correlation_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "debug_info": str(exc) if is_dev else None
        }
    )

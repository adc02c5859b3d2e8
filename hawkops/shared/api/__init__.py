"""
Shared API Layer
================

Middleware and exception handlers used by the FastAPI application.
"""

from hawkops.shared.api.dependencies import get_services
from hawkops.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
    status_code_for,
)

__all__ = [
    "CorrelationIDMiddleware",
    "LoggingMiddleware",
    "application_exception_handler",
    "global_exception_handler",
    "status_code_for",
    "get_services",
]

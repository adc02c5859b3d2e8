"""
Structured Logging
==================

JSON logs for the simulation. Every record carries the service and
environment; request and agent-cycle records also carry a correlation ID,
and game records carry ``game_id`` / ``team_id`` through ``extra``.

Usage:
    from hawkops.shared.infrastructure.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Decision made", extra={"team_id": "team-1", "rule": "start_work"})
"""

import logging
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from pythonjsonlogger import jsonlogger

_SENSITIVE_KEYS = ("password", "api_key", "secret", "access_token")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding timestamp, correlation ID, service and environment; redacts secrets."""

    def __init__(self, *args: Any, environment: str = "unknown", service: str = "hawkops", **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._environment = environment
        self._service = service

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        if not log_record.get("timestamp"):
            log_record["timestamp"] = datetime.now(timezone.utc).isoformat()

        if hasattr(record, "correlation_id"):
            log_record["correlation_id"] = record.correlation_id
        elif "correlation_id" in message_dict:
            log_record["correlation_id"] = message_dict["correlation_id"]

        log_record["environment"] = self._environment
        log_record["service"] = self._service

        for key, value in list(log_record.items()):
            if isinstance(value, str) and any(s in key.lower() for s in _SENSITIVE_KEYS):
                log_record[key] = "***REDACTED***"


def setup_logging(
    level: str = "INFO",
    environment: str = "development",
    service: str = "hawkops",
) -> None:
    """
    Configure structured JSON logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        environment: Environment name for log context
        service: Service name stamped on every record
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))
    handler.setFormatter(
        CustomJsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
            environment=environment,
            service=service,
        )
    )
    root_logger.addHandler(handler)

    # Silence noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Module logger; call as ``get_logger(__name__)``."""
    return logging.getLogger(name)


class ContextLogger(logging.LoggerAdapter):
    """Adapter that merges its context into each call's ``extra`` instead of replacing it."""

    def process(self, msg: Any, kwargs: Any):
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def get_context_logger(name: str, correlation_id: Optional[str] = None) -> logging.LoggerAdapter:
    """
    Get a logger that stamps a correlation ID on every record.

    The agent manager uses one per cycle so every log line of a
    perceive-decide-act pass can be grouped.

    Args:
        name: Logger name
        correlation_id: Request or cycle correlation ID

    Returns:
        logging.LoggerAdapter: Logger with correlation_id in extra
    """
    return ContextLogger(get_logger(name), {"correlation_id": correlation_id or "none"})


@contextmanager
def log_latency(logger: logging.Logger, operation: str, **extra_context: Any):
    """
    Time a block and log one line when it ends, at warning if it raised.

    Usage:
        with log_latency(logger, "agent_cycle", team_id=team_id):
            await cycle.run(agent)
    """
    start = time.perf_counter()
    outcome = "completed"
    try:
        yield
    except BaseException:
        outcome = "failed"
        raise
    finally:
        fields = {
            "operation": operation,
            "outcome": outcome,
            "latency_ms": round((time.perf_counter() - start) * 1000, 2),
            **extra_context,
        }
        if outcome == "failed":
            logger.warning(f"{operation} failed", extra=fields)
        else:
            logger.info(f"{operation} completed", extra=fields)

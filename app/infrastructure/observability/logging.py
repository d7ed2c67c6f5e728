"""
Structured logging setup for the CRM follow-up service.
Provides JSON-formatted logs with consistent fields for production monitoring.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output for production.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            # Request-scoped fields bound by RequestContextMiddleware
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_trace_context,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("psycopg.pool").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _add_trace_context(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Rename the bound request id to the field name dashboards query on."""
    request_id = event_dict.pop("request_id", None)
    if request_id:
        event_dict["trace_id"] = request_id
    return event_dict


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def log_calculation(
    user_id: str,
    contact_count: int,
    counts: dict[str, int],
    duration_ms: float,
    source: str,
    error: str | None = None,
) -> None:
    """Log one follow-up calculation with consistent fields."""
    logger = get_logger("follow_up.calculation")

    log_data = {
        "user_id": user_id,
        "contact_count": contact_count,
        "bucket_counts": counts,
        "duration_ms": round(duration_ms, 2),
        "source": source,
    }

    if error:
        log_data["error"] = error
        logger.warning("Follow-up calculation failed", **log_data)
    else:
        logger.info("Follow-up calculation completed", **log_data)

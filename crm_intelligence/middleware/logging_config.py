"""
Structured Logging Configuration

Uses structlog for JSON-formatted logs with correlation IDs.

Features:
- Request correlation IDs (track a dashboard request across log lines)
- JSON output in production, console output in development
- Automatic context injection (method, path, client)
- Completion-service call logging (duration, tokens, failures)
"""

import logging
import time
import uuid
from typing import Optional

import structlog
from fastapi import Request


# ==================== Configuration ====================

def configure_logging(log_level: str = "INFO", json_logs: bool = True):
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: If True, output JSON format. If False, use console format.
    """
    if json_logs:
        processors = [
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer()
        ]
    else:
        processors = [
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False),
            structlog.dev.ConsoleRenderer()
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Also configure standard library logging (for third-party libs)
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
        force=True,
    )


# ==================== Correlation ID Middleware ====================

async def correlation_id_middleware(request: Request, call_next):
    """
    Attach a correlation ID to every request and log its outcome.

    The ID comes from X-Correlation-ID / X-Request-ID when the caller
    sends one, otherwise a fresh UUID4. It is echoed in the response.
    """
    correlation_id = (
        request.headers.get("X-Correlation-ID")
        or request.headers.get("X-Request-ID")
        or str(uuid.uuid4())
    )
    request.state.correlation_id = correlation_id

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        correlation_id=correlation_id,
        method=request.method,
        path=request.url.path,
        client_ip=request.client.host if request.client else "unknown"
    )

    logger = structlog.get_logger()

    start_time = time.time()
    logger.info("request_started")

    try:
        response = await call_next(request)
        duration = time.time() - start_time

        response.headers["X-Correlation-ID"] = correlation_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=round(duration, 3)
        )
        return response

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            "request_failed",
            error=str(e),
            error_type=type(e).__name__,
            duration_seconds=round(duration, 3),
            exc_info=True
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


# ==================== Helper Functions ====================

def get_logger(name: str = None):
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("segment_saved", segment_id="seg_123")
    """
    return structlog.get_logger(name)


def log_ai_query(
    model: str,
    operation: str,
    duration: float,
    input_tokens: int = 0,
    output_tokens: int = 0,
    error: Optional[str] = None,
):
    """
    Log a completion-service call with token usage.

    Usage:
        log_ai_query("claude-3-5-haiku", "insight", duration=1.2, input_tokens=500, output_tokens=300)
    """
    logger = structlog.get_logger()

    if error:
        logger.error(
            "ai_query_failed",
            model=model,
            operation=operation,
            duration_seconds=round(duration, 3),
            error=error
        )
    else:
        logger.info(
            "ai_query_completed",
            model=model,
            operation=operation,
            duration_seconds=round(duration, 3),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )


def log_business_event(event_type: str, **details):
    """
    Log a business-relevant event.

    Usage:
        log_business_event("alerts_degraded_to_rules", reason="unconfigured", alert_count=3)
    """
    logger = structlog.get_logger()
    logger.info("business_event", event_type=event_type, **details)

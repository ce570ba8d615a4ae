"""
Standardized Error Handling

Maps the engine's error taxonomy onto a consistent JSON envelope:

{
    "error": {
        "code": "RATE_LIMITED",
        "message": "Human-readable message",
        "details": {...},
        "correlation_id": "uuid"
    },
    "timestamp": "2026-10-17T10:30:45Z"
}
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from crm_intelligence.core.exceptions import EngineError, RateLimitError
from crm_intelligence.middleware.logging_config import get_logger

logger = get_logger(__name__)


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _correlation_id(request: Request) -> Optional[str]:
    return getattr(request.state, "correlation_id", None)


# ==================== Error Response Format ====================

def create_error_response(
    error: Exception,
    correlation_id: Optional[str] = None,
) -> Tuple[Dict[str, Any], int]:
    """Create the standardized error body and its status code."""
    if isinstance(error, EngineError):
        error_code = error.error_code
        message = error.message
        details = error.details
        status_code = error.status_code
    elif isinstance(error, StarletteHTTPException):
        error_code = "HTTP_ERROR"
        message = error.detail
        details = {}
        status_code = error.status_code
    else:
        # Don't expose internal details to client
        error_code = "INTERNAL_ERROR"
        message = "An unexpected error occurred. Please try again later."
        details = {}
        status_code = 500

    response = {
        "error": {
            "code": error_code,
            "message": message,
            "details": details
        },
        "timestamp": _timestamp()
    }

    if correlation_id:
        response["error"]["correlation_id"] = correlation_id

    return response, status_code


# ==================== Exception Handlers ====================

async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    """Handle taxonomy errors raised by the engine or API layer."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "api_error",
        error_code=exc.error_code,
        error_message=exc.message,
        status_code=exc.status_code,
        details=exc.details
    )

    response_data, status_code = create_error_response(exc, correlation_id=_correlation_id(request))

    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(exc.retry_after)}

    return JSONResponse(status_code=status_code, content=response_data, headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle standard HTTP exceptions."""
    logger.warning(
        "http_exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path
    )

    response_data, status_code = create_error_response(exc, correlation_id=_correlation_id(request))
    return JSONResponse(status_code=status_code, content=response_data, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body/shape errors surface as BAD_REQUEST (400)."""
    validation_errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"]
        }
        for error in exc.errors()
    ]

    logger.warning("validation_error", path=request.url.path, errors=validation_errors)

    response_data = {
        "error": {
            "code": "BAD_REQUEST",
            "message": "Request validation failed",
            "details": {"validation_errors": validation_errors}
        },
        "timestamp": _timestamp()
    }

    correlation_id = _correlation_id(request)
    if correlation_id:
        response_data["error"]["correlation_id"] = correlation_id

    return JSONResponse(status_code=400, content=response_data)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions (500)."""
    correlation_id = _correlation_id(request)

    logger.error(
        "unexpected_error",
        error_type=type(exc).__name__,
        error_message=str(exc),
        path=request.url.path,
        exc_info=True
    )

    response_data, status_code = create_error_response(exc, correlation_id=correlation_id)
    if correlation_id:
        # Include correlation ID in message for support
        response_data["error"]["message"] += f" Reference: {correlation_id}"

    return JSONResponse(status_code=status_code, content=response_data)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EngineError, engine_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

"""
Exception hierarchy for the Customer Intelligence Engine.

Every error carries a stable error code and the HTTP status the caller
boundary maps it to. Scoring and segment evaluation never raise; these
are surfaced by the orchestrator, repositories and API layer.
"""

from datetime import datetime
from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base exception for all engine errors."""

    error_code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(EngineError):
    """Malformed or missing request fields (400)."""

    error_code = "BAD_REQUEST"
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        details = {"field": field} if field else {}
        details.update(kwargs)
        super().__init__(message, details)


class AuthenticationError(EngineError):
    """Missing admin credential (401)."""

    error_code = "UNAUTHORIZED"
    status_code = 401

    def __init__(self, message: str = "Authentication required", **kwargs):
        super().__init__(message, kwargs)


class AuthorizationError(EngineError):
    """Caller is not an admin (403)."""

    error_code = "FORBIDDEN"
    status_code = 403

    def __init__(self, message: str = "Admin access required", **kwargs):
        super().__init__(message, kwargs)


class NotFoundError(EngineError):
    """Referenced customer or segment absent (404)."""

    error_code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, identifier: Optional[str] = None, **kwargs):
        message = f"{resource} not found"
        if identifier:
            message += f": {identifier}"

        details = {"resource": resource}
        if identifier:
            details["identifier"] = identifier
        details.update(kwargs)

        super().__init__(message, details)


class RateLimitError(EngineError):
    """Completion quota exhausted for the caller's key (429)."""

    error_code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, key: str, quota: int, reset_at: datetime, retry_after: int, **kwargs):
        message = f"Rate limit exceeded. Max {quota} AI queries per window."
        details = {
            "key": key,
            "quota": quota,
            "reset_at": reset_at.isoformat(),
            "retry_after_seconds": retry_after,
        }
        details.update(kwargs)
        self.retry_after = retry_after
        super().__init__(message, details)


class ServiceUnavailableError(EngineError):
    """Completion service unconfigured, failing or timed out (503)."""

    error_code = "AI_UNAVAILABLE"
    status_code = 503

    def __init__(self, message: str = "AI service unavailable", capability: Optional[str] = None, **kwargs):
        details = {"capability": capability} if capability else {}
        details.update(kwargs)
        super().__init__(message, details)


class DataError(EngineError):
    """Repository read failure (500)."""

    error_code = "DATA_ERROR"
    status_code = 500

    def __init__(self, operation: str, reason: Optional[str] = None, **kwargs):
        message = f"Repository read failed: {operation}"
        details = {"operation": operation}
        if reason:
            details["reason"] = reason
        details.update(kwargs)
        super().__init__(message, details)

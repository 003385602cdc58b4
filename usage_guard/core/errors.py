"""
Error taxonomy for usage accounting.

Refusals (rate limit, quota, open circuit) carry the structured data a request
layer needs to build a correct client response. Store errors are internal and
are absorbed by the quota store's degraded mode.
"""

import math
from datetime import datetime
from typing import Any, Dict, Optional, Union


class UsageGuardError(Exception):
    """Base class for all usage guard errors."""
    code = "SERVER_ERROR"
    status_code = 500
    retryable = False


class ValidationError(UsageGuardError, ValueError):
    """Malformed identity, feature type or argument. Caller bug, not retryable."""
    code = "VALIDATION_ERROR"
    status_code = 400


class QuotaExceededError(UsageGuardError):
    """Daily quota exhausted. Not retryable until ``reset_at``."""
    code = "USAGE_LIMIT_EXCEEDED"
    status_code = 403

    def __init__(self, used: int, limit: Union[int, float], reset_at: datetime):
        super().__init__(f"Daily usage limit reached ({used}/{limit}), resets at {reset_at.isoformat()}")
        self.used = used
        self.limit = limit
        self.reset_at = reset_at


class RateLimitedError(UsageGuardError):
    """Too many requests in the current throttle window."""
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    retryable = True

    def __init__(self, retry_after_ms: int, limit: Optional[int] = None):
        super().__init__(f"Rate limit exceeded, retry after {retry_after_ms}ms")
        self.retry_after_ms = retry_after_ms
        self.limit = limit

    @property
    def retry_after(self) -> float:
        """Retry delay in seconds."""
        return self.retry_after_ms / 1000.0


class CircuitOpenError(UsageGuardError):
    """The circuit breaker refused to call the protected dependency."""
    code = "CIRCUIT_BREAKER_OPEN"
    status_code = 503
    retryable = True

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit breaker is OPEN for {name}. Retry after {math.ceil(retry_after)}s")
        self.name = name
        self.retry_after = retry_after


class ServiceUnavailableError(UsageGuardError):
    """The completion provider is temporarily unavailable."""
    code = "SERVICE_UNAVAILABLE"
    status_code = 503
    retryable = True

    def __init__(self, retry_after: float, message: str = "Service temporarily unavailable"):
        super().__init__(message)
        self.retry_after = retry_after


class TransientStoreError(UsageGuardError):
    """Durable store unreachable or failed mid-operation. Internal only."""
    code = "DATABASE_ERROR"


def error_response(exc: UsageGuardError) -> Dict[str, Any]:
    """Render an error as the JSON body returned by the request layer.

    Args:
        exc: Any usage guard error

    Returns:
        Dictionary with error code, message, status code and, where relevant,
        ``retryAfter`` in whole seconds and the quota ``usage`` block
    """
    body: Dict[str, Any] = {
        "error": True,
        "code": exc.code,
        "message": str(exc),
        "statusCode": exc.status_code,
    }
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        body["retryAfter"] = max(1, math.ceil(retry_after))
    if isinstance(exc, QuotaExceededError):
        body["usage"] = {
            "used": exc.used,
            "limit": "unlimited" if math.isinf(exc.limit) else exc.limit,
            "resetAt": exc.reset_at.isoformat(),
        }
    return body

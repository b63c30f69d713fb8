"""
Error taxonomy for the outbound access layer.

Every error raised by this layer derives from GatewayError so Lambda handlers
can turn it into an API Gateway response with to_response().
"""

import json
import math
from typing import Optional


class GatewayError(Exception):
    """Base class for outbound access layer errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API Gateway response format."""
        body = {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }
        if self.details:
            body["error"]["details"] = self.details

        return {
            "statusCode": self.status_code,
            "headers": {"Content-Type": "application/json"},
            "body": json.dumps(body),
        }


class ConfigurationError(GatewayError):
    """Raised at startup when a key or secret is missing or malformed."""

    def __init__(self, message: str):
        super().__init__(code="configuration_error", message=message, status_code=500)


class ApiClientError(GatewayError):
    """Raised by the resilient HTTP client when a call cannot be completed."""

    def __init__(
        self,
        message: str,
        service: str,
        status_code: int = 0,
        is_timeout: bool = False,
        is_circuit_open: bool = False,
        code: str = "api_client_error",
        details: Optional[dict] = None,
    ):
        super().__init__(code=code, message=message, status_code=status_code, details=details)
        self.service = service
        self.is_timeout = is_timeout
        self.is_circuit_open = is_circuit_open


class RequestTimeoutError(ApiClientError):
    """Every attempt exceeded its deadline."""

    def __init__(self, service: str, timeout: float):
        super().__init__(
            f"Request to {service} timed out after {timeout:g}s",
            service=service,
            status_code=408,
            is_timeout=True,
            code="upstream_timeout",
        )
        self.timeout = timeout


class CircuitOpenError(ApiClientError):
    """Raised when circuit is open and request is blocked."""

    def __init__(self, circuit_name: str, retry_after: int, reason: Optional[str] = None):
        super().__init__(
            reason or f"Circuit '{circuit_name}' is open. Retry after {retry_after}s",
            service=circuit_name,
            status_code=503,
            is_circuit_open=True,
            code="circuit_open",
            details={"retry_after_seconds": retry_after},
        )
        self.circuit_name = circuit_name
        self.retry_after = retry_after


class NetworkError(ApiClientError):
    """Request failed without a usable response (DNS, refused, reset, TLS, bad body encoding, redirect loop)."""

    def __init__(self, service: str, cause: Exception):
        super().__init__(
            f"Network error for {service}: {cause}",
            service=service,
            status_code=0,
            code="network_error",
        )
        self.cause = cause


class HttpError(ApiClientError):
    """Transport succeeded but the upstream answered with a non-2xx status."""

    def __init__(self, service: str, response, message: Optional[str] = None):
        status = response.status_code
        super().__init__(
            message or f"API error: {status} {response.reason_phrase}",
            service=service,
            status_code=status,
            code="upstream_http_error",
        )
        self.response = response


class DecryptionError(GatewayError):
    """Malformed ciphertext, wrong key, or failed authentication tag."""

    def __init__(self, message: str = "Token decryption failed"):
        super().__init__(code="decryption_failed", message=message, status_code=500)


class ReauthRequiredError(GatewayError):
    """The stored credential cannot be renewed without user action."""

    def __init__(self, platform: str, user_id: Optional[str] = None, reason: Optional[str] = None):
        super().__init__(
            code="reauth_required",
            message=f"Re-authentication required for {platform}" + (f": {reason}" if reason else ""),
            status_code=401,
            details={"platform": platform},
        )
        self.platform = platform
        self.user_id = user_id
        self.reason = reason


class RateLimitExceededError(GatewayError):
    """Raised when a caller-side rate limit check denies the request."""

    def __init__(self, limit: int, retry_after_seconds: int, reset_at: Optional[int] = None):
        super().__init__(
            code="rate_limit_exceeded",
            message="Rate limit exceeded. Please try again later.",
            status_code=429,
            details={"retry_after_seconds": retry_after_seconds, "limit": limit},
        )
        self.limit = limit
        self.retry_after_seconds = retry_after_seconds
        self.reset_at = reset_at

    @classmethod
    def from_result(cls, result, limit: int) -> "RateLimitExceededError":
        return cls(limit, result.retry_after or 60, result.reset_at)

    def to_response(self) -> dict:
        response = super().to_response()
        response["headers"]["Retry-After"] = str(self.retry_after_seconds)
        response["headers"]["X-RateLimit-Limit"] = str(self.limit)
        response["headers"]["X-RateLimit-Remaining"] = "0"
        if self.reset_at is not None:
            response["headers"]["X-RateLimit-Reset"] = str(math.ceil(self.reset_at / 1000))
        return response

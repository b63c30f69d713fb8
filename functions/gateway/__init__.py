# Outbound access layer: resilience, rate limiting and credential protection
from .circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry, CircuitState
from .errors import (
    ApiClientError,
    CircuitOpenError,
    ConfigurationError,
    DecryptionError,
    GatewayError,
    HttpError,
    NetworkError,
    RateLimitExceededError,
    ReauthRequiredError,
    RequestTimeoutError,
)
from .http_client import ResilientHttpClient
from .rate_limiter import RATE_LIMIT_PRESETS, RateLimiter, RateLimitResult
from .signed_state import SignedStateCodec
from .token_cipher import TokenCipher

__all__ = [
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    "ResilientHttpClient",
    "RateLimiter",
    "RateLimitResult",
    "RATE_LIMIT_PRESETS",
    "SignedStateCodec",
    "TokenCipher",
    "GatewayError",
    "ConfigurationError",
    "ApiClientError",
    "RequestTimeoutError",
    "CircuitOpenError",
    "NetworkError",
    "HttpError",
    "DecryptionError",
    "ReauthRequiredError",
    "RateLimitExceededError",
]

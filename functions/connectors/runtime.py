"""
Process-wide wiring.

Built once per Lambda execution context (or worker process) so the circuit
breaker registry, rate limit counters and pooled HTTP client are shared by
every invocation it serves.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from gateway.circuit_breaker import CircuitBreakerRegistry
from gateway.config import Settings, get_settings
from gateway.http_client import ResilientHttpClient
from gateway.rate_limiter import DynamoDBRateLimitStore, RateLimiter
from gateway.signed_state import SignedStateCodec
from gateway.token_cipher import TokenCipher
from connectors.connection_store import ConnectionStore, DynamoDBConnectionStore
from connectors.refresh_strategies import build_refresh_strategies
from connectors.token_refresh import TokenRefreshOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    breakers: CircuitBreakerRegistry
    http: ResilientHttpClient
    rate_limiter: RateLimiter
    cipher: TokenCipher
    state_codec: SignedStateCodec
    connections: ConnectionStore
    orchestrator: TokenRefreshOrchestrator


def build_runtime(
    settings: Optional[Settings] = None,
    http: Optional[ResilientHttpClient] = None,
    connections: Optional[ConnectionStore] = None,
) -> Runtime:
    """Wire the access layer from settings. Arguments override individual parts."""
    settings = settings or get_settings()
    breakers = http.breakers if http is not None else CircuitBreakerRegistry()
    http = http or ResilientHttpClient(breakers)
    cipher = TokenCipher(settings.token_encryption_key)

    distributed = None
    if settings.rate_limit_table:
        distributed = DynamoDBRateLimitStore(settings.rate_limit_table)
    else:
        logger.info("RATE_LIMIT_TABLE not configured, using in-memory rate limiting")

    connections = connections or DynamoDBConnectionStore(settings.connections_table, cipher)

    return Runtime(
        settings=settings,
        breakers=breakers,
        http=http,
        rate_limiter=RateLimiter(distributed=distributed),
        cipher=cipher,
        state_codec=SignedStateCodec(settings.state_signing_secret),
        connections=connections,
        orchestrator=TokenRefreshOrchestrator(connections, build_refresh_strategies(settings, http)),
    )


_runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = build_runtime()
        return _runtime


def reset_runtime() -> None:
    """Drop the cached runtime. Used in tests for clean state."""
    global _runtime
    with _runtime_lock:
        _runtime = None


def get_circuit_breaker_status() -> dict[str, dict]:
    return get_runtime().breakers.status()


def reset_circuit_breaker(service: Optional[str] = None) -> bool:
    """
    Reset one circuit, or every circuit when service is None.

    Returns:
        False if the named service had no circuit, True otherwise
    """
    breakers = get_runtime().breakers
    if service is None:
        breakers.reset_all()
        return True
    return breakers.reset(service)

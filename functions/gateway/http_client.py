"""
Resilient HTTP client for ad platform APIs.

Every outbound call goes through ResilientHttpClient.request(), which:
- consults the service's circuit breaker once before the first attempt
- enforces a per-attempt deadline by cancelling the in-flight request
- retries 429, 5xx, timeouts and network errors with linear backoff
- records exactly one breaker outcome per request

Connection pooling:
    The underlying httpx.AsyncClient is shared and recreated when the event
    loop changes (Lambda creates new loops between invocations while reusing
    the execution context). Set USE_CONNECTION_POOLING=false to get a fresh
    client per request for test isolation.
"""

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional

import httpx

from gateway.circuit_breaker import CircuitBreakerRegistry
from gateway.constants import DEFAULT_RETRIES, DEFAULT_RETRY_DELAY, DEFAULT_TIMEOUTS
from gateway.errors import CircuitOpenError, HttpError, NetworkError, RequestTimeoutError
from gateway.logging_utils import log_external_call

logger = logging.getLogger(__name__)

# Global client instance (lazy-initialized)
_client: Optional[httpx.AsyncClient] = None
_client_loop_id: Optional[int] = None  # Track which event loop the client was created on

# Per-attempt deadlines are enforced by ResilientHttpClient; this is only a backstop
DEFAULT_TIMEOUT = httpx.Timeout(
    120.0,
    connect=10.0,
)

DEFAULT_LIMITS = httpx.Limits(
    max_connections=100,  # Max total connections
    max_keepalive_connections=20,  # Max idle connections to keep
    keepalive_expiry=30.0,  # Seconds before closing idle connections
)


def _use_connection_pooling() -> bool:
    """Check if connection pooling is enabled (runtime check)."""
    return os.environ.get("USE_CONNECTION_POOLING", "true").lower() == "true"


def _new_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=DEFAULT_TIMEOUT,
        limits=DEFAULT_LIMITS,
        follow_redirects=True,
        http2=False,
    )


def get_http_client() -> httpx.AsyncClient:
    """
    Get the shared pooled client, or a fresh one when pooling is disabled.

    Returns:
        httpx.AsyncClient configured for the environment
    """
    global _client, _client_loop_id

    if not _use_connection_pooling():
        return _new_client()

    try:
        current_loop_id = id(asyncio.get_running_loop())
    except RuntimeError:
        current_loop_id = None

    if _client is not None and _client_loop_id != current_loop_id:
        logger.debug("Event loop changed, recreating HTTP client")
        # The old client is bound to a dead loop; let it be garbage collected
        _client = None

    if _client is None:
        logger.debug("Initializing shared HTTP client with connection pooling")
        _client = _new_client()
        _client_loop_id = current_loop_id

    return _client


async def close_http_client() -> None:
    """Close the shared HTTP client."""
    global _client

    if _client is not None:
        await _client.aclose()
        _client = None
        logger.debug("Closed shared HTTP client")


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a Retry-After header into seconds.

    Accepts delta-seconds ("120") or an HTTP-date. Returns None when absent
    or unparseable.
    """
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(0.0, (retry_at - datetime.now(timezone.utc)).total_seconds())


def _describe(method: str, url) -> str:
    # Host and path only; query strings can carry credentials
    parsed = httpx.URL(str(url))
    return f"{method.upper()} {parsed.host}{parsed.path}"


class ResilientHttpClient:
    """
    Timeout, retry and circuit breaking around httpx.

    Args:
        breakers: Registry holding one circuit per service name
        client: Explicit httpx client (tests pass one with a MockTransport);
            defaults to the shared pooled client
        timeouts: Per-service default deadlines in seconds
        sleep: Backoff sleep, injectable for tests
    """

    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        client: Optional[httpx.AsyncClient] = None,
        timeouts: Optional[dict[str, float]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.breakers = breakers
        self._client = client
        self._timeouts = {**DEFAULT_TIMEOUTS, **(timeouts or {})}
        self._sleep = sleep

    def _http(self) -> httpx.AsyncClient:
        return self._client if self._client is not None else get_http_client()

    def timeout_for(self, service: str) -> float:
        return self._timeouts.get(service, self._timeouts["default"])

    async def request(
        self,
        method: str,
        url: str,
        service: str = "default",
        *,
        timeout: Optional[float] = None,
        retries: int = DEFAULT_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        **kwargs,
    ) -> httpx.Response:
        """
        Issue a request with timeout, retries and circuit breaking.

        Args:
            method: HTTP method
            url: Absolute URL
            service: Circuit breaker and timeout key (e.g. "meta-ads")
            timeout: Per-attempt deadline in seconds, overrides the service default
            retries: Additional attempts after the first
            retry_delay: Backoff base; attempt N waits retry_delay * (N + 1)
            **kwargs: Passed through to httpx (params, headers, json, data, ...)

        Returns:
            The final httpx.Response. 4xx responses and 5xx after exhausted
            retries are returned, not raised.

        Raises:
            CircuitOpenError: breaker denied the call, no request was made
            RequestTimeoutError: every attempt exceeded its deadline
            NetworkError: every attempt failed without a usable response
            ValueError: retries is negative
        """
        if retries < 0:
            raise ValueError(f"retries must be >= 0, got {retries}")

        decision = self.breakers.consult(service)
        if not decision.allowed:
            logger.warning(
                f"Circuit open for {service}, rejecting request",
                extra={"service": service, "retry_after": decision.retry_after},
            )
            raise CircuitOpenError(service, decision.retry_after or 0, decision.reason)

        deadline = timeout if timeout is not None else self.timeout_for(service)
        operation = _describe(method, url)
        client = self._http()
        owns_client = self._client is None and not _use_connection_pooling()
        recorded = False

        try:
            for attempt in range(retries + 1):
                exhausted = attempt == retries
                backoff = retry_delay * (attempt + 1)
                start = time.perf_counter()

                try:
                    response = await asyncio.wait_for(client.request(method, url, **kwargs), timeout=deadline)
                except (asyncio.TimeoutError, httpx.TimeoutException):
                    latency_ms = (time.perf_counter() - start) * 1000
                    log_external_call(
                        logger, service, operation, False, latency_ms, error="timeout", attempt=attempt + 1
                    )
                    if exhausted:
                        self.breakers.record_failure(service)
                        recorded = True
                        raise RequestTimeoutError(service, deadline) from None
                    await self._sleep(backoff)
                    continue
                except httpx.RequestError as e:
                    latency_ms = (time.perf_counter() - start) * 1000
                    log_external_call(
                        logger, service, operation, False, latency_ms, error=type(e).__name__, attempt=attempt + 1
                    )
                    if exhausted:
                        self.breakers.record_failure(service)
                        recorded = True
                        raise NetworkError(service, e) from e
                    await self._sleep(backoff)
                    continue

                latency_ms = (time.perf_counter() - start) * 1000
                status = response.status_code

                if status == 429 or status >= 500:
                    log_external_call(
                        logger,
                        service,
                        operation,
                        False,
                        latency_ms,
                        error="rate_limited" if status == 429 else "server_error",
                        status_code=status,
                        attempt=attempt + 1,
                    )
                    if exhausted:
                        self.breakers.record_failure(service)
                        recorded = True
                        return response
                    if status == 429:
                        retry_after = parse_retry_after(response.headers.get("Retry-After"))
                        if retry_after is not None:
                            backoff = retry_after
                    await response.aclose()
                    await self._sleep(backoff)
                    continue

                # 2xx/3xx and non-retryable 4xx: the service itself is healthy
                log_external_call(
                    logger, service, operation, True, latency_ms, status_code=status, attempt=attempt + 1
                )
                self.breakers.record_success(service)
                recorded = True
                return response
        finally:
            # Cancelled or failed outside the HTTP exchange: free the probe slot
            if not recorded and decision.probe:
                self.breakers.release(service)
            if owns_client:
                await client.aclose()

        # Unreachable: the final attempt always returns or raises
        raise RuntimeError("Unexpected retry state")

    async def fetch_with_timeout(self, url: str, service: str = "default", *, method: str = "GET", **kwargs):
        return await self.request(method, url, service, **kwargs)

    async def fetch_json(self, url: str, service: str = "default", **kwargs) -> Any:
        """GET and decode JSON. Raises HttpError on a non-2xx final response."""
        response = await self.request("GET", url, service, **kwargs)
        if not response.is_success:
            raise HttpError(service, response)
        return response.json()

    async def post_json(self, url: str, body: Any, service: str = "default", **kwargs) -> Any:
        """POST a JSON body and decode the JSON reply. Raises HttpError on non-2xx."""
        response = await self.request("POST", url, service, json=body, **kwargs)
        if not response.is_success:
            raise HttpError(service, response)
        return response.json()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        else:
            await close_http_client()

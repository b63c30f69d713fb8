"""
Circuit Breaker Registry for outbound ad platform APIs.

Prevents cascade failures by stopping requests to failing services
and allowing them time to recover.

States:
- CLOSED: Normal operation, requests allowed
- OPEN: Service failing, requests blocked
- HALF_OPEN: Testing if service recovered

One registry holds a breaker per service name, created lazily on first
use. All transitions for a service happen under a threading.Lock, so
they are linearizable for threaded and asyncio callers alike. The
OPEN -> HALF_OPEN transition is lazy and happens at consult time.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from functools import wraps
from typing import Callable, Optional, TypeVar

from gateway.constants import (
    CIRCUIT_FAILURE_THRESHOLD,
    CIRCUIT_HALF_OPEN_MAX_CALLS,
    CIRCUIT_RESET_TIMEOUT,
)
from gateway.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""

    failure_threshold: int = CIRCUIT_FAILURE_THRESHOLD  # Failures before opening
    reset_timeout: float = CIRCUIT_RESET_TIMEOUT  # Seconds before testing recovery
    half_open_max_calls: int = CIRCUIT_HALF_OPEN_MAX_CALLS  # Probes admitted in half-open


@dataclass
class CircuitBreakerState:
    """Current state of one service's circuit."""

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: Optional[float] = None
    half_open_calls: int = 0


@dataclass(frozen=True)
class CircuitDecision:
    """Outcome of consulting the breaker before a call."""

    allowed: bool
    reason: Optional[str] = None
    retry_after: Optional[int] = None  # seconds
    probe: bool = False  # holds a half-open probe slot until record() or release()


class CircuitBreakerRegistry:
    """
    Per-service circuit breakers sharing one lock.

    Note: State is process-local. Each Lambda instance (or worker) trips
    its own breakers.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
        overrides: Optional[dict[str, CircuitBreakerConfig]] = None,
    ):
        self.config = config or CircuitBreakerConfig()
        self._overrides = dict(overrides or {})
        self._clock = clock
        self._states: dict[str, CircuitBreakerState] = {}
        self._lock = threading.Lock()

    def config_for(self, service: str) -> CircuitBreakerConfig:
        return self._overrides.get(service, self.config)

    def _state_for(self, service: str) -> CircuitBreakerState:
        """Get or create state (internal, caller holds the lock)."""
        state = self._states.get(service)
        if state is None:
            state = CircuitBreakerState()
            self._states[service] = state
        return state

    def _check_timeout_transition(self, service: str, state: CircuitBreakerState) -> None:
        """OPEN -> HALF_OPEN once reset_timeout has elapsed (caller holds the lock)."""
        if state.state != CircuitState.OPEN or state.last_failure_time is None:
            return
        elapsed = self._clock() - state.last_failure_time
        if elapsed >= self.config_for(service).reset_timeout:
            logger.info(f"Circuit {service}: OPEN -> HALF_OPEN (timeout elapsed)")
            state.state = CircuitState.HALF_OPEN
            state.half_open_calls = 0

    def _retry_after(self, service: str, state: CircuitBreakerState) -> int:
        reset_timeout = self.config_for(service).reset_timeout
        if state.last_failure_time is None:
            return math.ceil(reset_timeout)
        remaining = reset_timeout - (self._clock() - state.last_failure_time)
        return max(1, math.ceil(remaining))

    def consult(self, service: str) -> CircuitDecision:
        """
        Decide whether a call to service may proceed.

        In HALF_OPEN the check-and-increment of the probe counter is atomic,
        so at most half_open_max_calls callers are admitted.
        """
        with self._lock:
            state = self._state_for(service)
            self._check_timeout_transition(service, state)

            if state.state == CircuitState.CLOSED:
                return CircuitDecision(allowed=True)

            if state.state == CircuitState.OPEN:
                return CircuitDecision(
                    allowed=False,
                    reason=f"Circuit breaker open for {service}",
                    retry_after=self._retry_after(service, state),
                )

            # HALF_OPEN: Allow limited probes
            if state.half_open_calls < self.config_for(service).half_open_max_calls:
                state.half_open_calls += 1
                return CircuitDecision(allowed=True, reason="half-open probe", probe=True)

            return CircuitDecision(
                allowed=False,
                reason=f"Circuit breaker half-open for {service}, probe in flight",
                retry_after=1,
            )

    def record(self, service: str, success: bool) -> None:
        """Record the outcome of a call that consult() admitted."""
        with self._lock:
            state = self._state_for(service)

            if success:
                if state.state != CircuitState.CLOSED:
                    logger.info(f"Circuit {service}: {state.state.value.upper()} -> CLOSED (service recovered)")
                state.state = CircuitState.CLOSED
                state.failure_count = 0
                state.half_open_calls = 0
                return

            state.failure_count += 1
            state.last_failure_time = self._clock()

            if state.state == CircuitState.HALF_OPEN:
                logger.warning(f"Circuit {service}: HALF_OPEN -> OPEN (service still failing)")
                state.state = CircuitState.OPEN
                state.half_open_calls = 0
            elif state.state == CircuitState.CLOSED:
                if state.failure_count >= self.config_for(service).failure_threshold:
                    logger.warning(f"Circuit {service}: CLOSED -> OPEN ({state.failure_count} failures)")
                    state.state = CircuitState.OPEN

    def release(self, service: str) -> None:
        """
        Return a half-open probe slot without an outcome.

        Only callers whose decision has probe=True may call this, after the
        call was cancelled or failed without reaching the service.
        """
        with self._lock:
            state = self._states.get(service)
            if state is not None and state.state == CircuitState.HALF_OPEN and state.half_open_calls > 0:
                state.half_open_calls -= 1

    def record_success(self, service: str) -> None:
        self.record(service, True)

    def record_failure(self, service: str) -> None:
        self.record(service, False)

    def get_state(self, service: str) -> CircuitState:
        """Current state of service, applying any pending timeout transition."""
        with self._lock:
            state = self._state_for(service)
            self._check_timeout_transition(service, state)
            return state.state

    def status(self) -> dict[str, dict]:
        """Snapshot of every known circuit, for health and ops endpoints."""
        with self._lock:
            return {
                service: {
                    "state": state.state.value,
                    "failure_count": state.failure_count,
                    "last_failure_time": state.last_failure_time,
                }
                for service, state in self._states.items()
            }

    def reset(self, service: str) -> bool:
        """Forget a service's circuit. Returns True if it existed."""
        with self._lock:
            existed = self._states.pop(service, None) is not None
        if existed:
            logger.info(f"Circuit {service}: manually reset")
        return existed

    def reset_all(self) -> None:
        with self._lock:
            self._states.clear()
        logger.info("All circuits manually reset")


def circuit_breaker(registry: CircuitBreakerRegistry, service: str):
    """
    Decorator to wrap async calls with a registry circuit.

    Usage:
        @circuit_breaker(registry, "meta-ads")
        async def call_meta_api():
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            decision = registry.consult(service)
            if not decision.allowed:
                raise CircuitOpenError(service, decision.retry_after or 0, decision.reason)

            try:
                result = await func(*args, **kwargs)
            except Exception:
                registry.record_failure(service)
                raise
            except BaseException:
                if decision.probe:
                    registry.release(service)
                raise
            registry.record_success(service)
            return result

        return wrapper

    return decorator

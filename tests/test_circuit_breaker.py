"""
Tests for the circuit breaker registry.
"""

import asyncio
import threading

import pytest

from gateway.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
    circuit_breaker,
)
from gateway.errors import CircuitOpenError


def _open(registry, service, failures=5):
    for _ in range(failures):
        assert registry.consult(service).allowed
        registry.record_failure(service)


def test_unknown_service_starts_closed(clock):
    registry = CircuitBreakerRegistry(clock=clock)
    decision = registry.consult("meta-ads")
    assert decision.allowed is True
    assert registry.get_state("meta-ads") == CircuitState.CLOSED


def test_opens_after_threshold_failures(clock):
    """After exactly threshold failures, consult is denied."""
    registry = CircuitBreakerRegistry(clock=clock)

    _open(registry, "meta-ads", failures=4)
    assert registry.get_state("meta-ads") == CircuitState.CLOSED

    registry.record_failure("meta-ads")
    decision = registry.consult("meta-ads")
    assert registry.get_state("meta-ads") == CircuitState.OPEN
    assert decision.allowed is False
    assert decision.retry_after == 30
    assert "meta-ads" in decision.reason


def test_denied_until_reset_timeout_elapses(clock):
    registry = CircuitBreakerRegistry(clock=clock)
    _open(registry, "meta-ads")

    clock.advance(29)
    decision = registry.consult("meta-ads")
    assert decision.allowed is False
    assert decision.retry_after == 1

    clock.advance(1)
    assert registry.consult("meta-ads").allowed is True


def test_half_open_admits_exactly_one_probe(clock):
    registry = CircuitBreakerRegistry(clock=clock)
    _open(registry, "meta-ads")
    clock.advance(30)

    assert registry.consult("meta-ads").allowed is True
    assert registry.get_state("meta-ads") == CircuitState.HALF_OPEN
    assert registry.consult("meta-ads").allowed is False
    assert registry.consult("meta-ads").allowed is False


def test_probe_success_closes_and_resets_count(clock):
    registry = CircuitBreakerRegistry(clock=clock)
    _open(registry, "meta-ads")
    clock.advance(30)

    assert registry.consult("meta-ads").allowed
    registry.record_success("meta-ads")

    assert registry.get_state("meta-ads") == CircuitState.CLOSED
    assert registry.status()["meta-ads"]["failure_count"] == 0
    assert registry.consult("meta-ads").allowed


def test_probe_failure_reopens_with_fresh_timestamp(clock):
    registry = CircuitBreakerRegistry(clock=clock)
    _open(registry, "meta-ads")
    clock.advance(30)

    assert registry.consult("meta-ads").allowed
    registry.record_failure("meta-ads")

    assert registry.get_state("meta-ads") == CircuitState.OPEN
    assert registry.status()["meta-ads"]["last_failure_time"] == clock()
    clock.advance(29)
    assert registry.consult("meta-ads").allowed is False


def test_success_in_closed_resets_failures(clock):
    registry = CircuitBreakerRegistry(clock=clock)
    _open(registry, "ga4", failures=4)
    registry.record_success("ga4")
    _open(registry, "ga4", failures=4)
    assert registry.get_state("ga4") == CircuitState.CLOSED


def test_services_are_isolated(clock):
    registry = CircuitBreakerRegistry(clock=clock)
    _open(registry, "svc-a")
    assert registry.consult("svc-a").allowed is False
    assert registry.consult("svc-b").allowed is True


def test_per_service_override(clock):
    registry = CircuitBreakerRegistry(
        clock=clock,
        overrides={"bigquery": CircuitBreakerConfig(failure_threshold=2, reset_timeout=60)},
    )
    _open(registry, "bigquery", failures=2)
    assert registry.consult("bigquery").allowed is False
    clock.advance(30)
    assert registry.consult("bigquery").allowed is False
    clock.advance(30)
    assert registry.consult("bigquery").allowed is True


def test_configurable_half_open_probes(clock):
    registry = CircuitBreakerRegistry(CircuitBreakerConfig(half_open_max_calls=2), clock=clock)
    _open(registry, "tiktok-ads")
    clock.advance(30)
    assert registry.consult("tiktok-ads").allowed
    assert registry.consult("tiktok-ads").allowed
    assert not registry.consult("tiktok-ads").allowed


def test_release_returns_probe_slot(clock):
    registry = CircuitBreakerRegistry(clock=clock)
    _open(registry, "snap-ads")
    clock.advance(30)
    assert registry.consult("snap-ads").allowed
    registry.release("snap-ads")
    assert registry.consult("snap-ads").allowed


def test_only_half_open_admissions_are_probes(clock):
    registry = CircuitBreakerRegistry(clock=clock)
    assert registry.consult("snap-ads").probe is False

    _open(registry, "snap-ads")
    assert registry.consult("snap-ads").probe is False
    clock.advance(30)
    assert registry.consult("snap-ads").probe is True


def test_status_and_reset(clock):
    registry = CircuitBreakerRegistry(clock=clock)
    _open(registry, "svc-a")
    registry.consult("svc-b")

    status = registry.status()
    assert status["svc-a"]["state"] == "open"
    assert status["svc-a"]["failure_count"] == 5
    assert status["svc-b"] == {"state": "closed", "failure_count": 0, "last_failure_time": None}

    assert registry.reset("svc-a") is True
    assert registry.reset("svc-a") is False
    assert registry.consult("svc-a").allowed

    registry.reset_all()
    assert registry.status() == {}


def test_concurrent_consults_admit_one_probe(clock):
    registry = CircuitBreakerRegistry(clock=clock)
    _open(registry, "meta-ads")
    clock.advance(30)

    admitted = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        admitted.append(registry.consult("meta-ads").allowed)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert admitted.count(True) == 1


class TestDecorator:
    @pytest.mark.asyncio
    async def test_records_outcomes(self, clock):
        registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=2), clock=clock)

        @circuit_breaker(registry, "linkedin-ads")
        async def flaky():
            raise RuntimeError("boom")

        for _ in range(2):
            with pytest.raises(RuntimeError):
                await flaky()

        with pytest.raises(CircuitOpenError) as exc_info:
            await flaky()
        assert exc_info.value.is_circuit_open
        assert exc_info.value.service == "linkedin-ads"

    @pytest.mark.asyncio
    async def test_passes_result_through(self, clock):
        registry = CircuitBreakerRegistry(clock=clock)

        @circuit_breaker(registry, "ga4")
        async def ok(value):
            await asyncio.sleep(0)
            return value * 2

        assert await ok(21) == 42
        assert registry.status()["ga4"]["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_cancelled_probe_releases_slot(self, clock):
        registry = CircuitBreakerRegistry(clock=clock)
        _open(registry, "ga4")
        clock.advance(30)
        started = asyncio.Event()

        @circuit_breaker(registry, "ga4")
        async def hang():
            started.set()
            await asyncio.sleep(10)

        task = asyncio.ensure_future(hang())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert registry.get_state("ga4") == CircuitState.HALF_OPEN
        assert registry.consult("ga4").allowed is True

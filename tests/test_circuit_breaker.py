from __future__ import annotations

import pytest

from timeline_ingest.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
    with_circuit_breaker,
)
from timeline_ingest.core.errors import CircuitOpenError
from tests.fixtures import FakeClock


class Boom(Exception):
    pass


def _breaker(clock: FakeClock, **overrides) -> CircuitBreaker:
    config = CircuitBreakerConfig(
        failure_threshold=overrides.get("failure_threshold", 2),
        success_threshold=overrides.get("success_threshold", 2),
        timeout_s=overrides.get("timeout_s", 30.0),
        window_s=overrides.get("window_s", 60.0),
    )
    return CircuitBreaker("test-dependency", config, clock=clock)


async def _fail() -> None:
    raise Boom("dependency down")


async def _ok() -> str:
    return "ok"


async def _trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(Boom):
            await breaker.execute(_fail)


@pytest.mark.asyncio
async def test_opens_after_threshold_and_fails_fast() -> None:
    clock = FakeClock()
    breaker = _breaker(clock)
    await _trip(breaker, 2)
    assert breaker.state == CircuitState.OPEN

    calls = {"count": 0}

    async def wrapped() -> str:
        calls["count"] += 1
        return "should not run"

    with pytest.raises(CircuitOpenError) as exc_info:
        await breaker.execute(wrapped)

    assert calls["count"] == 0
    assert exc_info.value.name == "test-dependency"
    assert exc_info.value.next_attempt_at is not None
    assert breaker.is_open()


@pytest.mark.asyncio
async def test_half_open_after_timeout_then_closes_on_successes() -> None:
    clock = FakeClock()
    breaker = _breaker(clock)
    await _trip(breaker, 2)

    clock.advance(30.0)
    assert not breaker.is_open()

    assert await breaker.execute(_ok) == "ok"
    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.get_state().successes == 1

    assert await breaker.execute(_ok) == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.get_state().failures == 0


@pytest.mark.asyncio
async def test_any_failure_in_half_open_reopens() -> None:
    clock = FakeClock()
    breaker = _breaker(clock, success_threshold=3)
    await _trip(breaker, 2)

    clock.advance(31.0)
    await breaker.execute(_ok)
    assert breaker.is_half_open()

    await _trip(breaker, 1)
    assert breaker.state == CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        await breaker.execute(_ok)


@pytest.mark.asyncio
async def test_still_open_before_timeout_elapses() -> None:
    clock = FakeClock()
    breaker = _breaker(clock)
    await _trip(breaker, 2)

    clock.advance(29.9)
    with pytest.raises(CircuitOpenError):
        await breaker.execute(_ok)
    assert breaker.state == CircuitState.OPEN


@pytest.mark.asyncio
async def test_success_while_closed_resets_failures() -> None:
    clock = FakeClock()
    breaker = _breaker(clock)

    await _trip(breaker, 1)
    assert breaker.get_state().failures == 1
    await breaker.execute(_ok)
    assert breaker.get_state().failures == 0

    await _trip(breaker, 1)
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_failures_outside_window_are_pruned() -> None:
    clock = FakeClock()
    breaker = _breaker(clock, window_s=10.0)

    await _trip(breaker, 1)
    clock.advance(11.0)
    await _trip(breaker, 1)

    assert breaker.state == CircuitState.CLOSED
    assert breaker.get_state().failures == 1


@pytest.mark.asyncio
async def test_reset_forces_closed() -> None:
    clock = FakeClock()
    breaker = _breaker(clock)
    await _trip(breaker, 2)

    breaker.reset()

    assert breaker.is_closed()
    assert await breaker.execute(_ok) == "ok"


@pytest.mark.asyncio
async def test_state_snapshot_reports_next_attempt() -> None:
    clock = FakeClock()
    breaker = _breaker(clock)
    assert breaker.get_state().next_attempt_at is None

    await _trip(breaker, 2)
    snapshot = breaker.get_state()

    assert snapshot.state == CircuitState.OPEN
    assert snapshot.last_failure_at is not None
    assert snapshot.to_dict()["state"] == "OPEN"
    assert snapshot.to_dict()["next_attempt_at"] is not None


@pytest.mark.asyncio
async def test_wrap_and_helper_route_through_execute() -> None:
    clock = FakeClock()
    breaker = _breaker(clock, failure_threshold=1)

    async def add(a: int, b: int) -> int:
        return a + b

    assert await breaker.wrap(add)(2, 3) == 5
    assert await with_circuit_breaker(breaker, _ok) == "ok"

    with pytest.raises(Boom):
        await with_circuit_breaker(breaker, _fail)
    with pytest.raises(CircuitOpenError):
        await breaker.wrap(add)(1, 1)


def test_config_validation() -> None:
    with pytest.raises(ValueError):
        CircuitBreakerConfig(failure_threshold=0)
    with pytest.raises(ValueError):
        CircuitBreakerConfig(window_s=0)


@pytest.mark.asyncio
async def test_registry_shares_breakers_by_name() -> None:
    clock = FakeClock()
    registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1), clock=clock)

    first = registry.get("connector:a")
    assert registry.get("connector:a") is first
    assert registry.get("connector:b") is not first
    assert "connector:a" in registry

    with pytest.raises(Boom):
        await first.execute(_fail)
    states = registry.states()
    assert states["connector:a"].state == CircuitState.OPEN
    assert states["connector:b"].state == CircuitState.CLOSED

    registry.reset_all()
    assert first.is_closed()

    registry.clear()
    assert "connector:a" not in registry

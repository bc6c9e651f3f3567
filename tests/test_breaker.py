"""
Tests for the circuit breaker state machine.
"""

import asyncio
import logging
import threading

import pytest

from jobkeeper.breaker import CIRCUIT_OPEN, CircuitBreaker
from jobkeeper.config import CircuitBreakerSettings
from jobkeeper.events import CircuitBreakerClosed, CircuitBreakerHalfOpened, CircuitBreakerOpened
from jobkeeper.models import BreakerState


def settings(**overrides):
    values = dict(enabled=True, failure_threshold=3, success_threshold=2, timeout_seconds=60, half_open_attempts=3)
    values.update(overrides)
    return CircuitBreakerSettings(**values)


@pytest.fixture
def breaker(store, events, clock):
    return CircuitBreaker(store, events, settings(), clock)


def fail(breaker, service="payments"):
    def boom():
        raise ConnectionError("downstream unavailable")

    with pytest.raises(ConnectionError):
        breaker.execute(service, boom)


def run_concurrently(count, target):
    barrier = threading.Barrier(count)

    def run():
        barrier.wait()
        target()

    threads = [threading.Thread(target=run) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)


def test_stays_closed_below_threshold(breaker, recorder):
    fail(breaker)
    fail(breaker)

    assert breaker.is_closed("payments")
    assert breaker.get("payments")["failure_count"] == 2
    assert recorder.of_type(CircuitBreakerOpened) == []


def test_opens_exactly_once_at_threshold(breaker, recorder):
    for _ in range(3):
        fail(breaker)

    assert breaker.is_open("payments")
    opened = recorder.of_type(CircuitBreakerOpened)
    assert len(opened) == 1
    assert opened[0].failure_count == 3


def test_open_circuit_rejects_without_calling_action(breaker):
    for _ in range(3):
        fail(breaker)
    calls = []

    result = breaker.execute("payments", lambda: calls.append(1))

    assert result is CIRCUIT_OPEN
    assert not result
    assert calls == []
    assert breaker.execute("payments", lambda: "live", fallback=lambda: "cached") == "cached"


def test_success_resets_failures_while_closed(breaker):
    fail(breaker)
    fail(breaker)
    assert breaker.execute("payments", lambda: "ok") == "ok"

    assert breaker.get("payments")["failure_count"] == 0


def test_half_open_then_close_after_successes(breaker, recorder, clock):
    for _ in range(3):
        fail(breaker)

    clock.advance(60)
    assert breaker.execute("payments", lambda: "ok") == "ok"
    assert breaker.is_half_open("payments")
    assert len(recorder.of_type(CircuitBreakerHalfOpened)) == 1

    assert breaker.execute("payments", lambda: "ok") == "ok"

    assert breaker.is_closed("payments")
    state = breaker.get("payments")
    assert state["failure_count"] == 0
    assert state["success_count"] == 0
    assert state["opened_at"] is None
    assert len(recorder.of_type(CircuitBreakerClosed)) == 1


def test_failure_in_half_open_reopens(breaker, recorder, clock):
    for _ in range(3):
        fail(breaker)
    clock.advance(60)
    breaker.execute("payments", lambda: "ok")

    fail(breaker)

    assert breaker.is_open("payments")
    state = breaker.get("payments")
    assert state["success_count"] == 0
    assert state["failure_count"] == 0
    assert len(recorder.of_type(CircuitBreakerOpened)) == 2


def test_still_open_before_timeout(breaker, clock):
    for _ in range(3):
        fail(breaker)

    clock.advance(59)

    assert breaker.execute("payments", lambda: "ok") is CIRCUIT_OPEN
    assert breaker.is_open("payments")


def test_half_open_admits_limited_probes(store, events, clock):
    breaker = CircuitBreaker(store, events, settings(success_threshold=2, half_open_attempts=2), clock)
    breaker.open("search")
    clock.advance(60)

    assert breaker.allow("search")
    assert breaker.allow("search")
    assert not breaker.allow("search")


def test_tick_moves_expired_circuits(breaker, clock):
    breaker.open("payments")
    breaker.open("email")
    clock.advance(30)
    breaker.open("email")

    clock.advance(30)
    assert breaker.tick() == ["payments"]
    assert breaker.is_half_open("payments")
    assert breaker.is_open("email")


def test_circuits_are_independent(breaker):
    for _ in range(3):
        fail(breaker, "payments")

    assert breaker.execute("email", lambda: "sent") == "sent"
    assert breaker.is_closed("email")


def test_manual_overrides(breaker, recorder):
    breaker.open("payments")
    assert breaker.is_open("payments")

    breaker.half_open("payments")
    assert breaker.is_half_open("payments")

    breaker.close("payments")
    assert breaker.is_closed("payments")

    breaker.close("payments")
    assert len(recorder.of_type(CircuitBreakerClosed)) == 1

    fail(breaker)
    breaker.reset("payments")
    state = breaker.get("payments")
    assert state["failure_count"] == 0
    assert state["last_failure_at"] is None

    assert breaker.forget("payments")
    assert breaker.get("payments") is None
    assert breaker.get_state("payments") is BreakerState.CLOSED


def test_disabled_breaker_passes_through(store, events, clock):
    breaker = CircuitBreaker(store, events, settings(enabled=False), clock)

    for _ in range(5):
        fail(breaker)

    assert breaker.execute("payments", lambda: "ok") == "ok"
    assert breaker.get("payments") is None


def test_per_service_settings(breaker):
    breaker.configure("flaky", settings(failure_threshold=1, success_threshold=1, half_open_attempts=1))

    fail(breaker, "flaky")

    assert breaker.is_open("flaky")


@pytest.mark.asyncio
async def test_execute_async(breaker, clock):
    async def ok():
        return "ok"

    async def boom():
        raise TimeoutError("slow")

    for _ in range(3):
        with pytest.raises(TimeoutError):
            await breaker.execute_async("payments", boom)

    assert await breaker.execute_async("payments", ok) is CIRCUIT_OPEN

    clock.advance(60)
    assert await breaker.execute_async("payments", ok) == "ok"
    assert breaker.is_half_open("payments")


def test_settings_validation():
    with pytest.raises(ValueError):
        settings(success_threshold=4, half_open_attempts=3)
    with pytest.raises(ValueError):
        settings(failure_threshold=0)
    with pytest.raises(ValueError):
        settings(timeout_seconds=-1)


def test_manual_open_logs_without_failure_count(breaker, caplog):
    with caplog.at_level(logging.INFO, logger="jobkeeper.breaker"):
        breaker.open("payments")

    assert "opened manually" in caplog.text
    assert "failure(s)" not in caplog.text


@pytest.mark.asyncio
async def test_cancelled_half_open_call_reopens_circuit(breaker, clock):
    async def hang():
        await asyncio.sleep(10)

    async def ok():
        return "ok"

    breaker.open("payments")
    for _ in range(3):
        clock.advance(60)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(breaker.execute_async("payments", hang), timeout=0.01)
        assert breaker.is_open("payments")
        assert breaker.get("payments")["half_open_probes"] == 0

    clock.advance(60)
    assert await breaker.execute_async("payments", ok) == "ok"
    assert breaker.is_half_open("payments")


def test_interrupted_half_open_call_counts_as_failure(breaker, clock):
    def interrupted():
        raise KeyboardInterrupt

    breaker.open("payments")
    clock.advance(60)

    with pytest.raises(KeyboardInterrupt):
        breaker.execute("payments", interrupted)

    assert breaker.is_open("payments")


def test_concurrent_successes_close_once(store, events, recorder, clock):
    breaker = CircuitBreaker(store, events, settings(success_threshold=2, half_open_attempts=3), clock)
    breaker.open("payments")
    clock.advance(60)
    admitted = []

    def call():
        if breaker.allow("payments"):
            admitted.append(threading.get_ident())
            breaker.record_success("payments")

    run_concurrently(8, call)

    assert breaker.is_closed("payments")
    assert len(recorder.of_type(CircuitBreakerHalfOpened)) == 1
    assert len(recorder.of_type(CircuitBreakerClosed)) == 1
    assert len(admitted) >= 2
    state = breaker.get("payments")
    assert state["success_count"] == 0
    assert state["failure_count"] == 0
    assert state["half_open_probes"] == 0
    assert state["opened_at"] is None


def test_concurrent_failures_reopen_once(store, events, recorder, clock):
    breaker = CircuitBreaker(store, events, settings(success_threshold=2, half_open_attempts=3), clock)
    breaker.open("payments")
    clock.advance(60)
    admitted = []

    def call():
        if breaker.allow("payments"):
            admitted.append(threading.get_ident())
            breaker.record_failure("payments")

    run_concurrently(8, call)

    assert breaker.is_open("payments")
    assert 1 <= len(admitted) <= 3
    assert len(recorder.of_type(CircuitBreakerHalfOpened)) == 1
    # One manual open plus exactly one reopen from the failed calls
    assert len(recorder.of_type(CircuitBreakerOpened)) == 2
    state = breaker.get("payments")
    assert state["failure_count"] == 0
    assert state["half_open_probes"] == 0

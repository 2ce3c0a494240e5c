"""Tests for the per-backend circuit breaker."""

import threading

from resilient_storage.circuit_breaker import CircuitBreaker
from resilient_storage.models import CircuitBreakerConfig, CircuitState

from conftest import FakeClock


def make_breaker(clock=None, **config):
    values = dict(failure_threshold=3, reset_timeout_ms=1000)
    values.update(config)
    return CircuitBreaker(CircuitBreakerConfig(**values), clock=clock or FakeClock())


def test_opens_after_threshold():
    breaker = make_breaker()
    breaker.record_failure("r2")
    breaker.record_failure("r2")
    assert not breaker.is_open("r2")

    breaker.record_failure("r2")
    assert breaker.is_open("r2")
    assert breaker.snapshot("r2").state == CircuitState.OPEN


def test_success_resets_failure_count():
    breaker = make_breaker()
    breaker.record_failure("r2")
    breaker.record_failure("r2")
    breaker.record_success("r2")
    assert breaker.snapshot("r2").failure_count == 0

    breaker.record_failure("r2")
    breaker.record_failure("r2")
    assert not breaker.is_open("r2")


def test_half_opens_after_reset_timeout():
    """Only is_open() is needed to move from open to half-open."""
    clock = FakeClock()
    breaker = make_breaker(clock)
    for _ in range(3):
        breaker.record_failure("r2")

    assert breaker.is_open("r2")
    clock.advance(0.5)
    assert breaker.is_open("r2")
    clock.advance(0.5)
    assert not breaker.is_open("r2")
    assert breaker.snapshot("r2").state == CircuitState.HALF_OPEN


def test_probe_success_closes():
    clock = FakeClock()
    breaker = make_breaker(clock)
    for _ in range(3):
        breaker.record_failure("r2")
    clock.advance(1)

    assert breaker.allow_request("r2")
    breaker.record_success("r2")

    snapshot = breaker.snapshot("r2")
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.failure_count == 0


def test_probe_failure_reopens():
    clock = FakeClock()
    breaker = make_breaker(clock)
    for _ in range(3):
        breaker.record_failure("r2")
    clock.advance(1)

    assert breaker.allow_request("r2")
    breaker.record_failure("r2")

    assert breaker.snapshot("r2").state == CircuitState.OPEN
    assert breaker.is_open("r2")


def test_half_open_allows_one_probe():
    clock = FakeClock()
    breaker = make_breaker(clock)
    for _ in range(3):
        breaker.record_failure("r2")
    clock.advance(1)

    assert breaker.allow_request("r2")
    assert not breaker.allow_request("r2")
    assert breaker.is_open("r2")


def test_circuits_are_independent():
    breaker = make_breaker()
    for _ in range(3):
        breaker.record_failure("r2")

    assert breaker.is_open("r2")
    assert not breaker.is_open("supabase")
    assert set(breaker.snapshots()) == {"r2", "supabase"}


def test_reset_closes_circuit():
    breaker = make_breaker()
    for _ in range(3):
        breaker.record_failure("r2")
    breaker.reset("r2")

    snapshot = breaker.snapshot("r2")
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.failure_count == 0
    assert snapshot.total_failures == 3


def test_state_change_callback():
    transitions = []
    clock = FakeClock()
    breaker = CircuitBreaker(
        CircuitBreakerConfig(failure_threshold=1, reset_timeout_ms=1000),
        clock=clock,
        on_state_change=lambda name, old, new: transitions.append((name, old, new)),
    )

    breaker.record_failure("r2")
    clock.advance(1)
    breaker.is_open("r2")
    breaker.record_success("r2")

    assert transitions == [
        ("r2", CircuitState.CLOSED, CircuitState.OPEN),
        ("r2", CircuitState.OPEN, CircuitState.HALF_OPEN),
        ("r2", CircuitState.HALF_OPEN, CircuitState.CLOSED),
    ]


def test_concurrent_failures_are_not_lost():
    breaker = make_breaker(failure_threshold=10_000)

    def hammer():
        for _ in range(500):
            breaker.record_failure("r2")

    threads = [threading.Thread(target=hammer) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert breaker.snapshot("r2").total_failures == 4000
    assert breaker.snapshot("r2").failure_count == 4000


def test_release_probe_reopens_probe_slot():
    clock = FakeClock()
    breaker = make_breaker(clock)
    for _ in range(3):
        breaker.record_failure("r2")
    clock.advance(1)

    assert breaker.allow_request("r2")
    assert breaker.is_open("r2")
    breaker.release_probe("r2")

    assert breaker.snapshot("r2").state == CircuitState.HALF_OPEN
    assert breaker.allow_request("r2")


def test_release_probe_is_ignored_when_closed():
    breaker = make_breaker()
    breaker.release_probe("r2")
    assert breaker.snapshot("r2").half_open_probes_used == 0
    assert not breaker.is_open("r2")

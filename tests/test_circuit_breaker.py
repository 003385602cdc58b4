"""
Unit tests for the circuit breaker.

Timing is driven by a fake clock, so no test sleeps.
"""

import threading
from datetime import timedelta

import pytest

from usage_guard.core.circuit_breaker import BreakerRegistry, CircuitBreaker, CircuitState
from usage_guard.core.errors import CircuitOpenError, ValidationError


class ProviderDown(Exception):
    pass


def _fail():
    raise ProviderDown("boom")


def _trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(ProviderDown):
            breaker.execute(_fail)


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("openai", failure_threshold=5, reset_timeout=30.0, success_threshold=2, clock=clock)


class TestClosedState:
    """Test failure counting while CLOSED."""

    def test_success_passes_through(self, breaker):
        assert breaker.execute(lambda: "ok") == "ok"
        assert breaker.state is CircuitState.CLOSED

    def test_opens_after_threshold_failures(self, breaker):
        _trip(breaker, 4)
        assert breaker.state is CircuitState.CLOSED

        _trip(breaker, 1)

        assert breaker.state is CircuitState.OPEN
        assert breaker.get_state().consecutive_failures == 5

    def test_success_resets_failure_count(self, breaker):
        _trip(breaker, 4)
        breaker.execute(lambda: "ok")
        _trip(breaker, 4)

        assert breaker.state is CircuitState.CLOSED

    def test_excluded_errors_do_not_count(self, breaker):
        def invalid():
            raise ValidationError("bad request")

        for _ in range(10):
            with pytest.raises(ValidationError):
                breaker.execute(invalid)

        assert breaker.state is CircuitState.CLOSED
        assert breaker.get_state().consecutive_failures == 0


class TestOpenState:
    """Test fast-fail behaviour while OPEN."""

    def test_open_rejects_without_calling(self, breaker, clock):
        _trip(breaker, 5)
        calls = []

        clock.advance(10)
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.execute(lambda: calls.append(1))

        assert calls == []
        assert exc_info.value.retry_after == pytest.approx(20.0)
        assert exc_info.value.name == "openai"

    def test_half_open_after_reset_timeout(self, breaker, clock):
        _trip(breaker, 5)
        clock.advance(30)

        assert breaker.execute(lambda: "trial") == "trial"
        assert breaker.state is CircuitState.HALF_OPEN


class TestHalfOpenState:
    """Test trial calls after the reset timeout."""

    def test_closes_after_success_threshold(self, breaker, clock):
        _trip(breaker, 5)
        clock.advance(30)

        breaker.execute(lambda: "ok")
        breaker.execute(lambda: "ok")

        assert breaker.state is CircuitState.CLOSED
        assert breaker.get_state().consecutive_failures == 0

    def test_trial_failure_reopens(self, breaker, clock):
        _trip(breaker, 5)
        clock.advance(30)

        _trip(breaker, 1)

        assert breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.execute(lambda: "ok")
        assert exc_info.value.retry_after == pytest.approx(30.0)

    def test_only_one_trial_in_flight(self, breaker, clock):
        _trip(breaker, 5)
        clock.advance(30)
        started = threading.Event()
        release = threading.Event()

        def slow_trial():
            started.set()
            release.wait(5)
            return "ok"

        worker = threading.Thread(target=breaker.execute, args=(slow_trial,))
        worker.start()
        started.wait(5)

        with pytest.raises(CircuitOpenError):
            breaker.execute(lambda: "second")

        release.set()
        worker.join()
        assert breaker.state is CircuitState.HALF_OPEN

    def test_late_success_from_closed_call_does_not_close(self, breaker, clock):
        """A call admitted while CLOSED finishing after the trip must not close the circuit."""
        started = threading.Event()
        release = threading.Event()

        def slow_success():
            started.set()
            release.wait(5)
            return "ok"

        worker = threading.Thread(target=breaker.execute, args=(slow_success,))
        worker.start()
        started.wait(5)
        _trip(breaker, 5)

        release.set()
        worker.join()

        assert breaker.state is CircuitState.OPEN

    def test_interrupted_trial_frees_its_slot(self, clock):
        breaker = CircuitBreaker("openai", failure_threshold=1, reset_timeout=30.0, clock=clock)
        _trip(breaker, 1)
        clock.advance(31)

        def interrupted():
            raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            breaker.execute(interrupted)
        clock.advance(3600)

        assert breaker.execute(lambda: "ok") == "ok"

    def test_manual_reset(self, breaker):
        _trip(breaker, 5)
        breaker.reset()
        assert breaker.state is CircuitState.CLOSED


class TestBreakerRegistry:
    """Test shared breakers per dependency."""

    def test_same_name_same_breaker(self, clock):
        registry = BreakerRegistry(clock=clock, failure_threshold=2)

        first = registry.get("openai")
        second = registry.get("openai", failure_threshold=9)

        assert first is second
        assert first.failure_threshold == 2
        assert set(registry.snapshots()) == {"openai"}

    def test_invalid_thresholds(self):
        with pytest.raises(ValueError):
            CircuitBreaker("x", failure_threshold=0)
        with pytest.raises(ValueError):
            CircuitBreaker("x", reset_timeout=0)


class TestConcurrentFailures:
    """Test tripping under simultaneous failures."""

    def test_simultaneous_failures_trip_once(self, breaker, clock):
        workers = breaker.failure_threshold
        barrier = threading.Barrier(workers)
        errors = []
        errors_lock = threading.Lock()

        def fail_together():
            barrier.wait(5)
            raise ProviderDown("boom")

        def call():
            try:
                breaker.execute(fail_together)
            except ProviderDown as exc:
                with errors_lock:
                    errors.append(exc)

        threads = [threading.Thread(target=call) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        snapshot = breaker.get_state()
        assert len(errors) == workers
        assert snapshot.state is CircuitState.OPEN
        assert snapshot.consecutive_failures == workers
        assert snapshot.next_retry_at == clock.now() + timedelta(seconds=30)

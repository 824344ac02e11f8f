"""Unit tests for the per-provider circuit breaker."""

import pytest

from src.intent_healer.core.models.healing_models import CircuitBreakerConfig, CircuitState
from src.intent_healer.services.circuit_breaker import COST_WINDOW_SECONDS, CircuitBreaker
from tests.utils.healing_fakes import FakeClock, run_concurrently


class TestCircuitBreaker:
    """Test cases for CircuitBreaker state transitions."""

    def setup_method(self):
        self.clock = FakeClock()
        self.transitions = []
        self.config = CircuitBreakerConfig(failure_threshold=3, cooldown_seconds=30.0,
                                           cooldown_multiplier=2.0, max_cooldown_seconds=100.0)
        self.breaker = CircuitBreaker("gemini", self.config, clock=self.clock,
                                      listeners=[lambda *args: self.transitions.append(args)])

    def _fail(self, times):
        for _ in range(times):
            assert self.breaker.try_acquire()
            self.breaker.record_failure()

    def test_starts_closed_and_admits_calls(self):
        assert self.breaker.state == CircuitState.CLOSED
        assert self.breaker.try_acquire()
        assert self.breaker.try_acquire()

    def test_opens_after_threshold_consecutive_failures(self):
        self._fail(2)
        assert self.breaker.state == CircuitState.CLOSED

        self._fail(1)
        assert self.breaker.state == CircuitState.OPEN
        assert not self.breaker.try_acquire()
        assert self.transitions[-1][1:3] == (CircuitState.CLOSED, CircuitState.OPEN)

    def test_success_resets_consecutive_failures(self):
        self._fail(2)
        assert self.breaker.try_acquire()
        self.breaker.record_success()
        self._fail(2)

        assert self.breaker.state == CircuitState.CLOSED
        assert self.breaker.stats().consecutive_failures == 2

    def test_half_open_after_cooldown(self):
        self._fail(3)
        self.clock.advance(29)
        assert self.breaker.state == CircuitState.OPEN

        self.clock.advance(1)
        assert self.breaker.state == CircuitState.HALF_OPEN

    def test_half_open_admits_exactly_one_trial(self):
        self._fail(3)
        self.clock.advance(30)

        assert self.breaker.try_acquire()
        assert not self.breaker.try_acquire()
        assert self.breaker.stats().trial_in_flight

    def test_half_open_concurrent_callers_get_one_permit(self):
        self._fail(3)
        self.clock.advance(30)

        admitted = run_concurrently(lambda i: self.breaker.try_acquire(), 16)

        assert admitted.count(True) == 1

    def test_trial_success_closes_circuit(self):
        self._fail(3)
        self.clock.advance(30)
        assert self.breaker.try_acquire()
        self.breaker.record_success()

        assert self.breaker.state == CircuitState.CLOSED
        assert self.breaker.stats().cooldown_seconds == 30.0
        assert self.transitions[-1][2] == CircuitState.CLOSED

    def test_trial_failure_reopens_with_multiplied_cooldown(self):
        self._fail(3)
        self.clock.advance(30)
        assert self.breaker.try_acquire()
        self.breaker.record_failure()

        stats = self.breaker.stats()
        assert stats.state == CircuitState.OPEN
        assert stats.cooldown_seconds == 60.0

        self.clock.advance(59)
        assert self.breaker.state == CircuitState.OPEN
        self.clock.advance(1)
        assert self.breaker.state == CircuitState.HALF_OPEN

    def test_cooldown_is_capped(self):
        self._fail(3)
        for _ in range(5):
            self.clock.advance(self.breaker.stats().cooldown_seconds)
            assert self.breaker.try_acquire()
            self.breaker.record_failure()

        assert self.breaker.stats().cooldown_seconds == 100.0

    def test_release_returns_trial_permit(self):
        self._fail(3)
        self.clock.advance(30)
        assert self.breaker.try_acquire()
        self.breaker.release()

        assert self.breaker.try_acquire()

    def test_force_open_from_closed(self):
        self.breaker.force_open("authentication failed")

        assert self.breaker.state == CircuitState.OPEN
        assert self.transitions[-1][3] == "authentication failed"

    def test_reset_closes_and_keeps_cost(self):
        self.breaker.add_cost(0.25)
        self._fail(3)
        self.breaker.reset()

        stats = self.breaker.stats()
        assert stats.state == CircuitState.CLOSED
        assert stats.consecutive_failures == 0
        assert stats.daily_cost_usd == pytest.approx(0.25)

    def test_daily_cost_rolls_over_after_window(self):
        self.breaker.record_success(0.5)
        self.breaker.record_failure(0.25)
        assert self.breaker.daily_cost() == pytest.approx(0.75)

        self.clock.advance(COST_WINDOW_SECONDS)
        assert self.breaker.daily_cost() == 0.0

    def test_stats_report_time_until_half_open(self):
        self._fail(3)
        self.clock.advance(10)

        stats = self.breaker.stats()
        assert stats.seconds_until_half_open == pytest.approx(20.0)
        assert stats.to_dict()["state"] == "open"

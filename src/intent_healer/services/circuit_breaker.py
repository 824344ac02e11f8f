"""Per-provider circuit breaker guarding model provider calls."""

import logging
import threading
import time
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from ..core.models.healing_models import CircuitBreakerConfig, CircuitState, CircuitStats


logger = logging.getLogger("healer.orchestrator")

COST_WINDOW_SECONDS = 24 * 60 * 60

TransitionListener = Callable[[str, CircuitState, CircuitState, str], None]


class CircuitBreaker:
    """Failure state machine for one provider.

    CLOSED admits every call. After ``failure_threshold`` consecutive failures
    the circuit opens and rejects calls until the cooldown elapses. It then
    becomes HALF_OPEN and admits exactly one trial call: success closes the
    circuit, failure reopens it with the cooldown multiplied (capped at
    ``max_cooldown_seconds``).

    All state lives behind one lock. Transition listeners are notified after
    the lock is released.
    """

    def __init__(self, provider: str, config: CircuitBreakerConfig,
                 clock: Callable[[], float] = time.monotonic,
                 listeners: Optional[List[TransitionListener]] = None):
        self.provider = provider
        self.config = config
        self._clock = clock
        self._listeners: List[TransitionListener] = list(listeners or [])
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._total_failures = 0
        self._total_successes = 0
        self._trial_in_flight = False
        self._opened_at: Optional[float] = None
        self._opened_at_wall: Optional[datetime] = None
        self._last_failure_at: Optional[datetime] = None
        self._cooldown = float(config.cooldown_seconds)

        self._daily_cost = 0.0
        self._cost_window_start = clock()

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            transitions = self._refresh_locked()
            state = self._state
        self._notify(transitions)
        return state

    def try_acquire(self) -> bool:
        """Ask permission to call the provider.

        Returns:
            True when the call may proceed. In HALF_OPEN only the first caller
            gets True until its outcome is recorded.
        """
        with self._lock:
            transitions = self._refresh_locked()
            if self._state == CircuitState.CLOSED:
                admitted = True
            elif self._state == CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                admitted = True
            else:
                admitted = False
        self._notify(transitions)
        return admitted

    def release(self) -> None:
        """Give back a permission that was acquired but not used."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False

    def record_success(self, cost_usd: float = 0.0) -> None:
        with self._lock:
            self._add_cost_locked(cost_usd)
            self._total_successes += 1
            self._consecutive_failures = 0
            transitions = []
            if self._state == CircuitState.HALF_OPEN:
                self._cooldown = float(self.config.cooldown_seconds)
                transitions.append(self._set_state_locked(CircuitState.CLOSED, "trial call succeeded"))
            self._trial_in_flight = False
        self._notify(transitions)

    def record_failure(self, cost_usd: float = 0.0) -> None:
        with self._lock:
            self._add_cost_locked(cost_usd)
            self._total_failures += 1
            self._consecutive_failures += 1
            self._last_failure_at = datetime.now()
            transitions = []
            if self._state == CircuitState.HALF_OPEN:
                self._cooldown = min(self._cooldown * self.config.cooldown_multiplier,
                                     float(self.config.max_cooldown_seconds))
                transitions.append(self._open_locked("trial call failed"))
            elif (self._state == CircuitState.CLOSED and
                  self._consecutive_failures >= self.config.failure_threshold):
                transitions.append(self._open_locked(
                    f"{self._consecutive_failures} consecutive failures"))
            self._trial_in_flight = False
        self._notify(transitions)

    def force_open(self, reason: str = "forced open") -> None:
        """Open the circuit immediately, e.g. after an authentication error."""
        with self._lock:
            self._total_failures += 1
            self._last_failure_at = datetime.now()
            self._trial_in_flight = False
            transitions = []
            if self._state != CircuitState.OPEN:
                transitions.append(self._open_locked(reason))
            else:
                self._opened_at = self._clock()
                self._opened_at_wall = datetime.now()
        self._notify(transitions)

    def reset(self) -> None:
        """Close the circuit and clear failure counters. Accumulated cost is kept."""
        with self._lock:
            transitions = []
            if self._state != CircuitState.CLOSED:
                transitions.append(self._set_state_locked(CircuitState.CLOSED, "manual reset"))
            self._consecutive_failures = 0
            self._trial_in_flight = False
            self._opened_at = None
            self._opened_at_wall = None
            self._cooldown = float(self.config.cooldown_seconds)
        self._notify(transitions)

    def add_cost(self, cost_usd: float) -> None:
        with self._lock:
            self._add_cost_locked(cost_usd)

    def daily_cost(self) -> float:
        with self._lock:
            self._roll_cost_window_locked()
            return self._daily_cost

    def reset_daily_cost(self) -> None:
        with self._lock:
            self._daily_cost = 0.0
            self._cost_window_start = self._clock()

    def stats(self) -> CircuitStats:
        with self._lock:
            transitions = self._refresh_locked()
            self._roll_cost_window_locked()
            remaining = 0.0
            if self._state == CircuitState.OPEN and self._opened_at is not None:
                remaining = max(0.0, self._opened_at + self._cooldown - self._clock())
            snapshot = CircuitStats(
                provider=self.provider,
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                total_failures=self._total_failures,
                total_successes=self._total_successes,
                last_failure_at=self._last_failure_at,
                opened_at=self._opened_at_wall,
                cooldown_seconds=self._cooldown,
                seconds_until_half_open=remaining,
                daily_cost_usd=self._daily_cost,
                trial_in_flight=self._trial_in_flight
            )
        self._notify(transitions)
        return snapshot

    def _refresh_locked(self) -> List[Tuple[CircuitState, CircuitState, str]]:
        if (self._state == CircuitState.OPEN and self._opened_at is not None and
                self._clock() - self._opened_at >= self._cooldown):
            self._trial_in_flight = False
            return [self._set_state_locked(CircuitState.HALF_OPEN, "cooldown elapsed")]
        return []

    def _open_locked(self, reason: str) -> Tuple[CircuitState, CircuitState, str]:
        self._opened_at = self._clock()
        self._opened_at_wall = datetime.now()
        return self._set_state_locked(CircuitState.OPEN, reason)

    def _set_state_locked(self, new_state: CircuitState, reason: str) -> Tuple[CircuitState, CircuitState, str]:
        old_state = self._state
        self._state = new_state
        return old_state, new_state, reason

    def _add_cost_locked(self, cost_usd: float) -> None:
        self._roll_cost_window_locked()
        if cost_usd > 0:
            self._daily_cost += cost_usd

    def _roll_cost_window_locked(self) -> None:
        if self._clock() - self._cost_window_start >= COST_WINDOW_SECONDS:
            self._daily_cost = 0.0
            self._cost_window_start = self._clock()

    def _notify(self, transitions: List[Tuple[CircuitState, CircuitState, str]]) -> None:
        for old_state, new_state, reason in transitions:
            if new_state == CircuitState.OPEN:
                logger.warning(f"Circuit for provider '{self.provider}' OPEN: {reason}")
            else:
                logger.info(f"Circuit for provider '{self.provider}' {new_state.value.upper()}: {reason}")
            for listener in self._listeners:
                listener(self.provider, old_state, new_state, reason)

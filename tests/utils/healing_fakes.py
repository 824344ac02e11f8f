"""
Test doubles and builders shared by the healer test suites.
"""

import threading
import time
from typing import Callable, Dict, List, Optional

from src.intent_healer.core.models.healing_models import (
    ActionKind,
    CacheConfig,
    ElementCandidate,
    FailureContext,
    HealDecision,
    HealerConfiguration,
    IntentContract,
    LocatorStrategy,
    ProviderBinding,
    SourceLocation,
    UiSnapshot
)
from src.intent_healer.core.exceptions import ActionExecutionError
from src.intent_healer.providers.base import ModelProvider
from src.intent_healer.services.capabilities import ActionExecutor, OutcomeValidator, SnapshotCapture


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds


class ScriptedProvider(ModelProvider):
    """Provider answering from a script of decisions and exceptions.

    The last scripted response repeats once the script is exhausted.
    """

    def __init__(self, name: str = "fake", responses: Optional[List] = None,
                 cost_per_call_usd: float = 0.0, delay: float = 0.0):
        self.name = name
        self.cost_per_call_usd = cost_per_call_usd
        self.responses = list(responses or [HealDecision.can_heal(1, 0.95, reasoning="same label")])
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def evaluate(self, failure, snapshot, intent) -> HealDecision:
        with self._lock:
            self.calls += 1
            response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if self.delay:
            time.sleep(self.delay)
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(failure, snapshot, intent)
        return response


class RecordingExecutor(ActionExecutor):
    """Records executed actions; fails when ``error`` is set."""

    def __init__(self, error: Optional[str] = None):
        self.error = error
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def execute(self, action, candidate, payload=None) -> None:
        with self._lock:
            self.calls.append((action, candidate, payload))
        if self.error:
            raise ActionExecutionError(self.error)


class StubValidator(OutcomeValidator):
    """Outcome validator with fixed answers."""

    def __init__(self, outcome: bool = True, invariants: Optional[Dict[str, bool]] = None,
                 error: Optional[Exception] = None):
        self.outcome = outcome
        self.invariants = invariants or {}
        self.error = error
        self.states: List[UiSnapshot] = []

    def validate_outcome(self, intent, post_state) -> bool:
        self.states.append(post_state)
        if self.error:
            raise self.error
        return self.outcome

    def check_invariant(self, invariant, post_state) -> bool:
        self.states.append(post_state)
        return self.invariants.get(invariant.name, True)


class StaticSnapshotCapture(SnapshotCapture):
    """Returns a fixed snapshot."""

    def __init__(self, snapshot: UiSnapshot):
        self.snapshot = snapshot
        self.captures = 0

    def capture(self, failure) -> UiSnapshot:
        self.captures += 1
        return self.snapshot


def make_failure(**overrides) -> FailureContext:
    values = dict(
        feature="Login",
        scenario="User signs in",
        step_text="When I click the sign in button",
        original_locator="id=login-btn",
        exception_type="NoSuchElementException",
        exception_message="no such element: Unable to locate element: {\"id\":\"login-btn\"}",
        page_url="https://shop.example.com/login",
        run_id="run-1",
        step_id="step-3",
        source_location=SourceLocation("tests/login.robot", 12, method_name="User Signs In")
    )
    values.update(overrides)
    return FailureContext(**values)


def make_intent(action: ActionKind = ActionKind.CLICK, **overrides) -> IntentContract:
    values = dict(action=action, description="Sign in with valid credentials")
    values.update(overrides)
    return IntentContract(**values)


def make_snapshot(url: str = "https://shop.example.com/login") -> UiSnapshot:
    return UiSnapshot(
        url=url,
        structure="<form><input id='user'/><button id='sign-in'>Sign in</button></form>",
        title="Login",
        candidates=(
            ElementCandidate(0, LocatorStrategy.ID, "user", text="", tag_name="input",
                             attributes={"id": "user", "type": "text"}),
            ElementCandidate(1, LocatorStrategy.ID, "sign-in", text="Sign in", tag_name="button",
                             attributes={"id": "sign-in", "type": "submit"}),
            ElementCandidate(2, LocatorStrategy.CSS, "button.danger", text="Delete account",
                             tag_name="button", attributes={"class": "danger"}),
        )
    )


def make_config(**sections) -> HealerConfiguration:
    """Healer configuration with test friendly timings."""
    config = HealerConfiguration(providers=[ProviderBinding("primary", kind="online", model="fake")])
    config.cache = CacheConfig(sweep_interval_seconds=0.05, in_flight_wait_seconds=5.0)
    config.retry.base_delay_seconds = 0.0
    config.retry.jitter_ratio = 0.0
    config.retry.call_timeout_seconds = 5.0
    for name, value in sections.items():
        setattr(config, name, value)
    return config


def run_concurrently(func: Callable, count: int) -> List:
    """Run ``func(i)`` on ``count`` threads released together."""
    barrier = threading.Barrier(count)
    results: List = [None] * count
    errors: List[BaseException] = []

    def worker(i):
        barrier.wait()
        try:
            results[i] = func(i)
        except BaseException as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    if errors:
        raise errors[0]
    return results

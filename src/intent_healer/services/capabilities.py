"""Interfaces the engine depends on, implemented outside the core."""

from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, Optional

from ..core.models.healing_models import (
    ActionKind,
    ElementCandidate,
    FailureContext,
    IntentContract,
    InvariantCheck,
    UiSnapshot
)


class SnapshotCapture(ABC):
    """Captures the page structure at failure time."""

    @abstractmethod
    def capture(self, failure: FailureContext) -> UiSnapshot:
        """Return a snapshot of the current page."""


class ActionExecutor(ABC):
    """Performs the healed action on the chosen element."""

    @abstractmethod
    def execute(self, action: ActionKind, candidate: ElementCandidate,
                payload: Optional[str] = None) -> None:
        """Perform ``action`` on ``candidate``.

        Raises:
            ActionExecutionError: The action could not be performed
        """


class OutcomeValidator(ABC):
    """Evaluates caller-declared predicates after the healed action ran."""

    @abstractmethod
    def validate_outcome(self, intent: IntentContract, post_state: UiSnapshot) -> bool:
        """True when the intent's outcome check holds on ``post_state``."""

    @abstractmethod
    def check_invariant(self, invariant: InvariantCheck, post_state: UiSnapshot) -> bool:
        """True when ``invariant`` holds on ``post_state``."""


class HealQuotaCounter:
    """Per-scenario heal counter owned by the calling test thread.

    Not thread-safe: each worker keeps its own counter.
    """

    def __init__(self):
        self._counts: Dict[str, int] = defaultdict(int)

    def used(self, scenario: str) -> int:
        return self._counts.get(scenario, 0)

    def increment(self, scenario: str) -> int:
        self._counts[scenario] += 1
        return self._counts[scenario]

    def reset(self, scenario: Optional[str] = None) -> None:
        if scenario is None:
            self._counts.clear()
        else:
            self._counts.pop(scenario, None)

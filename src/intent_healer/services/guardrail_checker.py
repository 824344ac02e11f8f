"""Stateless safety policy applied before and after a heal decision."""

import re
from typing import List, Optional, Pattern

from ..core.config_loader import validate_regex_pattern
from ..core.exceptions import ConfigurationError
from ..core.healing_utils import is_assertion_step
from ..core.models.healing_models import (
    ElementCandidate,
    FailureContext,
    GuardrailConfig,
    GuardrailVerdict,
    HealDecision,
    HealPolicy,
    HealReasonCode,
    IntentContract
)


def infer_destructive_action(step_text: str) -> bool:
    """Guess whether a step performs an irreversible action from its wording.

    Not implemented: only the declared ``IntentContract.destructive`` flag is
    honoured. Always returns False.
    """
    return False


class GuardrailChecker:
    """Evaluates heal safety rules. Holds only immutable compiled policy."""

    def __init__(self, config: GuardrailConfig):
        self.config = config
        self._keywords: List[str] = [k.lower() for k in config.forbidden_keywords]
        self._url_patterns: List[Pattern] = []
        for pattern in config.forbidden_url_patterns:
            problem = validate_regex_pattern(pattern)
            if problem:
                raise ConfigurationError(f"Invalid forbidden URL pattern: {problem}")
            self._url_patterns.append(re.compile(pattern, re.IGNORECASE))

    def precheck(self, failure: FailureContext, intent: IntentContract,
                 heals_used: int = 0) -> GuardrailVerdict:
        """Rules that can be decided before any provider is contacted."""
        if intent.policy == HealPolicy.OFF:
            return GuardrailVerdict.deny("Healing is turned off for this step", HealReasonCode.POLICY_OFF)

        if is_assertion_step(failure, intent):
            return GuardrailVerdict.deny("Assertion steps are never healed", HealReasonCode.ASSERTION_STEP)

        destructive = intent.destructive or infer_destructive_action(failure.step_text)
        if destructive and not (intent.policy == HealPolicy.MANUAL and intent.allow_destructive):
            return GuardrailVerdict.deny(
                "Destructive action requires MANUAL policy with an explicit override",
                HealReasonCode.DESTRUCTIVE_ACTION)

        keyword = self._matching_keyword(failure.step_text)
        if keyword:
            return GuardrailVerdict.deny(f"Step text contains forbidden keyword '{keyword}'",
                                         HealReasonCode.FORBIDDEN_PATTERN)

        pattern = self._matching_url_pattern(failure.page_url)
        if pattern:
            return GuardrailVerdict.deny(f"Page URL matches forbidden pattern '{pattern}'",
                                         HealReasonCode.FORBIDDEN_PATTERN)

        if heals_used >= self.config.max_heals_per_scenario:
            return GuardrailVerdict.deny(
                f"Scenario heal quota of {self.config.max_heals_per_scenario} exhausted",
                HealReasonCode.QUOTA_EXHAUSTED)

        return GuardrailVerdict.allow()

    def check(self, decision: HealDecision, failure: FailureContext, intent: IntentContract,
              candidate: Optional[ElementCandidate] = None, heals_used: int = 0) -> GuardrailVerdict:
        """Full rule set for a decision and the candidate it chose."""
        verdict = self.check_confidence(decision)
        if not verdict.allowed:
            return verdict

        verdict = self.precheck(failure, intent, heals_used)
        if not verdict.allowed:
            return verdict

        if decision.candidate_index is not None and candidate is None:
            return GuardrailVerdict.deny(
                f"Chosen candidate {decision.candidate_index} is not on the page snapshot",
                HealReasonCode.GUARDRAIL)

        if candidate is not None:
            keyword = self._matching_keyword(candidate.text)
            if keyword is None:
                keyword = next((k for k in (self._matching_keyword(v) for v in candidate.attributes.values())
                                if k), None)
            if keyword:
                return GuardrailVerdict.deny(
                    f"Chosen element contains forbidden keyword '{keyword}'",
                    HealReasonCode.FORBIDDEN_PATTERN)

        return GuardrailVerdict.allow()

    def check_confidence(self, decision: HealDecision) -> GuardrailVerdict:
        if decision.confidence < self.config.min_confidence:
            return GuardrailVerdict.deny(
                f"Confidence {decision.confidence:.2f} below minimum {self.config.min_confidence:.2f}",
                HealReasonCode.LOW_CONFIDENCE)
        return GuardrailVerdict.allow()

    def _matching_keyword(self, text: Optional[str]) -> Optional[str]:
        if not text:
            return None
        lowered = text.lower()
        return next((k for k in self._keywords if k in lowered), None)

    def _matching_url_pattern(self, url: Optional[str]) -> Optional[str]:
        if not url:
            return None
        return next((p.pattern for p in self._url_patterns if p.search(url)), None)

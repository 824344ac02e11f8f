"""
Healing decision engine.

Turns one step failure into a SUCCESS, REFUSED or FAILED result. Safety
checks run before any spend, decisions are shared through the fingerprint
cache, and only heals whose action and declared outcome succeed are cached
and registered for later source updates.
"""

import logging
import time
from dataclasses import replace
from typing import Optional

from ..core.audit_trail import AuditTrail
from ..core.exceptions import AllProvidersUnavailableError, BudgetExceededError
from ..core.healing_utils import is_healable_failure
from ..core.logging_config import HealingLoggerAdapter, get_healing_logger, sanitize_error_message
from ..core.metrics import MetricsCollector
from ..core.models.healing_models import (
    ElementCandidate,
    FailureContext,
    HealDecision,
    HealerConfiguration,
    HealOutcome,
    HealReasonCode,
    HealResult,
    IntentContract,
    RunSummary,
    UiSnapshot
)
from .capabilities import ActionExecutor, HealQuotaCounter, OutcomeValidator, SnapshotCapture
from .decision_cache import DecisionCache, ReservationRole
from .fingerprinting_service import FingerprintingService
from .guardrail_checker import GuardrailChecker
from .resilience_orchestrator import ResilienceOrchestrator
from .validated_heal_registry import ValidatedHealRegistry


logger = logging.getLogger("healer.engine")


class _Resolution:
    """Decision obtained for a fingerprint, or the result that ends the attempt."""

    def __init__(self, decision: Optional[HealDecision] = None, from_cache: bool = False,
                 result: Optional[HealResult] = None):
        self.decision = decision
        self.from_cache = from_cache
        self.result = result


class HealingEngine:
    """Coordinates guardrails, cache, providers and execution for one failure at a time.

    The engine keeps no per-call state; every collaborator it holds is
    thread-safe, so one engine serves all test worker threads.
    """

    def __init__(self, config: HealerConfiguration, cache: DecisionCache,
                 orchestrator: ResilienceOrchestrator, guardrails: GuardrailChecker,
                 registry: ValidatedHealRegistry,
                 executor: Optional[ActionExecutor] = None,
                 validator: Optional[OutcomeValidator] = None,
                 snapshot_capture: Optional[SnapshotCapture] = None,
                 fingerprinting: Optional[FingerprintingService] = None,
                 metrics: Optional[MetricsCollector] = None,
                 audit: Optional[AuditTrail] = None):
        """
        Args:
            config: Loaded healer configuration
            cache: Shared decision cache
            orchestrator: Provider client with retry, budget and circuit breaking
            guardrails: Safety policy
            registry: Pending and validated heal bookkeeping
            executor: Performs the healed action
            validator: Evaluates declared outcome checks and invariants
            snapshot_capture: Captures the page after the action for validation
            fingerprinting: Failure fingerprint calculator
            metrics: Optional metrics collector
            audit: Optional audit trail
        """
        self.config = config
        self.cache = cache
        self.orchestrator = orchestrator
        self.guardrails = guardrails
        self.registry = registry
        self.executor = executor
        self.validator = validator
        self.snapshot_capture = snapshot_capture
        self.fingerprinting = fingerprinting or FingerprintingService()
        self.metrics = metrics
        self.audit = audit

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def attempt_heal(self, failure: FailureContext, intent: IntentContract, snapshot: UiSnapshot,
                     heal_counter: Optional[HealQuotaCounter] = None) -> HealResult:
        """Try to heal one failed step.

        Args:
            failure: What failed and where
            intent: What the step was meant to do and how it may be healed
            snapshot: Page structure captured at failure time
            heal_counter: The calling scenario's heal quota counter

        Returns:
            HealResult; exceptions never escape to the caller
        """
        log = get_healing_logger("engine", failure.run_id, failure.scenario)
        started = time.monotonic()
        try:
            log.log_operation_start("heal", step=failure.step_text, locator=failure.original_locator)
            if self.metrics:
                self.metrics.record_heal_attempt(failure.failure_kind.value)
            result = self._attempt(failure, intent, snapshot, heal_counter, log)
        except Exception as e:
            log.exception(f"Unexpected error while healing '{failure.original_locator}'")
            result = HealResult(HealOutcome.FAILED, HealReasonCode.INTERNAL_ERROR,
                                failure_reason=sanitize_error_message(f"Internal error: {e}"))

        result = replace(result, duration_seconds=time.monotonic() - started)
        try:
            self._report(failure, result, log)
        except Exception:
            logger.exception(f"Failed to report heal result {result.heal_id}")
        return result

    def _report(self, failure: FailureContext, result: HealResult, log: HealingLoggerAdapter) -> None:
        if result.is_success:
            log.log_operation_success("heal", result.duration_seconds,
                                      healed_locator=result.healed_locator,
                                      from_cache=result.from_cache)
        else:
            log.log_operation_failure("heal", result.duration_seconds,
                                      result.failure_reason or result.outcome.value,
                                      error_code=result.reason_code.value,
                                      outcome=result.outcome.value)
        if self.metrics:
            self.metrics.record_heal_result(result)
        if self.audit:
            self.audit.log_heal_result(failure, result)

    def on_run_started(self, run_id: str) -> None:
        self.registry.on_run_started(run_id)

    def on_run_finished(self, run_id: str, passed: bool) -> RunSummary:
        """Validate or discard the heals recorded during ``run_id``."""
        return self.registry.on_run_finished(run_id, passed, self.config.auto_update.min_confidence)

    def _attempt(self, failure: FailureContext, intent: IntentContract, snapshot: UiSnapshot,
                 heal_counter: Optional[HealQuotaCounter], log: HealingLoggerAdapter) -> HealResult:
        if not self.enabled:
            return _refused(HealReasonCode.DISABLED, "Healing is disabled")

        heals_used = heal_counter.used(failure.scenario) if heal_counter else 0
        verdict = self.guardrails.precheck(failure, intent, heals_used)
        if not verdict.allowed:
            return _refused(verdict.reason_code, verdict.reason)

        if not is_healable_failure(failure):
            return _refused(HealReasonCode.NOT_HEALABLE,
                            f"Failure kind '{failure.failure_kind.value}' cannot be healed by "
                            f"choosing another element")

        fingerprint = self.fingerprinting.fingerprint(failure)
        if self.audit:
            self.audit.log_heal_attempted(failure, fingerprint)

        reservation = self.cache.reserve(fingerprint)

        if reservation.role == ReservationRole.HIT:
            log.info(f"Replaying cached decision {fingerprint[:12]}")
            result = self._apply(fingerprint, reservation.decision, True, failure, intent,
                                 snapshot, heal_counter, log)

        elif reservation.role == ReservationRole.FOLLOWER:
            log.info(f"Waiting for in-flight decision {fingerprint[:12]}")
            resolution = self._await_owner(reservation, log)
            if resolution.result is not None:
                result = resolution.result
            else:
                result = self._apply(fingerprint, resolution.decision, False, failure, intent,
                                     snapshot, heal_counter, log)

        else:
            resolution = self._evaluate(fingerprint, failure, snapshot, intent, log)
            if resolution.result is not None:
                result = resolution.result
            else:
                # Followers stay blocked until the cache reflects this attempt.
                try:
                    result = self._apply(fingerprint, resolution.decision, False, failure, intent,
                                         snapshot, heal_counter, log)
                finally:
                    self.cache.complete(fingerprint, resolution.decision)

        return replace(result, fingerprint=fingerprint)

    def _evaluate(self, fingerprint: str, failure: FailureContext, snapshot: UiSnapshot,
                  intent: IntentContract, log: HealingLoggerAdapter) -> _Resolution:
        try:
            decision = self.orchestrator.evaluate(failure, snapshot, intent)
        except BaseException as e:
            self.cache.abandon(fingerprint, e)
            if isinstance(e, Exception):
                return _Resolution(result=self._provider_failure(e, log))
            raise
        return _Resolution(decision)

    def _await_owner(self, reservation, log: HealingLoggerAdapter) -> _Resolution:
        timeout = self.config.cache.in_flight_wait_seconds
        try:
            return _Resolution(reservation.wait(timeout))
        except TimeoutError:
            log.warning(f"In-flight decision did not arrive within {timeout}s")
            return _Resolution(result=HealResult(
                HealOutcome.FAILED, HealReasonCode.NO_PROVIDER,
                failure_reason=f"Timed out after {timeout}s waiting for an in-flight heal"))
        except Exception as e:
            return _Resolution(result=self._provider_failure(e, log))

    def _provider_failure(self, error: Exception, log: HealingLoggerAdapter) -> HealResult:
        if isinstance(error, BudgetExceededError):
            return HealResult(HealOutcome.FAILED, HealReasonCode.BUDGET_EXCEEDED,
                              failure_reason=f"Budget exceeded: {error}")
        if isinstance(error, AllProvidersUnavailableError):
            return HealResult(HealOutcome.FAILED, HealReasonCode.NO_PROVIDER,
                              failure_reason="No provider available")
        log.error(f"Provider evaluation failed unexpectedly: {sanitize_error_message(str(error))}")
        return HealResult(HealOutcome.FAILED, HealReasonCode.INTERNAL_ERROR,
                          failure_reason=sanitize_error_message(f"Provider evaluation failed: {error}"))

    def _apply(self, fingerprint: str, decision: HealDecision, from_cache: bool,
               failure: FailureContext, intent: IntentContract, snapshot: UiSnapshot,
               heal_counter: Optional[HealQuotaCounter], log: HealingLoggerAdapter) -> HealResult:
        """Check, execute and validate a decision, then update cache and registry."""
        def finish(outcome: HealOutcome, code: HealReasonCode, reason: Optional[str] = None,
                   healed_locator: Optional[str] = None) -> HealResult:
            return HealResult(outcome, code, confidence=decision.confidence,
                              healed_locator=healed_locator, failure_reason=reason,
                              from_cache=from_cache, decision=decision)

        if not decision.is_healable:
            return finish(HealOutcome.REFUSED, HealReasonCode.NOT_HEALABLE,
                          decision.refusal_reason or "No matching element")

        verdict = self.guardrails.check_confidence(decision)
        if not verdict.allowed:
            return finish(HealOutcome.REFUSED, verdict.reason_code, verdict.reason)

        candidate = snapshot.candidate(decision.candidate_index)
        heals_used = heal_counter.used(failure.scenario) if heal_counter else 0
        verdict = self.guardrails.check(decision, failure, intent, candidate, heals_used)
        if not verdict.allowed:
            if not from_cache:
                self.cache.put(fingerprint, decision, self.config.cache.refusal_ttl_seconds)
            log.info(f"Guardrail refused heal: {verdict.reason}")
            return finish(HealOutcome.REFUSED, verdict.reason_code, verdict.reason)

        error = self._execute(intent, candidate, log)
        if error:
            self._evict(fingerprint, from_cache)
            return finish(HealOutcome.FAILED, HealReasonCode.EXECUTION_ERROR, error)

        if intent.has_validation and not self._outcome_holds(failure, intent, snapshot, log):
            self._evict(fingerprint, from_cache)
            return finish(HealOutcome.FAILED, HealReasonCode.OUTCOME_VALIDATION,
                          "outcome validation failed")

        self.cache.put(fingerprint, decision, self.config.cache.success_ttl_seconds)
        result = finish(HealOutcome.SUCCESS, HealReasonCode.HEALED, healed_locator=candidate.describe())
        self.registry.record_heal(failure, result)
        if heal_counter is not None:
            heal_counter.increment(failure.scenario)
        log.info(f"Healed '{failure.original_locator}' -> '{result.healed_locator}' "
                 f"(confidence {decision.confidence:.2f})")
        return result

    def _execute(self, intent: IntentContract, candidate: ElementCandidate,
                 log: HealingLoggerAdapter) -> Optional[str]:
        """Run the healed action once. Returns an error description on failure."""
        if self.executor is None:
            return "No action executor configured"
        try:
            self.executor.execute(intent.action, candidate, intent.payload)
        except Exception as e:
            message = sanitize_error_message(str(e)) or type(e).__name__
            log.warning(f"Healed action {intent.action.value} on '{candidate.describe()}' failed: {message}")
            return f"Action failed: {message}"
        return None

    def _outcome_holds(self, failure: FailureContext, intent: IntentContract,
                       snapshot: UiSnapshot, log: HealingLoggerAdapter) -> bool:
        if self.validator is None:
            log.warning("Intent declares outcome checks but no outcome validator is configured")
            return False

        post_state = snapshot
        if self.snapshot_capture is not None:
            try:
                post_state = self.snapshot_capture.capture(failure)
            except Exception as e:
                log.warning(f"Could not capture post-action state: {sanitize_error_message(str(e))}")
                return False

        checks = []
        if intent.outcome_check:
            checks.append((f"outcome '{intent.outcome_check}'",
                           lambda: self.validator.validate_outcome(intent, post_state)))
        for invariant in intent.invariants:
            checks.append((f"invariant '{invariant.name}'",
                           lambda inv=invariant: self.validator.check_invariant(inv, post_state)))

        for label, check in checks:
            try:
                held = bool(check())
            except Exception as e:
                log.warning(f"Evaluating {label} raised {type(e).__name__}: {sanitize_error_message(str(e))}")
                held = False
            if not held:
                log.info(f"Post-action {label} does not hold")
                return False
        return True

    def _evict(self, fingerprint: str, from_cache: bool) -> None:
        if from_cache:
            self.cache.invalidate(fingerprint)


def _refused(code: HealReasonCode, reason: Optional[str]) -> HealResult:
    return HealResult(HealOutcome.REFUSED, code, failure_reason=reason)

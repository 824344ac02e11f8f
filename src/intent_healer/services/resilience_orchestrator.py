"""
Resilience orchestrator for model provider calls.

Visits provider bindings in priority order, retries transient failures with
exponential backoff and jitter, enforces request and spend caps before every
call, and consults one circuit breaker per provider.
"""

import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional

from ..core.audit_trail import AuditTrail
from ..core.exceptions import (
    AllProvidersUnavailableError,
    BudgetExceededError,
    MalformedResponseError,
    ProviderAuthenticationError,
    ProviderError,
    ProviderTimeoutError
)
from ..core.logging_config import get_healing_logger, sanitize_error_message
from ..core.metrics import MetricsCollector
from ..core.models.healing_models import (
    BudgetConfig,
    CircuitBreakerConfig,
    CircuitState,
    CircuitStats,
    FailureContext,
    HealDecision,
    IntentContract,
    RetryConfig,
    UiSnapshot
)
from ..providers.base import ModelProvider
from .circuit_breaker import CircuitBreaker


@dataclass(frozen=True)
class RegisteredProvider:
    """An alias bound to a provider instance."""
    alias: str
    provider: ModelProvider
    priority: int
    order: int


class ResilienceOrchestrator:
    """Multi-provider client with retry, budget caps and circuit breaking."""

    def __init__(self, retry: RetryConfig, breaker_config: CircuitBreakerConfig,
                 budget: BudgetConfig, metrics: Optional[MetricsCollector] = None,
                 audit: Optional[AuditTrail] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 rng: Callable[[], float] = random.random,
                 max_workers: int = 4):
        """
        Args:
            retry: Retry and per-call timeout policy
            breaker_config: Settings for each provider's circuit breaker
            budget: Request and daily spend caps
            metrics: Optional metrics collector
            audit: Optional audit trail
            clock: Monotonic clock shared with the circuit breakers
            sleep: Backoff sleep function
            rng: Source of jitter in [0, 1)
            max_workers: Size of each provider's call pool
        """
        self.retry = retry
        self.breaker_config = breaker_config
        self.budget = budget
        self.metrics = metrics
        self.audit = audit
        self._clock = clock
        self._sleep = sleep
        self._rng = rng

        self._lock = threading.RLock()
        self._bindings: List[RegisteredProvider] = []
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._request_count = 0
        self._max_workers = max_workers
        # One pool per provider so a hung provider cannot starve the others.
        self._executors: Dict[str, ThreadPoolExecutor] = {}
        self._shutdown = False

    def register_provider(self, alias: str, provider: ModelProvider, priority: int = 0) -> None:
        """Bind an alias to a provider. Aliases may share one provider instance."""
        with self._lock:
            if any(binding.alias == alias for binding in self._bindings):
                raise ValueError(f"Provider alias '{alias}' is already registered")
            self._bindings.append(RegisteredProvider(alias, provider, priority, len(self._bindings)))
            if provider.name not in self._breakers:
                self._breakers[provider.name] = CircuitBreaker(
                    provider.name, self.breaker_config, clock=self._clock,
                    listeners=[self._on_circuit_transition]
                )
            if provider.name not in self._executors:
                self._executors[provider.name] = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix=f"healer-provider-{provider.name}")

    def evaluate(self, failure: FailureContext, snapshot: UiSnapshot,
                 intent: IntentContract) -> HealDecision:
        """Obtain a heal decision from the first provider able to produce one.

        Raises:
            BudgetExceededError: A request or spend cap would be exceeded
            AllProvidersUnavailableError: Every provider was open or exhausted
        """
        log = get_healing_logger("orchestrator", failure.run_id, failure.scenario)
        with self._lock:
            bindings = sorted(self._bindings, key=lambda b: (b.priority, b.order))
        if not bindings:
            raise AllProvidersUnavailableError("No providers registered")

        errors: List[str] = []
        for binding in bindings:
            provider = binding.provider
            breaker = self._breakers[provider.name]

            for attempt in range(1, self.retry.max_attempts + 1):
                if not breaker.try_acquire():
                    log.info(f"Skipping provider '{binding.alias}': circuit {breaker.state.value}")
                    errors.append(f"{binding.alias}: circuit open")
                    break

                try:
                    self._reserve_request(provider)
                except BudgetExceededError as e:
                    breaker.release()
                    log.warning(f"Budget exceeded before calling '{binding.alias}': {e}")
                    if self.audit:
                        self.audit.log_budget_exceeded(e.limit_name, str(e))
                    raise

                started = self._clock()
                try:
                    decision = self._call_with_timeout(provider, failure, snapshot, intent)
                except ProviderAuthenticationError as e:
                    message = sanitize_error_message(str(e))
                    breaker.force_open(f"authentication failed: {message}")
                    self._record_failure(binding, attempt, started, e, message)
                    errors.append(f"{binding.alias}: {message}")
                    break
                except Exception as e:
                    message = sanitize_error_message(str(e)) or type(e).__name__
                    breaker.record_failure(provider.cost_per_call_usd)
                    self._record_failure(binding, attempt, started, e, message)
                    errors.append(f"{binding.alias} attempt {attempt}: {message}")
                    if attempt < self.retry.max_attempts:
                        delay = self.backoff_delay(attempt)
                        log.debug(f"Retrying '{binding.alias}' in {delay:.2f}s")
                        self._sleep(delay)
                    continue

                cost = decision.estimated_cost_usd or provider.cost_per_call_usd
                breaker.record_success(cost)
                if self.metrics:
                    self.metrics.record_provider_call(provider.name, True, self._clock() - started, cost)
                log.info(f"Provider '{binding.alias}' answered on attempt {attempt} "
                         f"(confidence {decision.confidence:.2f})")
                if not decision.provider:
                    decision = replace(decision, provider=binding.alias)
                return decision

        log.warning(f"No provider produced a decision: {'; '.join(errors)}")
        raise AllProvidersUnavailableError("No provider available", errors)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the retry that follows ``attempt`` (1-based)."""
        base = min(self.retry.base_delay_seconds * (2 ** (attempt - 1)), self.retry.max_delay_seconds)
        return base + base * self.retry.jitter_ratio * self._rng()

    def _call_with_timeout(self, provider: ModelProvider, failure: FailureContext,
                           snapshot: UiSnapshot, intent: IntentContract) -> HealDecision:
        future = self._executors[provider.name].submit(provider.evaluate, failure, snapshot, intent)
        try:
            decision = future.result(timeout=self.retry.call_timeout_seconds)
        except FutureTimeoutError:
            # The worker keeps running; its result is dropped with the future.
            future.cancel()
            raise ProviderTimeoutError(
                f"Provider '{provider.name}' did not answer within "
                f"{self.retry.call_timeout_seconds}s", provider.name
            )

        if not isinstance(decision, HealDecision):
            raise MalformedResponseError(
                f"Provider '{provider.name}' returned {type(decision).__name__}", provider.name)
        if (decision.candidate_index is not None and
                not 0 <= decision.candidate_index < len(snapshot.candidates)):
            raise MalformedResponseError(
                f"Provider '{provider.name}' chose candidate {decision.candidate_index} "
                f"of {len(snapshot.candidates)}", provider.name)
        return decision

    def _reserve_request(self, provider: ModelProvider) -> None:
        with self._lock:
            if self._request_count >= self.budget.max_requests_per_run:
                raise BudgetExceededError(
                    f"Request cap of {self.budget.max_requests_per_run} calls reached",
                    "max_requests_per_run")
            spent = self._daily_cost_locked()
            if spent + provider.cost_per_call_usd > self.budget.max_daily_cost_usd:
                raise BudgetExceededError(
                    f"Daily cost cap of ${self.budget.max_daily_cost_usd:.2f} reached "
                    f"(spent ${spent:.4f})", "max_daily_cost_usd")
            self._request_count += 1

    def _daily_cost_locked(self) -> float:
        return sum(breaker.daily_cost() for breaker in self._breakers.values())

    def _record_failure(self, binding: RegisteredProvider, attempt: int, started: float,
                        error: Exception, message: str) -> None:
        kind = "permanent" if isinstance(error, ProviderError) and not error.transient else "transient"
        get_healing_logger("orchestrator").warning(
            f"Provider '{binding.alias}' attempt {attempt} failed ({kind}, "
            f"{type(error).__name__}): {message}")
        if self.metrics:
            self.metrics.record_provider_call(binding.provider.name, False, self._clock() - started,
                                              binding.provider.cost_per_call_usd, type(error).__name__)
        if self.audit:
            self.audit.log_provider_failure(binding.alias, message, attempt)

    def _on_circuit_transition(self, provider: str, old_state: CircuitState,
                               new_state: CircuitState, reason: str) -> None:
        if self.metrics:
            self.metrics.record_circuit_transition(provider, old_state, new_state)
        if self.audit and new_state in (CircuitState.OPEN, CircuitState.CLOSED):
            self.audit.log_circuit_change(provider, new_state == CircuitState.OPEN, reason)

    def breaker(self, provider_name: str) -> CircuitBreaker:
        return self._breakers[provider_name]

    def circuit_stats(self) -> Dict[str, CircuitStats]:
        with self._lock:
            breakers = dict(self._breakers)
        return {name: breaker.stats() for name, breaker in breakers.items()}

    def reset_circuits(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()

    def budget_status(self) -> Dict[str, Any]:
        with self._lock:
            spent = self._daily_cost_locked()
            return {
                "requests_used": self._request_count,
                "max_requests_per_run": self.budget.max_requests_per_run,
                "requests_remaining": max(0, self.budget.max_requests_per_run - self._request_count),
                "daily_cost_usd": spent,
                "max_daily_cost_usd": self.budget.max_daily_cost_usd,
                "daily_cost_remaining_usd": max(0.0, self.budget.max_daily_cost_usd - spent)
            }

    def reset_budget(self, include_daily_cost: bool = False) -> None:
        """Reset the request counter, and optionally the accumulated daily cost."""
        with self._lock:
            self._request_count = 0
            if include_daily_cost:
                for breaker in self._breakers.values():
                    breaker.reset_daily_cost()

    def provider_aliases(self) -> List[str]:
        with self._lock:
            return [b.alias for b in sorted(self._bindings, key=lambda b: (b.priority, b.order))]

    def shutdown(self) -> None:
        """Stop the provider pools without waiting for abandoned calls."""
        with self._lock:
            if self._shutdown:
                return
            self._shutdown = True
            executors = list(self._executors.values())
        for executor in executors:
            executor.shutdown(wait=False, cancel_futures=True)

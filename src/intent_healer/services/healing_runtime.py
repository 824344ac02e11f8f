"""
Process-wide wiring of the healing components.

Every collaborator is constructed here and passed explicitly to the ones
that need it; nothing is held in module globals.
"""

import logging
import time
from typing import Callable, List, Optional, Tuple

from ..core.audit_trail import AuditTrail
from ..core.config import Settings
from ..core.config_loader import HealerConfigLoader
from ..core.logging_config import sanitize_error_message
from ..core.metrics import MetricsCollector
from ..core.models.healing_models import (
    FailureContext,
    HealerConfiguration,
    HealOutcome,
    HealReasonCode,
    HealResult,
    IntentContract,
    ProviderBinding,
    RunSummary,
    UiSnapshot
)
from ..providers.base import ModelProvider
from ..providers.factory import build_providers
from .capabilities import ActionExecutor, HealQuotaCounter, OutcomeValidator, SnapshotCapture
from .decision_cache import DecisionCache
from .fingerprinting_service import FingerprintingService
from .guardrail_checker import GuardrailChecker
from .healing_engine import HealingEngine
from .resilience_orchestrator import ResilienceOrchestrator
from .source_code_updater import SourceCodeUpdater
from .validated_heal_registry import ValidatedHealRegistry


logger = logging.getLogger("healer.engine")


class HealingRuntime:
    """Owns the shared engine, cache, orchestrator, registry and updater."""

    def __init__(self, config: HealerConfiguration, engine: HealingEngine, cache: DecisionCache,
                 orchestrator: ResilienceOrchestrator, registry: ValidatedHealRegistry,
                 updater: SourceCodeUpdater, metrics: MetricsCollector, audit: AuditTrail,
                 snapshot_capture: Optional[SnapshotCapture] = None):
        self.config = config
        self.engine = engine
        self.cache = cache
        self.orchestrator = orchestrator
        self.registry = registry
        self.updater = updater
        self.metrics = metrics
        self.audit = audit
        self.snapshot_capture = snapshot_capture
        self._closed = False

    @classmethod
    def from_config(cls, config: Optional[HealerConfiguration] = None,
                    settings: Optional[Settings] = None,
                    providers: Optional[List[Tuple[ProviderBinding, ModelProvider]]] = None,
                    executor: Optional[ActionExecutor] = None,
                    validator: Optional[OutcomeValidator] = None,
                    snapshot_capture: Optional[SnapshotCapture] = None,
                    metrics: Optional[MetricsCollector] = None,
                    audit: Optional[AuditTrail] = None,
                    clock: Callable[[], float] = time.monotonic,
                    sleep: Callable[[float], None] = time.sleep,
                    start_sweeper: bool = True) -> 'HealingRuntime':
        """Build a runtime from configuration.

        Args:
            config: Healer configuration; loaded from HEALER_CONFIG_PATH when omitted
            settings: Process settings; read from the environment when omitted
            providers: Pre-built (binding, provider) pairs; built from config when omitted
            executor: Performs healed actions
            validator: Evaluates outcome checks and invariants
            snapshot_capture: Captures page state for outcome validation
            metrics: Metrics collector to share; a new one when omitted
            audit: Audit trail to share; one writing to AUDIT_DIR when omitted
            clock: Monotonic clock for the cache and circuit breakers
            sleep: Backoff sleep used by the orchestrator
            start_sweeper: Start the cache's background expiry thread

        Raises:
            ConfigurationError: The configuration or a provider binding is invalid
        """
        settings = settings or Settings()
        source = "explicit"
        if config is None:
            loader = HealerConfigLoader(settings=settings)
            config = loader.load_config()
            source = str(loader.config_path)

        metrics = metrics or MetricsCollector()
        audit = audit or AuditTrail(settings.AUDIT_DIR)

        guardrails = GuardrailChecker(config.guardrails)
        if providers is None:
            providers = build_providers(config, settings)

        orchestrator = ResilienceOrchestrator(config.retry, config.circuit_breaker, config.budget,
                                              metrics=metrics, audit=audit, clock=clock, sleep=sleep)
        for binding, provider in providers:
            orchestrator.register_provider(binding.alias, provider, binding.priority)

        cache = DecisionCache(config.cache, clock=clock, metrics=metrics, start_sweeper=start_sweeper)
        cache.load()

        registry = ValidatedHealRegistry(audit=audit)
        updater = SourceCodeUpdater(config.auto_update, metrics=metrics, audit=audit)
        engine = HealingEngine(config, cache, orchestrator, guardrails, registry,
                               executor=executor, validator=validator,
                               snapshot_capture=snapshot_capture,
                               fingerprinting=FingerprintingService(),
                               metrics=metrics, audit=audit)

        audit.log_configuration_loaded(source, config.enabled, orchestrator.provider_aliases())
        logger.info(f"Healing runtime ready (enabled={config.enabled}, "
                    f"providers={orchestrator.provider_aliases()})")
        return cls(config, engine, cache, orchestrator, registry, updater, metrics, audit,
                   snapshot_capture=snapshot_capture)

    def attempt_heal(self, failure: FailureContext, intent: IntentContract,
                     snapshot: Optional[UiSnapshot] = None,
                     heal_counter: Optional[HealQuotaCounter] = None) -> HealResult:
        """Heal a failure, capturing the page first when no snapshot is given."""
        if snapshot is None:
            if self.snapshot_capture is None:
                return HealResult(HealOutcome.FAILED, HealReasonCode.INTERNAL_ERROR,
                                  failure_reason="No snapshot given and no snapshot capture configured")
            try:
                snapshot = self.snapshot_capture.capture(failure)
            except Exception as e:
                logger.warning(f"Snapshot capture failed for '{failure.original_locator}': "
                               f"{sanitize_error_message(str(e))}")
                return HealResult(HealOutcome.FAILED, HealReasonCode.INTERNAL_ERROR,
                                  failure_reason=sanitize_error_message(f"Snapshot capture failed: {e}"))
        return self.engine.attempt_heal(failure, intent, snapshot, heal_counter)

    def on_run_started(self, run_id: str) -> None:
        self.engine.on_run_started(run_id)

    def on_run_finished(self, run_id: str, passed: bool) -> RunSummary:
        """Settle the run's heals and apply the validated ones to source."""
        summary = self.engine.on_run_finished(run_id, passed)
        if summary.validated:
            summary.update_results = self.updater.apply_all_validated(summary.validated)

        auto_update = self.config.auto_update
        if auto_update.validated_heals_path and summary.validated:
            self.registry.save_validated(auto_update.validated_heals_path)

        expired = self.registry.expire_stale(auto_update.pending_timeout_seconds)
        if expired:
            logger.info(f"Expired {len(expired)} stale pending heals")
        return summary

    def shutdown(self) -> None:
        """Stop the cache sweeper, flush cache persistence and stop the provider pool."""
        if self._closed:
            return
        self._closed = True
        self.cache.shutdown()
        self.orchestrator.shutdown()
        logger.info("Healing runtime shut down")

    def __enter__(self) -> 'HealingRuntime':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

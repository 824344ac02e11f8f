"""
End-to-end tests of the healing pipeline wired through HealingRuntime.

Only the model provider and the browser are faked; cache, orchestrator,
guardrails, registry and source updater are the real components.
"""

import json
import threading

from selenium.common.exceptions import WebDriverException

from src.intent_healer.core.config import Settings
from src.intent_healer.core.exceptions import ProviderError
from src.intent_healer.core.models.healing_models import (
    AutoUpdateConfig,
    BudgetConfig,
    CacheConfig,
    CircuitState,
    HealDecision,
    HealOutcome,
    HealPolicy,
    HealReasonCode,
    ProviderBinding,
    SourceLocation
)
from src.intent_healer.services.healing_runtime import HealingRuntime
from tests.utils.healing_fakes import (
    FakeClock,
    RecordingExecutor,
    ScriptedProvider,
    StaticSnapshotCapture,
    make_config,
    make_failure,
    make_intent,
    make_snapshot,
    run_concurrently
)


SETTINGS = Settings(AUDIT_DIR=None)


class PipelineTestBase:
    """Builds a runtime around scripted providers."""

    def setup_method(self):
        self.clock = FakeClock()
        self.config = make_config()
        self.executor = RecordingExecutor()
        self.provider = ScriptedProvider("gemini")
        self.runtimes = []

    def teardown_method(self):
        for runtime in self.runtimes:
            runtime.shutdown()

    def _runtime(self, providers=None, **kwargs):
        values = dict(
            config=self.config,
            settings=SETTINGS,
            providers=providers or [(ProviderBinding("primary"), self.provider)],
            executor=self.executor,
            clock=self.clock,
            sleep=lambda seconds: None,
            start_sweeper=False
        )
        values.update(kwargs)
        runtime = HealingRuntime.from_config(**values)
        self.runtimes.append(runtime)
        return runtime

    def _heal(self, runtime, **failure_overrides):
        return runtime.attempt_heal(make_failure(**failure_overrides), make_intent(), make_snapshot())


class TestScenarios(PipelineTestBase):
    """The reference heal scenarios, in order."""

    def test_policy_off_makes_no_call_and_no_cache_write(self):
        runtime = self._runtime()

        result = runtime.attempt_heal(make_failure(), make_intent(policy=HealPolicy.OFF), make_snapshot())

        assert result.outcome == HealOutcome.REFUSED
        assert self.provider.calls == 0
        assert runtime.cache.stats().size == 0

    def test_fresh_heal_is_cached_and_registered(self):
        self.provider.responses = [HealDecision.can_heal(1, 0.92)]
        runtime = self._runtime()

        result = self._heal(runtime)

        assert result.outcome == HealOutcome.SUCCESS
        assert result.healed_locator == "id=sign-in"
        assert runtime.cache.stats().size == 1
        assert len(runtime.registry.pending_heals("run-1")) == 1
        assert self.executor.calls[0][1].value == "sign-in"

    def test_repeat_is_served_from_cache(self):
        runtime = self._runtime()
        self._heal(runtime)

        result = self._heal(runtime)

        assert result.outcome == HealOutcome.SUCCESS
        assert result.from_cache
        assert self.provider.calls == 1
        assert len(self.executor.calls) == 2

    def test_low_confidence_is_refused_and_not_cached(self):
        self.provider.responses = [HealDecision.can_heal(1, 0.5)]
        runtime = self._runtime()

        result = self._heal(runtime)

        assert result.outcome == HealOutcome.REFUSED
        assert result.reason_code == HealReasonCode.LOW_CONFIDENCE
        assert runtime.cache.stats().size == 0
        assert self.executor.calls == []

    def test_failed_run_discards_its_heals(self):
        runtime = self._runtime()
        runtime.on_run_started("run-1")
        self._heal(runtime)

        summary = runtime.on_run_finished("run-1", passed=False)

        assert len(summary.discarded) == 1
        assert runtime.registry.validated_heals("run-1") == []
        assert runtime.registry.pending_heals("run-1") == []

    def test_assertion_step_refused_even_when_certain(self):
        self.provider.responses = [HealDecision.can_heal(1, 1.0)]
        runtime = self._runtime()

        result = runtime.attempt_heal(make_failure(step_text="Then I should see the dashboard"),
                                      make_intent(), make_snapshot())

        assert result.outcome == HealOutcome.REFUSED
        assert self.provider.calls == 0


class TestConcurrency(PipelineTestBase):
    """Identical failures racing each other."""

    def test_single_provider_call_for_identical_failures(self):
        self.provider.delay = 0.2
        runtime = self._runtime()

        results = run_concurrently(lambda i: self._heal(runtime), 8)

        assert self.provider.calls == 1
        assert all(r.outcome == HealOutcome.SUCCESS for r in results)
        assert len(self.executor.calls) == 8
        assert runtime.cache.stats().size == 1

    def test_distinct_failures_each_call_provider(self):
        runtime = self._runtime()

        run_concurrently(lambda i: self._heal(runtime, step_text=f"When I click button {i}"), 4)

        assert self.provider.calls == 4
        assert runtime.cache.stats().size == 4


class TestCacheLifetime(PipelineTestBase):
    """Cache expiry and persistence."""

    def test_entry_expires_after_ttl(self):
        self.config.cache = CacheConfig(success_ttl_seconds=60, in_flight_wait_seconds=5.0)
        runtime = self._runtime()
        self._heal(runtime)

        self.clock.advance(59)
        assert self._heal(runtime).from_cache
        self.clock.advance(2)
        result = self._heal(runtime)

        assert not result.from_cache
        assert self.provider.calls == 2

    def test_persisted_cache_survives_restart(self, tmp_path):
        cache_file = tmp_path / "cache" / "decisions.json"
        self.config.cache = CacheConfig(persistence_path=str(cache_file), in_flight_wait_seconds=5.0)

        with self._runtime(clock=lambda: 0.0) as runtime:
            self._heal(runtime)
        assert json.loads(cache_file.read_text(encoding="utf-8"))["entries"]

        restarted_provider = ScriptedProvider("gemini")
        restarted = self._runtime(providers=[(ProviderBinding("primary"), restarted_provider)])
        result = self._heal(restarted)

        assert result.from_cache
        assert restarted_provider.calls == 0


class TestProviderResilience(PipelineTestBase):
    """Fallback and spending caps."""

    def test_open_circuit_falls_back_to_next_provider(self):
        failing = ScriptedProvider("gemini", [ProviderError("service unavailable")])
        local = ScriptedProvider("llama3")
        runtime = self._runtime(providers=[(ProviderBinding("primary"), failing),
                                           (ProviderBinding("fallback", "local", priority=1), local)])

        first = self._heal(runtime)
        second = self._heal(runtime, step_text="When I click the register button")

        assert first.outcome == HealOutcome.SUCCESS
        assert first.decision.provider == "fallback"
        assert second.outcome == HealOutcome.SUCCESS
        assert failing.calls == 3
        assert local.calls == 2
        assert runtime.orchestrator.breaker("gemini").state == CircuitState.OPEN

    def test_every_provider_down(self):
        self.provider.responses = [ProviderError("service unavailable")]
        runtime = self._runtime()

        result = self._heal(runtime)

        assert result.outcome == HealOutcome.FAILED
        assert result.reason_code == HealReasonCode.NO_PROVIDER
        assert runtime.cache.stats().size == 0

    def test_request_cap(self):
        self.config.budget = BudgetConfig(max_requests_per_run=1)
        runtime = self._runtime()

        first = self._heal(runtime)
        second = self._heal(runtime, step_text="When I click the register button")
        runtime.orchestrator.reset_budget()
        third = self._heal(runtime, step_text="When I click the register button")

        assert first.outcome == HealOutcome.SUCCESS
        assert second.outcome == HealOutcome.FAILED
        assert second.reason_code == HealReasonCode.BUDGET_EXCEEDED
        assert third.outcome == HealOutcome.SUCCESS
        assert self.provider.calls == 2


class TestSourcePromotion(PipelineTestBase):
    """Validated heals reaching source files."""

    def test_passing_run_updates_source(self, tmp_path, robot_file):
        self.config.auto_update = AutoUpdateConfig(
            enabled=True,
            backup_dir=str(tmp_path / "backups"),
            validated_heals_path=str(tmp_path / "validated.json")
        )
        runtime = self._runtime()
        runtime.on_run_started("run-1")
        location = SourceLocation(str(robot_file), 8, method_name="User Signs In")

        self._heal(runtime, source_location=location)
        summary = runtime.on_run_finished("run-1", passed=True)

        assert len(summary.validated) == 1
        assert summary.update_results[0].success
        assert "    Click Button    id=sign-in\n" in robot_file.read_text(encoding="utf-8")
        assert list((tmp_path / "backups").iterdir())
        saved = json.loads((tmp_path / "validated.json").read_text(encoding="utf-8"))
        assert saved[0]["replacement"] == "id=sign-in"
        assert saved[0]["applied_at"] is not None

    def test_auto_update_disabled_leaves_source(self, robot_file):
        runtime = self._runtime()
        original = robot_file.read_text(encoding="utf-8")

        self._heal(runtime, source_location=SourceLocation(str(robot_file), 8))
        summary = runtime.on_run_finished("run-1", passed=True)

        assert len(summary.validated) == 1
        assert robot_file.read_text(encoding="utf-8") == original


class TestRuntimeLifecycle(PipelineTestBase):
    """Snapshot capture and shutdown."""

    def test_missing_snapshot_without_capture(self):
        runtime = self._runtime()

        result = runtime.attempt_heal(make_failure(), make_intent())

        assert result.outcome == HealOutcome.FAILED
        assert result.reason_code == HealReasonCode.INTERNAL_ERROR
        assert self.provider.calls == 0

    def test_snapshot_captured_when_missing(self):
        capture = StaticSnapshotCapture(make_snapshot())
        runtime = self._runtime(snapshot_capture=capture)

        result = runtime.attempt_heal(make_failure(), make_intent())

        assert result.outcome == HealOutcome.SUCCESS
        assert capture.captures >= 1

    def test_capture_error_becomes_failed_result(self):
        class DisconnectedCapture:
            def capture(self, failure):
                raise WebDriverException("session deleted because of page crash")

        runtime = self._runtime(snapshot_capture=DisconnectedCapture())

        result = runtime.attempt_heal(make_failure(), make_intent())

        assert result.outcome == HealOutcome.FAILED
        assert result.reason_code == HealReasonCode.INTERNAL_ERROR
        assert "Snapshot capture failed" in result.failure_reason
        assert self.provider.calls == 0
        assert runtime.cache.in_flight_count() == 0

    def test_shutdown_is_idempotent(self):
        runtime = self._runtime(start_sweeper=True)

        runtime.shutdown()
        runtime.shutdown()

        assert not any(t.name == "healer-cache-sweeper" and t.is_alive() for t in threading.enumerate())

    def test_context_manager_shuts_down(self):
        with self._runtime(start_sweeper=True) as runtime:
            assert self._heal(runtime).outcome == HealOutcome.SUCCESS

        assert not any(t.name == "healer-cache-sweeper" and t.is_alive() for t in threading.enumerate())

    def test_configuration_loaded_from_file(self, tmp_path):
        config_file = tmp_path / "healer.yml"
        config_file.write_text("healer:\n  enabled: false\n", encoding="utf-8")
        settings = Settings(HEALER_CONFIG_PATH=str(config_file), AUDIT_DIR=None)

        runtime = self._runtime(config=None, settings=settings)
        result = self._heal(runtime)

        assert result.reason_code == HealReasonCode.DISABLED

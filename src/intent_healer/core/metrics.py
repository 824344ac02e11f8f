"""
Metrics collection for heal attempts, cache lookups and provider calls.

The collector is constructed by the runtime and handed to every component
that reports into it.
"""

import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Dict, Optional
import json
import logging

from .models.healing_models import CircuitState, HealOutcome, HealResult


@dataclass
class MetricPoint:
    """A single metric data point."""
    timestamp: datetime
    value: float
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class HealingMetrics:
    """Aggregated healing metrics."""
    total_heal_attempts: int = 0
    successful_heals: int = 0
    refused_heals: int = 0
    failed_heals: int = 0
    success_rate: float = 0.0
    avg_heal_duration: float = 0.0

    cache_hits: int = 0
    cache_misses: int = 0
    cache_hit_rate: float = 0.0

    provider_calls: int = 0
    provider_failures: int = 0
    provider_cost_usd: float = 0.0
    avg_provider_latency: Dict[str, float] = field(default_factory=dict)
    circuit_opens: int = 0

    reason_code_counts: Dict[str, int] = field(default_factory=dict)
    failure_kind_counts: Dict[str, int] = field(default_factory=dict)

    source_updates_applied: int = 0
    source_updates_failed: int = 0
    rollback_count: int = 0

    heals_per_hour: float = 0.0


class MetricsCollector:
    """Thread-safe metrics collector for healing operations."""

    def __init__(self, retention_hours: int = 24):
        """
        Initialize metrics collector.

        Args:
            retention_hours: How long to retain detailed metrics in memory
        """
        self.retention_delta = timedelta(hours=retention_hours)

        self._lock = threading.RLock()

        self._counters: Dict[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = {}
        self._histograms: Dict[str, deque] = defaultdict(lambda: deque(maxlen=1000))
        self._completed: deque = deque(maxlen=1000)

        self.logger = logging.getLogger("healer.metrics")

    def increment_counter(self, name: str, value: float = 1, labels: Optional[Dict[str, str]] = None):
        """Increment a counter metric."""
        with self._lock:
            self._counters[self._make_key(name, labels)] += value

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """Set a gauge metric value."""
        with self._lock:
            self._gauges[self._make_key(name, labels)] = value

    def record_histogram(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """Record a value in a histogram."""
        with self._lock:
            self._histograms[name].append(MetricPoint(
                timestamp=datetime.now(),
                value=value,
                labels=labels or {}
            ))

    def record_heal_attempt(self, failure_kind: str):
        with self._lock:
            self.increment_counter("heal_attempts_total")
            self.increment_counter("heal_attempts_by_kind", labels={"failure_kind": failure_kind})

    def record_heal_result(self, result: HealResult):
        """Record the terminal outcome of a heal attempt."""
        with self._lock:
            self.increment_counter(f"heal_{result.outcome.value}_total")
            self.increment_counter("heal_results_by_reason", labels={"reason": result.reason_code.value})
            self.record_histogram("heal_duration", result.duration_seconds,
                                  {"outcome": result.outcome.value})
            self._completed.append(datetime.now())

    def record_cache_lookup(self, hit: bool):
        self.increment_counter("cache_hits_total" if hit else "cache_misses_total")

    def record_provider_call(self, provider: str, success: bool, latency: float,
                             cost_usd: float = 0.0, error_type: Optional[str] = None):
        """Record one provider call attempt."""
        with self._lock:
            self.increment_counter("provider_calls_total")
            self.increment_counter("provider_calls", labels={"provider": provider})
            if not success:
                self.increment_counter("provider_failures_total")
                self.increment_counter("provider_failures",
                                       labels={"provider": provider, "error": error_type or "unknown"})
            if cost_usd:
                self.increment_counter("provider_cost_usd_total", cost_usd)
            self.record_histogram("provider_latency", latency, {"provider": provider})

    def record_circuit_transition(self, provider: str, old_state: CircuitState, new_state: CircuitState):
        with self._lock:
            self.set_gauge("circuit_state", list(CircuitState).index(new_state), {"provider": provider})
            if new_state == CircuitState.OPEN:
                self.increment_counter("circuit_opens_total")
        self.logger.info(f"Circuit for '{provider}' moved {old_state.value} -> {new_state.value}")

    def record_source_update(self, success: bool, backup_created: bool = False, rollback: bool = False):
        with self._lock:
            if rollback:
                self.increment_counter("source_rollbacks")
                return
            self.increment_counter("source_updates_applied" if success else "source_updates_failed")
            if backup_created:
                self.increment_counter("source_backups_created")

    def get_current_metrics(self) -> HealingMetrics:
        """Get current aggregated metrics."""
        with self._lock:
            attempts = int(self._counters.get("heal_attempts_total", 0))
            successes = int(self._counters.get(f"heal_{HealOutcome.SUCCESS.value}_total", 0))
            refused = int(self._counters.get(f"heal_{HealOutcome.REFUSED.value}_total", 0))
            failed = int(self._counters.get(f"heal_{HealOutcome.FAILED.value}_total", 0))

            durations = [p.value for p in self._histograms.get("heal_duration", [])]
            hits = int(self._counters.get("cache_hits_total", 0))
            misses = int(self._counters.get("cache_misses_total", 0))

            latencies: Dict[str, list] = defaultdict(list)
            for point in self._histograms.get("provider_latency", []):
                latencies[point.labels.get("provider", "")].append(point.value)

            now = datetime.now()
            hour_ago = now - timedelta(hours=1)

            return HealingMetrics(
                total_heal_attempts=attempts,
                successful_heals=successes,
                refused_heals=refused,
                failed_heals=failed,
                success_rate=successes / attempts if attempts else 0.0,
                avg_heal_duration=sum(durations) / len(durations) if durations else 0.0,
                cache_hits=hits,
                cache_misses=misses,
                cache_hit_rate=hits / (hits + misses) if hits + misses else 0.0,
                provider_calls=int(self._counters.get("provider_calls_total", 0)),
                provider_failures=int(self._counters.get("provider_failures_total", 0)),
                provider_cost_usd=float(self._counters.get("provider_cost_usd_total", 0.0)),
                avg_provider_latency={name: sum(v) / len(v) for name, v in latencies.items()},
                circuit_opens=int(self._counters.get("circuit_opens_total", 0)),
                reason_code_counts=self._labelled_counts("heal_results_by_reason", "reason"),
                failure_kind_counts=self._labelled_counts("heal_attempts_by_kind", "failure_kind"),
                source_updates_applied=int(self._counters.get("source_updates_applied", 0)),
                source_updates_failed=int(self._counters.get("source_updates_failed", 0)),
                rollback_count=int(self._counters.get("source_rollbacks", 0)),
                heals_per_hour=float(len([t for t in self._completed if t > hour_ago]))
            )

    def export_metrics(self, format: str = "json") -> str:
        """Export metrics in specified format."""
        metrics = self.get_current_metrics()

        if format == "json":
            return json.dumps(asdict(metrics), indent=2)
        elif format == "prometheus":
            return self._export_prometheus_format(metrics)
        else:
            raise ValueError(f"Unsupported export format: {format}")

    def cleanup_old_data(self):
        """Clean up histogram data older than the retention window."""
        cutoff_time = datetime.now() - self.retention_delta
        with self._lock:
            for hist in self._histograms.values():
                while hist and hist[0].timestamp < cutoff_time:
                    hist.popleft()

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._completed.clear()

    def _labelled_counts(self, name: str, label: str) -> Dict[str, int]:
        prefix = f"{name}_{label}:"
        return {key[len(prefix):]: int(count) for key, count in self._counters.items()
                if key.startswith(prefix)}

    def _make_key(self, name: str, labels: Optional[Dict[str, str]] = None) -> str:
        """Create a key for metric storage."""
        if not labels:
            return name

        label_str = "_".join(f"{k}:{v}" for k, v in sorted(labels.items()))
        return f"{name}_{label_str}"

    def _export_prometheus_format(self, metrics: HealingMetrics) -> str:
        """Export metrics in Prometheus format."""
        lines = []

        def metric(name: str, kind: str, help_text: str, value: float):
            lines.append(f"# HELP {name} {help_text}")
            lines.append(f"# TYPE {name} {kind}")
            lines.append(f"{name} {value}")

        metric("healer_attempts_total", "counter", "Total number of heal attempts",
               metrics.total_heal_attempts)
        metric("healer_success_total", "counter", "Total number of successful heals",
               metrics.successful_heals)
        metric("healer_refused_total", "counter", "Total number of refused heals",
               metrics.refused_heals)
        metric("healer_failed_total", "counter", "Total number of failed heals",
               metrics.failed_heals)
        metric("healer_cache_hit_rate", "gauge", "Decision cache hit rate", metrics.cache_hit_rate)
        metric("healer_provider_calls_total", "counter", "Total model provider calls",
               metrics.provider_calls)
        metric("healer_provider_cost_usd_total", "counter", "Accumulated provider spend",
               metrics.provider_cost_usd)
        metric("healer_avg_duration_seconds", "gauge", "Average heal duration",
               metrics.avg_heal_duration)
        metric("healer_success_rate", "gauge", "Heal success rate", metrics.success_rate)

        return "\n".join(lines)

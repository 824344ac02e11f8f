"""Core data models for the intent healer."""

from .healing_models import (
    FailureKind,
    LocatorStrategy,
    HealPolicy,
    ActionKind,
    HealOutcome,
    HealReasonCode,
    CircuitState,
    HealStatus,
    Locator,
    SourceLocation,
    FailureContext,
    InvariantCheck,
    IntentContract,
    BoundingBox,
    ElementCandidate,
    UiSnapshot,
    HealDecision,
    HealResult,
    GuardrailVerdict,
    CacheEntry,
    CacheStats,
    CircuitStats,
    PendingHeal,
    ValidatedHeal,
    RunSummary,
    GuardrailConfig,
    CacheConfig,
    CircuitBreakerConfig,
    RetryConfig,
    BudgetConfig,
    ProviderBinding,
    AutoUpdateConfig,
    HealerConfiguration
)

__all__ = [
    "FailureKind",
    "LocatorStrategy",
    "HealPolicy",
    "ActionKind",
    "HealOutcome",
    "HealReasonCode",
    "CircuitState",
    "HealStatus",
    "Locator",
    "SourceLocation",
    "FailureContext",
    "InvariantCheck",
    "IntentContract",
    "BoundingBox",
    "ElementCandidate",
    "UiSnapshot",
    "HealDecision",
    "HealResult",
    "GuardrailVerdict",
    "CacheEntry",
    "CacheStats",
    "CircuitStats",
    "PendingHeal",
    "ValidatedHeal",
    "RunSummary",
    "GuardrailConfig",
    "CacheConfig",
    "CircuitBreakerConfig",
    "RetryConfig",
    "BudgetConfig",
    "ProviderBinding",
    "AutoUpdateConfig",
    "HealerConfiguration"
]

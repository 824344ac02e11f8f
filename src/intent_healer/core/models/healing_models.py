"""Data models for the locator healing engine."""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum


class FailureKind(Enum):
    """Kinds of step failures the engine can classify."""
    ELEMENT_NOT_FOUND = "element_not_found"
    STALE_ELEMENT = "stale_element"
    CLICK_INTERCEPTED = "click_intercepted"
    NOT_INTERACTABLE = "not_interactable"
    TIMEOUT = "timeout"
    ASSERTION_FAILURE = "assertion_failure"
    UNKNOWN = "unknown"


class LocatorStrategy(Enum):
    """Supported locator strategies in priority order."""
    ID = "id"
    NAME = "name"
    CSS = "css"
    XPATH = "xpath"
    LINK_TEXT = "link_text"
    PARTIAL_LINK_TEXT = "partial_link_text"
    TAG_NAME = "tag_name"
    CLASS_NAME = "class_name"
    TEXT = "text"
    ROLE = "role"


class HealPolicy(Enum):
    """Healing policy declared for a step."""
    AUTO_SAFE = "auto_safe"
    MANUAL = "manual"
    OFF = "off"


class ActionKind(Enum):
    """Kind of action a step performs on its target element."""
    CLICK = "click"
    TYPE = "type"
    SELECT = "select"
    HOVER = "hover"
    CLEAR = "clear"
    SUBMIT = "submit"
    ASSERT = "assert"
    UNKNOWN = "unknown"


class HealOutcome(Enum):
    """Terminal outcome of a heal attempt."""
    SUCCESS = "success"
    REFUSED = "refused"
    FAILED = "failed"


class HealReasonCode(Enum):
    """Advisory category attached to a HealResult for logs and reports."""
    HEALED = "healed"
    DISABLED = "disabled"
    POLICY_OFF = "policy_off"
    ASSERTION_STEP = "assertion_step"
    DESTRUCTIVE_ACTION = "destructive_action"
    FORBIDDEN_PATTERN = "forbidden_pattern"
    QUOTA_EXHAUSTED = "quota_exhausted"
    LOW_CONFIDENCE = "low_confidence"
    NOT_HEALABLE = "not_healable"
    GUARDRAIL = "guardrail"
    BUDGET_EXCEEDED = "budget_exceeded"
    NO_PROVIDER = "no_provider"
    EXECUTION_ERROR = "execution_error"
    OUTCOME_VALIDATION = "outcome_validation"
    INTERNAL_ERROR = "internal_error"


class CircuitState(Enum):
    """States of a provider circuit breaker."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class HealStatus(Enum):
    """Lifecycle status of a recorded heal."""
    PENDING = "pending"
    VALIDATED = "validated"
    DISCARDED = "discarded"


_LOCATOR_PREFIX = re.compile(r"^\s*([a-z][a-z_ ]*?)\s*[=:]\s*(.+)$", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class Locator:
    """A strategy + value pair identifying a UI element."""
    strategy: LocatorStrategy
    value: str

    def describe(self) -> str:
        return f"{self.strategy.value}={self.value}"

    @classmethod
    def parse(cls, text: str) -> 'Locator':
        """Parse a Robot Framework style locator such as ``css=.btn``.

        Values without a known prefix are treated as XPath when they start
        with ``/`` or ``(``, otherwise as CSS.
        """
        text = (text or "").strip()
        match = _LOCATOR_PREFIX.match(text)
        if match:
            prefix = match.group(1).lower()
            aliases = {"link": "link_text", "partial link": "partial_link_text",
                       "tag": "tag_name", "class": "class_name", "css selector": "css",
                       "link text": "link_text", "partial link text": "partial_link_text"}
            prefix = aliases.get(prefix, prefix)
            try:
                return cls(LocatorStrategy(prefix), match.group(2).strip())
            except ValueError:
                pass
        if text.startswith("/") or text.startswith("("):
            return cls(LocatorStrategy.XPATH, text)
        return cls(LocatorStrategy.CSS, text)

    def __str__(self) -> str:
        return self.describe()


@dataclass(frozen=True)
class SourceLocation:
    """Source code location where a locator is defined."""
    file_path: str
    line_number: int = 0
    class_name: Optional[str] = None
    method_name: Optional[str] = None

    @property
    def is_updatable(self) -> bool:
        return bool(self.file_path) and self.line_number > 0

    def key(self) -> str:
        """Registry key component for this location."""
        method = self.method_name or ""
        return f"{self.file_path}:{self.line_number}:{method}"

    def to_short_string(self) -> str:
        name = self.file_path.replace("\\", "/").rsplit("/", 1)[-1] if self.file_path else "unknown"
        return f"{name}:{self.line_number}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_path": self.file_path,
            "line_number": self.line_number,
            "class_name": self.class_name,
            "method_name": self.method_name
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SourceLocation':
        return cls(**data)


@dataclass(frozen=True)
class FailureContext:
    """Context about a failed step. Immutable, owned by the caller."""
    feature: str
    scenario: str
    step_text: str
    original_locator: str
    exception_type: str
    exception_message: str
    page_url: str = ""
    run_id: str = ""
    step_id: str = ""
    tags: Tuple[str, ...] = ()
    source_location: Optional[SourceLocation] = None
    timestamp: datetime = field(default_factory=datetime.now)
    failure_kind: FailureKind = field(init=False)

    def __post_init__(self):
        # healing_utils imports this module.
        from ..healing_utils import classify_failure_kind
        object.__setattr__(self, "tags", tuple(self.tags))
        object.__setattr__(
            self, "failure_kind",
            classify_failure_kind(self.exception_type, self.exception_message)
        )


@dataclass(frozen=True)
class InvariantCheck:
    """A caller-declared predicate over post-action state."""
    name: str
    description: str = ""


_ACTION_KEYWORDS = [
    (ActionKind.ASSERT, ("should", "verify", "assert", "expect", "see ")),
    (ActionKind.TYPE, ("type", "enter", "input", "fill", "write")),
    (ActionKind.SELECT, ("select", "choose", "pick")),
    (ActionKind.HOVER, ("hover", "mouse over")),
    (ActionKind.CLEAR, ("clear",)),
    (ActionKind.SUBMIT, ("submit",)),
    (ActionKind.CLICK, ("click", "press", "tap", "open", "toggle", "check")),
]


@dataclass(frozen=True)
class IntentContract:
    """What a step intends to do and how it may be healed."""
    action: ActionKind
    description: str
    policy: HealPolicy = HealPolicy.AUTO_SAFE
    destructive: bool = False
    allow_destructive: bool = False
    outcome_check: Optional[str] = None
    invariants: Tuple[InvariantCheck, ...] = ()
    payload: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "invariants", tuple(self.invariants))

    @property
    def has_validation(self) -> bool:
        return bool(self.outcome_check) or bool(self.invariants)

    @classmethod
    def default_for(cls, step_text: str, payload: Optional[str] = None) -> 'IntentContract':
        """Build a default AUTO_SAFE contract, inferring the action from the step text."""
        text = (step_text or "").lower()
        words = text.split()
        action = ActionKind.UNKNOWN
        if words and words[0] == "then":
            action = ActionKind.ASSERT
        else:
            for kind, keywords in _ACTION_KEYWORDS:
                if any(keyword in text for keyword in keywords):
                    action = kind
                    break
        return cls(action=action, description=step_text, payload=payload)


@dataclass(frozen=True)
class BoundingBox:
    """On-screen geometry of an element."""
    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class ElementCandidate:
    """A page element that could replace the broken locator."""
    index: int
    strategy: LocatorStrategy
    value: str
    text: str = ""
    tag_name: str = ""
    bounds: Optional[BoundingBox] = None
    attributes: Dict[str, str] = field(default_factory=dict)
    visible: bool = True
    enabled: bool = True

    @property
    def locator(self) -> Locator:
        return Locator(self.strategy, self.value)

    def describe(self) -> str:
        return self.locator.describe()


@dataclass(frozen=True)
class UiSnapshot:
    """Structural capture of the page at failure time."""
    url: str
    structure: str
    candidates: Tuple[ElementCandidate, ...] = ()
    title: str = ""
    captured_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        object.__setattr__(self, "candidates", tuple(self.candidates))

    def candidate(self, index: Optional[int]) -> Optional[ElementCandidate]:
        if index is None or index < 0 or index >= len(self.candidates):
            return None
        return self.candidates[index]


@dataclass(frozen=True)
class HealDecision:
    """A model's choice of replacement candidate for one failure."""
    confidence: float
    candidate_index: Optional[int]
    reasoning: str = ""
    refusal_reason: Optional[str] = None
    estimated_cost_usd: float = 0.0
    provider: str = ""

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0.0, 1.0], got {self.confidence}")
        if self.candidate_index is None and not self.refusal_reason:
            object.__setattr__(self, "refusal_reason", "No candidate selected")
        if self.candidate_index is not None and self.refusal_reason:
            raise ValueError("A decision with a chosen candidate cannot carry a refusal reason")

    @property
    def is_healable(self) -> bool:
        return self.candidate_index is not None

    @classmethod
    def can_heal(cls, candidate_index: int, confidence: float, reasoning: str = "",
                 estimated_cost_usd: float = 0.0, provider: str = "") -> 'HealDecision':
        return cls(confidence=confidence, candidate_index=candidate_index, reasoning=reasoning,
                   estimated_cost_usd=estimated_cost_usd, provider=provider)

    @classmethod
    def refuse(cls, reason: str, confidence: float = 0.0, reasoning: str = "",
               estimated_cost_usd: float = 0.0, provider: str = "") -> 'HealDecision':
        return cls(confidence=confidence, candidate_index=None, reasoning=reasoning,
                   refusal_reason=reason, estimated_cost_usd=estimated_cost_usd, provider=provider)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "confidence": self.confidence,
            "candidate_index": self.candidate_index,
            "reasoning": self.reasoning,
            "refusal_reason": self.refusal_reason,
            "estimated_cost_usd": self.estimated_cost_usd,
            "provider": self.provider
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HealDecision':
        return cls(
            confidence=float(data["confidence"]),
            candidate_index=data.get("candidate_index"),
            reasoning=data.get("reasoning", ""),
            refusal_reason=data.get("refusal_reason"),
            estimated_cost_usd=float(data.get("estimated_cost_usd", 0.0)),
            provider=data.get("provider", "")
        )


@dataclass(frozen=True)
class HealResult:
    """Terminal value returned to the test framework binding."""
    outcome: HealOutcome
    reason_code: HealReasonCode
    confidence: float = 0.0
    healed_locator: Optional[str] = None
    failure_reason: Optional[str] = None
    fingerprint: Optional[str] = None
    from_cache: bool = False
    decision: Optional[HealDecision] = None
    started_at: datetime = field(default_factory=datetime.now)
    duration_seconds: float = 0.0
    heal_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_success(self) -> bool:
        return self.outcome == HealOutcome.SUCCESS

    @property
    def is_refused(self) -> bool:
        return self.outcome == HealOutcome.REFUSED

    @property
    def is_failed(self) -> bool:
        return self.outcome == HealOutcome.FAILED

    def to_dict(self) -> Dict[str, Any]:
        """Convert result to dictionary for reports and API responses."""
        return {
            "heal_id": self.heal_id,
            "outcome": self.outcome.value,
            "reason_code": self.reason_code.value,
            "confidence": self.confidence,
            "healed_locator": self.healed_locator,
            "failure_reason": self.failure_reason,
            "fingerprint": self.fingerprint,
            "from_cache": self.from_cache,
            "started_at": self.started_at.isoformat(),
            "duration_seconds": self.duration_seconds
        }


@dataclass(frozen=True)
class GuardrailVerdict:
    """Outcome of a guardrail evaluation."""
    allowed: bool
    reason: Optional[str] = None
    reason_code: Optional[HealReasonCode] = None

    @classmethod
    def allow(cls) -> 'GuardrailVerdict':
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str, reason_code: HealReasonCode) -> 'GuardrailVerdict':
        return cls(allowed=False, reason=reason, reason_code=reason_code)


@dataclass
class CacheEntry:
    """A cached decision. Access bookkeeping is mutated only by the cache."""
    fingerprint: str
    decision: HealDecision
    inserted_at: float
    ttl_seconds: float
    last_accessed_at: float = 0.0
    hit_count: int = 0
    inserted_wall_time: datetime = field(default_factory=datetime.now)

    def expires_at(self) -> float:
        return self.inserted_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at()


@dataclass(frozen=True)
class CacheStats:
    """Point-in-time cache statistics."""
    size: int
    max_size: int
    hits: int
    misses: int
    evictions: int
    expirations: int = 0
    in_flight: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "in_flight": self.in_flight,
            "hit_rate": self.hit_rate
        }


@dataclass(frozen=True)
class CircuitStats:
    """Snapshot of one provider's circuit breaker."""
    provider: str
    state: CircuitState
    consecutive_failures: int
    total_failures: int
    total_successes: int
    last_failure_at: Optional[datetime]
    opened_at: Optional[datetime]
    cooldown_seconds: float
    seconds_until_half_open: float
    daily_cost_usd: float
    trial_in_flight: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "cooldown_seconds": self.cooldown_seconds,
            "seconds_until_half_open": self.seconds_until_half_open,
            "daily_cost_usd": self.daily_cost_usd,
            "trial_in_flight": self.trial_in_flight
        }


@dataclass
class PendingHeal:
    """A successful heal awaiting the outcome of its test run."""
    heal_id: str
    run_id: str
    original_locator: str
    healed_locator: str
    confidence: float
    scenario: str
    location: Optional[SourceLocation] = None
    reasoning: str = ""
    recorded_at: datetime = field(default_factory=datetime.now)
    status: HealStatus = HealStatus.PENDING
    deferred: bool = False

    def key(self) -> Tuple[str, str]:
        return (self.run_id, self.location.key() if self.location else "")

    def to_validated(self, test_name: Optional[str] = None) -> 'ValidatedHeal':
        return ValidatedHeal(
            heal_id=self.heal_id,
            run_id=self.run_id,
            original_locator=self.original_locator,
            healed_locator=self.healed_locator,
            confidence=self.confidence,
            scenario=self.scenario,
            location=self.location,
            reasoning=self.reasoning,
            test_name=test_name or self.scenario
        )


@dataclass
class ValidatedHeal:
    """A heal confirmed by a passing test run; eligible for source update."""
    heal_id: str
    run_id: str
    original_locator: str
    healed_locator: str
    confidence: float
    scenario: str
    location: Optional[SourceLocation] = None
    reasoning: str = ""
    test_name: str = ""
    validated_at: datetime = field(default_factory=datetime.now)
    applied_at: Optional[datetime] = None
    status: HealStatus = HealStatus.VALIDATED

    @property
    def can_auto_update(self) -> bool:
        return self.location is not None and self.location.is_updatable

    def meets_confidence_threshold(self, threshold: float) -> bool:
        return self.confidence >= threshold

    def to_dict(self) -> Dict[str, Any]:
        """Persisted layout of a validated heal."""
        return {
            "location": self.location.to_dict() if self.location else None,
            "original": self.original_locator,
            "replacement": self.healed_locator,
            "confidence": self.confidence,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
            "heal_id": self.heal_id,
            "run_id": self.run_id,
            "scenario": self.scenario,
            "validated_at": self.validated_at.isoformat()
        }


@dataclass
class RunSummary:
    """What happened to a run's heals when it finished."""
    run_id: str
    passed: bool
    validated: List[ValidatedHeal] = field(default_factory=list)
    deferred: List[PendingHeal] = field(default_factory=list)
    discarded: List[PendingHeal] = field(default_factory=list)
    update_results: List[Any] = field(default_factory=list)


@dataclass
class GuardrailConfig:
    """Safety policy applied to every heal."""
    min_confidence: float = 0.8
    max_heals_per_scenario: int = 3
    forbidden_keywords: List[str] = field(default_factory=lambda: [
        "delete", "remove", "purchase", "pay", "transfer", "unsubscribe"
    ])
    forbidden_url_patterns: List[str] = field(default_factory=list)


@dataclass
class CacheConfig:
    """Decision cache tuning."""
    enabled: bool = True
    max_size: int = 1000
    success_ttl_seconds: float = 86400.0
    refusal_ttl_seconds: float = 3600.0
    sweep_interval_seconds: float = 60.0
    in_flight_wait_seconds: float = 60.0
    persistence_path: Optional[str] = None


@dataclass
class CircuitBreakerConfig:
    """Per-provider circuit breaker tuning."""
    failure_threshold: int = 3
    cooldown_seconds: float = 30.0
    cooldown_multiplier: float = 1.0
    max_cooldown_seconds: float = 300.0


@dataclass
class RetryConfig:
    """Retry policy applied per provider."""
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    jitter_ratio: float = 0.1
    call_timeout_seconds: float = 30.0


@dataclass
class BudgetConfig:
    """Spend limits enforced before every provider call."""
    max_requests_per_run: int = 50
    max_daily_cost_usd: float = 5.0


@dataclass
class ProviderBinding:
    """An alias bound to a provider implementation and priority."""
    alias: str
    kind: str = "online"
    model: str = ""
    priority: int = 0
    cost_per_call_usd: float = 0.0


@dataclass
class AutoUpdateConfig:
    """Controls promotion of validated heals into source files."""
    enabled: bool = False
    min_confidence: float = 0.9
    create_backups: bool = True
    backup_dir: str = ".healer_backups"
    backup_retention_days: int = 7
    exclude_patterns: List[str] = field(default_factory=list)
    dry_run: bool = False
    validated_heals_path: Optional[str] = None
    pending_timeout_seconds: float = 3600.0


@dataclass
class HealerConfiguration:
    """Complete healing configuration."""
    enabled: bool = True
    guardrails: GuardrailConfig = field(default_factory=GuardrailConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    providers: List[ProviderBinding] = field(default_factory=lambda: [
        ProviderBinding(alias="primary", kind="online", priority=0)
    ])
    auto_update: AutoUpdateConfig = field(default_factory=AutoUpdateConfig)

"""Contract every model provider implementation satisfies."""

from abc import ABC, abstractmethod

from ..core.exceptions import (
    ProviderAuthenticationError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitedError
)
from ..core.logging_config import sanitize_error_message
from ..core.models.healing_models import FailureContext, HealDecision, IntentContract, UiSnapshot


class ModelProvider(ABC):
    """A language model backend that chooses a replacement candidate.

    Implementations raise the ProviderError subclasses from
    ``core.exceptions`` for timeouts, rate limiting, rejected credentials and
    unparseable answers. They never retry on their own.
    """

    name: str = "provider"
    cost_per_call_usd: float = 0.0

    @abstractmethod
    def evaluate(self, failure: FailureContext, snapshot: UiSnapshot,
                 intent: IntentContract) -> HealDecision:
        """Return a decision naming one of ``snapshot.candidates`` or a refusal."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


_AUTH_MARKERS = ("authenticationerror", "permissiondenied", "invalid api key", "api key not valid",
                 "401", "403", "unauthorized")
_RATE_LIMIT_MARKERS = ("ratelimit", "rate limit", "429", "quota", "resource_exhausted")
_TIMEOUT_MARKERS = ("timeout", "timed out")


def classify_provider_error(error: Exception, provider: str) -> ProviderError:
    """Map a client library exception onto the provider error taxonomy.

    Client libraries raise their own exception hierarchies; the class name and
    message are enough to tell authentication, rate limiting and timeouts
    apart. Anything else is a generic transient ProviderError.
    """
    if isinstance(error, ProviderError):
        return error
    text = f"{type(error).__name__} {error}".lower()
    message = sanitize_error_message(f"{type(error).__name__}: {error}")
    if any(marker in text for marker in _AUTH_MARKERS):
        return ProviderAuthenticationError(message, provider)
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return RateLimitedError(message, provider)
    if any(marker in text for marker in _TIMEOUT_MARKERS):
        return ProviderTimeoutError(message, provider)
    return ProviderError(message, provider)

"""Exception types raised by the healing engine and its collaborators.

Callers of the engine never see these: every heal attempt resolves to a
HealResult. They cross the boundaries between the orchestrator, the
providers, the executor and the configuration layer.
"""

from typing import List, Optional


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


class ProviderError(Exception):
    """Base class for model provider failures.

    Transient subclasses are retried by the orchestrator; permanent ones
    open the provider's circuit immediately.
    """

    transient = True

    def __init__(self, message: str, provider: str = ""):
        super().__init__(message)
        self.provider = provider


class ProviderTimeoutError(ProviderError):
    """The provider did not answer within the per-call timeout."""


class RateLimitedError(ProviderError):
    """The provider rejected the call because of rate limiting."""

    def __init__(self, message: str, provider: str = "", retry_after: Optional[float] = None):
        super().__init__(message, provider)
        self.retry_after = retry_after


class ProviderAuthenticationError(ProviderError):
    """Credentials were rejected. Retrying cannot help."""

    transient = False


class MalformedResponseError(ProviderError):
    """The provider answered with something that is not a valid decision."""


class AllProvidersUnavailableError(Exception):
    """Every configured provider was skipped or exhausted."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class BudgetExceededError(Exception):
    """A request or cost cap would be exceeded by another provider call."""

    def __init__(self, message: str, limit_name: str = ""):
        super().__init__(message)
        self.limit_name = limit_name


class ActionExecutionError(Exception):
    """The action executor could not perform the healed action."""

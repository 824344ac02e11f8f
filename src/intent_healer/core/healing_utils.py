"""Utility functions for working with healing data models."""

import re
from typing import Optional, Sequence
from urllib.parse import urlsplit

from .models.healing_models import (
    ActionKind,
    FailureContext,
    FailureKind,
    IntentContract,
    SourceLocation
)


GHERKIN_KEYWORDS = ("given", "when", "then", "and", "but", "*")

_WHITESPACE = re.compile(r"\s+")
_UUID_SEGMENT = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
_NUMERIC_SEGMENT = re.compile(r"^\d+$")
_HEX_SEGMENT = re.compile(r"^[0-9a-f]{16,}$", re.IGNORECASE)
_MIXED_ID_SEGMENT = re.compile(r"^(?=.*\d)(?=.*[a-z])[a-z0-9_-]{12,}$", re.IGNORECASE)


def create_failure_context(
    feature: str,
    scenario: str,
    step_text: str,
    original_locator: str,
    exception_type: str,
    exception_message: str,
    page_url: str = "",
    run_id: str = "",
    step_id: str = "",
    tags: Sequence[str] = (),
    source_location: Optional[SourceLocation] = None
) -> FailureContext:
    """Create a FailureContext with automatic failure kind classification.

    Args:
        feature: Feature or suite name
        scenario: Scenario or test case name
        step_text: Text of the failing step
        original_locator: The locator that failed
        exception_type: Type of exception raised
        exception_message: Exception message
        page_url: URL where the failure occurred
        run_id: Identifier of the current test run
        step_id: Identifier of the failing step
        tags: Scenario tags
        source_location: Where the locator is defined in source code

    Returns:
        FailureContext: Populated failure context
    """
    return FailureContext(
        feature=feature,
        scenario=scenario,
        step_text=step_text,
        original_locator=original_locator,
        exception_type=exception_type,
        exception_message=exception_message,
        page_url=page_url,
        run_id=run_id,
        step_id=step_id,
        tags=tuple(tags),
        source_location=source_location
    )


def classify_failure_kind(exception_type: str, exception_message: str) -> FailureKind:
    """Classify the kind of failure based on exception details.

    Args:
        exception_type: Type of exception
        exception_message: Exception message

    Returns:
        FailureKind: Classified failure kind
    """
    exception_type_lower = (exception_type or "").lower()
    message_lower = (exception_message or "").lower()

    if ("assertionerror" in exception_type_lower or
            "assertion" in exception_type_lower):
        return FailureKind.ASSERTION_FAILURE

    # Check for element not found errors
    if ("nosuchelementexception" in exception_type_lower or
            "element not found" in message_lower or
            "unable to locate element" in message_lower or
            "no such element" in message_lower or
            "did not match any elements" in message_lower):
        return FailureKind.ELEMENT_NOT_FOUND

    # Check for stale element errors
    if ("staleelementreferenceexception" in exception_type_lower or
            "stale element" in message_lower or
            "element is no longer attached" in message_lower):
        return FailureKind.STALE_ELEMENT

    if ("elementclickinterceptedexception" in exception_type_lower or
            "click intercepted" in message_lower or
            "would receive the click" in message_lower):
        return FailureKind.CLICK_INTERCEPTED

    # Check for interactability errors
    if ("elementnotinteractableexception" in exception_type_lower or
            "element not interactable" in message_lower or
            "element is not clickable" in message_lower):
        return FailureKind.NOT_INTERACTABLE

    # Check for timeout errors
    if ("timeoutexception" in exception_type_lower or
            "timeout" in message_lower or
            "timed out" in message_lower):
        return FailureKind.TIMEOUT

    return FailureKind.UNKNOWN


def is_healable_failure(failure: FailureContext) -> bool:
    """Determine if a failure can be healed by choosing another element."""
    healable_kinds = {
        FailureKind.ELEMENT_NOT_FOUND,
        FailureKind.STALE_ELEMENT,
        FailureKind.CLICK_INTERCEPTED,
        FailureKind.NOT_INTERACTABLE,
        FailureKind.TIMEOUT
    }
    return failure.failure_kind in healable_kinds


def is_assertion_step(failure: FailureContext, intent: IntentContract) -> bool:
    """True when the step verifies state rather than acting on the page."""
    if intent.action == ActionKind.ASSERT:
        return True
    if failure.failure_kind == FailureKind.ASSERTION_FAILURE:
        return True
    words = (failure.step_text or "").strip().split()
    return bool(words) and words[0].lower() == "then"


def normalize_step_text(step_text: str) -> str:
    """Lower-case, strip the leading Gherkin keyword and collapse whitespace."""
    text = _WHITESPACE.sub(" ", (step_text or "").strip().lower())
    first, _, rest = text.partition(" ")
    if first in GHERKIN_KEYWORDS:
        text = rest
    return text.strip()


def _normalize_path_segment(segment: str) -> str:
    if (_NUMERIC_SEGMENT.match(segment) or _UUID_SEGMENT.match(segment) or
            _HEX_SEGMENT.match(segment) or _MIXED_ID_SEGMENT.match(segment)):
        return "{id}"
    return segment


def url_pattern(url: str) -> str:
    """Reduce a URL to scheme, host and path with id-like segments replaced.

    Query strings and fragments are dropped so that the same page visited
    with different record ids produces the same pattern.

    Examples:
        https://shop.test/orders/1234?tab=2 -> https://shop.test/orders/{id}
    """
    if not url:
        return ""
    parts = urlsplit(url.strip())
    segments = [_normalize_path_segment(s) for s in parts.path.split("/")]
    path = "/".join(segments)
    if parts.scheme or parts.netloc:
        return f"{parts.scheme.lower()}://{parts.netloc.lower()}{path}"
    return path


def mask_secret(value: Optional[str]) -> str:
    """Render a secret for logs without revealing it."""
    if not value:
        return "<unset>"
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}****{value[-2:]}"

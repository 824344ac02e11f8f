"""Prompt text sent to model providers."""

from typing import List

from ..core.models.healing_models import ElementCandidate, FailureContext, IntentContract, UiSnapshot

MAX_CANDIDATES = 40
MAX_TEXT_LENGTH = 80
_ATTRIBUTE_ORDER = ("type", "name", "aria-label", "role", "placeholder", "title",
                    "href", "data-testid", "data-test", "class")

SYSTEM_PROMPT = (
    "You are a senior test automation engineer repairing a broken UI locator. "
    "Choose the element on the current page that fulfils the same purpose as the "
    "element the step was written for. Refuse when no element clearly matches."
)

RESPONSE_INSTRUCTIONS = """Respond with JSON only, no prose, in exactly this shape:
{
  "can_heal": true or false,
  "confidence": number between 0.0 and 1.0,
  "selected_element_index": index of the chosen element or null,
  "reasoning": "one or two sentences in English",
  "refusal_reason": "why no element matches, or null"
}"""


def _truncate(text: str, limit: int = MAX_TEXT_LENGTH) -> str:
    text = " ".join((text or "").split())
    return text if len(text) <= limit else text[:limit - 3] + "..."


def format_candidate(candidate: ElementCandidate) -> str:
    """Render one candidate as a markdown bullet."""
    parts = [f"locator: {candidate.describe()}"]
    element_id = candidate.attributes.get("id")
    if element_id:
        parts.append(f"id: {element_id}")
    if candidate.text:
        parts.append(f"text: \"{_truncate(candidate.text)}\"")
    for name in _ATTRIBUTE_ORDER:
        value = candidate.attributes.get(name)
        if value:
            parts.append(f"{name}: \"{_truncate(value)}\"" if " " in value else f"{name}: {_truncate(value)}")
    if not candidate.visible:
        parts.append("hidden")
    if not candidate.enabled:
        parts.append("disabled")
    return f"- **[{candidate.index}]** `<{candidate.tag_name or 'element'}>` " + ", ".join(parts)


def build_heal_prompt(failure: FailureContext, snapshot: UiSnapshot, intent: IntentContract) -> str:
    """Build the instruction prompt for one heal attempt."""
    lines: List[str] = [
        SYSTEM_PROMPT,
        "",
        "## Failed step",
        f"- Feature: {failure.feature or 'unknown'}",
        f"- Scenario: {failure.scenario or 'unknown'}",
        f"- Step: {failure.step_text}",
        f"- Intended action: {intent.action.value} ({_truncate(intent.description, 200)})",
        f"- Original locator: {failure.original_locator}",
        f"- Error: {failure.exception_type}: {_truncate(failure.exception_message, 200)}",
        "",
        "## Page",
        f"- URL: {snapshot.url or failure.page_url or 'unknown'}",
        f"- Title: {snapshot.title or 'unknown'}",
        "",
        "## Interactive elements",
    ]

    if not snapshot.candidates:
        lines.append("No interactive elements found.")
    else:
        for candidate in snapshot.candidates[:MAX_CANDIDATES]:
            lines.append(format_candidate(candidate))
        remaining = len(snapshot.candidates) - MAX_CANDIDATES
        if remaining > 0:
            lines.append(f"... and {remaining} more elements")

    lines.extend(["", "## Answer", RESPONSE_INSTRUCTIONS])
    return "\n".join(lines)

"""Parsing of raw model output into HealDecision objects."""

import json
import re
from typing import Any, Dict, Optional

from ..core.exceptions import MalformedResponseError
from ..core.models.healing_models import HealDecision

_CODE_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json_object(text: str) -> Dict[str, Any]:
    """Pull the first JSON object out of text that may carry fences or prose.

    Raises:
        ValueError: No JSON object could be decoded
    """
    fenced = _CODE_FENCE.search(text)
    if fenced:
        text = fenced.group(1)

    start = text.find("{")
    if start < 0:
        raise ValueError("no JSON object in response")
    decoder = json.JSONDecoder()
    obj, _ = decoder.raw_decode(text[start:])
    if not isinstance(obj, dict):
        raise ValueError("response JSON is not an object")
    return obj


def parse_heal_response(text: Optional[str], candidate_count: int, provider: str = "",
                        cost_usd: float = 0.0) -> HealDecision:
    """Turn a provider answer into a HealDecision.

    Args:
        text: Raw model output
        candidate_count: Number of candidates offered in the prompt
        provider: Provider name recorded on the decision
        cost_usd: Estimated cost of the call

    Raises:
        MalformedResponseError: The answer is empty, not JSON, or inconsistent
    """
    if not text or not text.strip():
        raise MalformedResponseError("Empty response from model", provider)

    try:
        data = extract_json_object(text)
    except ValueError as e:
        raise MalformedResponseError(f"Response is not valid JSON: {e}", provider) from e

    if "can_heal" not in data:
        raise MalformedResponseError("Response is missing required field 'can_heal'", provider)

    try:
        confidence = float(data.get("confidence") or 0.0)
    except (TypeError, ValueError) as e:
        raise MalformedResponseError(f"Invalid confidence value: {data.get('confidence')!r}", provider) from e
    if not 0.0 <= confidence <= 1.0:
        raise MalformedResponseError(f"Confidence {confidence} outside [0.0, 1.0]", provider)

    reasoning = data.get("reasoning") or ""

    if not data.get("can_heal"):
        reason = data.get("refusal_reason") or "Model found no matching element"
        return HealDecision.refuse(str(reason), confidence=confidence, reasoning=str(reasoning),
                                   estimated_cost_usd=cost_usd, provider=provider)

    index = data.get("selected_element_index")
    if isinstance(index, bool) or not isinstance(index, (int, float)) or int(index) != index:
        raise MalformedResponseError(f"Invalid selected_element_index: {index!r}", provider)
    index = int(index)
    if not 0 <= index < candidate_count:
        raise MalformedResponseError(
            f"selected_element_index {index} out of range for {candidate_count} candidates", provider)

    return HealDecision.can_heal(index, confidence, reasoning=str(reasoning),
                                 estimated_cost_usd=cost_usd, provider=provider)

"""Online model provider backed by crewai's LiteLLM wrapper."""

import logging
from typing import Any, Optional

from crewai.llm import LLM

from ..core.models.healing_models import FailureContext, HealDecision, IntentContract, UiSnapshot
from .base import ModelProvider, classify_provider_error
from .prompt_builder import SYSTEM_PROMPT, build_heal_prompt
from .response_parser import parse_heal_response


logger = logging.getLogger("healer.orchestrator")


class CrewAIModelProvider(ModelProvider):
    """Calls an online model (Gemini by default) through ``crewai.llm.LLM``.

    Retries inside the client are disabled; the orchestrator owns retry and
    timeout policy.
    """

    def __init__(self, model: str, api_key: Optional[str] = None, name: Optional[str] = None,
                 cost_per_call_usd: float = 0.0, temperature: float = 0.0,
                 timeout_seconds: Optional[float] = None, llm: Optional[Any] = None):
        self.name = name or f"online:{model}"
        self.model = model
        self.cost_per_call_usd = cost_per_call_usd
        self.llm = llm or LLM(
            model=model,
            api_key=api_key,
            temperature=temperature,
            timeout=timeout_seconds,
            num_retries=0,
        )

    def evaluate(self, failure: FailureContext, snapshot: UiSnapshot,
                 intent: IntentContract) -> HealDecision:
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_heal_prompt(failure, snapshot, intent)},
        ]
        try:
            raw = self.llm.call(messages)
        except Exception as e:
            raise classify_provider_error(e, self.name) from e

        logger.debug(f"Model '{self.model}' answered with {len(raw or '')} characters")
        return parse_heal_response(raw, len(snapshot.candidates), self.name, self.cost_per_call_usd)

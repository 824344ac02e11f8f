"""Local model provider backed by Ollama through langchain-ollama."""

import logging
from typing import Any, Optional

from langchain_ollama import OllamaLLM

from ..core.models.healing_models import FailureContext, HealDecision, IntentContract, UiSnapshot
from .base import ModelProvider, classify_provider_error
from .prompt_builder import build_heal_prompt
from .response_parser import parse_heal_response


logger = logging.getLogger("healer.orchestrator")


class OllamaModelProvider(ModelProvider):
    """Calls a locally served model. Local calls are free by default."""

    def __init__(self, model: str, base_url: Optional[str] = None, name: Optional[str] = None,
                 cost_per_call_usd: float = 0.0, llm: Optional[Any] = None):
        self.name = name or f"local:{model}"
        self.model = model
        self.cost_per_call_usd = cost_per_call_usd
        if llm is None:
            kwargs = {"model": model, "temperature": 0.0, "format": "json"}
            if base_url:
                kwargs["base_url"] = base_url
            llm = OllamaLLM(**kwargs)
        self.llm = llm

    def evaluate(self, failure: FailureContext, snapshot: UiSnapshot,
                 intent: IntentContract) -> HealDecision:
        prompt = build_heal_prompt(failure, snapshot, intent)
        try:
            raw = self.llm.invoke(prompt)
        except Exception as e:
            raise classify_provider_error(e, self.name) from e

        logger.debug(f"Local model '{self.model}' answered with {len(raw or '')} characters")
        return parse_heal_response(raw, len(snapshot.candidates), self.name, self.cost_per_call_usd)

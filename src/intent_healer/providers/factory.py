"""Builds provider instances for the configured bindings."""

import logging
from typing import Callable, Dict, List, Optional, Tuple

from ..core.config import Settings
from ..core.exceptions import ConfigurationError
from ..core.healing_utils import mask_secret
from ..core.models.healing_models import HealerConfiguration, ProviderBinding
from .base import ModelProvider


logger = logging.getLogger("healer.orchestrator")

ProviderBuilder = Callable[[ProviderBinding, str, Settings], ModelProvider]


def _build_online(binding: ProviderBinding, model: str, settings: Settings) -> ModelProvider:
    from .crewai_provider import CrewAIModelProvider
    if not settings.GEMINI_API_KEY and model.startswith("gemini"):
        raise ConfigurationError(f"Provider '{binding.alias}' needs GEMINI_API_KEY for model '{model}'")
    logger.debug(f"Provider '{binding.alias}' authenticates with key {mask_secret(settings.GEMINI_API_KEY)}")
    return CrewAIModelProvider(model=model, api_key=settings.GEMINI_API_KEY,
                               cost_per_call_usd=binding.cost_per_call_usd)


def _build_local(binding: ProviderBinding, model: str, settings: Settings) -> ModelProvider:
    from .ollama_provider import OllamaModelProvider
    return OllamaModelProvider(model=model, base_url=settings.OLLAMA_BASE_URL,
                               cost_per_call_usd=binding.cost_per_call_usd)


BUILDERS: Dict[str, ProviderBuilder] = {
    "online": _build_online,
    "local": _build_local,
}


def build_providers(config: HealerConfiguration, settings: Settings,
                    builders: Optional[Dict[str, ProviderBuilder]] = None) -> List[Tuple[ProviderBinding, ModelProvider]]:
    """Instantiate one provider per distinct (kind, model) and pair it with each binding.

    Bindings without a model fall back to ONLINE_MODEL or LOCAL_MODEL.

    Raises:
        ConfigurationError: Unknown provider kind or missing credentials
    """
    builders = builders or BUILDERS
    instances: Dict[Tuple[str, str], ModelProvider] = {}
    bound: List[Tuple[ProviderBinding, ModelProvider]] = []

    for binding in config.providers:
        if binding.kind not in builders:
            raise ConfigurationError(f"Unknown provider kind '{binding.kind}' for '{binding.alias}'")
        model = binding.model or (settings.LOCAL_MODEL if binding.kind == "local" else settings.ONLINE_MODEL)
        key = (binding.kind, model)
        if key not in instances:
            instances[key] = builders[binding.kind](binding, model, settings)
            logger.info(f"Created {binding.kind} provider for model '{model}'")
        bound.append((binding, instances[key]))

    return bound

"""Model providers that choose replacement elements."""

from .base import ModelProvider, classify_provider_error
from .factory import build_providers

__all__ = [
    "ModelProvider",
    "classify_provider_error",
    "build_providers"
]

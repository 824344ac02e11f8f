"""
Healing services: decision engine, cache, resilience, guardrails and source updates.
"""

from .healing_engine import HealingEngine
from .healing_runtime import HealingRuntime

__all__ = [
    "HealingEngine",
    "HealingRuntime"
]

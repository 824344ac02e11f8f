"""Intent-aware self-healing for UI test steps."""

__version__ = "0.1.0"

"""
Core module for the intent healer.

This module contains:
- config.py: Process settings
- config_loader.py: YAML healing policy
- logging_config.py: Logging configuration
- metrics.py: Metrics collection
- audit_trail.py: Audit events
"""

__all__ = ["config", "config_loader", "logging_config", "metrics", "audit_trail"]

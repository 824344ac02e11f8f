"""Configuration loading and validation utilities for healing."""

import copy
import re
import yaml
from dataclasses import asdict
from pathlib import Path
from typing import Dict, Any, List, Optional
import logging

from .config import Settings
from .exceptions import ConfigurationError
from .models.healing_models import (
    AutoUpdateConfig,
    BudgetConfig,
    CacheConfig,
    CircuitBreakerConfig,
    GuardrailConfig,
    HealerConfiguration,
    ProviderBinding,
    RetryConfig
)

logger = logging.getLogger(__name__)

MAX_PATTERN_LENGTH = 500
PROVIDER_KINDS = ("online", "local")

# A quantified group that itself contains a quantifier, e.g. (a+)+ or (\w*)*
_NESTED_QUANTIFIER = re.compile(r"\((?:[^()\\]|\\.)*[+*}](?:[^()\\]|\\.)*\)\s*[+*{]")


def validate_regex_pattern(pattern: str) -> Optional[str]:
    """Return an error message if the pattern is unsafe or invalid, else None."""
    if not isinstance(pattern, str) or not pattern:
        return "pattern must be a non-empty string"
    if len(pattern) > MAX_PATTERN_LENGTH:
        return f"pattern longer than {MAX_PATTERN_LENGTH} characters"
    if _NESTED_QUANTIFIER.search(pattern):
        return f"pattern '{pattern}' contains nested quantifiers"
    try:
        re.compile(pattern)
    except re.error as e:
        return f"pattern '{pattern}' is not a valid regex: {e}"
    return None


class HealerConfigLoader:
    """Loads and validates the healing policy file."""

    DEFAULT_CONFIG = {
        "healer": {
            "enabled": True,
            "guardrails": {
                "min_confidence": 0.8,
                "max_heals_per_scenario": 3,
                "forbidden_keywords": [
                    "delete", "remove", "purchase", "pay", "transfer", "unsubscribe"
                ],
                "forbidden_url_patterns": []
            },
            "cache": {
                "enabled": True,
                "max_size": 1000,
                "success_ttl_seconds": 86400,
                "refusal_ttl_seconds": 3600,
                "sweep_interval_seconds": 60,
                "in_flight_wait_seconds": 60,
                "persistence_path": None
            },
            "circuit_breaker": {
                "failure_threshold": 3,
                "cooldown_seconds": 30,
                "cooldown_multiplier": 1.0,
                "max_cooldown_seconds": 300
            },
            "retry": {
                "max_attempts": 3,
                "base_delay_seconds": 0.5,
                "max_delay_seconds": 8.0,
                "jitter_ratio": 0.1,
                "call_timeout_seconds": 30
            },
            "budget": {
                "max_requests_per_run": 50,
                "max_daily_cost_usd": 5.0
            },
            "providers": [
                {"alias": "primary", "kind": "online", "model": "", "priority": 0,
                 "cost_per_call_usd": 0.0}
            ],
            "auto_update": {
                "enabled": False,
                "min_confidence": 0.9,
                "create_backups": True,
                "backup_dir": ".healer_backups",
                "backup_retention_days": 7,
                "exclude_patterns": [],
                "dry_run": False,
                "validated_heals_path": None,
                "pending_timeout_seconds": 3600
            }
        }
    }

    def __init__(self, config_path: Optional[str] = None, settings: Optional[Settings] = None):
        """Initialize config loader with optional custom path."""
        self.settings = settings or Settings()
        self.config_path = Path(config_path or self.settings.HEALER_CONFIG_PATH)
        self._config_cache: Optional[HealerConfiguration] = None
        self._config_file_mtime: Optional[float] = None

    def load_config(self, force_reload: bool = False) -> HealerConfiguration:
        """Load and validate the healing configuration.

        Args:
            force_reload: Force reload even if cached config exists

        Returns:
            HealerConfiguration: Validated configuration object

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if not force_reload and self._config_cache and self._is_config_current():
            return self._config_cache

        try:
            config_data = self._load_config_file()
            healer_config = self.parse_config(config_data)
            self.validate_config(healer_config)
        except ConfigurationError as e:
            logger.error(f"Failed to load healing configuration: {e}")
            raise
        except Exception as e:
            logger.error(f"Failed to load healing configuration: {e}")
            raise ConfigurationError(f"Configuration loading failed: {e}") from e

        self._config_cache = healer_config
        if self.config_path.exists():
            self._config_file_mtime = self.config_path.stat().st_mtime
        else:
            self._config_file_mtime = None

        logger.info(f"Loaded healing configuration from {self.config_path}")
        return healer_config

    def save_config(self, config: HealerConfiguration) -> None:
        """Save configuration to file.

        Raises:
            ConfigurationError: If the configuration is invalid or saving fails
        """
        self.validate_config(config)
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_data = {"healer": self.config_to_dict(config)}
            with open(self.config_path, 'w', encoding='utf-8') as f:
                yaml.safe_dump(config_data, f, default_flow_style=False, indent=2, sort_keys=False)
        except OSError as e:
            logger.error(f"Failed to save healing configuration: {e}")
            raise ConfigurationError(f"Configuration saving failed: {e}") from e

        self._config_cache = config
        self._config_file_mtime = self.config_path.stat().st_mtime
        logger.info(f"Saved healing configuration to {self.config_path}")

    def _load_config_file(self) -> Dict[str, Any]:
        """Load configuration from file or return defaults."""
        if not self.config_path.exists():
            logger.info(f"Config file {self.config_path} not found, using defaults")
            return copy.deepcopy(self.DEFAULT_CONFIG)

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")
        return self._deep_merge(copy.deepcopy(self.DEFAULT_CONFIG), config_data)

    def parse_config(self, config_data: Dict[str, Any]) -> HealerConfiguration:
        """Parse configuration data into a HealerConfiguration object."""
        section = config_data.get("healer") or {}
        if not isinstance(section, dict):
            raise ConfigurationError("'healer' section must be a mapping")

        try:
            providers = [ProviderBinding(**binding) for binding in section.get("providers") or []]
            config = HealerConfiguration(
                enabled=bool(section.get("enabled", True)),
                guardrails=GuardrailConfig(**(section.get("guardrails") or {})),
                cache=CacheConfig(**(section.get("cache") or {})),
                circuit_breaker=CircuitBreakerConfig(**(section.get("circuit_breaker") or {})),
                retry=RetryConfig(**(section.get("retry") or {})),
                budget=BudgetConfig(**(section.get("budget") or {})),
                providers=providers,
                auto_update=AutoUpdateConfig(**(section.get("auto_update") or {}))
            )
        except TypeError as e:
            raise ConfigurationError(f"Unknown or malformed configuration key: {e}") from e

        if not self.settings.HEALER_ENABLED:
            config.enabled = False
        return config

    def config_to_dict(self, config: HealerConfiguration) -> Dict[str, Any]:
        """Convert HealerConfiguration to the nested dictionary layout of the file."""
        return asdict(config)

    def validate_config(self, config: HealerConfiguration) -> None:
        """Validate configuration values.

        Raises:
            ConfigurationError: If validation fails
        """
        errors: List[str] = []

        guardrails = config.guardrails
        if not 0.0 <= guardrails.min_confidence <= 1.0:
            errors.append("guardrails.min_confidence must be between 0.0 and 1.0")
        if guardrails.max_heals_per_scenario < 0 or guardrails.max_heals_per_scenario > 100:
            errors.append("guardrails.max_heals_per_scenario must be between 0 and 100")
        if not isinstance(guardrails.forbidden_keywords, list):
            errors.append("guardrails.forbidden_keywords must be a list")
        elif any(not isinstance(k, str) or not k.strip() for k in guardrails.forbidden_keywords):
            errors.append("guardrails.forbidden_keywords entries must be non-empty strings")
        if not isinstance(guardrails.forbidden_url_patterns, list):
            errors.append("guardrails.forbidden_url_patterns must be a list")
        else:
            for pattern in guardrails.forbidden_url_patterns:
                problem = validate_regex_pattern(pattern)
                if problem:
                    errors.append(f"guardrails.forbidden_url_patterns: {problem}")

        cache = config.cache
        if cache.max_size < 1 or cache.max_size > 1_000_000:
            errors.append("cache.max_size must be between 1 and 1000000")
        if cache.success_ttl_seconds <= 0:
            errors.append("cache.success_ttl_seconds must be positive")
        if cache.refusal_ttl_seconds <= 0:
            errors.append("cache.refusal_ttl_seconds must be positive")
        if cache.refusal_ttl_seconds > cache.success_ttl_seconds:
            errors.append("cache.refusal_ttl_seconds must not exceed cache.success_ttl_seconds")
        if cache.sweep_interval_seconds <= 0:
            errors.append("cache.sweep_interval_seconds must be positive")
        if cache.in_flight_wait_seconds <= 0:
            errors.append("cache.in_flight_wait_seconds must be positive")

        breaker = config.circuit_breaker
        if breaker.failure_threshold < 1 or breaker.failure_threshold > 100:
            errors.append("circuit_breaker.failure_threshold must be between 1 and 100")
        if breaker.cooldown_seconds <= 0:
            errors.append("circuit_breaker.cooldown_seconds must be positive")
        if breaker.cooldown_multiplier < 1.0:
            errors.append("circuit_breaker.cooldown_multiplier must be at least 1.0")
        if breaker.max_cooldown_seconds < breaker.cooldown_seconds:
            errors.append("circuit_breaker.max_cooldown_seconds must be >= cooldown_seconds")

        retry = config.retry
        if retry.max_attempts < 1 or retry.max_attempts > 10:
            errors.append("retry.max_attempts must be between 1 and 10")
        if retry.base_delay_seconds < 0:
            errors.append("retry.base_delay_seconds must not be negative")
        if retry.max_delay_seconds < retry.base_delay_seconds:
            errors.append("retry.max_delay_seconds must be >= base_delay_seconds")
        if not 0.0 <= retry.jitter_ratio <= 1.0:
            errors.append("retry.jitter_ratio must be between 0.0 and 1.0")
        if retry.call_timeout_seconds <= 0 or retry.call_timeout_seconds > 600:
            errors.append("retry.call_timeout_seconds must be between 0 and 600 seconds")

        budget = config.budget
        if budget.max_requests_per_run < 1:
            errors.append("budget.max_requests_per_run must be at least 1")
        if budget.max_daily_cost_usd < 0:
            errors.append("budget.max_daily_cost_usd must not be negative")

        if not config.providers:
            errors.append("At least one provider binding must be configured")
        aliases = [binding.alias for binding in config.providers]
        if len(aliases) != len(set(aliases)):
            errors.append("Duplicate provider aliases are not allowed")
        for binding in config.providers:
            if not binding.alias:
                errors.append("Provider binding alias must not be empty")
            if binding.kind not in PROVIDER_KINDS:
                errors.append(f"Provider '{binding.alias}' kind must be one of {PROVIDER_KINDS}")
            if binding.cost_per_call_usd < 0:
                errors.append(f"Provider '{binding.alias}' cost_per_call_usd must not be negative")

        auto_update = config.auto_update
        if not 0.0 <= auto_update.min_confidence <= 1.0:
            errors.append("auto_update.min_confidence must be between 0.0 and 1.0")
        if auto_update.backup_retention_days < 1 or auto_update.backup_retention_days > 365:
            errors.append("auto_update.backup_retention_days must be between 1 and 365")
        if auto_update.pending_timeout_seconds <= 0:
            errors.append("auto_update.pending_timeout_seconds must be positive")

        if errors:
            raise ConfigurationError("Configuration validation failed: " + "; ".join(errors))

    def _is_config_current(self) -> bool:
        """Check if cached config is still current."""
        if not self.config_path.exists():
            return self._config_file_mtime is None

        current_mtime = self.config_path.stat().st_mtime
        return self._config_file_mtime == current_mtime

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def create_default_config_file(self) -> None:
        """Create a default configuration file if it doesn't exist."""
        if not self.config_path.exists():
            self.save_config(HealerConfiguration())
            logger.info(f"Created default healing config at {self.config_path}")


def get_healing_config(config_path: Optional[str] = None,
                       settings: Optional[Settings] = None) -> HealerConfiguration:
    """Load the healing configuration from the given or configured path.

    Args:
        config_path: Optional override of HEALER_CONFIG_PATH
        settings: Process settings; read from the environment when omitted

    Returns:
        HealerConfiguration: Current configuration
    """
    return HealerConfigLoader(config_path, settings).load_config()

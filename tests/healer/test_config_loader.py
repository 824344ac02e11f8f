"""Unit tests for healing configuration loading and validation."""

import pytest
import yaml
from pydantic import ValidationError

from src.intent_healer.core.config import Settings
from src.intent_healer.core.config_loader import (
    HealerConfigLoader,
    get_healing_config,
    validate_regex_pattern
)
from src.intent_healer.core.exceptions import ConfigurationError
from src.intent_healer.core.models.healing_models import HealerConfiguration


def write_config(path, data):
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class TestHealerConfigLoader:
    """Test cases for HealerConfigLoader."""

    def setup_method(self):
        self.settings = Settings(HEALER_ENABLED=True)

    def test_missing_file_yields_defaults(self, tmp_path):
        config = HealerConfigLoader(str(tmp_path / "absent.yml"), self.settings).load_config()

        assert config.enabled
        assert config.guardrails.min_confidence == 0.8
        assert config.cache.success_ttl_seconds == 86400
        assert [b.alias for b in config.providers] == ["primary"]

    def test_partial_file_merged_over_defaults(self, tmp_path):
        path = write_config(tmp_path / "healer.yml", {
            "healer": {
                "guardrails": {"min_confidence": 0.9, "forbidden_url_patterns": [r"/admin/"]},
                "budget": {"max_daily_cost_usd": 2.5},
                "providers": [
                    {"alias": "fast", "kind": "local", "model": "llama3", "priority": 0},
                    {"alias": "smart", "kind": "online", "priority": 1, "cost_per_call_usd": 0.002}
                ]
            }
        })

        config = HealerConfigLoader(str(path), self.settings).load_config()

        assert config.guardrails.min_confidence == 0.9
        assert config.guardrails.max_heals_per_scenario == 3
        assert config.guardrails.forbidden_url_patterns == [r"/admin/"]
        assert config.budget.max_daily_cost_usd == 2.5
        assert config.budget.max_requests_per_run == 50
        assert [(b.alias, b.kind) for b in config.providers] == [("fast", "local"), ("smart", "online")]

    def test_kill_switch_overrides_file(self, tmp_path):
        path = write_config(tmp_path / "healer.yml", {"healer": {"enabled": True}})

        config = HealerConfigLoader(str(path), Settings(HEALER_ENABLED=False)).load_config()

        assert not config.enabled

    @pytest.mark.parametrize("section,values,message", [
        ("guardrails", {"min_confidence": 1.5}, "guardrails.min_confidence"),
        ("guardrails", {"forbidden_url_patterns": ["(a+)+$"]}, "nested quantifiers"),
        ("cache", {"refusal_ttl_seconds": 90000}, "must not exceed"),
        ("circuit_breaker", {"failure_threshold": 0}, "failure_threshold"),
        ("circuit_breaker", {"cooldown_multiplier": 0.5}, "cooldown_multiplier"),
        ("retry", {"max_attempts": 0}, "retry.max_attempts"),
        ("budget", {"max_requests_per_run": 0}, "max_requests_per_run"),
        ("auto_update", {"min_confidence": -0.1}, "auto_update.min_confidence"),
    ])
    def test_invalid_values_rejected(self, tmp_path, section, values, message):
        path = write_config(tmp_path / "healer.yml", {"healer": {section: values}})

        with pytest.raises(ConfigurationError, match=message):
            HealerConfigLoader(str(path), self.settings).load_config()

    def test_duplicate_aliases_and_unknown_kind_rejected(self, tmp_path):
        path = write_config(tmp_path / "healer.yml", {"healer": {"providers": [
            {"alias": "a", "kind": "online"},
            {"alias": "a", "kind": "cloud"}
        ]}})

        with pytest.raises(ConfigurationError) as exc_info:
            HealerConfigLoader(str(path), self.settings).load_config()

        assert "Duplicate provider aliases" in str(exc_info.value)
        assert "kind must be one of" in str(exc_info.value)

    def test_unknown_key_rejected(self, tmp_path):
        path = write_config(tmp_path / "healer.yml", {"healer": {"cache": {"size": 10}}})

        with pytest.raises(ConfigurationError, match="Unknown or malformed"):
            HealerConfigLoader(str(path), self.settings).load_config()

    def test_assertion_override_key_rejected(self, tmp_path):
        path = write_config(tmp_path / "healer.yml",
                            {"healer": {"guardrails": {"allow_healing_assertions": True}}})

        with pytest.raises(ConfigurationError, match="Unknown or malformed"):
            HealerConfigLoader(str(path), self.settings).load_config()

    def test_invalid_yaml_rejected(self, tmp_path):
        path = tmp_path / "healer.yml"
        path.write_text("healer: [unclosed", encoding="utf-8")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            HealerConfigLoader(str(path), self.settings).load_config()

    def test_non_mapping_file_rejected(self, tmp_path):
        path = tmp_path / "healer.yml"
        path.write_text("- just\n- a list\n", encoding="utf-8")

        with pytest.raises(ConfigurationError, match="mapping"):
            HealerConfigLoader(str(path), self.settings).load_config()

    def test_config_cached_until_file_changes(self, tmp_path):
        path = write_config(tmp_path / "healer.yml", {"healer": {"budget": {"max_daily_cost_usd": 1.0}}})
        loader = HealerConfigLoader(str(path), self.settings)

        first = loader.load_config()
        assert loader.load_config() is first
        assert loader.load_config(force_reload=True) is not first

    def test_save_and_reload(self, tmp_path):
        loader = HealerConfigLoader(str(tmp_path / "conf" / "healer.yml"), self.settings)
        config = HealerConfiguration()
        config.guardrails.forbidden_keywords = ["wire money"]
        config.auto_update.enabled = True

        loader.save_config(config)
        reloaded = HealerConfigLoader(str(tmp_path / "conf" / "healer.yml"), self.settings).load_config()

        assert reloaded.guardrails.forbidden_keywords == ["wire money"]
        assert reloaded.auto_update.enabled

    def test_create_default_config_file(self, tmp_path):
        path = tmp_path / "healer.yml"
        HealerConfigLoader(str(path), self.settings).create_default_config_file()

        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        assert data["healer"]["cache"]["max_size"] == 1000

    def test_get_healing_config(self, tmp_path):
        config = get_healing_config(str(tmp_path / "none.yml"), self.settings)

        assert isinstance(config, HealerConfiguration)


class TestRegexValidation:
    """Test cases for forbidden URL pattern validation."""

    @pytest.mark.parametrize("pattern", [r"/checkout", r"^https://admin\.", r"/orders/\d+/refund"])
    def test_safe_patterns(self, pattern):
        assert validate_regex_pattern(pattern) is None

    @pytest.mark.parametrize("pattern,problem", [
        ("", "non-empty"),
        ("(unclosed", "not a valid regex"),
        (r"(\w+)*x", "nested quantifiers"),
        ("a" * 501, "longer than"),
    ])
    def test_rejected_patterns(self, pattern, problem):
        assert problem in validate_regex_pattern(pattern)


class TestSettings:
    """Test cases for environment settings validation."""

    def test_values_normalized(self):
        settings = Settings(LOG_LEVEL="debug", MODEL_PROVIDER="LOCAL",
                            OLLAMA_BASE_URL="http://ollama:11434/")

        assert settings.LOG_LEVEL == "DEBUG"
        assert settings.MODEL_PROVIDER == "local"
        assert settings.OLLAMA_BASE_URL == "http://ollama:11434"

    @pytest.mark.parametrize("field,value", [
        ("MODEL_PROVIDER", "azure"),
        ("LOG_LEVEL", "verbose"),
        ("OLLAMA_BASE_URL", "ollama:11434"),
    ])
    def test_invalid_values_rejected(self, field, value):
        with pytest.raises(ValidationError, match=field):
            Settings(**{field: value})

    def test_env_file_configured(self):
        assert Settings.model_config["env_file"] == ".env"
        assert Settings.model_config["extra"] == "allow"

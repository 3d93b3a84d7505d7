"""
Unit tests for configuration loading and validation.

Tests YAML overrides of the built-in tables and strict error handling.
"""

import os
import tempfile
from decimal import Decimal

import pytest
import yaml

from ai_request_router.config.loader import (
    RuntimeSettings,
    default_config,
    load_routing_config,
)
from ai_request_router.core.pricing import PRICING_TABLE
from ai_request_router.core.quota import DEFAULT_QUOTAS
from ai_request_router.core.tiers import Tier
from ai_request_router.storage.models import TaskType


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_none_path_gives_defaults(self):
        config = load_routing_config(None)
        assert config.pricing == PRICING_TABLE
        assert config.quotas == DEFAULT_QUOTAS
        assert config.runtime == RuntimeSettings()
        assert default_config().runtime.warning_fraction == 0.05

    def test_overrides_merge_with_defaults(self):
        config_path = self._write_config({
            "model_costs": {"my-model": 0.25, "flux-dev": "0.12"},
            "tier_budgets": {"starter": 9.99},
            "cheaper_alternatives": {"my-model": ["flux-dev"]},
            "quotas": {"free": {"image": {"daily": 3}}},
            "runtime": {"warning_fraction": 0.1, "cache_ttl_seconds": 2},
        })

        config = load_routing_config(config_path)

        assert config.pricing.get_model_cost("my-model") == Decimal("0.25")
        assert config.pricing.get_model_cost("flux-dev") == Decimal("0.12")
        assert config.pricing.get_model_cost("4o-image") == Decimal("0.40")
        assert config.pricing.get_tier_budget(Tier.STARTER) == Decimal("9.99")
        assert config.pricing.get_tier_budget(Tier.PRO) == Decimal("11.99")
        assert config.pricing.get_alternatives("my-model") == ("flux-dev",)

        image = config.quotas[Tier.FREE][TaskType.IMAGE]
        assert (image.daily, image.weekly, image.monthly) == (3, 8, 20)

        assert config.runtime.warning_fraction == 0.1
        assert config.runtime.cache_ttl_seconds == 2.0
        assert config.runtime.context_history_limit == 10

    def test_free_model_override(self):
        config_path = self._write_config({
            "model_costs": {"house-free-image": 0},
            "free_models": {"pro": {"image": "house-free-image"}},
        })
        config = load_routing_config(config_path)
        assert config.pricing.get_free_model(Tier.PRO, TaskType.IMAGE) == "house-free-image"

    def test_paid_free_model_rejected(self):
        config_path = self._write_config({"free_models": {"pro": {"image": "flux-dev"}}})
        with pytest.raises(ValueError, match="must cost 0"):
            load_routing_config(config_path)

    def test_missing_file_raises(self):
        with pytest.raises(FileNotFoundError, match="Router config file not found"):
            load_routing_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_empty_file_raises(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("")
        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_routing_config(config_path)

    def test_invalid_yaml_raises(self):
        config_path = os.path.join(self.temp_dir, "broken.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("model_costs: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_routing_config(config_path)

    def test_unknown_top_level_key_rejected(self):
        config_path = self._write_config({"budget": {"daily": 10}})
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_routing_config(config_path)

    @pytest.mark.parametrize("config_data,message", [
        ({"model_costs": {"flux-dev": -1}}, "must be >= 0"),
        ({"model_costs": {"flux-dev": "cheap"}}, "must be a number"),
        ({"model_costs": {"flux-dev": True}}, "must be a number"),
        ({"tier_budgets": {"gold": 5}}, "Unknown tier"),
        ({"quotas": {"free": {"hologram": {"daily": 1}}}}, "Unknown task type"),
        ({"quotas": {"free": {"image": {"hourly": 1}}}}, "Unknown keys"),
        ({"cheaper_alternatives": {"flux-dev": "4o-image"}}, "must be a list"),
        ({"runtime": {"warning_fraction": "high"}}, "must be float"),
        ({"runtime": {"max_workers": True}}, "must be int"),
        ({"runtime": {"retries": 3}}, "Unknown runtime keys"),
        ({"runtime": {"daily_reset_hour_utc": 24}}, "between 0 and 23"),
        ({"runtime": {"interpretation_history_turns": 0}}, "interpretation_history_turns must be > 0"),
    ])
    def test_invalid_values_rejected(self, config_data, message):
        config_path = self._write_config(config_data)
        with pytest.raises(ValueError, match=message):
            load_routing_config(config_path)

    def test_interpretation_history_turns_override(self):
        config_path = self._write_config({
            "runtime": {"interpretation_history_turns": 4, "context_history_limit": 20}
        })
        config = load_routing_config(config_path)

        assert config.runtime.interpretation_history_turns == 4
        assert config.runtime.context_history_limit == 20
        assert RuntimeSettings().interpretation_history_turns == 10

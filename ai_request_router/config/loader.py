"""
Configuration management and loading.

Built-in tables cover every tier and task type; a YAML file may override
any part of them. Validation is strict: unknown keys, negative amounts
and non-free entries in the free-model ladder are rejected.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ai_request_router.core.pricing import PRICING_TABLE, PricingTable
from ai_request_router.core.quota import DEFAULT_QUOTAS, QuotaCaps, QuotaTable
from ai_request_router.core.tiers import Tier
from ai_request_router.storage.models import TaskType


@dataclass(frozen=True)
class RuntimeSettings:
    """Operational knobs for the router."""
    warning_fraction: float = 0.05
    context_history_limit: int = 10
    interpretation_history_turns: int = 10
    processing_timeout_seconds: int = 600
    cache_ttl_seconds: float = 5.0
    daily_reset_hour_utc: int = 0
    week_start_day: int = 0
    interpretation_model: str = "gpt-4o-mini"
    max_workers: int = 4

    def __post_init__(self):
        """Validate runtime values."""
        if not 0 <= self.warning_fraction <= 1:
            raise ValueError("warning_fraction must be between 0 and 1")
        if self.context_history_limit < 0:
            raise ValueError("context_history_limit must be >= 0")
        if self.interpretation_history_turns <= 0:
            raise ValueError("interpretation_history_turns must be > 0")
        if self.processing_timeout_seconds <= 0:
            raise ValueError("processing_timeout_seconds must be > 0")
        if self.cache_ttl_seconds < 0:
            raise ValueError("cache_ttl_seconds must be >= 0")
        if not 0 <= self.daily_reset_hour_utc <= 23:
            raise ValueError("daily_reset_hour_utc must be between 0 and 23")
        if not 0 <= self.week_start_day <= 6:
            raise ValueError("week_start_day must be between 0 (Monday) and 6 (Sunday)")
        if not self.interpretation_model or not self.interpretation_model.strip():
            raise ValueError("interpretation_model cannot be empty")
        if self.max_workers <= 0:
            raise ValueError("max_workers must be > 0")


@dataclass(frozen=True)
class RoutingConfig:
    """Complete router configuration."""
    pricing: PricingTable = PRICING_TABLE
    quotas: QuotaTable = field(default_factory=lambda: DEFAULT_QUOTAS)
    runtime: RuntimeSettings = field(default_factory=RuntimeSettings)


_RUNTIME_TYPES = {
    "warning_fraction": float,
    "context_history_limit": int,
    "interpretation_history_turns": int,
    "processing_timeout_seconds": int,
    "cache_ttl_seconds": float,
    "daily_reset_hour_utc": int,
    "week_start_day": int,
    "interpretation_model": str,
    "max_workers": int,
}

_TOP_LEVEL_KEYS = {
    "model_costs",
    "unknown_model_cost",
    "tier_budgets",
    "cheaper_alternatives",
    "free_models",
    "quotas",
    "runtime",
}


def default_config() -> RoutingConfig:
    return RoutingConfig()


def load_routing_config(path: Optional[str]) -> RoutingConfig:
    """Load and validate router configuration from a YAML file.

    Values in the file override the built-in defaults; anything not
    mentioned keeps its default.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated RoutingConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return default_config()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Router config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - _TOP_LEVEL_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    return build_routing_config(raw_config)


def build_routing_config(raw_config: Dict[str, Any]) -> RoutingConfig:
    """Overlay an already-parsed mapping onto the defaults."""
    base = PRICING_TABLE

    model_costs = dict(base.model_costs)
    for model, cost in _section(raw_config, "model_costs").items():
        model_costs[str(model)] = _amount(cost, f"model_costs.{model}")

    unknown_cost = base.unknown_model_cost
    if "unknown_model_cost" in raw_config:
        unknown_cost = _amount(raw_config["unknown_model_cost"], "unknown_model_cost")

    tier_budgets = dict(base.tier_budgets)
    for tier_name, budget in _section(raw_config, "tier_budgets").items():
        tier_budgets[_tier(tier_name, "tier_budgets")] = _amount(
            budget, f"tier_budgets.{tier_name}"
        )

    alternatives = dict(base.cheaper_alternatives)
    for model, chain in _section(raw_config, "cheaper_alternatives").items():
        if not isinstance(chain, list) or not all(isinstance(m, str) and m for m in chain):
            raise ValueError(f"cheaper_alternatives.{model} must be a list of model names")
        alternatives[str(model)] = tuple(chain)

    free_models = {tier: dict(ladder) for tier, ladder in base.free_models.items()}
    for tier_name, ladder in _section(raw_config, "free_models").items():
        tier = _tier(tier_name, "free_models")
        if not isinstance(ladder, dict):
            raise ValueError(f"free_models.{tier_name} must be a dictionary")
        for type_name, model in ladder.items():
            task_type = _task_type(type_name, f"free_models.{tier_name}")
            if not isinstance(model, str) or not model:
                raise ValueError(f"free_models.{tier_name}.{type_name} must be a model name")
            free_models[tier][task_type] = model

    pricing = replace(
        base,
        model_costs=model_costs,
        unknown_model_cost=unknown_cost,
        tier_budgets=tier_budgets,
        cheaper_alternatives=alternatives,
        free_models=free_models,
    )

    return RoutingConfig(
        pricing=pricing,
        quotas=_parse_quotas(_section(raw_config, "quotas")),
        runtime=_parse_runtime(_section(raw_config, "runtime")),
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[Any, Any]:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _amount(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if amount < 0:
        raise ValueError(f"'{path}' must be >= 0")
    return amount


def _tier(name: Any, path: str) -> Tier:
    try:
        return Tier(str(name).lower())
    except ValueError:
        valid = [tier.value for tier in Tier]
        raise ValueError(f"Unknown tier '{name}' in {path}; must be one of: {valid}")


def _task_type(name: Any, path: str) -> TaskType:
    task_type = TaskType.parse(name)
    if task_type is None:
        valid = [t.value for t in TaskType]
        raise ValueError(f"Unknown task type '{name}' in {path}; must be one of: {valid}")
    return task_type


def _parse_quotas(data: Dict[Any, Any]) -> QuotaTable:
    quotas = {tier: dict(caps) for tier, caps in DEFAULT_QUOTAS.items()}
    for tier_name, features in data.items():
        tier = _tier(tier_name, "quotas")
        if not isinstance(features, dict):
            raise ValueError(f"quotas.{tier_name} must be a dictionary")
        for type_name, caps in features.items():
            path = f"quotas.{tier_name}.{type_name}"
            task_type = _task_type(type_name, f"quotas.{tier_name}")
            if not isinstance(caps, dict):
                raise ValueError(f"{path} must be a dictionary")
            unknown_keys = set(caps.keys()) - {"daily", "weekly", "monthly"}
            if unknown_keys:
                raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
            current = quotas[tier].get(task_type, QuotaCaps(daily=0, weekly=0, monthly=0))
            quotas[tier][task_type] = replace(current, **caps)
    return quotas


def _parse_runtime(data: Dict[Any, Any]) -> RuntimeSettings:
    unknown_keys = set(data.keys()) - set(_RUNTIME_TYPES)
    if unknown_keys:
        raise ValueError(f"Unknown runtime keys: {unknown_keys}")

    values = {}
    for key, value in data.items():
        expected = _RUNTIME_TYPES[key]
        if isinstance(value, bool):
            raise ValueError(f"'runtime.{key}' must be {expected.__name__}")
        if expected is float and isinstance(value, int):
            value = float(value)
        if not isinstance(value, expected):
            raise ValueError(f"'runtime.{key}' must be {expected.__name__}")
        values[key] = value
    return RuntimeSettings(**values)

"""
Unit tests for pricing tables.

Tests cost lookups, tier budgets, routing and spend projection.
"""

from dataclasses import replace
from decimal import Decimal

import pytest

from ai_request_router.core.pricing import (
    PRICING_TABLE,
    Complexity,
    estimate_monthly_spend,
)
from ai_request_router.core.tiers import Tier, normalize_tier
from ai_request_router.storage.models import TaskType


class TestTiers:
    def test_normalize_known_names(self):
        assert normalize_tier("PRO") == Tier.PRO
        assert normalize_tier(" starter ") == Tier.STARTER
        assert normalize_tier(Tier.PREMIUM) == Tier.PREMIUM

    def test_unknown_tier_is_free(self):
        assert normalize_tier("platinum") == Tier.FREE
        assert normalize_tier(None) == Tier.FREE


class TestPricingTable:
    """Test pricing table functionality."""

    def test_known_model_cost(self):
        assert PRICING_TABLE.get_model_cost("nano-banana-pro") == Decimal("0.50")
        assert PRICING_TABLE.get_model_cost("sora-2-text-to-video") == Decimal("1.50")

    def test_unknown_model_gets_conservative_default(self):
        assert PRICING_TABLE.get_model_cost("mystery-model") == Decimal("0.05")

    def test_tier_budgets(self):
        assert PRICING_TABLE.get_tier_budget(Tier.FREE) == Decimal("0.50")
        assert PRICING_TABLE.get_tier_budget(Tier.STARTER) == Decimal("4.99")
        assert PRICING_TABLE.get_tier_budget(Tier.PRO) == Decimal("11.99")
        assert PRICING_TABLE.get_tier_budget(Tier.PREMIUM) == Decimal("23.99")

    def test_alternatives_keep_declared_order(self):
        assert PRICING_TABLE.get_alternatives("nano-banana-pro") == (
            "bytedance/seedream-v4-text-to-image",
            "4o-image",
            "flux-kontext-pro",
            "flux-dev",
        )
        assert PRICING_TABLE.get_alternatives("flux-dev") == ()

    def test_every_free_model_costs_zero(self):
        for tier in Tier:
            for task_type in TaskType:
                model = PRICING_TABLE.get_free_model(tier, task_type)
                assert PRICING_TABLE.get_model_cost(model) == Decimal("0")

    def test_free_ladder_improves_with_tier(self):
        assert PRICING_TABLE.get_free_model(Tier.FREE, TaskType.CHAT) == "deepseek/deepseek-chat:free"
        assert PRICING_TABLE.get_free_model(Tier.STARTER, TaskType.CHAT) == "deepseek/deepseek-r1:free"
        assert PRICING_TABLE.get_free_model(Tier.PREMIUM, TaskType.TTS) == "aura-2-zeus-en"

    def test_paid_free_model_rejected(self):
        ladder = {tier: dict(models) for tier, models in PRICING_TABLE.free_models.items()}
        ladder[Tier.PRO][TaskType.IMAGE] = "flux-dev"
        with pytest.raises(ValueError, match="must cost 0"):
            replace(PRICING_TABLE, free_models=ladder)

    def test_negative_cost_rejected(self):
        costs = dict(PRICING_TABLE.model_costs)
        costs["flux-dev"] = Decimal("-1")
        with pytest.raises(ValueError, match="must be >= 0"):
            replace(PRICING_TABLE, model_costs=costs)


class TestRouting:
    def test_preferred_model_by_tier_and_complexity(self):
        assert PRICING_TABLE.preferred_model(
            TaskType.IMAGE, Complexity.SIMPLE, Tier.PREMIUM
        ) == "nano-banana-pro"
        assert PRICING_TABLE.preferred_model(
            TaskType.CHAT, Complexity.COMPLEX, Tier.PREMIUM
        ) == "anthropic/claude-opus-4.1"

    def test_missing_complexity_falls_back_to_simple(self):
        assert PRICING_TABLE.preferred_model(
            TaskType.VIDEO, Complexity.MEDIUM, Tier.STARTER
        ) == "veo3_fast"

    def test_aliased_task_types(self):
        assert PRICING_TABLE.preferred_model(
            TaskType.IMAGE_EDIT, Complexity.SIMPLE, Tier.PRO
        ) == "4o-image"
        assert PRICING_TABLE.preferred_model(
            TaskType.PPT, Complexity.MEDIUM, Tier.PRO
        ) == "anthropic/claude-3.5-sonnet"

    def test_complexity_parse(self):
        assert Complexity.parse("COMPLEX") == Complexity.COMPLEX
        assert Complexity.parse("weird") == Complexity.MEDIUM
        assert Complexity.parse(None, Complexity.SIMPLE) == Complexity.SIMPLE


class TestSpendProjection:
    def test_linear_projection(self):
        # $1.00 over 10 days -> $3.00 over 30
        assert estimate_monthly_spend(Decimal("1.00"), 10) == Decimal("3.00")

    def test_rounds_up(self):
        assert estimate_monthly_spend(Decimal("1.00"), 7) == Decimal("4.29")

    def test_day_must_be_positive(self):
        with pytest.raises(ValueError):
            estimate_monthly_spend(Decimal("1.00"), 0)

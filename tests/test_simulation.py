"""
Tests for the budget run simulation.
"""
from decimal import Decimal

import pytest

from ai_request_router.core.simulation import SimulationVerdict, simulate_budget_run
from ai_request_router.core.tiers import Tier
from ai_request_router.storage.models import TaskType


class TestSimulation:
    """Test simulation functionality."""

    def test_all_requests_fit_budget(self):
        result = simulate_budget_run("flux-dev", TaskType.IMAGE, Tier.STARTER, 12)

        assert result.overall_verdict == SimulationVerdict.PASS
        assert result.total_spend == Decimal("1.20")
        assert result.first_downgrade is None
        assert len(result.steps) == 12

    def test_paid_downgrade_is_warning(self):
        result = simulate_budget_run("nano-banana-pro", TaskType.IMAGE, "starter", 10)

        assert result.overall_verdict == SimulationVerdict.WARN
        assert result.first_downgrade == 10
        assert result.steps[-1].selection.model == "4o-image"
        assert result.first_free is None

    def test_reaching_free_floor_fails(self):
        result = simulate_budget_run("nano-banana-pro", TaskType.IMAGE, Tier.STARTER, 12)

        assert result.overall_verdict == SimulationVerdict.FAIL
        assert result.first_downgrade == 10
        assert result.first_free == 11
        assert result.total_spend == Decimal("4.90")
        assert result.total_spend <= result.monthly_budget
        assert result.steps[10].remaining_before == Decimal("0.09")

    def test_starting_spend(self):
        result = simulate_budget_run(
            "nano-banana-pro", TaskType.IMAGE, Tier.STARTER, 1, starting_spend=Decimal("4.99")
        )
        assert result.first_free == 1
        assert result.steps[0].remaining_before == Decimal("0")

    def test_simulation_is_deterministic(self):
        first = simulate_budget_run("sora-2-text-to-video", TaskType.VIDEO, Tier.PRO, 15)
        second = simulate_budget_run("sora-2-text-to-video", TaskType.VIDEO, Tier.PRO, 15)
        assert first == second

    def test_requests_must_be_positive(self):
        with pytest.raises(ValueError):
            simulate_budget_run("flux-dev", TaskType.IMAGE, Tier.FREE, 0)

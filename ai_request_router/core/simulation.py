"""
Budget run simulation.

Replays a series of identical requests against a tier's monthly budget
to show when the selector starts downgrading and when it reaches the
free floor. It is designed to be read-only, deterministic, and safe for
CI environments.

Simulation mirrors runtime behavior but with these key differences:
1. No side effects (spend is accumulated in memory only)
2. No quota checks (only the budget path is exercised)
3. Deterministic results for same inputs
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, auto
from typing import List, Optional

from ai_request_router.storage.models import TaskType
from .budget import ModelSelection, select_model
from .pricing import PRICING_TABLE, PricingTable
from .tiers import Tier, normalize_tier


class SimulationVerdict(Enum):
    """Final verdict of a simulation run."""
    PASS = auto()  # every request served by the preferred model
    WARN = auto()  # some requests downgraded to paid alternatives
    FAIL = auto()  # some requests fell back to the free model


@dataclass(frozen=True)
class SimulationStep:
    """One simulated request."""
    request_number: int
    remaining_before: Decimal
    selection: ModelSelection


@dataclass
class SimulationResult:
    """Results of a simulation run."""
    tier: Tier
    preferred_model: str
    monthly_budget: Decimal
    steps: List[SimulationStep] = field(default_factory=list)
    total_spend: Decimal = Decimal("0")
    first_downgrade: Optional[int] = None
    first_free: Optional[int] = None
    overall_verdict: SimulationVerdict = SimulationVerdict.PASS


def simulate_budget_run(
    preferred_model: str,
    task_type: TaskType,
    tier,
    requests: int,
    starting_spend: Decimal = Decimal("0"),
    pricing: PricingTable = PRICING_TABLE
) -> SimulationResult:
    """Simulate ``requests`` consecutive requests for the same model.

    Args:
        preferred_model: Model each request would ideally use
        task_type: Task type, used for the free fallback
        tier: Subscriber tier
        requests: Number of requests to simulate
        starting_spend: Month-to-date spend before the first request
        pricing: Cost tables

    Returns:
        SimulationResult with one step per request

    Raises:
        ValueError: If requests is not positive
    """
    if requests <= 0:
        raise ValueError("requests must be > 0")

    tier = normalize_tier(tier)
    budget = pricing.get_tier_budget(tier)
    result = SimulationResult(tier=tier, preferred_model=preferred_model, monthly_budget=budget)

    spend = Decimal(starting_spend)
    free_model = pricing.get_free_model(tier, task_type)
    for number in range(1, requests + 1):
        remaining = max(budget - spend, Decimal("0"))
        selection = select_model(preferred_model, remaining, task_type, tier, pricing)
        result.steps.append(SimulationStep(
            request_number=number,
            remaining_before=remaining,
            selection=selection,
        ))
        spend += selection.cost
        result.total_spend += selection.cost

        if selection.downgraded and result.first_downgrade is None:
            result.first_downgrade = number
        if selection.model == free_model and selection.downgraded and result.first_free is None:
            result.first_free = number

    if result.first_free is not None:
        result.overall_verdict = SimulationVerdict.FAIL
    elif result.first_downgrade is not None:
        result.overall_verdict = SimulationVerdict.WARN
    return result

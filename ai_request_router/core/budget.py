"""
Budget-aware model selection.

Picks the model that actually serves a request given what is left of
the tier's monthly budget. Selection never fails:

Selection Order:
1. Preferred model - when the remaining budget covers its cost
2. Cheaper alternatives - first entry of the ordered chain that fits
3. Free model - the tier's zero-cost model for the task type
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from ai_request_router.storage.models import SpendEntry, TaskType, WindowKind
from ai_request_router.storage.repository import UsageRepository, utc_now
from .cache import TTLCache
from .pricing import PRICING_TABLE, PricingTable, estimate_monthly_spend
from .quota import window_start
from .tiers import Tier, normalize_tier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelSelection:
    """The model chosen to serve a request."""
    model: str
    cost: Decimal
    downgraded: bool
    preferred_model: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class BudgetState:
    """Month-to-date budget position for one owner."""
    tier: Tier
    monthly_budget: Decimal
    amount_used: Decimal
    amount_remaining: Decimal
    projected_monthly_spend: Decimal


def select_model(
    preferred_model: str,
    remaining_budget: Decimal,
    task_type: TaskType,
    tier,
    pricing: PricingTable = PRICING_TABLE
) -> ModelSelection:
    """Pick the best model that fits the remaining budget.

    Pure: the result depends only on the arguments and the pricing table.

    Args:
        preferred_model: Model the request would ideally use
        remaining_budget: USD left this month (negative treated as 0)
        task_type: Kind of generation, used for the free fallback
        tier: Subscriber tier, used for the free fallback
        pricing: Cost tables

    Returns:
        ModelSelection; ``downgraded`` is True whenever the preferred
        model was not affordable
    """
    tier = normalize_tier(tier)
    remaining = max(Decimal(remaining_budget), Decimal("0"))

    preferred_cost = pricing.get_model_cost(preferred_model)
    if remaining >= preferred_cost:
        return ModelSelection(
            model=preferred_model,
            cost=preferred_cost,
            downgraded=False,
            preferred_model=preferred_model,
        )

    for alternative in pricing.get_alternatives(preferred_model):
        cost = pricing.get_model_cost(alternative)
        if remaining >= cost:
            return ModelSelection(
                model=alternative,
                cost=cost,
                downgraded=True,
                preferred_model=preferred_model,
                reason=(
                    f"Using {alternative} instead of {preferred_model} "
                    f"to stay within budget"
                ),
            )

    free_model = pricing.get_free_model(tier, task_type)
    return ModelSelection(
        model=free_model,
        cost=pricing.get_model_cost(free_model),
        downgraded=True,
        preferred_model=preferred_model,
        reason=f"Monthly budget exhausted, using free model {free_model}",
    )


class BudgetAllocator:
    """Tracks month-to-date spend and applies select_model against it."""

    def __init__(
        self,
        usage_repository: UsageRepository,
        pricing: PricingTable = PRICING_TABLE,
        cache: Optional[TTLCache] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.usage_repository = usage_repository
        self.pricing = pricing
        self.cache = cache if cache is not None else TTLCache(ttl_seconds=0)
        self._clock = clock

    def get_budget_state(self, owner: str, tier) -> BudgetState:
        tier = normalize_tier(tier)
        now = self._clock()
        month_start = window_start(WindowKind.MONTHLY, now)
        used = self.cache.get_or_load(
            ("spend", owner, month_start.isoformat()),
            lambda: self.usage_repository.get_spend_since(owner, month_start),
        )
        budget = self.pricing.get_tier_budget(tier)
        return BudgetState(
            tier=tier,
            monthly_budget=budget,
            amount_used=used,
            amount_remaining=max(budget - used, Decimal("0")),
            projected_monthly_spend=estimate_monthly_spend(used, now.day),
        )

    def get_remaining_budget(self, owner: str, tier) -> Decimal:
        return self.get_budget_state(owner, tier).amount_remaining

    def select_for(
        self,
        owner: str,
        preferred_model: str,
        task_type: TaskType,
        tier
    ) -> ModelSelection:
        selection = select_model(
            preferred_model,
            self.get_remaining_budget(owner, tier),
            task_type,
            tier,
            self.pricing,
        )
        if selection.downgraded:
            logger.info("Downgraded %s for %s: %s", preferred_model, owner, selection.reason)
        return selection

    def record_spend(
        self,
        owner: str,
        model: str,
        amount: Decimal,
        idempotency_key: str
    ) -> bool:
        """Append a spend entry for a successful generation.

        Returns:
            False when spend for this key was already recorded
        """
        if amount < 0:
            raise ValueError("amount must be >= 0")
        recorded = self.usage_repository.record_spend(SpendEntry(
            idempotency_key=idempotency_key,
            owner=owner,
            model=model,
            amount=Decimal(amount),
            charged_at=self._clock(),
        ))
        self.cache.invalidate_prefix(("spend", owner))
        return recorded

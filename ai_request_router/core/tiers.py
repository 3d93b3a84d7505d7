"""
Subscription tiers.

Every cost and quota table is keyed by tier. Unknown tier names never
raise; they normalize to FREE so the cheapest policy applies.
"""

import logging
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class Tier(Enum):
    """Subscription tiers ordered from least to most capable."""
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    PREMIUM = "premium"


def normalize_tier(value: Any) -> Tier:
    """Map a loose tier name ("PRO", " starter ") to a Tier.

    Args:
        value: Tier instance or tier name

    Returns:
        Matching Tier, or Tier.FREE when the name is unknown
    """
    if isinstance(value, Tier):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        for tier in Tier:
            if tier.value == normalized:
                return tier
    logger.warning("Unknown tier %r, treating as free", value)
    return Tier.FREE

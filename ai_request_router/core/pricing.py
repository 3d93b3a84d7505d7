"""
Pricing tables and rate management.

Holds per-request model costs, monthly tier budgets, ordered
cheaper-alternative chains, the per-tier free-model ladder and the
preferred-model routing table. All amounts are USD Decimals.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from enum import Enum
from typing import Dict, Tuple

from ai_request_router.storage.models import TaskType
from .tiers import Tier


class Complexity(Enum):
    """How demanding a request is; drives preferred-model routing."""
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"

    @classmethod
    def parse(cls, value, default: "Complexity" = None) -> "Complexity":
        if isinstance(value, Complexity):
            return value
        if isinstance(value, str):
            for member in cls:
                if member.value == value.strip().lower():
                    return member
        return default if default is not None else cls.MEDIUM


ModelRouting = Dict[TaskType, Dict[Complexity, Dict[Tier, str]]]

# Task types that borrow another type's routing row
_ROUTING_ALIASES = {
    TaskType.IMAGE_EDIT: TaskType.IMAGE,
    TaskType.PPT: TaskType.CHAT,
}


@dataclass(frozen=True)
class PricingTable:
    """Fixed cost and routing tables for supported models."""
    model_costs: Dict[str, Decimal]
    unknown_model_cost: Decimal
    tier_budgets: Dict[Tier, Decimal]
    cheaper_alternatives: Dict[str, Tuple[str, ...]]
    free_models: Dict[Tier, Dict[TaskType, str]]
    routing: ModelRouting

    def __post_init__(self):
        """Validate that amounts are non-negative and free models are free."""
        for model, cost in self.model_costs.items():
            if cost < 0:
                raise ValueError(f"cost for {model} must be >= 0")
        if self.unknown_model_cost <= 0:
            raise ValueError("unknown_model_cost must be > 0")
        for tier in Tier:
            if tier not in self.tier_budgets:
                raise ValueError(f"missing budget for tier {tier.value}")
            if self.tier_budgets[tier] < 0:
                raise ValueError(f"budget for tier {tier.value} must be >= 0")
            ladder = self.free_models.get(tier)
            if ladder is None:
                raise ValueError(f"missing free models for tier {tier.value}")
            for task_type in TaskType:
                model = ladder.get(task_type)
                if model is None:
                    raise ValueError(
                        f"missing free model for {tier.value}/{task_type.value}"
                    )
                if self.get_model_cost(model) != 0:
                    raise ValueError(
                        f"free model {model} for {tier.value}/{task_type.value} "
                        f"must cost 0"
                    )

    def get_model_cost(self, model: str) -> Decimal:
        """Get the per-request cost of a model.

        Args:
            model: Model identifier

        Returns:
            Cost in USD; unknown models get the conservative default
        """
        return self.model_costs.get(model, self.unknown_model_cost)

    def get_tier_budget(self, tier: Tier) -> Decimal:
        return self.tier_budgets.get(tier, self.tier_budgets[Tier.FREE])

    def get_alternatives(self, model: str) -> Tuple[str, ...]:
        """Cheaper alternatives, most to least capable."""
        return self.cheaper_alternatives.get(model, ())

    def get_free_model(self, tier: Tier, task_type: TaskType) -> str:
        return self.free_models[tier][task_type]

    def preferred_model(
        self,
        task_type: TaskType,
        complexity: Complexity,
        tier: Tier
    ) -> str:
        """Look up the model a tier would ideally use for a request.

        Missing complexity rows fall back to SIMPLE; task types with no
        routing row fall back to the tier's free model.
        """
        rows = self.routing.get(_ROUTING_ALIASES.get(task_type, task_type))
        if not rows:
            return self.get_free_model(tier, task_type)
        row = rows.get(complexity) or rows.get(Complexity.SIMPLE)
        if row is None:
            row = next(iter(rows.values()))
        return row.get(tier) or row.get(Tier.FREE) or self.get_free_model(tier, task_type)


def _usd(value: str) -> Decimal:
    return Decimal(value)


DEFAULT_MODEL_COSTS: Dict[str, Decimal] = {
    # Chat, per message
    "google/gemini-2.0-flash-exp:free": _usd("0.00"),
    "deepseek/deepseek-chat:free": _usd("0.00"),
    "deepseek/deepseek-r1:free": _usd("0.00"),
    "deepseek/deepseek-chat-v3.1": _usd("0.001"),
    "deepseek/deepseek-r1": _usd("0.002"),
    "qwen/qwen-2.5-72b-instruct": _usd("0.003"),
    "anthropic/claude-3.5-haiku": _usd("0.005"),
    "anthropic/claude-3.5-sonnet": _usd("0.03"),
    "anthropic/claude-opus-4.1": _usd("0.30"),
    "openai/gpt-4o-mini": _usd("0.005"),
    "openai/gpt-4o": _usd("0.05"),
    # Image, per image
    "flux-dev": _usd("0.10"),
    "flux-kontext-pro": _usd("0.20"),
    "seedream/4.5-text-to-image": _usd("0.20"),
    "bytedance/seedream-v4-text-to-image": _usd("0.50"),
    "4o-image": _usd("0.40"),
    "nano-banana-pro": _usd("0.50"),
    "google/imagen4-ultra": _usd("0.75"),
    "grok-imagine/text-to-image": _usd("0.60"),
    "midjourney/v6": _usd("1.00"),
    # Video, per 5 second clip
    "veo3_fast": _usd("0.50"),
    "wan/2-5-text-to-video": _usd("0.75"),
    "wan/2-6-text-to-video": _usd("1.00"),
    "kling-2.6/text-to-video": _usd("0.90"),
    "kling/v2-5-turbo-text-to-video-pro": _usd("1.10"),
    "runway-gen3-turbo": _usd("1.00"),
    "runway-gen3": _usd("1.75"),
    "bytedance/seedance-1.5-pro": _usd("1.40"),
    "sora-2-text-to-video": _usd("1.50"),
    # Music, per song
    "suno-v4": _usd("0.50"),
    "suno-v5": _usd("0.75"),
    "udio-v1": _usd("0.60"),
    # Speech
    "aura-2-thalia-en": _usd("0.00"),
    "aura-2-orion-en": _usd("0.00"),
    "aura-2-zeus-en": _usd("0.00"),
    # Zero-cost floors
    "pixazo-flux-schnell": _usd("0.00"),
    "hunyuan-video": _usd("0.00"),
    "free-music-loop": _usd("0.00"),
}

DEFAULT_UNKNOWN_MODEL_COST = _usd("0.05")

DEFAULT_TIER_BUDGETS: Dict[Tier, Decimal] = {
    Tier.FREE: _usd("0.50"),
    Tier.STARTER: _usd("4.99"),
    Tier.PRO: _usd("11.99"),
    Tier.PREMIUM: _usd("23.99"),
}

DEFAULT_CHEAPER_ALTERNATIVES: Dict[str, Tuple[str, ...]] = {
    "anthropic/claude-opus-4.1": (
        "anthropic/claude-3.5-sonnet",
        "openai/gpt-4o",
        "anthropic/claude-3.5-haiku",
        "deepseek/deepseek-chat-v3.1",
        "google/gemini-2.0-flash-exp:free",
    ),
    "anthropic/claude-3.5-sonnet": (
        "openai/gpt-4o-mini",
        "anthropic/claude-3.5-haiku",
        "deepseek/deepseek-chat-v3.1",
        "google/gemini-2.0-flash-exp:free",
    ),
    "openai/gpt-4o": (
        "openai/gpt-4o-mini",
        "anthropic/claude-3.5-haiku",
        "deepseek/deepseek-chat-v3.1",
        "google/gemini-2.0-flash-exp:free",
    ),
    "google/imagen4-ultra": (
        "nano-banana-pro",
        "bytedance/seedream-v4-text-to-image",
        "4o-image",
        "flux-kontext-pro",
        "seedream/4.5-text-to-image",
        "flux-dev",
    ),
    "midjourney/v6": (
        "grok-imagine/text-to-image",
        "google/imagen4-ultra",
        "nano-banana-pro",
        "flux-kontext-pro",
        "flux-dev",
    ),
    "nano-banana-pro": (
        "bytedance/seedream-v4-text-to-image",
        "4o-image",
        "flux-kontext-pro",
        "flux-dev",
    ),
    "sora-2-text-to-video": (
        "bytedance/seedance-1.5-pro",
        "runway-gen3-turbo",
        "kling/v2-5-turbo-text-to-video-pro",
        "wan/2-6-text-to-video",
        "kling-2.6/text-to-video",
        "wan/2-5-text-to-video",
        "veo3_fast",
    ),
    "runway-gen3": (
        "bytedance/seedance-1.5-pro",
        "runway-gen3-turbo",
        "wan/2-6-text-to-video",
        "kling-2.6/text-to-video",
        "veo3_fast",
    ),
    "suno-v5": ("udio-v1", "suno-v4"),
}


def _free_ladder(chat: str, tts: str) -> Dict[TaskType, str]:
    return {
        TaskType.CHAT: chat,
        TaskType.PPT: chat,
        TaskType.IMAGE: "pixazo-flux-schnell",
        TaskType.IMAGE_EDIT: "pixazo-flux-schnell",
        TaskType.VIDEO: "hunyuan-video",
        TaskType.TTS: tts,
        TaskType.MUSIC: "free-music-loop",
    }


DEFAULT_FREE_MODELS: Dict[Tier, Dict[TaskType, str]] = {
    Tier.FREE: _free_ladder("deepseek/deepseek-chat:free", "aura-2-thalia-en"),
    Tier.STARTER: _free_ladder("deepseek/deepseek-r1:free", "aura-2-thalia-en"),
    Tier.PRO: _free_ladder("google/gemini-2.0-flash-exp:free", "aura-2-orion-en"),
    Tier.PREMIUM: _free_ladder("google/gemini-2.0-flash-exp:free", "aura-2-zeus-en"),
}


def _by_tier(free: str, starter: str, pro: str, premium: str) -> Dict[Tier, str]:
    return {Tier.FREE: free, Tier.STARTER: starter, Tier.PRO: pro, Tier.PREMIUM: premium}


DEFAULT_ROUTING: ModelRouting = {
    TaskType.CHAT: {
        Complexity.SIMPLE: _by_tier(
            "google/gemini-2.0-flash-exp:free",
            "deepseek/deepseek-chat:free",
            "anthropic/claude-3.5-haiku",
            "openai/gpt-4o-mini",
        ),
        Complexity.MEDIUM: _by_tier(
            "google/gemini-2.0-flash-exp:free",
            "deepseek/deepseek-chat-v3.1",
            "anthropic/claude-3.5-sonnet",
            "openai/gpt-4o",
        ),
        Complexity.COMPLEX: _by_tier(
            "google/gemini-2.0-flash-exp:free",
            "qwen/qwen-2.5-72b-instruct",
            "anthropic/claude-3.5-sonnet",
            "anthropic/claude-opus-4.1",
        ),
    },
    TaskType.IMAGE: {
        Complexity.SIMPLE: _by_tier(
            "flux-dev", "flux-kontext-pro", "4o-image", "nano-banana-pro"
        ),
        Complexity.COMPLEX: _by_tier(
            "flux-dev",
            "seedream/4.5-text-to-image",
            "bytedance/seedream-v4-text-to-image",
            "google/imagen4-ultra",
        ),
    },
    TaskType.VIDEO: {
        Complexity.SIMPLE: _by_tier(
            "veo3_fast", "veo3_fast", "wan/2-5-text-to-video", "wan/2-6-text-to-video"
        ),
        Complexity.COMPLEX: _by_tier(
            "veo3_fast",
            "kling-2.6/text-to-video",
            "sora-2-text-to-video",
            "sora-2-text-to-video",
        ),
    },
    TaskType.MUSIC: {
        Complexity.SIMPLE: _by_tier("suno-v4", "suno-v4", "suno-v5", "suno-v5"),
        Complexity.COMPLEX: _by_tier("suno-v4", "udio-v1", "suno-v5", "suno-v5"),
    },
    TaskType.TTS: {
        Complexity.SIMPLE: _by_tier(
            "aura-2-thalia-en", "aura-2-thalia-en", "aura-2-orion-en", "aura-2-zeus-en"
        ),
    },
}


# Fixed pricing table - overridable only through the YAML config loader
PRICING_TABLE = PricingTable(
    model_costs=DEFAULT_MODEL_COSTS,
    unknown_model_cost=DEFAULT_UNKNOWN_MODEL_COST,
    tier_budgets=DEFAULT_TIER_BUDGETS,
    cheaper_alternatives=DEFAULT_CHEAPER_ALTERNATIVES,
    free_models=DEFAULT_FREE_MODELS,
    routing=DEFAULT_ROUTING,
)


def estimate_monthly_spend(current_spend: Decimal, day_of_month: int) -> Decimal:
    """Project month-end spend from month-to-date spend.

    Args:
        current_spend: Spend so far this month (USD)
        day_of_month: Current day of month, 1-based

    Returns:
        Linear 30-day projection rounded UP to 2 decimal places

    Raises:
        ValueError: If day_of_month is not positive
    """
    if day_of_month <= 0:
        raise ValueError("day_of_month must be >= 1")
    projected = Decimal(current_spend) / Decimal(day_of_month) * Decimal(30)
    return projected.quantize(Decimal("0.01"), rounding=ROUND_UP)

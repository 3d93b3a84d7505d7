"""
Multi-window quota enforcement.

Each (tier, feature) pair has daily, weekly and monthly caps. A request
is admitted only while usage is strictly below the cap in every window.
The window with the least remaining headroom is the binding one; it
decides what remaining count and denial reason are reported.

Window boundaries (all UTC):
1. Daily - at the configured reset hour (default 00:00)
2. Weekly - at 00:00 on the configured weekday (default Monday)
3. Monthly - at 00:00 on the 1st
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from ai_request_router.storage.models import TaskType, WindowKind
from ai_request_router.storage.repository import UsageRepository, utc_now
from .cache import TTLCache
from .tiers import Tier, normalize_tier

logger = logging.getLogger(__name__)

DEFAULT_WARNING_FRACTION = 0.05

# Longest first: ties on remaining headroom go to the longer window
_WINDOW_PRIORITY = (WindowKind.MONTHLY, WindowKind.WEEKLY, WindowKind.DAILY)

_UPGRADE_MESSAGES = {
    TaskType.CHAT: "Chat is limited on this plan. Upgrade for more!",
    TaskType.IMAGE: "Image generation is limited on this plan. Upgrade for more!",
    TaskType.IMAGE_EDIT: "Image editing is limited on this plan. Upgrade for more!",
    TaskType.VIDEO: "Video generation requires a paid plan. Upgrade to create AI videos!",
    TaskType.MUSIC: "Music generation requires a paid plan. Upgrade to create AI music!",
    TaskType.PPT: "Presentation generation requires a paid plan. Upgrade to unlock it!",
    TaskType.TTS: "Text-to-speech is limited on this plan. Upgrade for more!",
}


@dataclass(frozen=True)
class QuotaCaps:
    """Usage caps for one (tier, feature) pair."""
    daily: int
    weekly: int
    monthly: int

    def __post_init__(self):
        for kind in WindowKind:
            value = getattr(self, kind.value)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValueError(f"{kind.value} cap must be a non-negative integer")

    def cap_for(self, kind: WindowKind) -> int:
        return getattr(self, kind.value)

    @property
    def zero_window(self) -> Optional[WindowKind]:
        """First window whose cap is exactly zero, if any."""
        for kind in (WindowKind.DAILY, WindowKind.WEEKLY, WindowKind.MONTHLY):
            if self.cap_for(kind) == 0:
                return kind
        return None


QuotaTable = Dict[Tier, Dict[TaskType, QuotaCaps]]

_CAP_COLUMNS = (
    TaskType.CHAT,
    TaskType.IMAGE,
    TaskType.VIDEO,
    TaskType.TTS,
    TaskType.MUSIC,
    TaskType.PPT,
    TaskType.IMAGE_EDIT,
)

# chat, image, video, tts, music, ppt, image_edit
_DAILY = {
    Tier.FREE: (15, 2, 0, 4, 0, 0, 2),
    Tier.STARTER: (60, 25, 6, 60, 0, 2, 25),
    Tier.PRO: (80, 32, 10, 80, 0, 4, 32),
    Tier.PREMIUM: (120, 40, 12, 120, 0, 6, 40),
}
_WEEKLY = {
    Tier.FREE: (80, 8, 0, 15, 0, 0, 8),
    Tier.STARTER: (320, 120, 32, 320, 0, 12, 120),
    Tier.PRO: (480, 160, 48, 480, 0, 20, 160),
    Tier.PREMIUM: (640, 200, 64, 640, 0, 32, 200),
}
_MONTHLY = {
    Tier.FREE: (240, 20, 0, 40, 0, 0, 20),
    Tier.STARTER: (1200, 400, 96, 1200, 0, 32, 400),
    Tier.PRO: (2000, 560, 144, 2000, 0, 64, 560),
    Tier.PREMIUM: (3200, 800, 200, 3200, 0, 96, 800),
}

DEFAULT_QUOTAS: QuotaTable = {
    tier: {
        feature: QuotaCaps(
            daily=_DAILY[tier][i],
            weekly=_WEEKLY[tier][i],
            monthly=_MONTHLY[tier][i],
        )
        for i, feature in enumerate(_CAP_COLUMNS)
    }
    for tier in Tier
}


def window_start(
    kind: WindowKind,
    now: datetime,
    daily_reset_hour: int = 0,
    week_start_day: int = 0
) -> datetime:
    """Compute the start of the window containing ``now``.

    Args:
        kind: Window kind
        now: Timezone-aware UTC timestamp
        daily_reset_hour: Hour (0-23) at which daily windows roll over
        week_start_day: Weekday (0=Monday) on which weekly windows start

    Returns:
        Window start as a timezone-aware UTC datetime
    """
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if kind == WindowKind.DAILY:
        start = midnight.replace(hour=daily_reset_hour)
        if now < start:
            start -= timedelta(days=1)
        return start
    if kind == WindowKind.WEEKLY:
        return midnight - timedelta(days=(now.weekday() - week_start_day) % 7)
    return midnight.replace(day=1)


@dataclass(frozen=True)
class WindowUsage:
    """Usage snapshot for one window."""
    kind: WindowKind
    cap: int
    used: int
    window_start: Optional[datetime] = None

    @property
    def remaining(self) -> int:
        return max(0, self.cap - self.used)


@dataclass(frozen=True)
class AccessDecision:
    """Result of a quota pre-flight check.

    ``upgrade_required`` means the tier can never use the feature in some
    window (cap 0); ``exhausted`` means a window's cap has been reached.
    """
    allowed: bool
    feature: TaskType
    tier: Tier
    remaining: int
    binding_window: Optional[WindowKind] = None
    exhausted: bool = False
    upgrade_required: bool = False
    reason: Optional[str] = None
    warning: Optional[str] = None
    windows: Tuple[WindowUsage, ...] = ()


class QuotaEnforcer:
    """Admission control over daily, weekly and monthly usage counters."""

    def __init__(
        self,
        usage_repository: UsageRepository,
        quotas: Optional[QuotaTable] = None,
        warning_fraction: float = DEFAULT_WARNING_FRACTION,
        daily_reset_hour: int = 0,
        week_start_day: int = 0,
        cache: Optional[TTLCache] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        if not 0 <= warning_fraction <= 1:
            raise ValueError("warning_fraction must be between 0 and 1")
        if not 0 <= daily_reset_hour <= 23:
            raise ValueError("daily_reset_hour must be between 0 and 23")
        if not 0 <= week_start_day <= 6:
            raise ValueError("week_start_day must be between 0 and 6")
        self.usage_repository = usage_repository
        self.quotas = quotas if quotas is not None else DEFAULT_QUOTAS
        self.warning_fraction = warning_fraction
        self.daily_reset_hour = daily_reset_hour
        self.week_start_day = week_start_day
        self.cache = cache if cache is not None else TTLCache(ttl_seconds=0)
        self._clock = clock

    def get_caps(self, tier: Tier, feature: TaskType) -> QuotaCaps:
        tier_caps = self.quotas.get(tier) or self.quotas[Tier.FREE]
        return tier_caps.get(feature, QuotaCaps(daily=0, weekly=0, monthly=0))

    def current_windows(self) -> Dict[WindowKind, datetime]:
        now = self._clock()
        return {
            kind: window_start(kind, now, self.daily_reset_hour, self.week_start_day)
            for kind in WindowKind
        }

    def check_access(self, owner: str, tier, feature: TaskType) -> AccessDecision:
        """Decide whether ``owner`` may start one more ``feature`` generation.

        Store failures deny access (fail closed) instead of raising.
        """
        tier = normalize_tier(tier)
        caps = self.get_caps(tier, feature)

        zero_window = caps.zero_window
        if zero_window is not None:
            logger.info(
                "Denied %s for %s: %s tier has no %s allowance",
                feature.value, owner, tier.value, zero_window.value
            )
            return AccessDecision(
                allowed=False,
                feature=feature,
                tier=tier,
                remaining=0,
                binding_window=zero_window,
                upgrade_required=True,
                reason=_UPGRADE_MESSAGES.get(feature, "Upgrade for access to this feature!"),
            )

        try:
            windows = self._read_windows(owner, feature, caps)
        except sqlite3.Error:
            logger.exception("Failed to read usage for %s/%s", owner, feature.value)
            return AccessDecision(
                allowed=False,
                feature=feature,
                tier=tier,
                remaining=0,
                reason="Unable to verify access. Please try again.",
            )

        binding = _binding_window(windows)
        if binding.remaining <= 0:
            logger.warning(
                "Denied %s for %s: %s limit reached (%d/%d)",
                feature.value, owner, binding.kind.value, binding.used, binding.cap
            )
            return AccessDecision(
                allowed=False,
                feature=feature,
                tier=tier,
                remaining=0,
                binding_window=binding.kind,
                exhausted=True,
                reason=_exhausted_reason(binding, feature, tier),
                windows=windows,
            )

        warning = None
        if binding.remaining / binding.cap <= self.warning_fraction:
            warning = (
                f"Only {binding.remaining} {feature.value} generation(s) left "
                f"in your {binding.kind.value} limit"
            )
        return AccessDecision(
            allowed=True,
            feature=feature,
            tier=tier,
            remaining=binding.remaining,
            binding_window=binding.kind,
            warning=warning,
            windows=windows,
        )

    def record_usage(self, owner: str, feature: TaskType, idempotency_key: str) -> bool:
        """Count one committed generation in every window.

        Returns:
            False if this idempotency key was already counted
        """
        recorded = self.usage_repository.increment(
            owner=owner,
            feature=feature.value,
            windows=self.current_windows(),
            idempotency_key=idempotency_key,
        )
        self.cache.invalidate_prefix(("usage", owner, feature.value))
        if not recorded:
            logger.debug("Usage for %s/%s already recorded", idempotency_key, feature.value)
        return recorded

    def usage_summary(self, owner: str, tier) -> List[AccessDecision]:
        """Access decisions for every feature, for display."""
        tier = normalize_tier(tier)
        return [self.check_access(owner, tier, feature) for feature in TaskType]

    def _read_windows(
        self,
        owner: str,
        feature: TaskType,
        caps: QuotaCaps
    ) -> Tuple[WindowUsage, ...]:
        starts = self.current_windows()
        key = ("usage", owner, feature.value, tuple(starts[k].isoformat() for k in WindowKind))

        def load() -> Tuple[WindowUsage, ...]:
            return tuple(
                WindowUsage(
                    kind=kind,
                    cap=caps.cap_for(kind),
                    used=self.usage_repository.get_counter(
                        owner, feature.value, kind, starts[kind]
                    ).count,
                    window_start=starts[kind],
                )
                for kind in _WINDOW_PRIORITY
            )

        return self.cache.get_or_load(key, load)


def _binding_window(windows: Tuple[WindowUsage, ...]) -> WindowUsage:
    binding = windows[0]
    for usage in windows[1:]:
        if usage.remaining < binding.remaining:
            binding = usage
    return binding


def _exhausted_reason(binding: WindowUsage, feature: TaskType, tier: Tier) -> str:
    retry = {
        WindowKind.DAILY: "Try again tomorrow!",
        WindowKind.WEEKLY: "Try again next week!",
        WindowKind.MONTHLY: "Try again next month!",
    }[binding.kind]
    if tier != Tier.PREMIUM:
        retry = f"{retry} Or upgrade for higher limits."
    return (
        f"{binding.kind.value.capitalize()} limit reached "
        f"({binding.cap}/{feature.value}). {retry}"
    )

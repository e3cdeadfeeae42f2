"""Subscription tiers, quotas and feature gates."""
from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from datetime import datetime

from loupe.clock import as_utc, utcnow


class Tier(str, enum.Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"


@dataclass(frozen=True, slots=True)
class TierLimits:
    pages: int
    analytics_integrations: float
    deploy_scans: bool
    mobile: bool
    scan_frequency: str


TIER_LIMITS: dict[Tier, TierLimits] = {
    Tier.FREE: TierLimits(
        pages=1, analytics_integrations=0, deploy_scans=False, mobile=False, scan_frequency="weekly"
    ),
    Tier.STARTER: TierLimits(
        pages=3, analytics_integrations=1, deploy_scans=True, mobile=False, scan_frequency="daily"
    ),
    Tier.PRO: TierLimits(
        pages=10, analytics_integrations=math.inf, deploy_scans=True, mobile=True, scan_frequency="daily"
    ),
}

LAPSED_STATUSES = frozenset({"past_due", "canceled", "unpaid"})


def _tier(value: Tier | str | None) -> Tier:
    try:
        return Tier(value)
    except ValueError:
        return Tier.FREE


def get_effective_tier(
    tier: Tier | str | None,
    subscription_status: str | None = None,
    trial_ends_at: datetime | None = None,
    now: datetime | None = None,
) -> Tier:
    """Lapsed subscriptions and expired trials fall back to free."""
    if subscription_status in LAPSED_STATUSES:
        return Tier.FREE
    if subscription_status == "trialing" and trial_ends_at is not None:
        if as_utc(trial_ends_at) <= as_utc(now or utcnow()):
            return Tier.FREE
    return _tier(tier)


def effective_tier_for(account, now: datetime | None = None) -> Tier:
    return get_effective_tier(
        account.tier, account.subscription_status, account.trial_ends_at, now
    )


def get_page_limit(tier: Tier | str, bonus_pages: int = 0) -> int:
    return TIER_LIMITS[_tier(tier)].pages + max(0, int(bonus_pages or 0))


def can_connect_analytics(tier: Tier | str, current_count: int) -> bool:
    return current_count < TIER_LIMITS[_tier(tier)].analytics_integrations


def can_use_deploy_scans(tier: Tier | str) -> bool:
    return TIER_LIMITS[_tier(tier)].deploy_scans


def can_access_mobile(tier: Tier | str) -> bool:
    return TIER_LIMITS[_tier(tier)].mobile


def get_allowed_scan_frequency(tier: Tier | str) -> str:
    return TIER_LIMITS[_tier(tier)].scan_frequency


def validate_scan_frequency(tier: Tier | str, requested: str | None) -> str:
    """Coerce a requested frequency into one the tier permits."""
    allowed = get_allowed_scan_frequency(tier)
    if requested not in {"weekly", "daily", "manual"}:
        return allowed
    if requested == "daily" and allowed != "daily":
        return allowed
    return requested

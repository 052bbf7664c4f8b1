"""
Subscription tiers and what they allow for SMS.
"""

from dataclasses import dataclass
from typing import Dict


@dataclass(frozen=True)
class TierLimits:
    name: str
    included_messages: int
    messaging: bool
    auto_messaging: bool
    overage_price: float = 0.0


FREE = "free"
BASIC = "basic"
PRO = "pro"
EXPERT = "expert"

TIER_LIMITS: Dict[str, TierLimits] = {
    FREE: TierLimits("Free", included_messages=0, messaging=False, auto_messaging=False),
    BASIC: TierLimits("Basic", included_messages=50, messaging=True, auto_messaging=False, overage_price=0.10),
    PRO: TierLimits("Pro", included_messages=200, messaging=True, auto_messaging=True, overage_price=0.08),
    EXPERT: TierLimits("Expert", included_messages=1000, messaging=True, auto_messaging=True, overage_price=0.05),
}


def get_tier_limits(tier: str) -> TierLimits:
    """Unknown or missing tiers get free-tier limits."""
    return TIER_LIMITS.get((tier or FREE).lower(), TIER_LIMITS[FREE])


def allows_messaging(tier: str) -> bool:
    return get_tier_limits(tier).messaging


def allows_auto_messaging(tier: str) -> bool:
    return get_tier_limits(tier).auto_messaging

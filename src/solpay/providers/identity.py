"""Verification tiers and the payout limits attached to them."""

from datetime import timedelta
from decimal import Decimal
from typing import Optional

from solpay.providers.base import IdentityProvider

# Payout limits in NGN per rolling window, by verification tier.
# Tier 0 (unverified) has no entry and may not receive payouts.
TIER_LIMITS: dict[int, dict[str, Decimal]] = {
    1: {
        "daily": Decimal("5000000"),
        "weekly": Decimal("25000000"),
        "monthly": Decimal("50000000"),
    },
    2: {
        "daily": Decimal("10000000"),
        "weekly": Decimal("50000000"),
        "monthly": Decimal("100000000"),
    },
}

LIMIT_WINDOWS: dict[str, timedelta] = {
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
    "monthly": timedelta(days=30),
}


def get_tier_limits(tier: int) -> Optional[dict[str, Decimal]]:
    """Get payout limits for a tier, or None if the tier may not cash out."""
    return TIER_LIMITS.get(tier)


class StaticIdentityProvider(IdentityProvider):
    """Tiers from a fixed table (configuration and tests)."""

    def __init__(self, tiers: Optional[dict[str, int]] = None, default_tier: int = 0):
        self.tiers = dict(tiers or {})
        self.default_tier = default_tier

    def set_tier(self, user_id: str, tier: int) -> None:
        self.tiers[user_id] = tier

    async def get_verification_tier(self, user_id: str) -> int:
        return self.tiers.get(user_id, self.default_tier)

"""External settlement and identity providers."""

from solpay.providers.base import (
    IdentityProvider,
    OfframpRequest,
    OfframpStatus,
    OfframpSubmission,
    SettlementProvider,
    SimulatedSettlementProvider,
)
from solpay.providers.bread import BreadSettlementProvider
from solpay.providers.identity import TIER_LIMITS, StaticIdentityProvider, get_tier_limits

__all__ = [
    "BreadSettlementProvider",
    "IdentityProvider",
    "OfframpRequest",
    "OfframpStatus",
    "OfframpSubmission",
    "SettlementProvider",
    "SimulatedSettlementProvider",
    "StaticIdentityProvider",
    "TIER_LIMITS",
    "get_tier_limits",
]

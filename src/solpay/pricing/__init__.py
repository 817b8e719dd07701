"""Pricing: oracles, caching and the quote engine."""

from solpay.pricing.cache import SingleFlightCache
from solpay.pricing.oracles import (
    ConfiguredFxRateSource,
    FxRateSource,
    HttpPriceOracle,
    PriceOracle,
    PricePoint,
    PythOracle,
    StaticPriceOracle,
)
from solpay.pricing.rate_engine import RateEngine

__all__ = [
    "ConfiguredFxRateSource",
    "FxRateSource",
    "HttpPriceOracle",
    "PriceOracle",
    "PricePoint",
    "PythOracle",
    "RateEngine",
    "SingleFlightCache",
    "StaticPriceOracle",
]

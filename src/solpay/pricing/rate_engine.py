"""Crypto-to-fiat quote engine.

Forward quote (crypto amount given):
    gross = crypto * spot_usd * fx * (1 - spread_bps / 10000)
    fee   = flat_fee + gross * variable_fee_bps / 10000
    fiat  = gross - fee

Reverse quote (fiat target given) inverts the same formula, rounds the
crypto amount up to the asset's precision and re-derives the forward
figures so the stored quote is self-consistent.

A quote is locked for a fixed window. Before execution it must pass both
the clock check and a fresh slippage check against the current price.
"""

import logging
import uuid
from datetime import timedelta
from decimal import ROUND_DOWN, ROUND_UP, Decimal
from typing import Optional

from solpay.chains.registry import get_chain_config
from solpay.config import get_settings
from solpay.errors import AmountTooSmall, PriceUnavailable, QuoteExpired, SlippageExceeded
from solpay.ledger.models import Quote, QuoteStatus
from solpay.pricing.cache import SingleFlightCache
from solpay.pricing.oracles import (
    ConfiguredFxRateSource,
    FxRateSource,
    PriceOracle,
    PricePoint,
)
from solpay.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

BPS = Decimal("10000")
FIAT_QUANT = Decimal("0.01")


class RateEngine:
    """Produces and validates time-locked quotes."""

    def __init__(
        self,
        primary: PriceOracle,
        fallback: Optional[PriceOracle] = None,
        fx_source: Optional[FxRateSource] = None,
        spread_bps: Optional[int] = None,
        flat_fee: Optional[Decimal] = None,
        variable_fee_bps: Optional[int] = None,
        quote_lock_seconds: Optional[int] = None,
        slippage_tolerance_bps: Optional[int] = None,
        cache_ttl_seconds: Optional[float] = None,
        clock: Clock = utcnow,
    ):
        settings = get_settings()
        self.primary = primary
        self.fallback = fallback
        self.fx_source = fx_source or ConfiguredFxRateSource(settings.fx_rates)

        self.spread_bps = spread_bps if spread_bps is not None else settings.default_spread_bps
        self.flat_fee = Decimal(flat_fee if flat_fee is not None else settings.flat_fee_ngn)
        self.variable_fee_bps = (
            variable_fee_bps if variable_fee_bps is not None else settings.variable_fee_bps
        )
        self.quote_lock_seconds = (
            quote_lock_seconds if quote_lock_seconds is not None else settings.quote_lock_seconds
        )
        self.slippage_tolerance_bps = (
            slippage_tolerance_bps
            if slippage_tolerance_bps is not None
            else settings.slippage_tolerance_bps
        )
        ttl = cache_ttl_seconds if cache_ttl_seconds is not None else settings.price_cache_ttl_seconds
        self._price_cache: SingleFlightCache[PricePoint] = SingleFlightCache(ttl)
        self._fx_cache: SingleFlightCache[Decimal] = SingleFlightCache(ttl)
        self._clock = clock

    # Prices
    async def _fetch_price(self, asset: str) -> PricePoint:
        result = await self.primary.latest_price(asset)
        if result.ok:
            return result.value

        logger.warning(
            f"{self.primary.name} price fetch failed for {asset} "
            f"({result.kind.value}: {result.detail}), using fallback"
        )
        if self.fallback is None:
            raise PriceUnavailable(f"No price for {asset}: {result.detail}")

        fallback_result = await self.fallback.latest_price(asset)
        if fallback_result.ok:
            return fallback_result.value
        raise PriceUnavailable(
            f"No price for {asset}: primary {result.kind.value}, "
            f"fallback {fallback_result.kind.value} ({fallback_result.detail})"
        )

    async def get_price_point(self, asset: str, force_refresh: bool = False) -> PricePoint:
        """Get the cached (or freshly fetched) price point for an asset."""
        asset = asset.upper()
        return await self._price_cache.get(
            asset, lambda: self._fetch_price(asset), force=force_refresh
        )

    async def get_spot_price(self, asset: str, force_refresh: bool = False) -> Decimal:
        """Get the USD spot price of an asset.

        Raises:
            PriceUnavailable: If neither oracle answers
        """
        point = await self.get_price_point(asset, force_refresh)
        return point.usd_price

    async def _fetch_fx(self, from_ccy: str, to_ccy: str) -> Decimal:
        result = await self.fx_source.get_rate(from_ccy, to_ccy)
        if not result.ok:
            raise PriceUnavailable(f"No FX rate {from_ccy}/{to_ccy}: {result.detail}")
        return result.value

    async def get_fx_rate(self, from_ccy: str = "USD", to_ccy: str = "NGN") -> Decimal:
        """Get units of ``to_ccy`` per ``from_ccy``."""
        from_ccy, to_ccy = from_ccy.upper(), to_ccy.upper()
        return await self._fx_cache.get(
            (from_ccy, to_ccy), lambda: self._fetch_fx(from_ccy, to_ccy)
        )

    async def get_all_prices(self, assets: Optional[list[str]] = None) -> dict[str, Decimal]:
        """Get USD prices for several assets, skipping those without a source."""
        if assets is None:
            assets = sorted(
                {a for chain in ("solana", "base") for a in get_chain_config(chain).assets}
            )
        prices = {}
        for asset in assets:
            try:
                prices[asset] = await self.get_spot_price(asset)
            except PriceUnavailable as e:
                logger.warning(f"Skipping {asset}: {e}")
        return prices

    def clear_cache(self) -> None:
        """Drop cached prices and FX rates."""
        self._price_cache.invalidate()
        self._fx_cache.invalidate()

    # Quote math
    def _net_rate(self, spot_usd: Decimal, fx_rate: Decimal, spread_bps: int) -> Decimal:
        """Fiat per unit of crypto after spread."""
        return spot_usd * fx_rate * (1 - Decimal(spread_bps) / BPS)

    def _forward(
        self, crypto_amount: Decimal, spot_usd: Decimal, fx_rate: Decimal
    ) -> tuple[Decimal, Decimal, Decimal]:
        """Return (gross, fee, fiat) for a crypto amount."""
        gross = (crypto_amount * self._net_rate(spot_usd, fx_rate, self.spread_bps)).quantize(
            FIAT_QUANT, rounding=ROUND_DOWN
        )
        fee = (self.flat_fee + gross * Decimal(self.variable_fee_bps) / BPS).quantize(
            FIAT_QUANT, rounding=ROUND_UP
        )
        return gross, fee, gross - fee

    def _reverse(
        self, fiat_target: Decimal, spot_usd: Decimal, fx_rate: Decimal, decimals: int
    ) -> Decimal:
        """Crypto amount whose forward quote nets at least ``fiat_target``."""
        unit = Decimal(1).scaleb(-decimals)
        keep = 1 - Decimal(self.variable_fee_bps) / BPS
        net_rate = self._net_rate(spot_usd, fx_rate, self.spread_bps)

        crypto = ((fiat_target + self.flat_fee) / keep / net_rate).quantize(unit, rounding=ROUND_UP)
        if self._forward(crypto, spot_usd, fx_rate)[2] >= fiat_target:
            return crypto

        # Cent rounding of gross (down) and fee (up) can cost up to 0.02
        gross = (fiat_target + self.flat_fee + FIAT_QUANT) / keep + FIAT_QUANT
        return (gross / net_rate).quantize(unit, rounding=ROUND_UP)

    async def quote(
        self,
        asset: str,
        chain: str,
        crypto_amount: Optional[Decimal] = None,
        fiat_target: Optional[Decimal] = None,
        currency: str = "NGN",
        user_id: Optional[str] = None,
    ) -> Quote:
        """Create a quote for converting crypto to fiat.

        Exactly one of ``crypto_amount`` or ``fiat_target`` must be given.

        Returns:
            An unsaved, active Quote

        Raises:
            ValueError: If both or neither amount is given, or amounts are not positive
            AmountTooSmall: If fees consume the whole gross amount
            PriceUnavailable: If pricing data cannot be obtained
        """
        if (crypto_amount is None) == (fiat_target is None):
            raise ValueError("Provide exactly one of crypto_amount or fiat_target")

        asset = asset.upper()
        currency = currency.upper()
        decimals = get_chain_config(chain).get_decimals(asset)

        point = await self.get_price_point(asset)
        fx_rate = await self.get_fx_rate("USD", currency)

        if fiat_target is not None:
            fiat_target = Decimal(fiat_target)
            if fiat_target <= 0:
                raise ValueError("fiat_target must be positive")
            crypto_amount = self._reverse(fiat_target, point.usd_price, fx_rate, decimals)
        else:
            crypto_amount = Decimal(crypto_amount)
            if crypto_amount <= 0:
                raise ValueError("crypto_amount must be positive")

        gross, fee, fiat = self._forward(crypto_amount, point.usd_price, fx_rate)
        if fiat <= 0:
            raise AmountTooSmall(
                f"Fees ({fee} {currency}) exceed gross amount ({gross} {currency})"
            )

        now = self._clock()
        quote = Quote(
            id=str(uuid.uuid4()),
            user_id=user_id,
            asset=asset,
            chain=chain.lower(),
            crypto_amount=crypto_amount,
            spot_price=point.usd_price,
            fx_rate=fx_rate,
            spread_bps=self.spread_bps,
            flat_fee=self.flat_fee,
            variable_fee_bps=self.variable_fee_bps,
            gross_fiat_amount=gross,
            total_fee=fee,
            fiat_amount=fiat,
            currency=currency,
            price_source=point.source,
            lock_expires_at=now + timedelta(seconds=self.quote_lock_seconds),
            status=QuoteStatus.ACTIVE.value,
            created_at=now,
        )
        logger.info(
            f"Quote {quote.id}: {crypto_amount} {asset} -> {fiat} {currency} "
            f"(spot ${point.usd_price}, fx {fx_rate}, fee {fee})"
        )
        return quote

    # Validation
    async def check_quote(self, quote: Quote) -> None:
        """Re-validate a quote immediately before execution.

        Raises:
            QuoteExpired: If the lock window has elapsed
            SlippageExceeded: If the current price deviates beyond tolerance
        """
        if self._clock() >= quote.lock_expires_at:
            raise QuoteExpired(f"Quote {quote.id} expired at {quote.lock_expires_at}")

        current = await self.get_spot_price(quote.asset, force_refresh=True)
        recorded = Decimal(quote.spot_price)
        deviation_bps = abs(current - recorded) / recorded * BPS
        if deviation_bps > self.slippage_tolerance_bps:
            raise SlippageExceeded(recorded, current, deviation_bps)

    async def validate_quote(self, quote: Quote) -> bool:
        """Check whether a quote is still executable."""
        try:
            await self.check_quote(quote)
        except (QuoteExpired, SlippageExceeded) as e:
            logger.info(f"Quote {quote.id} rejected: {e}")
            return False
        return True

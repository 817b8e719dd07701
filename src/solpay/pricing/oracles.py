"""Price and FX sources.

Oracles return tagged results instead of raising, so the rate engine can
fall back from the primary source to the secondary one on any failure.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx

from solpay.result import Err, ErrorKind, Ok, Result

logger = logging.getLogger(__name__)

# Pyth price feed ids (USD quoted)
PYTH_PRICE_IDS: dict[str, str] = {
    "USDC": "0xeaa020c61cc479712813461ce153894a96a6c00b21ed0cfc2798d1f9a9e9c94a",
    "USDT": "0x2b89b9dc8fdf9f34709a5b106b472f0f39bb6ca9ce04b0fd7f2e971688e2e53b",
    "SOL": "0xef0d8b6fda2ceba41da15d4095d1da392a0d2f8ed0c6c7bc0f4cfac8c280b56d",
    "ETH": "0xff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace",
}


@dataclass
class PricePoint:
    """USD price of an asset from one source."""

    asset: str
    usd_price: Decimal
    source: str
    timestamp: float = field(default_factory=time.time)


class PriceOracle(ABC):
    """Abstract base class for USD price sources."""

    name: str = "oracle"

    @abstractmethod
    async def latest_price(self, asset: str) -> Result[PricePoint]:
        """Get the latest USD price for an asset."""
        pass


class PythOracle(PriceOracle):
    """Pyth Network price service (Hermes)."""

    name = "pyth"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        price_ids: Optional[dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.price_ids = price_ids or PYTH_PRICE_IDS
        self._transport = transport

    async def latest_price(self, asset: str) -> Result[PricePoint]:
        asset = asset.upper()
        price_id = self.price_ids.get(asset)
        if not price_id:
            return Err(ErrorKind.NOT_FOUND, f"No Pyth price id for {asset}")

        headers = {"X-API-Key": self.api_key} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await asyncio.wait_for(
                    client.get(
                        f"{self.base_url}/api/latest_price_feeds",
                        params={"ids[]": price_id},
                        headers=headers,
                    ),
                    timeout=self.timeout,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return Err(ErrorKind.TIMEOUT, "Pyth request timed out")
        except httpx.HTTPError as e:
            return Err(ErrorKind.NETWORK, str(e))

        if response.status_code != 200:
            return Err(ErrorKind.NETWORK, f"Pyth returned HTTP {response.status_code}")

        try:
            feed = response.json()[0]
            price = feed["price"]
            usd = Decimal(str(price["price"])).scaleb(int(price["expo"]))
        except (ValueError, KeyError, IndexError, TypeError, InvalidOperation) as e:
            return Err(ErrorKind.INVALID_RESPONSE, f"Invalid Pyth response: {e}")

        if usd <= 0:
            return Err(ErrorKind.INVALID_RESPONSE, f"Non-positive Pyth price for {asset}")

        logger.debug(f"Pyth price for {asset}: ${usd}")
        return Ok(PricePoint(asset=asset, usd_price=usd, source=self.name))


class HttpPriceOracle(PriceOracle):
    """Generic fallback source answering ``GET url?asset=SOL`` with ``{"price": ...}``."""

    name = "fallback"

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def latest_price(self, asset: str) -> Result[PricePoint]:
        asset = asset.upper()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await asyncio.wait_for(
                    client.get(self.url, params={"asset": asset}),
                    timeout=self.timeout,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return Err(ErrorKind.TIMEOUT, "Fallback price request timed out")
        except httpx.HTTPError as e:
            return Err(ErrorKind.NETWORK, str(e))

        if response.status_code == 404:
            return Err(ErrorKind.NOT_FOUND, f"No fallback price for {asset}")
        if response.status_code != 200:
            return Err(ErrorKind.NETWORK, f"Fallback returned HTTP {response.status_code}")

        try:
            usd = Decimal(str(response.json()["price"]))
        except (ValueError, KeyError, TypeError, InvalidOperation) as e:
            return Err(ErrorKind.INVALID_RESPONSE, f"Invalid fallback response: {e}")

        if usd <= 0:
            return Err(ErrorKind.INVALID_RESPONSE, f"Non-positive fallback price for {asset}")
        return Ok(PricePoint(asset=asset, usd_price=usd, source=self.name))


class StaticPriceOracle(PriceOracle):
    """Fixed prices for testing and dry-run mode."""

    name = "static"

    def __init__(self, prices: Optional[dict[str, Decimal]] = None):
        self._prices = {k.upper(): Decimal(v) for k, v in (prices or {}).items()}
        self.calls = 0

    def set_price(self, asset: str, price: Decimal) -> None:
        """Set simulated price for an asset."""
        self._prices[asset.upper()] = Decimal(price)

    async def latest_price(self, asset: str) -> Result[PricePoint]:
        self.calls += 1
        price = self._prices.get(asset.upper())
        if price is None:
            return Err(ErrorKind.NOT_FOUND, f"No static price for {asset}")
        return Ok(PricePoint(asset=asset.upper(), usd_price=price, source=self.name))


class FxRateSource(ABC):
    """Abstract source of fiat exchange rates."""

    @abstractmethod
    async def get_rate(self, from_ccy: str, to_ccy: str) -> Result[Decimal]:
        """Get units of ``to_ccy`` per one ``from_ccy``."""
        pass


class ConfiguredFxRateSource(FxRateSource):
    """FX rates from a configured table keyed ``FROM_TO``."""

    def __init__(self, rates: dict[str, Decimal]):
        self._rates = {k.upper(): Decimal(v) for k, v in rates.items()}

    async def get_rate(self, from_ccy: str, to_ccy: str) -> Result[Decimal]:
        from_ccy, to_ccy = from_ccy.upper(), to_ccy.upper()
        if from_ccy == to_ccy:
            return Ok(Decimal("1"))

        rate = self._rates.get(f"{from_ccy}_{to_ccy}")
        if rate is not None:
            return Ok(rate)
        inverse = self._rates.get(f"{to_ccy}_{from_ccy}")
        if inverse:
            return Ok(Decimal("1") / inverse)
        return Err(ErrorKind.NOT_FOUND, f"Unsupported FX pair: {from_ccy}/{to_ccy}")

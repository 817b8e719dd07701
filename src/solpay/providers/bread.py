"""Bread offramp settlement provider.

API:
    POST /offramp/execute         submit a crypto-to-fiat payout
    GET  /offramp/status/{id}     poll its status

Requests authenticate with the ``x-service-key`` header. Responses wrap
the payload as ``{"success": ..., "data": {...}}``.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx

from solpay.providers.base import (
    OfframpRequest,
    OfframpStatus,
    OfframpSubmission,
    SettlementProvider,
)
from solpay.result import Err, ErrorKind, Ok, Result

logger = logging.getLogger(__name__)


class BreadSettlementProvider(SettlementProvider):
    """Settlement through the Bread offramp API."""

    name = "bread"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"x-service-key": self.api_key, "Content-Type": "application/json"},
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Result[dict]:
        """Perform a request and unwrap the ``data`` envelope."""
        try:
            async with self._client() as client:
                response = await asyncio.wait_for(
                    client.request(method, path, **kwargs), timeout=self.timeout
                )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return Err(ErrorKind.TIMEOUT, f"{method} {path} timed out")
        except httpx.HTTPError as e:
            return Err(ErrorKind.NETWORK, f"{method} {path} failed: {e}")

        if response.status_code == 404:
            return Err(ErrorKind.NOT_FOUND, f"{path} not found")
        if response.status_code in (400, 401, 403, 409, 422):
            return Err(ErrorKind.REJECTED, f"HTTP {response.status_code}: {response.text[:200]}")
        if response.status_code >= 400:
            return Err(ErrorKind.NETWORK, f"HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            return Err(ErrorKind.INVALID_RESPONSE, "Response is not JSON")

        data = body.get("data", body) if isinstance(body, dict) else None
        if not isinstance(data, dict):
            return Err(ErrorKind.INVALID_RESPONSE, "Missing data object")
        return Ok(data)

    async def submit_offramp(self, request: OfframpRequest) -> Result[OfframpSubmission]:
        payload = {
            "asset": request.provider_asset,
            "amount": str(request.crypto_amount),
            "currency": request.currency,
            "bank_code": request.bank_code,
            "account_number": request.account_number,
            "reference": request.reference,
        }
        if request.source_address:
            payload["source_address"] = request.source_address

        logger.info(
            f"Executing Bread offramp {request.reference}: "
            f"{request.crypto_amount} {request.provider_asset} to bank {request.bank_code}"
        )
        result = await self._request("POST", "/offramp/execute", json=payload)
        if not result.ok:
            return result

        data = result.value
        if not data.get("id"):
            return Err(ErrorKind.INVALID_RESPONSE, "Offramp response has no id")
        return Ok(
            OfframpSubmission(
                provider_reference=str(data["id"]),
                status=str(data.get("status", "pending")).lower(),
                raw=data,
            )
        )

    async def get_offramp_status(self, provider_reference: str) -> Result[OfframpStatus]:
        result = await self._request("GET", f"/offramp/status/{provider_reference}")
        if not result.ok:
            return result

        data = result.value
        status = data.get("status")
        if not status:
            return Err(ErrorKind.INVALID_RESPONSE, "Status response has no status")
        return Ok(
            OfframpStatus(
                provider_reference=provider_reference,
                status=str(status).lower(),
                tx_hash=data.get("tx_hash"),
                raw=data,
            )
        )

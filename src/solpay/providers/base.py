"""Base interfaces for external settlement and identity providers.

Payout flow:
1. Quote is executed and a pending payout is stored
2. Offramp request is submitted to the settlement provider
3. Provider reference is recorded on the payout
4. Reconciliation polls provider status until a terminal state
"""

import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from solpay.result import Err, ErrorKind, Ok, Result

logger = logging.getLogger(__name__)


@dataclass
class OfframpRequest:
    """Request to convert swept crypto into a fiat bank payout."""

    reference: str  # our payout id, used as idempotency key
    chain: str
    asset: str
    crypto_amount: Decimal
    fiat_amount: Decimal
    currency: str
    bank_code: str
    account_number: str
    account_name: Optional[str] = None
    source_address: Optional[str] = None  # treasury wallet holding the funds

    @property
    def provider_asset(self) -> str:
        """Asset id in ``chain:asset`` form."""
        return f"{self.chain.lower()}:{self.asset.lower()}"


@dataclass
class OfframpSubmission:
    """Provider acknowledgement of an offramp request."""

    provider_reference: str
    status: str
    raw: dict = field(default_factory=dict)


@dataclass
class OfframpStatus:
    """Provider-side status of an offramp."""

    provider_reference: str
    status: str  # pending, processing, completed, failed, reversed ...
    tx_hash: Optional[str] = None
    raw: dict = field(default_factory=dict)


class SettlementProvider(ABC):
    """Abstract fiat settlement provider."""

    name: str = "provider"

    @abstractmethod
    async def submit_offramp(self, request: OfframpRequest) -> Result[OfframpSubmission]:
        """Submit an offramp request."""
        pass

    @abstractmethod
    async def get_offramp_status(self, provider_reference: str) -> Result[OfframpStatus]:
        """Look up the status of a submitted offramp."""
        pass


class SimulatedSettlementProvider(SettlementProvider):
    """Simulated provider for testing and dry-run mode.

    Submissions are accepted unless a failure is queued. Status lookups
    answer from an in-memory table that tests can edit.
    """

    name = "simulated"

    def __init__(self):
        self.requests: list[OfframpRequest] = []
        self.statuses: dict[str, str] = {}
        self.status_calls: list[str] = []
        self._next_submit_error: Optional[Err] = None

    def fail_next_submit(self, kind: ErrorKind, detail: str = "") -> None:
        self._next_submit_error = Err(kind, detail)

    def set_status(self, provider_reference: str, status: str) -> None:
        self.statuses[provider_reference] = status

    def forget(self, provider_reference: str) -> None:
        """Make a reference unknown to the provider."""
        self.statuses.pop(provider_reference, None)

    async def submit_offramp(self, request: OfframpRequest) -> Result[OfframpSubmission]:
        self.requests.append(request)
        if self._next_submit_error is not None:
            error, self._next_submit_error = self._next_submit_error, None
            return error

        reference = f"sim_off_{secrets.token_hex(8)}"
        self.statuses[reference] = "pending"
        logger.info(
            f"[SIMULATED] Offramp {request.crypto_amount} {request.provider_asset} "
            f"-> {request.fiat_amount} {request.currency}"
        )
        return Ok(OfframpSubmission(provider_reference=reference, status="pending"))

    async def get_offramp_status(self, provider_reference: str) -> Result[OfframpStatus]:
        self.status_calls.append(provider_reference)
        status = self.statuses.get(provider_reference)
        if status is None:
            return Err(ErrorKind.NOT_FOUND, f"Unknown offramp {provider_reference}")
        return Ok(OfframpStatus(provider_reference=provider_reference, status=status))


class IdentityProvider(ABC):
    """Source of user verification tiers."""

    @abstractmethod
    async def get_verification_tier(self, user_id: str) -> int:
        """Get the KYC tier of a user (0 = unverified)."""
        pass

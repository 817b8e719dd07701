"""Exception taxonomy for custody, sweeping, pricing and settlement."""

from decimal import Decimal
from typing import Optional


class SolPayError(Exception):
    """Base class for all domain errors."""

    pass


class IntegrityError(SolPayError):
    """Ciphertext failed authentication (tampered blob or wrong master secret).

    Fatal: retrying with the same inputs cannot succeed.
    """

    pass


class ChainError(SolPayError):
    """An RPC call to a chain failed or returned something unusable."""

    pass


class TransactionRejected(ChainError):
    """The chain refused a submitted transaction."""

    pass


class InsufficientGasCapacity(SolPayError):
    """The gas sponsor wallet cannot cover threshold plus the estimated fee."""

    def __init__(self, chain: str, balance: Decimal, required: Decimal):
        self.chain = chain
        self.balance = balance
        self.required = required
        super().__init__(
            f"Gas sponsor on {chain} has {balance}, needs at least {required}"
        )


class SponsorNotConfigured(SolPayError):
    """No active gas sponsor wallet exists for the chain."""

    pass


class QuoteNotActive(SolPayError):
    """The quote is not in the active state."""

    pass


class QuoteExpired(SolPayError):
    """The quote lock elapsed before execution."""

    pass


class SlippageExceeded(SolPayError):
    """The spot price moved beyond the slippage tolerance since quoting."""

    def __init__(self, quoted: Decimal, current: Decimal, deviation_bps: Decimal):
        self.quoted = quoted
        self.current = current
        self.deviation_bps = deviation_bps
        super().__init__(
            f"Price moved {deviation_bps:.2f} bps (quoted {quoted}, now {current})"
        )


class PriceUnavailable(SolPayError):
    """No price source produced a usable spot or FX rate."""

    pass


class AmountTooSmall(SolPayError):
    """Fees consume the whole gross amount."""

    pass


class PayoutLimitExceeded(SolPayError):
    """The payout would exceed the user's verification-tier limit."""

    pass


class SweepUnderfunded(SolPayError):
    """A confirmed balance cannot pay for its own transfer fee."""

    def __init__(self, deposit_id: str, balance: Decimal, reserved_fee: Decimal):
        self.deposit_id = deposit_id
        self.balance = balance
        self.reserved_fee = reserved_fee
        super().__init__(
            f"Deposit {deposit_id}: balance {balance} does not cover fee {reserved_fee}"
        )


class ReorgDetected(SolPayError):
    """A confirmed deposit lost confirmations or disappeared from the chain."""

    pass


class SettlementAnomaly(SolPayError):
    """Provider status for a payout could not be resolved within the expected window."""

    def __init__(self, payout_id: str, reason: str, provider_reference: Optional[str] = None):
        self.payout_id = payout_id
        self.reason = reason
        self.provider_reference = provider_reference
        super().__init__(f"Payout {payout_id}: {reason}")

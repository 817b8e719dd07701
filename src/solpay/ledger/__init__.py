"""Ledger module for database operations."""

from solpay.ledger.database import close_db, get_session_factory, init_db
from solpay.ledger.models import (
    Base,
    Beneficiary,
    DepositAddress,
    DepositStatus,
    GasSponsorWallet,
    OnchainDeposit,
    Payout,
    PayoutStatus,
    Quote,
    QuoteStatus,
    TreasuryWallet,
)
from solpay.ledger.repository import LedgerRepository

__all__ = [
    "Base",
    "Beneficiary",
    "DepositAddress",
    "DepositStatus",
    "GasSponsorWallet",
    "OnchainDeposit",
    "Payout",
    "PayoutStatus",
    "Quote",
    "QuoteStatus",
    "TreasuryWallet",
    "LedgerRepository",
    "close_db",
    "get_session_factory",
    "init_db",
]

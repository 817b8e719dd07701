"""SQLAlchemy models for custody, deposits, quotes and payouts."""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from solpay.utils.clock import utcnow


def new_id() -> str:
    """Generate a primary key."""
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class DepositStatus(str, Enum):
    """Lifecycle of an on-chain deposit.

    detected -> confirming -> confirmed -> swept, with failed reachable
    from detected/confirming.
    """

    DETECTED = "detected"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    SWEPT = "swept"
    FAILED = "failed"


class QuoteStatus(str, Enum):
    """Status of a quote."""

    ACTIVE = "active"
    EXPIRED = "expired"
    EXECUTED = "executed"
    CANCELLED = "cancelled"


class PayoutStatus(str, Enum):
    """Status of a fiat payout."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    REVERSED = "reversed"


class DepositAddress(Base):
    """Custodial deposit address per user, chain and asset group."""

    __tablename__ = "deposit_addresses"
    __table_args__ = (Index("ix_deposit_addresses_user_chain", "user_id", "chain", "asset"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)  # asset group
    address: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)
    derivation_path: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    encrypted_private_key: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    disabled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    deposits: Mapped[list["OnchainDeposit"]] = relationship(back_populates="deposit_address")

    @property
    def is_active(self) -> bool:
        return self.disabled_at is None


class OnchainDeposit(Base):
    """An inbound transfer to a deposit address."""

    __tablename__ = "onchain_deposits"
    __table_args__ = (
        Index(
            "ix_onchain_deposits_transfer",
            "chain",
            "tx_ref",
            "deposit_address_id",
            "asset",
            unique=True,
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    deposit_address_id: Mapped[str] = mapped_column(
        ForeignKey("deposit_addresses.id"), nullable=False, index=True
    )
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)
    tx_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    from_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    confirmations: Mapped[int] = mapped_column(Integer, default=0)
    required_confirmations: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=DepositStatus.DETECTED.value, nullable=False, index=True
    )
    detected_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    swept_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    sweep_tx_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Retry bookkeeping and manual review escalation
    sweep_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    needs_review: Mapped[bool] = mapped_column(Boolean, default=False)
    review_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Native gas sent to the deposit address so it can pay for its own sweep
    gas_top_ups: Mapped[int] = mapped_column(Integer, default=0)
    gas_top_up_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    deposit_address: Mapped["DepositAddress"] = relationship(back_populates="deposits")


class GasSponsorWallet(Base):
    """Funding wallet that pays transaction fees on one chain."""

    __tablename__ = "gas_sponsor_wallets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    chain: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    address: Mapped[str] = mapped_column(String(128), nullable=False)
    encrypted_private_key: Mapped[str] = mapped_column(Text, nullable=False)
    min_balance_threshold: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class TreasuryWallet(Base):
    """Sweep destination per chain and asset."""

    __tablename__ = "treasury_wallets"
    __table_args__ = (Index("ix_treasury_wallets_chain_asset", "chain", "asset", unique=True),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)
    hot_address: Mapped[str] = mapped_column(String(128), nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(36, 18), default=Decimal("0"))
    last_sweep_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Quote(Base):
    """Time-locked crypto-to-fiat conversion offer."""

    __tablename__ = "quotes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    crypto_amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    spot_price: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)  # USD
    fx_rate: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    spread_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    flat_fee: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    variable_fee_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    gross_fiat_amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    total_fee: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    fiat_amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    price_source: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    lock_expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=QuoteStatus.ACTIVE.value, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Beneficiary(Base):
    """Bank account that receives fiat payouts."""

    __tablename__ = "beneficiaries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    bank_code: Mapped[str] = mapped_column(String(20), nullable=False)
    bank_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    account_number: Mapped[str] = mapped_column(String(20), nullable=False)
    account_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Payout(Base):
    """Fiat settlement of exactly one executed quote."""

    __tablename__ = "payouts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    quote_id: Mapped[str] = mapped_column(ForeignKey("quotes.id"), unique=True, nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    beneficiary_id: Mapped[str] = mapped_column(ForeignKey("beneficiaries.id"), nullable=False)
    fiat_amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=PayoutStatus.PENDING.value, nullable=False, index=True
    )
    provider_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    needs_review: Mapped[bool] = mapped_column(Boolean, default=False)
    review_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

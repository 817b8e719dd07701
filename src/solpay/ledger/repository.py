"""Repository for ledger operations."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from solpay.ledger.models import (
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
from solpay.utils.clock import utcnow


class LedgerRepository:
    """Repository for all ledger-related database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Deposit address operations
    async def get_deposit_address(self, address_id: str) -> Optional[DepositAddress]:
        """Get deposit address by primary key."""
        return await self.session.get(DepositAddress, address_id)

    async def get_deposit_address_by_address(self, address: str) -> Optional[DepositAddress]:
        """Get deposit address record by on-chain address."""
        stmt = select(DepositAddress).where(DepositAddress.address == address)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_deposit_address(
        self, user_id: str, chain: str, asset: str
    ) -> Optional[DepositAddress]:
        """Get the active deposit address for a user, chain and asset group."""
        stmt = (
            select(DepositAddress)
            .where(
                DepositAddress.user_id == user_id,
                DepositAddress.chain == chain.lower(),
                DepositAddress.asset == asset.upper(),
                DepositAddress.disabled_at.is_(None),
            )
            .order_by(DepositAddress.created_at.desc())
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def list_active_deposit_addresses(self, chain: str) -> list[DepositAddress]:
        """List all active deposit addresses on a chain."""
        stmt = (
            select(DepositAddress)
            .where(DepositAddress.chain == chain.lower(), DepositAddress.disabled_at.is_(None))
            .order_by(DepositAddress.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def create_deposit_address(
        self,
        user_id: str,
        chain: str,
        asset: str,
        address: str,
        encrypted_private_key: str,
        derivation_path: Optional[str] = None,
    ) -> DepositAddress:
        """Persist a new deposit address."""
        record = DepositAddress(
            user_id=user_id,
            chain=chain.lower(),
            asset=asset.upper(),
            address=address,
            encrypted_private_key=encrypted_private_key,
            derivation_path=derivation_path,
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def disable_deposit_address(self, address_id: str) -> Optional[DepositAddress]:
        """Retire a deposit address. Returns None if it does not exist."""
        record = await self.get_deposit_address(address_id)
        if record is not None and record.disabled_at is None:
            record.disabled_at = utcnow()
            await self.session.flush()
        return record

    # On-chain deposit operations
    async def get_deposit(self, deposit_id: str) -> Optional[OnchainDeposit]:
        """Get deposit by ID with its deposit address loaded."""
        stmt = (
            select(OnchainDeposit)
            .options(selectinload(OnchainDeposit.deposit_address))
            .where(OnchainDeposit.id == deposit_id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_deposit_by_tx(
        self,
        chain: str,
        tx_ref: str,
        deposit_address_id: Optional[str] = None,
        asset: Optional[str] = None,
    ) -> Optional[OnchainDeposit]:
        """Get deposit by chain and transaction reference.

        One transaction can pay several deposit addresses or carry several
        assets, so pass the address and asset to pick a single transfer.
        """
        stmt = select(OnchainDeposit).where(
            OnchainDeposit.chain == chain.lower(), OnchainDeposit.tx_ref == tx_ref
        )
        if deposit_address_id is not None:
            stmt = stmt.where(OnchainDeposit.deposit_address_id == deposit_address_id)
        if asset is not None:
            stmt = stmt.where(OnchainDeposit.asset == asset.upper())
        result = await self.session.execute(stmt.order_by(OnchainDeposit.detected_at))
        return result.scalars().first()

    async def create_deposit(
        self,
        deposit_address: DepositAddress,
        asset: str,
        tx_ref: str,
        amount: Decimal,
        required_confirmations: int,
        from_address: Optional[str] = None,
    ) -> OnchainDeposit:
        """Record a newly detected deposit."""
        deposit = OnchainDeposit(
            deposit_address_id=deposit_address.id,
            chain=deposit_address.chain,
            asset=asset.upper(),
            tx_ref=tx_ref,
            from_address=from_address,
            amount=amount,
            confirmations=0,
            required_confirmations=required_confirmations,
            status=DepositStatus.DETECTED.value,
        )
        self.session.add(deposit)
        await self.session.flush()
        return deposit

    async def list_deposits_by_status(
        self, statuses: list[DepositStatus], chain: Optional[str] = None
    ) -> list[OnchainDeposit]:
        """List deposits in any of the given statuses."""
        stmt = select(OnchainDeposit).where(
            OnchainDeposit.status.in_([s.value for s in statuses])
        )
        if chain:
            stmt = stmt.where(OnchainDeposit.chain == chain.lower())
        stmt = stmt.order_by(OnchainDeposit.detected_at)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_sweepable_deposits(self, chain: Optional[str] = None) -> list[OnchainDeposit]:
        """List confirmed deposits not waiting on manual review."""
        stmt = select(OnchainDeposit).where(
            OnchainDeposit.status == DepositStatus.CONFIRMED.value,
            OnchainDeposit.needs_review.is_(False),
        )
        if chain:
            stmt = stmt.where(OnchainDeposit.chain == chain.lower())
        stmt = stmt.order_by(OnchainDeposit.confirmed_at)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def mark_deposit_swept(self, deposit_id: str, sweep_tx_ref: str) -> bool:
        """Transition a deposit from confirmed to swept.

        Conditional on the current status, so a deposit can only be swept
        once even if two writers race.

        Returns:
            True if this call performed the transition
        """
        now = utcnow()
        stmt = (
            update(OnchainDeposit)
            .where(
                OnchainDeposit.id == deposit_id,
                OnchainDeposit.status == DepositStatus.CONFIRMED.value,
            )
            .values(
                status=DepositStatus.SWEPT.value,
                sweep_tx_ref=sweep_tx_ref,
                swept_at=now,
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def record_sweep_failure(
        self, deposit_id: str, error: str, max_attempts: int
    ) -> Optional[OnchainDeposit]:
        """Count a failed sweep attempt and escalate once the bound is hit."""
        deposit = await self.session.get(OnchainDeposit, deposit_id)
        if deposit is None:
            return None
        deposit.sweep_attempts = (deposit.sweep_attempts or 0) + 1
        deposit.last_error = error
        if deposit.sweep_attempts >= max_attempts:
            deposit.needs_review = True
            deposit.review_reason = f"Sweep failed {deposit.sweep_attempts} times: {error}"
        await self.session.flush()
        return deposit

    async def record_gas_top_up(self, deposit_id: str, tx_ref: str) -> Optional[OnchainDeposit]:
        """Remember the latest native gas top-up sent for a deposit's sweep."""
        deposit = await self.session.get(OnchainDeposit, deposit_id)
        if deposit is None:
            return None
        deposit.gas_top_ups = (deposit.gas_top_ups or 0) + 1
        deposit.gas_top_up_ref = tx_ref
        await self.session.flush()
        return deposit

    async def flag_deposit(self, deposit_id: str, reason: str) -> Optional[OnchainDeposit]:
        """Flag a deposit for manual review."""
        deposit = await self.session.get(OnchainDeposit, deposit_id)
        if deposit is None:
            return None
        deposit.needs_review = True
        deposit.review_reason = reason
        await self.session.flush()
        return deposit

    # Gas sponsor operations
    async def get_active_sponsor_wallet(self, chain: str) -> Optional[GasSponsorWallet]:
        """Get the active gas sponsor wallet for a chain."""
        stmt = (
            select(GasSponsorWallet)
            .where(GasSponsorWallet.chain == chain.lower(), GasSponsorWallet.is_active.is_(True))
            .order_by(GasSponsorWallet.created_at.desc())
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def create_sponsor_wallet(
        self,
        chain: str,
        address: str,
        encrypted_private_key: str,
        min_balance_threshold: Decimal,
    ) -> GasSponsorWallet:
        """Register a sponsor wallet, deactivating any previous one on the chain."""
        stmt = (
            update(GasSponsorWallet)
            .where(GasSponsorWallet.chain == chain.lower(), GasSponsorWallet.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

        wallet = GasSponsorWallet(
            chain=chain.lower(),
            address=address,
            encrypted_private_key=encrypted_private_key,
            min_balance_threshold=min_balance_threshold,
            is_active=True,
        )
        self.session.add(wallet)
        await self.session.flush()
        return wallet

    # Treasury operations
    async def get_treasury_wallet(self, chain: str, asset: str) -> Optional[TreasuryWallet]:
        """Get the treasury wallet for a chain and asset."""
        stmt = select(TreasuryWallet).where(
            TreasuryWallet.chain == chain.lower(), TreasuryWallet.asset == asset.upper()
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_treasury_wallet(
        self, chain: str, asset: str, hot_address: str
    ) -> TreasuryWallet:
        """Get or create the treasury record for chain/asset."""
        wallet = await self.get_treasury_wallet(chain, asset)
        if wallet is None:
            wallet = TreasuryWallet(
                chain=chain.lower(),
                asset=asset.upper(),
                hot_address=hot_address,
                balance=Decimal("0"),
            )
            self.session.add(wallet)
            await self.session.flush()
        return wallet

    async def credit_treasury(self, chain: str, asset: str, amount: Decimal) -> None:
        """Add a swept amount to the treasury balance."""
        stmt = (
            update(TreasuryWallet)
            .where(TreasuryWallet.chain == chain.lower(), TreasuryWallet.asset == asset.upper())
            .values(balance=TreasuryWallet.balance + amount, last_sweep_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    # Quote operations
    async def get_quote(self, quote_id: str) -> Optional[Quote]:
        """Get quote by ID."""
        return await self.session.get(Quote, quote_id)

    async def save_quote(self, quote: Quote) -> Quote:
        """Persist a quote produced by the rate engine."""
        self.session.add(quote)
        await self.session.flush()
        return quote

    async def mark_quote_executed(self, quote_id: str) -> bool:
        """Transition an active quote to executed. Returns False if it was not active."""
        stmt = (
            update(Quote)
            .where(Quote.id == quote_id, Quote.status == QuoteStatus.ACTIVE.value)
            .values(status=QuoteStatus.EXECUTED.value, executed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def mark_quote_expired(self, quote_id: str) -> bool:
        """Transition an active quote to expired."""
        stmt = (
            update(Quote)
            .where(Quote.id == quote_id, Quote.status == QuoteStatus.ACTIVE.value)
            .values(status=QuoteStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    # Beneficiary operations
    async def create_beneficiary(
        self,
        user_id: str,
        bank_code: str,
        account_number: str,
        account_name: Optional[str] = None,
        bank_name: Optional[str] = None,
    ) -> Beneficiary:
        """Store a payout destination."""
        beneficiary = Beneficiary(
            user_id=user_id,
            bank_code=bank_code,
            account_number=account_number,
            account_name=account_name,
            bank_name=bank_name,
        )
        self.session.add(beneficiary)
        await self.session.flush()
        return beneficiary

    async def get_beneficiary(self, beneficiary_id: str) -> Optional[Beneficiary]:
        """Get beneficiary by ID."""
        return await self.session.get(Beneficiary, beneficiary_id)

    # Payout operations
    async def create_payout(self, quote: Quote, beneficiary: Beneficiary) -> Payout:
        """Create a pending payout for an executed quote."""
        payout = Payout(
            quote_id=quote.id,
            user_id=quote.user_id,
            beneficiary_id=beneficiary.id,
            fiat_amount=quote.fiat_amount,
            currency=quote.currency,
            status=PayoutStatus.PENDING.value,
        )
        self.session.add(payout)
        await self.session.flush()
        return payout

    async def get_payout(self, payout_id: str) -> Optional[Payout]:
        """Get payout by ID."""
        return await self.session.get(Payout, payout_id)

    async def get_payout_by_quote(self, quote_id: str) -> Optional[Payout]:
        """Get the payout created for a quote."""
        stmt = select(Payout).where(Payout.quote_id == quote_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_unresolved_payouts(
        self, created_after: datetime, created_before: datetime
    ) -> list[Payout]:
        """List pending/processing payouts created inside a window."""
        stmt = (
            select(Payout)
            .where(
                Payout.status.in_([PayoutStatus.PENDING.value, PayoutStatus.PROCESSING.value]),
                Payout.created_at >= created_after,
                Payout.created_at <= created_before,
            )
            .order_by(Payout.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_payout_volume(self, user_id: str, since: datetime) -> Decimal:
        """Sum of payouts for a user since a point in time, excluding failed ones."""
        stmt = select(func.coalesce(func.sum(Payout.fiat_amount), 0)).where(
            Payout.user_id == user_id,
            Payout.created_at >= since,
            Payout.status.notin_([PayoutStatus.FAILED.value, PayoutStatus.REVERSED.value]),
        )
        result = await self.session.execute(stmt)
        return Decimal(str(result.scalar_one()))

    async def update_payout_status(
        self,
        payout_id: str,
        status: PayoutStatus,
        provider_reference: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Optional[Payout]:
        """Update payout status. Terminal statuses are never overwritten."""
        payout = await self.get_payout(payout_id)
        if payout is None:
            return None
        if payout.status in (
            PayoutStatus.SUCCESS.value,
            PayoutStatus.FAILED.value,
            PayoutStatus.REVERSED.value,
        ):
            return payout

        payout.status = status.value
        if provider_reference:
            payout.provider_reference = provider_reference
        if error_message:
            payout.error_message = error_message
        if status in (PayoutStatus.SUCCESS, PayoutStatus.FAILED, PayoutStatus.REVERSED):
            payout.completed_at = utcnow()
        await self.session.flush()
        return payout

    async def flag_payout(self, payout_id: str, reason: str) -> Optional[Payout]:
        """Flag a payout for manual review."""
        payout = await self.get_payout(payout_id)
        if payout is None:
            return None
        payout.needs_review = True
        payout.review_reason = reason
        await self.session.flush()
        return payout

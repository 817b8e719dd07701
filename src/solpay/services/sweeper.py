"""Treasury sweeper - moves confirmed deposits from deposit addresses to treasury."""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from solpay.chains.base import ChainAdapter, TxStatus
from solpay.chains.factory import get_chain_adapter
from solpay.config import get_settings
from solpay.crypto import KeyVault
from solpay.errors import (
    ChainError,
    InsufficientGasCapacity,
    IntegrityError,
    SweepUnderfunded,
    TransactionRejected,
)
from solpay.ledger.models import DepositAddress, DepositStatus, OnchainDeposit
from solpay.ledger.repository import LedgerRepository
from solpay.services.gas_sponsor import GasSponsor
from solpay.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

AWAITING_GAS_PREFIX = "Awaiting gas top-up"


@dataclass
class SweepResult:
    """Outcome of one sweep attempt."""

    deposit_id: str
    status: str  # swept, already_swept, not_ready, awaiting_gas, underfunded, failed, review
    tx_ref: Optional[str] = None
    amount: Optional[Decimal] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status in ("swept", "already_swept")


class Sweeper:
    """Sweeps confirmed deposits to the treasury wallet of their chain."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: KeyVault,
        gas_sponsor: Optional[GasSponsor] = None,
        adapter_provider: Callable[[str], ChainAdapter] = get_chain_adapter,
        treasury_addresses: Optional[dict[str, str]] = None,
        max_attempts: Optional[int] = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.vault = vault
        self.gas_sponsor = gas_sponsor
        self.get_adapter = adapter_provider
        self.treasury_addresses = treasury_addresses or {}
        self.max_attempts = max_attempts or settings.max_sweep_attempts
        self._deposit_locks = KeyedLock("sweep")
        self._address_locks = KeyedLock("sweep-address")
        self._running = False

    def _treasury_address(self, chain: str) -> Optional[str]:
        return self.treasury_addresses.get(chain) or get_settings().get_treasury_address(chain)

    async def sweep(self, deposit_id: str) -> SweepResult:
        """Sweep one confirmed deposit.

        Safe to call concurrently and repeatedly: a deposit is transferred
        and marked swept at most once.
        """
        async with self._deposit_locks.hold(deposit_id, operation="sweep"):
            async with self.session_factory() as session:
                deposit = await LedgerRepository(session).get_deposit(deposit_id)

            if deposit is None:
                raise ValueError(f"Deposit {deposit_id} not found")
            if deposit.status == DepositStatus.SWEPT.value:
                return SweepResult(deposit_id, "already_swept", tx_ref=deposit.sweep_tx_ref)
            if deposit.status != DepositStatus.CONFIRMED.value:
                return SweepResult(deposit_id, "not_ready")
            if deposit.needs_review:
                return SweepResult(deposit_id, "review", error=deposit.review_reason)

            address = deposit.deposit_address
            if not address.is_active:
                # Retired addresses are never swept; the funds need an operator
                reason = f"Deposit address {address.address} retired with confirmed funds"
                await self._flag(deposit_id, reason)
                logger.error(f"Deposit {deposit_id} needs manual review: {reason}")
                return SweepResult(deposit_id, "review", error=reason)

            treasury = self._treasury_address(deposit.chain)
            if not treasury:
                logger.error(f"No treasury address configured for {deposit.chain}")
                return SweepResult(deposit_id, "failed", error="No treasury address")

            async with self._address_locks.hold(address.id, operation="sweep"):
                return await self._sweep_locked(deposit, address, treasury)

    async def _sweep_locked(
        self, deposit: OnchainDeposit, address: DepositAddress, treasury: str
    ) -> SweepResult:
        try:
            return await self._execute(deposit, address, treasury)
        except SweepUnderfunded as e:
            await self._flag(deposit.id, str(e))
            logger.warning(f"Sweep underfunded: {e}")
            return SweepResult(deposit.id, "underfunded", error=str(e))
        except InsufficientGasCapacity as e:
            # Sponsor shortfall is not the deposit's fault; retry later without counting
            logger.warning(f"Sweep of {deposit.id} waiting for sponsor funds: {e}")
            return SweepResult(deposit.id, "awaiting_gas", error=str(e))
        except IntegrityError as e:
            await self._flag(deposit.id, f"Deposit key could not be decrypted: {e}")
            logger.error(f"Key decryption failed for deposit address {address.address}")
            return SweepResult(deposit.id, "review", error=str(e))
        except ChainError as e:
            updated = await self._record_failure(deposit.id, str(e))
            status = "review" if updated is not None and updated.needs_review else "failed"
            logger.error(f"Sweep of deposit {deposit.id} failed: {e}")
            return SweepResult(deposit.id, status, error=str(e))

    async def _execute(
        self, deposit: OnchainDeposit, address: DepositAddress, treasury: str
    ) -> SweepResult:
        chain = deposit.chain
        asset = deposit.asset
        adapter = self.get_adapter(chain)
        sponsored = adapter.supports_fee_payer and self.gas_sponsor is not None

        balance = await adapter.get_balance(address.address, asset)
        fee_payer = None
        reserve = Decimal("0")

        if sponsored:
            fee_payer = await self.gas_sponsor.get_sponsor_address(chain)
        else:
            fee = await adapter.estimate_fee(asset)
            if adapter.is_native(asset):
                reserve = fee
            else:
                native = await adapter.get_native_balance(address.address)
                if native < fee:
                    return await self._await_gas(deposit, address, adapter, fee - native)

        amount = min(Decimal(deposit.amount), balance - reserve)
        if amount <= 0:
            raise SweepUnderfunded(deposit.id, balance, reserve)

        unsigned = await adapter.build_transfer(
            address.address, treasury, asset, amount, fee_payer=fee_payer
        )

        private_key = await self.vault.decrypt(address.encrypted_private_key)
        try:
            signed = await adapter.sign(unsigned, private_key)
        finally:
            del private_key

        if sponsored:
            signed = await self.gas_sponsor.sponsor(chain, signed)

        try:
            tx_ref = await adapter.submit(signed)
        except TransactionRejected:
            if sponsored:
                self.gas_sponsor.release(chain, unsigned.fee_estimate)
            raise

        async with self.session_factory() as session:
            repo = LedgerRepository(session)
            marked = await repo.mark_deposit_swept(deposit.id, tx_ref)
            if marked:
                await repo.get_or_create_treasury_wallet(chain, asset, treasury)
                await repo.credit_treasury(chain, asset, amount)
            await session.commit()

        if not marked:
            logger.error(f"Deposit {deposit.id} changed state during sweep {tx_ref}")
            return SweepResult(deposit.id, "already_swept", tx_ref=tx_ref, amount=amount)

        logger.info(f"Swept {amount} {asset} from {address.address} on {chain}: {tx_ref}")
        return SweepResult(deposit.id, "swept", tx_ref=tx_ref, amount=amount)

    async def _await_gas(
        self,
        deposit: OnchainDeposit,
        address: DepositAddress,
        adapter: ChainAdapter,
        shortfall: Decimal,
    ) -> SweepResult:
        """Fund a token deposit address that cannot pay its own gas.

        A top-up still in flight counts as a sweep attempt. Once the previous
        top-up has landed, failed or been dropped and the address is still
        short (the gas price moved), another one is sent without counting
        against the deposit, up to ``max_attempts`` top-ups per deposit.
        """
        if self.gas_sponsor is None:
            raise SweepUnderfunded(deposit.id, Decimal("0"), shortfall)

        previous = deposit.gas_top_up_ref
        if previous:
            top_up_status = await adapter.get_transaction_status(previous)
            if top_up_status == TxStatus.PENDING:
                message = f"{AWAITING_GAS_PREFIX} {previous}"
                updated = await self._record_failure(deposit.id, message)
                status = "review" if updated is not None and updated.needs_review else "awaiting_gas"
                return SweepResult(deposit.id, status, tx_ref=previous, error=message)
            logger.warning(
                f"Gas top-up {previous} for deposit {deposit.id} is {top_up_status.value} "
                f"and {address.address} is still {shortfall} short"
            )

        if (deposit.gas_top_ups or 0) >= self.max_attempts:
            reason = f"Still short of gas after {deposit.gas_top_ups} top-ups"
            await self._flag(deposit.id, reason)
            logger.error(f"Deposit {deposit.id} needs manual review: {reason}")
            return SweepResult(deposit.id, "review", error=reason)

        tx_ref = await self.gas_sponsor.top_up(deposit.chain, address.address, shortfall)
        async with self.session_factory() as session:
            deposit_row = await LedgerRepository(session).record_gas_top_up(deposit.id, tx_ref)
            deposit_row.last_error = f"{AWAITING_GAS_PREFIX} {tx_ref}"
            await session.commit()
        return SweepResult(deposit.id, "awaiting_gas", tx_ref=tx_ref)

    async def _record_failure(self, deposit_id: str, error: str) -> Optional[OnchainDeposit]:
        async with self.session_factory() as session:
            deposit = await LedgerRepository(session).record_sweep_failure(
                deposit_id, error, self.max_attempts
            )
            await session.commit()
        if deposit is not None and deposit.needs_review:
            logger.error(
                f"Deposit {deposit_id} needs manual review after {deposit.sweep_attempts} attempts"
            )
        return deposit

    async def _flag(self, deposit_id: str, reason: str) -> None:
        async with self.session_factory() as session:
            await LedgerRepository(session).flag_deposit(deposit_id, reason)
            await session.commit()

    async def sweep_confirmed(self, chain: Optional[str] = None) -> list[SweepResult]:
        """Sweep every confirmed deposit not waiting on review."""
        async with self.session_factory() as session:
            deposits = await LedgerRepository(session).list_sweepable_deposits(chain)

        results = []
        for deposit in deposits:
            try:
                results.append(await self.sweep(deposit.id))
            except Exception as e:
                logger.error(f"Sweep error for deposit {deposit.id}: {e}")
        return results

    async def run(self, interval_seconds: int = 60) -> None:
        """Run sweeper in a continuous loop.

        Args:
            interval_seconds: How often to look for confirmed deposits
        """
        self._running = True
        logger.info(f"Starting deposit sweeper (interval: {interval_seconds}s)")

        while self._running:
            try:
                results = await self.sweep_confirmed()
                swept = [r for r in results if r.status == "swept"]
                if swept:
                    logger.info(f"Swept {len(swept)} deposit(s)")
                    for result in swept:
                        logger.info(f"  {result.deposit_id} -> {result.tx_ref}")
                else:
                    logger.debug("No deposits to sweep")
            except Exception as e:
                logger.error(f"Sweeper error: {e}")

            await asyncio.sleep(interval_seconds)

    def stop(self) -> None:
        """Stop the sweeper loop."""
        self._running = False
        logger.info("Stopping deposit sweeper")

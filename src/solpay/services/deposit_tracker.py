"""Deposit detection and confirmation tracking.

Status machine:
    detected -> confirming -> confirmed -> swept
    detected/confirming -> failed   (chain reports the transfer failed)

Status never moves backwards. A confirmed deposit that loses depth or
disappears from the chain is flagged for review and keeps its status.
"""

import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy import exc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from solpay.chains.base import ChainAdapter, IncomingTransfer, TxStatus
from solpay.chains.factory import get_chain_adapter
from solpay.chains.registry import get_chain_config, get_supported_chains
from solpay.errors import ChainError, ReorgDetected
from solpay.ledger.models import DepositAddress, DepositStatus, OnchainDeposit
from solpay.ledger.repository import LedgerRepository
from solpay.utils.clock import Clock, utcnow
from solpay.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

TRACKED_STATUSES = [DepositStatus.DETECTED, DepositStatus.CONFIRMING, DepositStatus.CONFIRMED]


class DepositTracker:
    """Records inbound transfers and advances them to confirmed."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        adapter_provider: Callable[[str], ChainAdapter] = get_chain_adapter,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.get_adapter = adapter_provider
        self._clock = clock
        self._locks = KeyedLock("deposit")
        self._running = False

    async def ingest(
        self, deposit_address: DepositAddress, transfer: IncomingTransfer
    ) -> OnchainDeposit:
        """Record a transfer seen on a deposit address.

        A transfer is identified by (chain, tx_ref, deposit address, asset),
        so one transaction paying several addresses or assets yields one
        deposit each. Re-ingesting a known transfer returns the stored
        deposit unchanged.
        """
        deposit, _ = await self._ingest(deposit_address, transfer)
        return deposit

    async def _ingest(
        self, deposit_address: DepositAddress, transfer: IncomingTransfer
    ) -> tuple[OnchainDeposit, bool]:
        chain = deposit_address.chain
        adapter = self.get_adapter(chain)
        transfer_key = (chain, transfer.tx_ref, deposit_address.id, transfer.asset.upper())

        async with self._locks.hold(transfer_key, operation="ingest"):
            async with self.session_factory() as session:
                repo = LedgerRepository(session)
                existing = await repo.get_deposit_by_tx(*transfer_key)
                if existing is not None:
                    return existing, False

                deposit = await repo.create_deposit(
                    deposit_address,
                    asset=transfer.asset,
                    tx_ref=transfer.tx_ref,
                    amount=transfer.amount,
                    required_confirmations=adapter.required_confirmations,
                    from_address=transfer.from_address,
                )
                deposit.detected_at = self._clock()
                deposit.confirmations = transfer.confirmations
                if transfer.confirmations >= deposit.required_confirmations:
                    deposit.status = DepositStatus.CONFIRMED.value
                    deposit.confirmed_at = self._clock()
                else:
                    deposit.status = DepositStatus.CONFIRMING.value

                try:
                    await session.commit()
                except exc.IntegrityError:
                    # Another process recorded the same transfer first
                    await session.rollback()
                    existing = await repo.get_deposit_by_tx(*transfer_key)
                    return existing, False

        logger.info(
            f"Detected {transfer.amount} {transfer.asset} deposit on {chain} "
            f"({transfer.tx_ref}) -> {deposit.status} "
            f"[{deposit.confirmations}/{deposit.required_confirmations}]"
        )
        return deposit, True

    async def refresh(self, deposit_id: str) -> Optional[OnchainDeposit]:
        """Poll confirmation depth and advance the deposit.

        Adapter errors are stored in ``last_error`` and retried next pass.

        Raises:
            ReorgDetected: If a confirmed deposit lost depth or vanished
        """
        async with self._locks.hold(deposit_id, operation="refresh"):
            async with self.session_factory() as session:
                repo = LedgerRepository(session)
                deposit = await session.get(OnchainDeposit, deposit_id)
                if deposit is None:
                    return None
                if deposit.status in (DepositStatus.SWEPT.value, DepositStatus.FAILED.value):
                    return deposit

                adapter = self.get_adapter(deposit.chain)
                try:
                    tx_status = await adapter.get_transaction_status(deposit.tx_ref)
                    confirmations = await adapter.get_confirmations(deposit.tx_ref)
                except ChainError as e:
                    logger.warning(f"Could not refresh deposit {deposit.id}: {e}")
                    deposit.last_error = str(e)
                    await session.commit()
                    return deposit

                deposit.last_error = None

                if deposit.status == DepositStatus.CONFIRMED.value:
                    lost = (
                        tx_status in (TxStatus.NOT_FOUND, TxStatus.FAILED)
                        or confirmations < deposit.required_confirmations
                    )
                    if lost:
                        reorg = ReorgDetected(
                            f"Deposit {deposit.id} ({deposit.tx_ref}) was confirmed but chain "
                            f"now reports {tx_status.value} with {confirmations} confirmations"
                        )
                        await repo.flag_deposit(deposit.id, str(reorg))
                        await session.commit()
                        logger.error(str(reorg))
                        raise reorg
                    deposit.confirmations = max(deposit.confirmations, confirmations)
                    await session.commit()
                    return deposit

                if tx_status == TxStatus.FAILED:
                    deposit.status = DepositStatus.FAILED.value
                    deposit.last_error = "Transaction failed on chain"
                    await session.commit()
                    logger.warning(f"Deposit {deposit.id} failed on chain ({deposit.tx_ref})")
                    return deposit

                deposit.confirmations = max(deposit.confirmations, confirmations)
                if deposit.confirmations >= deposit.required_confirmations:
                    deposit.status = DepositStatus.CONFIRMED.value
                    deposit.confirmed_at = self._clock()
                    logger.info(
                        f"Deposit {deposit.id} confirmed "
                        f"({deposit.confirmations}/{deposit.required_confirmations})"
                    )
                elif deposit.status == DepositStatus.DETECTED.value:
                    deposit.status = DepositStatus.CONFIRMING.value

                await session.commit()
                return deposit

    async def scan_addresses(self, chain: str) -> list[OnchainDeposit]:
        """Scan every active deposit address on a chain for new transfers.

        Returns:
            Newly recorded deposits
        """
        adapter = self.get_adapter(chain)
        assets = get_chain_config(chain).assets

        async with self.session_factory() as session:
            addresses = await LedgerRepository(session).list_active_deposit_addresses(chain)

        new_deposits = []
        for address in addresses:
            for asset in assets:
                try:
                    transfers = await adapter.list_incoming_transfers(address.address, asset)
                except (ChainError, ValueError) as e:
                    logger.error(f"Error scanning {address.address} for {asset}: {e}")
                    continue
                for transfer in transfers:
                    deposit, created = await self._ingest(address, transfer)
                    if created:
                        new_deposits.append(deposit)
        return new_deposits

    async def poll_pending(self, chain: Optional[str] = None) -> dict[str, int]:
        """Refresh all unswept deposits once.

        Returns:
            Counts of deposits checked, confirmed and flagged
        """
        async with self.session_factory() as session:
            deposits = await LedgerRepository(session).list_deposits_by_status(
                TRACKED_STATUSES, chain
            )

        counts = {"checked": 0, "confirmed": 0, "reorgs": 0}
        for deposit in deposits:
            if deposit.needs_review:
                continue
            previous = deposit.status
            counts["checked"] += 1
            try:
                updated = await self.refresh(deposit.id)
            except ReorgDetected:
                counts["reorgs"] += 1
                continue
            if (
                updated is not None
                and previous != DepositStatus.CONFIRMED.value
                and updated.status == DepositStatus.CONFIRMED.value
            ):
                counts["confirmed"] += 1
        return counts

    async def run_once(self, chains: Optional[list[str]] = None) -> None:
        """One scan-and-poll pass over the given chains."""
        for chain in chains or get_supported_chains():
            new_deposits = await self.scan_addresses(chain)
            if new_deposits:
                logger.info(f"Found {len(new_deposits)} new {chain} deposits")
            counts = await self.poll_pending(chain)
            if counts["confirmed"] or counts["reorgs"]:
                logger.info(f"{chain} deposits: {counts}")

    async def run(self, chains: Optional[list[str]] = None, interval_seconds: int = 15) -> None:
        """Run continuous tracking loop.

        Args:
            chains: Chains to track (default: all supported)
            interval_seconds: Seconds between passes
        """
        self._running = True
        logger.info(f"Starting deposit tracker (interval: {interval_seconds}s)")

        while self._running:
            try:
                await self.run_once(chains)
            except Exception as e:
                logger.error(f"Deposit tracker error: {e}")

            await asyncio.sleep(interval_seconds)

    def stop(self) -> None:
        """Stop the tracking loop."""
        self._running = False
        logger.info("Stopping deposit tracker")

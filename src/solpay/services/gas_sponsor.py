"""Gas fee sponsorship.

A sponsor wallet per chain pays network fees so deposit addresses never
need to hold native gas. On chains with fee-payer support the sponsor
co-signs the sweep transaction itself; elsewhere it tops up the deposit
address with just enough native coin.

The capacity check and the signature happen in one critical section per
chain. Fees granted but not yet visible on chain are tracked as
reservations so back-to-back sponsorships cannot overdraw the wallet.
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from solpay.chains.base import ChainAdapter, SignedTx, UnsignedTx
from solpay.chains.factory import get_chain_adapter
from solpay.config import get_settings
from solpay.crypto import KeyVault
from solpay.errors import ChainError, InsufficientGasCapacity, SponsorNotConfigured
from solpay.ledger.models import GasSponsorWallet
from solpay.ledger.repository import LedgerRepository
from solpay.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

# How long a granted fee counts against the balance before the chain is trusted to show it
RESERVATION_TTL_SECONDS = 120.0


@dataclass
class SponsorCapacity:
    """Result of a sponsor balance check."""

    chain: str
    address: str
    balance: Decimal
    reserved: Decimal
    required: Decimal

    @property
    def available(self) -> Decimal:
        return self.balance - self.reserved

    @property
    def sufficient(self) -> bool:
        return self.available >= self.required


class GasSponsor:
    """Pays transaction fees from a per-chain sponsor wallet."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: KeyVault,
        adapter_provider: Callable[[str], ChainAdapter] = get_chain_adapter,
        reservation_ttl: float = RESERVATION_TTL_SECONDS,
    ):
        self.session_factory = session_factory
        self.vault = vault
        self.get_adapter = adapter_provider
        self.reservation_ttl = reservation_ttl
        self._locks = KeyedLock("sponsor")
        self._reservations: dict[str, list[tuple[float, Decimal]]] = {}

    # Reservations
    def _reserved(self, chain: str) -> Decimal:
        now = time.monotonic()
        live = [(t, amount) for t, amount in self._reservations.get(chain, []) if t > now]
        self._reservations[chain] = live
        return sum((amount for _, amount in live), Decimal("0"))

    def _reserve(self, chain: str, amount: Decimal) -> None:
        expires = time.monotonic() + self.reservation_ttl
        self._reservations.setdefault(chain, []).append((expires, amount))

    def release(self, chain: str, amount: Decimal) -> None:
        """Return a reservation whose transaction never reached the chain."""
        entries = self._reservations.get(chain.lower(), [])
        for i, (_, reserved) in enumerate(entries):
            if reserved == amount:
                del entries[i]
                return

    # Wallet
    async def _load_wallet(self, chain: str) -> GasSponsorWallet:
        async with self.session_factory() as session:
            wallet = await LedgerRepository(session).get_active_sponsor_wallet(chain)
        if wallet is None:
            raise SponsorNotConfigured(f"No active gas sponsor wallet for {chain}")
        return wallet

    async def get_sponsor_address(self, chain: str) -> str:
        """Get the address that pays fees on a chain."""
        wallet = await self._load_wallet(chain.lower())
        return wallet.address

    async def register_wallet(
        self,
        chain: str,
        private_key: str,
        min_balance_threshold: Optional[Decimal] = None,
    ) -> GasSponsorWallet:
        """Encrypt and store a sponsor key, replacing the active one.

        Args:
            chain: Chain key
            private_key: Sponsor private key in the chain's native encoding
            min_balance_threshold: Native balance the sponsor must keep
                (default: SOLANA_SPONSOR_MIN_BALANCE / BASE_SPONSOR_MIN_BALANCE)
        """
        chain = chain.lower()
        if min_balance_threshold is None:
            min_balance_threshold = get_settings().get_sponsor_min_balance(chain)
        adapter = self.get_adapter(chain)
        address = adapter.signer_address(private_key)
        encrypted = await self.vault.encrypt(private_key)
        async with self.session_factory() as session:
            wallet = await LedgerRepository(session).create_sponsor_wallet(
                chain, address, encrypted, min_balance_threshold
            )
            await session.commit()
        logger.info(f"Registered gas sponsor {address} on {chain}")
        return wallet

    async def _capacity(
        self, wallet: GasSponsorWallet, adapter: ChainAdapter, spend: Decimal
    ) -> SponsorCapacity:
        balance = await adapter.get_native_balance(wallet.address)
        return SponsorCapacity(
            chain=wallet.chain,
            address=wallet.address,
            balance=balance,
            reserved=self._reserved(wallet.chain),
            required=Decimal(wallet.min_balance_threshold) + spend,
        )

    async def check_capacity(self, chain: str, fee: Optional[Decimal] = None) -> SponsorCapacity:
        """Check whether the sponsor can pay one more fee.

        Reads the balance only; the key is not decrypted.

        Args:
            chain: Chain key
            fee: Fee to cover (default: adapter estimate for a native transfer)
        """
        chain = chain.lower()
        wallet = await self._load_wallet(chain)
        adapter = self.get_adapter(chain)
        if fee is None:
            fee = await adapter.estimate_fee(adapter.native_asset)
        return await self._capacity(wallet, adapter, fee)

    async def sponsor(self, chain: str, tx: Union[UnsignedTx, SignedTx]) -> SignedTx:
        """Sign a transaction as its fee payer.

        Raises:
            SponsorNotConfigured: If the chain has no active sponsor wallet
            InsufficientGasCapacity: If balance minus reservations is below threshold + fee
            ChainError: If the chain cannot use a separate fee payer
        """
        chain = chain.lower()
        adapter = self.get_adapter(chain)
        if not adapter.supports_fee_payer:
            raise ChainError(f"{chain} does not support sponsored fees; use top_up")
        unsigned = tx.unsigned if isinstance(tx, SignedTx) else tx

        async with self._locks.hold(chain, operation="sponsor"):
            wallet = await self._load_wallet(chain)
            if unsigned.fee_payer != wallet.address:
                raise ChainError(f"Transaction fee payer {unsigned.fee_payer} is not the sponsor")

            capacity = await self._capacity(wallet, adapter, unsigned.fee_estimate)
            if not capacity.sufficient:
                logger.warning(
                    f"Gas sponsor on {chain} below threshold: "
                    f"{capacity.available} available, {capacity.required} required"
                )
                raise InsufficientGasCapacity(chain, capacity.available, capacity.required)

            private_key = await self.vault.decrypt(wallet.encrypted_private_key)
            try:
                signed = await adapter.sign(tx, private_key)
            finally:
                del private_key
            self._reserve(chain, unsigned.fee_estimate)

        logger.info(f"Sponsored {unsigned.fee_estimate} {adapter.native_asset} fee on {chain}")
        return signed

    async def top_up(self, chain: str, address: str, amount: Decimal) -> str:
        """Send native gas from the sponsor wallet to an address.

        Returns:
            Transaction reference of the top-up

        Raises:
            SponsorNotConfigured: If the chain has no active sponsor wallet
            InsufficientGasCapacity: If the sponsor cannot cover amount + fee
        """
        chain = chain.lower()
        adapter = self.get_adapter(chain)

        async with self._locks.hold(chain, operation="top_up"):
            wallet = await self._load_wallet(chain)
            fee = await adapter.estimate_fee(adapter.native_asset)
            capacity = await self._capacity(wallet, adapter, amount + fee)
            if not capacity.sufficient:
                raise InsufficientGasCapacity(chain, capacity.available, capacity.required)

            unsigned = await adapter.build_transfer(
                wallet.address, address, adapter.native_asset, amount
            )
            private_key = await self.vault.decrypt(wallet.encrypted_private_key)
            try:
                signed = await adapter.sign(unsigned, private_key)
            finally:
                del private_key
            tx_ref = await adapter.submit(signed)
            self._reserve(chain, amount + unsigned.fee_estimate)

        logger.info(f"Topped up {address} with {amount} {adapter.native_asset} on {chain}: {tx_ref}")
        return tx_ref

    async def get_stats(self, chain: str) -> dict:
        """Get sponsor wallet statistics for a chain."""
        chain = chain.lower()
        adapter = self.get_adapter(chain)
        capacity = await self.check_capacity(chain)
        average_fee = await adapter.estimate_fee(adapter.native_asset)
        threshold = capacity.required - average_fee
        spendable = max(capacity.available - threshold, Decimal("0"))
        remaining = int(spendable / average_fee) if average_fee > 0 else 0

        return {
            "chain": chain,
            "address": capacity.address,
            "balance": capacity.balance,
            "reserved": capacity.reserved,
            "min_balance": threshold,
            "sufficient": capacity.sufficient,
            "estimated_transactions_remaining": remaining,
        }

"""Custodial deposit wallet creation.

Each user gets one deposit address per chain and asset group. The private
key is generated at random, encrypted by the KeyVault and stored with the
address; the plaintext is never persisted or logged.
"""

import logging
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from solpay.chains.base import ChainAdapter
from solpay.chains.factory import get_chain_adapter
from solpay.chains.registry import get_asset_group
from solpay.crypto import KeyVault
from solpay.ledger.models import DepositAddress
from solpay.ledger.repository import LedgerRepository
from solpay.utils.locks import KeyedLock

logger = logging.getLogger(__name__)


class WalletFactory:
    """Creates and retires custodial deposit addresses."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: KeyVault,
        adapter_provider: Callable[[str], ChainAdapter] = get_chain_adapter,
    ):
        self.session_factory = session_factory
        self.vault = vault
        self.get_adapter = adapter_provider
        self._locks = KeyedLock("wallet")

    async def create_wallet(self, user_id: str, chain: str, asset: str) -> DepositAddress:
        """Get or create the deposit address for a user.

        Idempotent: a user already holding an active address for the asset
        group gets that address back.

        Args:
            user_id: Owner of the address
            chain: Chain key
            asset: Any asset of the group (e.g. USDC on solana maps to SOL)

        Returns:
            The active DepositAddress
        """
        chain = chain.lower()
        group = get_asset_group(chain, asset)

        async with self._locks.hold((user_id, chain), operation="create_wallet"):
            async with self.session_factory() as session:
                repo = LedgerRepository(session)
                existing = await repo.get_active_deposit_address(user_id, chain, group)
                if existing is not None:
                    return existing

                adapter = self.get_adapter(chain)
                keypair = adapter.generate_keypair()
                encrypted = await self.vault.encrypt(keypair.private_key)
                del keypair.private_key

                record = await repo.create_deposit_address(
                    user_id=user_id,
                    chain=chain,
                    asset=group,
                    address=keypair.address,
                    encrypted_private_key=encrypted,
                )
                await session.commit()

        logger.info(f"Created {chain} deposit address {record.address} for user {user_id}")
        return record

    async def disable_wallet(self, address_id: str) -> Optional[DepositAddress]:
        """Retire a deposit address so it is no longer scanned or swept."""
        async with self.session_factory() as session:
            repo = LedgerRepository(session)
            record = await repo.disable_deposit_address(address_id)
            await session.commit()

        if record is not None:
            logger.info(f"Disabled deposit address {record.address}")
        return record

"""Base interfaces for chain access.

A chain adapter is the only component that talks to a blockchain. It reads
balances and confirmation depth, builds and signs transfers, and submits
them. Everything above it (tracker, sweeper, gas sponsor) is chain-agnostic.

Transfer flow:
1. build_transfer() produces an UnsignedTx (fee payer and token account
   creation already decided)
2. sign() is called once per required signer; co-signers pass the
   partially signed SignedTx back in
3. submit() broadcasts a fully signed transaction and returns its ref
"""

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Any, Optional, Union

from solpay.chains.registry import ChainConfig, get_chain_config
from solpay.errors import ChainError, TransactionRejected
from solpay.wallet.keys import KeyPair, address_from_private_key, generate_keypair

logger = logging.getLogger(__name__)


class TxStatus(str, Enum):
    """On-chain status of a transaction."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    NOT_FOUND = "not_found"


@dataclass
class IncomingTransfer:
    """A transfer observed arriving at a watched address."""

    tx_ref: str
    asset: str
    to_address: str
    amount: Decimal
    confirmations: int = 0
    from_address: Optional[str] = None


@dataclass
class UnsignedTx:
    """A transfer ready to be signed."""

    chain: str
    from_address: str
    to_address: str
    asset: str
    amount: Decimal
    amount_units: int
    fee_payer: str
    fee_estimate: Decimal  # native units, paid by fee_payer
    required_signers: list[str] = field(default_factory=list)
    creates_token_account: bool = False
    payload: Any = None  # chain-specific transaction body


@dataclass
class SignedTx:
    """A transfer carrying one or more signatures."""

    unsigned: UnsignedTx
    raw: Any
    signers: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        """Check if every required signer has signed."""
        return set(self.unsigned.required_signers) <= set(self.signers)

    @property
    def missing_signers(self) -> list[str]:
        return [s for s in self.unsigned.required_signers if s not in self.signers]


class ChainAdapter(ABC):
    """Abstract base class for chain adapters.

    Each chain family has its own implementation.
    """

    # A separate account may pay the fee and sign the same transaction
    supports_fee_payer: bool = False

    def __init__(
        self,
        chain: str,
        token_ids: Optional[dict[str, str]] = None,
        required_confirmations: Optional[int] = None,
    ):
        """Initialize adapter.

        Args:
            chain: Chain key (solana, base)
            token_ids: Token symbol -> mint/contract address
            required_confirmations: Depth at which deposits are final
        """
        self.config: ChainConfig = get_chain_config(chain)
        self.chain = self.config.key
        self.family = self.config.family
        self.native_asset = self.config.native_asset
        self.token_ids = {k.upper(): v for k, v in (token_ids or {}).items()}
        self.required_confirmations = (
            required_confirmations if required_confirmations is not None else 1
        )

    # Asset helpers
    def is_native(self, asset: str) -> bool:
        return asset.upper() == self.native_asset

    def get_decimals(self, asset: str) -> int:
        return self.config.get_decimals(asset)

    def get_token_id(self, asset: str) -> str:
        """Get the mint/contract address of a token."""
        token_id = self.token_ids.get(asset.upper())
        if not token_id:
            raise ValueError(f"No token address configured for {asset} on {self.chain}")
        return token_id

    def get_asset_for_token(self, token_id: str) -> str:
        """Reverse lookup of a token symbol by mint/contract address."""
        for symbol, known in self.token_ids.items():
            if known.lower() == token_id.lower():
                return symbol
        raise ValueError(f"Unknown token {token_id} on {self.chain}")

    def to_base_units(self, asset: str, amount: Decimal) -> int:
        """Convert a decimal amount to integer base units (rounded down)."""
        scale = Decimal(10) ** self.get_decimals(asset)
        return int((Decimal(amount) * scale).to_integral_value(rounding=ROUND_DOWN))

    def from_base_units(self, asset: str, units: int) -> Decimal:
        return Decimal(units) / (Decimal(10) ** self.get_decimals(asset))

    async def get_balance(self, address: str, asset: str) -> Decimal:
        """Get balance of any supported asset held by an address."""
        if self.is_native(asset):
            return await self.get_native_balance(address)
        return await self.get_token_balance(address, self.get_token_id(asset))

    def generate_keypair(self) -> KeyPair:
        """Generate a random keypair on this chain's curve."""
        return generate_keypair(self.family)

    def signer_address(self, private_key: str) -> str:
        return address_from_private_key(self.family, private_key)

    # Chain operations
    @abstractmethod
    async def get_native_balance(self, address: str) -> Decimal:
        """Get native coin balance in whole units."""
        pass

    @abstractmethod
    async def get_token_balance(self, address: str, token_id: str) -> Decimal:
        """Get token balance in whole units.

        Returns zero when the holder has no account for the token yet.
        """
        pass

    @abstractmethod
    async def build_transfer(
        self,
        from_address: str,
        to_address: str,
        asset: str,
        amount: Decimal,
        fee_payer: Optional[str] = None,
    ) -> UnsignedTx:
        """Build a transfer of ``amount`` of ``asset``.

        Args:
            from_address: Sender (signs as token/coin owner)
            to_address: Recipient
            asset: Asset symbol
            amount: Amount in whole units
            fee_payer: Account paying fees (defaults to sender)

        Returns:
            Unsigned transaction
        """
        pass

    @abstractmethod
    async def sign(self, tx: Union[UnsignedTx, SignedTx], private_key: str) -> SignedTx:
        """Add a signature to a transaction.

        Raises:
            ChainError: If the key is not a required signer
        """
        pass

    @abstractmethod
    async def submit(self, signed_tx: SignedTx) -> str:
        """Broadcast a fully signed transaction.

        Returns:
            Transaction reference (hash/signature)

        Raises:
            TransactionRejected: If the chain refuses it
        """
        pass

    @abstractmethod
    async def get_confirmations(self, tx_ref: str) -> int:
        """Get confirmation depth of a transaction (0 if unknown)."""
        pass

    @abstractmethod
    async def get_transaction_status(self, tx_ref: str) -> TxStatus:
        """Get on-chain status of a transaction."""
        pass

    @abstractmethod
    async def estimate_fee(self, asset: str) -> Decimal:
        """Conservative network fee for one transfer of ``asset``, in native units."""
        pass

    @abstractmethod
    async def list_incoming_transfers(self, address: str, asset: str) -> list[IncomingTransfer]:
        """List recent transfers of ``asset`` received by ``address``."""
        pass


class SimulatedChainAdapter(ChainAdapter):
    """In-memory chain for testing and dry-run mode.

    Balances, token accounts and confirmations are plain dictionaries that
    tests manipulate directly. Submitted transfers are applied immediately.
    """

    def __init__(
        self,
        chain: str,
        required_confirmations: Optional[int] = None,
        fee: Optional[Decimal] = None,
        latency: float = 0.0,
        token_ids: Optional[dict[str, str]] = None,
    ):
        config = get_chain_config(chain)
        if token_ids is None:
            token_ids = {symbol: f"sim-{symbol.lower()}" for symbol in config.tokens}
        super().__init__(chain, token_ids, required_confirmations)
        self.supports_fee_payer = self.family == "solana"
        # Solana-style chains need an explicit token account per holder
        self.requires_token_accounts = self.family == "solana"
        self.fee = fee if fee is not None else (
            Decimal("0.000005") if self.family == "solana" else Decimal("0.00002")
        )
        self.latency = latency

        self.native_balances: dict[str, Decimal] = {}
        self.token_balances: dict[tuple[str, str], Decimal] = {}
        self.token_accounts: set[tuple[str, str]] = set()
        self.transactions: dict[str, dict] = {}
        self.incoming: dict[str, list[IncomingTransfer]] = {}
        self.submitted: list[SignedTx] = []
        self._failures: dict[str, Exception] = {}

    # Test helpers
    def fund(self, address: str, asset: str, amount: Decimal) -> None:
        """Set the balance of an address."""
        asset = asset.upper()
        if self.is_native(asset):
            self.native_balances[address] = Decimal(amount)
        else:
            self.token_balances[(address, asset)] = Decimal(amount)
            self.token_accounts.add((address, asset))

    def add_incoming(
        self,
        to_address: str,
        asset: str,
        amount: Decimal,
        confirmations: int = 0,
        tx_ref: Optional[str] = None,
        from_address: Optional[str] = None,
        credit: bool = True,
    ) -> IncomingTransfer:
        """Simulate a transfer arriving at an address."""
        tx_ref = tx_ref or f"sim_{secrets.token_hex(16)}"
        transfer = IncomingTransfer(
            tx_ref=tx_ref,
            asset=asset.upper(),
            to_address=to_address,
            amount=Decimal(amount),
            confirmations=confirmations,
            from_address=from_address or f"sim_sender_{secrets.token_hex(4)}",
        )
        self.incoming.setdefault(to_address, []).append(transfer)
        self.transactions[tx_ref] = {"confirmations": confirmations, "status": TxStatus.SUCCESS}
        if credit:
            current = Decimal("0")
            if self.is_native(asset):
                current = self.native_balances.get(to_address, Decimal("0"))
            else:
                current = self.token_balances.get((to_address, asset.upper()), Decimal("0"))
            self.fund(to_address, asset, current + Decimal(amount))
        return transfer

    def set_confirmations(self, tx_ref: str, confirmations: int) -> None:
        self.transactions.setdefault(tx_ref, {"status": TxStatus.SUCCESS})
        self.transactions[tx_ref]["confirmations"] = confirmations

    def set_status(self, tx_ref: str, status: TxStatus) -> None:
        self.transactions.setdefault(tx_ref, {"confirmations": 0})
        self.transactions[tx_ref]["status"] = status

    def drop_transaction(self, tx_ref: str) -> None:
        """Forget a transaction, as a re-org would."""
        self.transactions.pop(tx_ref, None)

    def fail_next(self, operation: str, error: Exception) -> None:
        """Make the next call of ``operation`` raise ``error``."""
        self._failures[operation] = error

    def _maybe_fail(self, operation: str) -> None:
        error = self._failures.pop(operation, None)
        if error is not None:
            raise error

    # ChainAdapter implementation
    async def get_native_balance(self, address: str) -> Decimal:
        self._maybe_fail("get_native_balance")
        return self.native_balances.get(address, Decimal("0"))

    async def get_token_balance(self, address: str, token_id: str) -> Decimal:
        self._maybe_fail("get_token_balance")
        asset = self.get_asset_for_token(token_id)
        return self.token_balances.get((address, asset), Decimal("0"))

    async def build_transfer(
        self,
        from_address: str,
        to_address: str,
        asset: str,
        amount: Decimal,
        fee_payer: Optional[str] = None,
    ) -> UnsignedTx:
        self._maybe_fail("build_transfer")
        asset = asset.upper()
        if fee_payer and fee_payer != from_address and not self.supports_fee_payer:
            raise ChainError(f"{self.chain} does not support a separate fee payer")
        payer = fee_payer or from_address

        creates_account = (
            self.requires_token_accounts
            and not self.is_native(asset)
            and (to_address, asset) not in self.token_accounts
        )
        signers = [from_address] if payer == from_address else [payer, from_address]

        return UnsignedTx(
            chain=self.chain,
            from_address=from_address,
            to_address=to_address,
            asset=asset,
            amount=Decimal(amount),
            amount_units=self.to_base_units(asset, amount),
            fee_payer=payer,
            fee_estimate=await self.estimate_fee(asset),
            required_signers=signers,
            creates_token_account=creates_account,
        )

    async def sign(self, tx: Union[UnsignedTx, SignedTx], private_key: str) -> SignedTx:
        signed = tx if isinstance(tx, SignedTx) else SignedTx(unsigned=tx, raw=None)
        signer = self.signer_address(private_key)
        if signer not in signed.unsigned.required_signers:
            raise ChainError(f"{signer} is not a required signer")
        signers = signed.signers + ([signer] if signer not in signed.signers else [])
        return SignedTx(unsigned=signed.unsigned, raw={"signers": signers}, signers=signers)

    async def submit(self, signed_tx: SignedTx) -> str:
        self._maybe_fail("submit")
        if self.latency:
            await asyncio.sleep(self.latency)
        if not signed_tx.complete:
            raise TransactionRejected(f"Missing signatures: {signed_tx.missing_signers}")

        tx = signed_tx.unsigned
        payer_native = self.native_balances.get(tx.fee_payer, Decimal("0"))
        if payer_native < tx.fee_estimate:
            raise TransactionRejected(
                f"Insufficient funds for fee: {tx.fee_payer} has {payer_native}"
            )

        if self.is_native(tx.asset):
            needed = tx.amount + (tx.fee_estimate if tx.fee_payer == tx.from_address else 0)
            have = self.native_balances.get(tx.from_address, Decimal("0"))
            if have < needed:
                raise TransactionRejected(f"Insufficient funds: have {have}, need {needed}")
        else:
            have = self.token_balances.get((tx.from_address, tx.asset), Decimal("0"))
            if have < tx.amount:
                raise TransactionRejected(f"Insufficient token balance: have {have}")

        # Apply the transfer
        self.native_balances[tx.fee_payer] = (
            self.native_balances.get(tx.fee_payer, Decimal("0")) - tx.fee_estimate
        )
        if self.is_native(tx.asset):
            self.native_balances[tx.from_address] -= tx.amount
            self.native_balances[tx.to_address] = (
                self.native_balances.get(tx.to_address, Decimal("0")) + tx.amount
            )
        else:
            self.token_balances[(tx.from_address, tx.asset)] -= tx.amount
            key = (tx.to_address, tx.asset)
            self.token_balances[key] = self.token_balances.get(key, Decimal("0")) + tx.amount
            self.token_accounts.add(key)

        tx_ref = f"sim_{secrets.token_hex(16)}"
        self.transactions[tx_ref] = {"confirmations": 0, "status": TxStatus.SUCCESS}
        self.submitted.append(signed_tx)
        logger.info(f"[SIMULATED] {self.chain} transfer {tx.amount} {tx.asset} to {tx.to_address}")
        return tx_ref

    async def get_confirmations(self, tx_ref: str) -> int:
        self._maybe_fail("get_confirmations")
        tx = self.transactions.get(tx_ref)
        return tx["confirmations"] if tx else 0

    async def get_transaction_status(self, tx_ref: str) -> TxStatus:
        self._maybe_fail("get_transaction_status")
        tx = self.transactions.get(tx_ref)
        return tx["status"] if tx else TxStatus.NOT_FOUND

    async def estimate_fee(self, asset: str) -> Decimal:
        return self.fee

    async def list_incoming_transfers(self, address: str, asset: str) -> list[IncomingTransfer]:
        self._maybe_fail("list_incoming_transfers")
        transfers = []
        for transfer in self.incoming.get(address, []):
            if transfer.asset != asset.upper():
                continue
            tx = self.transactions.get(transfer.tx_ref)
            if tx is None:
                continue
            transfer.confirmations = tx["confirmations"]
            transfers.append(transfer)
        return transfers

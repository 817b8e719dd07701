"""Solana chain adapter.

JSON-RPC over httpx; transactions built with solders and SPL token
instructions from the solana package. A Solana transaction may name a fee
payer other than the token owner, and both sign the same message, which is
what lets the gas sponsor pay for sweeps.

SPL tokens live in associated token accounts (ATA) derived from the owner
and mint. A transfer to an owner without an ATA must create it first.
"""

import base64
import logging
from decimal import Decimal
from typing import Any, Optional, Union

import httpx
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    create_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)
from spl.token.models import TransferCheckedParams

from solpay.chains.base import ChainAdapter, IncomingTransfer, SignedTx, TxStatus, UnsignedTx
from solpay.errors import ChainError, TransactionRejected

logger = logging.getLogger(__name__)

LAMPORTS_PER_SIGNATURE = 5000
# Rent-exempt minimum of a token account, paid by whoever creates it
ATA_RENT_LAMPORTS = 2_039_280
# Depth reported once a signature is rooted
FINALIZED_CONFIRMATIONS = 32
SIGNATURE_LOOKBACK = 25


class SolanaChainAdapter(ChainAdapter):
    """Adapter for Solana (SOL and SPL tokens)."""

    supports_fee_payer = True

    def __init__(
        self,
        rpc_url: str,
        token_ids: Optional[dict[str, str]] = None,
        required_confirmations: int = 1,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__("solana", token_ids, required_confirmations)
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._transport = transport

    async def _rpc(self, method: str, params: list) -> Any:
        """Perform a JSON-RPC call and return its result.

        Raises:
            ChainError: On transport failure or an RPC error object
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.rpc_url,
                    json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params},
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ChainError(f"Solana RPC {method} failed: {e}") from e

        if data.get("error"):
            error = data["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise ChainError(f"Solana RPC {method} error: {message}")
        return data.get("result")

    async def _account_exists(self, address: Pubkey) -> bool:
        result = await self._rpc("getAccountInfo", [str(address), {"encoding": "base64"}])
        return bool(result and result.get("value"))

    async def _get_latest_blockhash(self) -> Hash:
        result = await self._rpc("getLatestBlockhash", [{"commitment": "finalized"}])
        return Hash.from_string(result["value"]["blockhash"])

    async def get_native_balance(self, address: str) -> Decimal:
        result = await self._rpc("getBalance", [address, {"commitment": "confirmed"}])
        return self.from_base_units(self.native_asset, int(result["value"]))

    async def get_token_balance(self, address: str, token_id: str) -> Decimal:
        asset = self.get_asset_for_token(token_id)
        ata = get_associated_token_address(Pubkey.from_string(address), Pubkey.from_string(token_id))
        if not await self._account_exists(ata):
            return Decimal("0")
        result = await self._rpc("getTokenAccountBalance", [str(ata)])
        return self.from_base_units(asset, int(result["value"]["amount"]))

    async def build_transfer(
        self,
        from_address: str,
        to_address: str,
        asset: str,
        amount: Decimal,
        fee_payer: Optional[str] = None,
    ) -> UnsignedTx:
        asset = asset.upper()
        owner = Pubkey.from_string(from_address)
        recipient = Pubkey.from_string(to_address)
        payer_address = fee_payer or from_address
        payer = Pubkey.from_string(payer_address)
        units = self.to_base_units(asset, amount)

        instructions = []
        creates_account = False
        if self.is_native(asset):
            instructions.append(
                transfer(TransferParams(from_pubkey=owner, to_pubkey=recipient, lamports=units))
            )
        else:
            mint = Pubkey.from_string(self.get_token_id(asset))
            source = get_associated_token_address(owner, mint)
            dest = get_associated_token_address(recipient, mint)
            if not await self._account_exists(dest):
                creates_account = True
                instructions.append(
                    create_associated_token_account(payer=payer, owner=recipient, mint=mint)
                )
            instructions.append(
                transfer_checked(
                    TransferCheckedParams(
                        program_id=TOKEN_PROGRAM_ID,
                        source=source,
                        mint=mint,
                        dest=dest,
                        owner=owner,
                        amount=units,
                        decimals=self.get_decimals(asset),
                    )
                )
            )

        blockhash = await self._get_latest_blockhash()
        message = Message.new_with_blockhash(instructions, payer, blockhash)

        signers = [payer_address] if payer_address == from_address else [payer_address, from_address]
        fee_lamports = LAMPORTS_PER_SIGNATURE * len(signers)
        if creates_account:
            fee_lamports += ATA_RENT_LAMPORTS

        return UnsignedTx(
            chain=self.chain,
            from_address=from_address,
            to_address=to_address,
            asset=asset,
            amount=Decimal(amount),
            amount_units=units,
            fee_payer=payer_address,
            fee_estimate=self.from_base_units(self.native_asset, fee_lamports),
            required_signers=signers,
            creates_token_account=creates_account,
            payload={"message": message, "blockhash": blockhash},
        )

    async def sign(self, tx: Union[UnsignedTx, SignedTx], private_key: str) -> SignedTx:
        if isinstance(tx, SignedTx):
            unsigned = tx.unsigned
            transaction = Transaction.from_bytes(bytes(tx.raw))
            signers = list(tx.signers)
        else:
            unsigned = tx
            transaction = Transaction.new_unsigned(unsigned.payload["message"])
            signers = []

        keypair = Keypair.from_base58_string(private_key)
        signer = str(keypair.pubkey())
        if signer not in unsigned.required_signers:
            raise ChainError(f"{signer} is not a required signer")

        transaction.partial_sign([keypair], unsigned.payload["blockhash"])
        if signer not in signers:
            signers.append(signer)
        return SignedTx(unsigned=unsigned, raw=transaction, signers=signers)

    async def submit(self, signed_tx: SignedTx) -> str:
        if not signed_tx.complete:
            raise TransactionRejected(f"Missing signatures: {signed_tx.missing_signers}")
        encoded = base64.b64encode(bytes(signed_tx.raw)).decode()
        try:
            return await self._rpc(
                "sendTransaction",
                [encoded, {"encoding": "base64", "preflightCommitment": "confirmed"}],
            )
        except ChainError as e:
            logger.error(f"Solana broadcast error: {e}")
            raise TransactionRejected(str(e)) from e

    async def _get_signature_status(self, tx_ref: str) -> Optional[dict]:
        result = await self._rpc(
            "getSignatureStatuses", [[tx_ref], {"searchTransactionHistory": True}]
        )
        values = (result or {}).get("value") or [None]
        return values[0]

    async def get_confirmations(self, tx_ref: str) -> int:
        status = await self._get_signature_status(tx_ref)
        if status is None:
            return 0
        if status.get("confirmationStatus") == "finalized":
            return FINALIZED_CONFIRMATIONS
        confirmations = status.get("confirmations") or 0
        if status.get("confirmationStatus") == "confirmed":
            return max(confirmations, 1)
        return confirmations

    async def get_transaction_status(self, tx_ref: str) -> TxStatus:
        status = await self._get_signature_status(tx_ref)
        if status is None:
            return TxStatus.NOT_FOUND
        if status.get("err") is not None:
            return TxStatus.FAILED
        if status.get("confirmationStatus") in ("confirmed", "finalized"):
            return TxStatus.SUCCESS
        return TxStatus.PENDING

    async def estimate_fee(self, asset: str) -> Decimal:
        # Owner plus a sponsoring fee payer
        return self.from_base_units(self.native_asset, LAMPORTS_PER_SIGNATURE * 2)

    async def list_incoming_transfers(self, address: str, asset: str) -> list[IncomingTransfer]:
        asset = asset.upper()
        watched = address
        mint = None
        if not self.is_native(asset):
            mint = self.get_token_id(asset)
            watched = str(
                get_associated_token_address(Pubkey.from_string(address), Pubkey.from_string(mint))
            )

        signatures = await self._rpc(
            "getSignaturesForAddress", [watched, {"limit": SIGNATURE_LOOKBACK}]
        )
        transfers = []
        for entry in signatures or []:
            if entry.get("err") is not None:
                continue
            tx = await self._rpc(
                "getTransaction",
                [
                    entry["signature"],
                    {
                        "encoding": "jsonParsed",
                        "maxSupportedTransactionVersion": 0,
                        "commitment": "confirmed",
                    },
                ],
            )
            if not tx or not tx.get("meta"):
                continue

            units, sender = self._received_units(tx, address, mint)
            if units <= 0:
                continue
            confirmations = {"finalized": FINALIZED_CONFIRMATIONS, "confirmed": 1}.get(
                entry.get("confirmationStatus"), 0
            )
            transfers.append(
                IncomingTransfer(
                    tx_ref=entry["signature"],
                    asset=asset,
                    to_address=address,
                    amount=self.from_base_units(asset, units),
                    confirmations=confirmations,
                    from_address=sender,
                )
            )
        return transfers

    @staticmethod
    def _received_units(tx: dict, owner: str, mint: Optional[str]) -> tuple[int, Optional[str]]:
        """Net amount received by ``owner`` in a parsed transaction."""
        meta = tx["meta"]
        keys = [
            k["pubkey"] if isinstance(k, dict) else k
            for k in tx["transaction"]["message"]["accountKeys"]
        ]
        sender = keys[0] if keys else None

        if mint is None:
            if owner not in keys:
                return 0, sender
            index = keys.index(owner)
            return meta["postBalances"][index] - meta["preBalances"][index], sender

        def owned(balances: list[dict]) -> int:
            return sum(
                int(b["uiTokenAmount"]["amount"])
                for b in balances or []
                if b.get("owner") == owner and b.get("mint") == mint
            )

        return owned(meta.get("postTokenBalances")) - owned(meta.get("preTokenBalances")), sender

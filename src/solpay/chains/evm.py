"""EVM chain adapter (Base).

JSON-RPC over httpx, signing with eth_account. Supports the native coin
and ERC-20 tokens. EVM transactions have a single signer who pays gas, so
there is no separate fee payer.
"""

import logging
from decimal import Decimal
from typing import Any, Optional, Union

import httpx
from eth_abi import encode
from eth_account import Account
from eth_utils import keccak, to_checksum_address, to_hex

from solpay.chains.base import ChainAdapter, IncomingTransfer, SignedTx, TxStatus, UnsignedTx
from solpay.errors import ChainError, TransactionRejected

logger = logging.getLogger(__name__)

# Standard gas limits
NATIVE_TRANSFER_GAS = 21000
TOKEN_TRANSFER_GAS = 100000  # ERC20 transfers need more gas

# Headroom applied to the current gas price when estimating
FEE_BUFFER = Decimal("1.2")

# ERC20 selectors and event topic
BALANCE_OF_SELECTOR = "0x70a08231"
TRANSFER_SELECTOR = "0xa9059cbb"
TRANSFER_TOPIC = to_hex(keccak(text="Transfer(address,address,uint256)"))


def _pad_address(address: str) -> str:
    """Left-pad an address to a 32-byte log topic."""
    return "0x" + address.lower().replace("0x", "").rjust(64, "0")


class EVMChainAdapter(ChainAdapter):
    """Adapter for EVM chains.

    Supports native ETH transfers and ERC20 token transfers.
    """

    supports_fee_payer = False

    def __init__(
        self,
        chain: str,
        rpc_url: str,
        chain_id: Optional[int] = None,
        token_ids: Optional[dict[str, str]] = None,
        required_confirmations: int = 12,
        timeout: float = 30.0,
        lookback_blocks: int = 50,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(chain, token_ids, required_confirmations)
        self.rpc_url = rpc_url
        self.chain_id = chain_id or self.config.chain_id
        self.timeout = timeout
        self.lookback_blocks = lookback_blocks
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
                    json={"jsonrpc": "2.0", "method": method, "params": params, "id": 1},
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ChainError(f"{self.chain} RPC {method} failed: {e}") from e

        if data.get("error"):
            error = data["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise ChainError(f"{self.chain} RPC {method} error: {message}")
        return data.get("result")

    async def _get_gas_price(self) -> int:
        """Get current gas price in wei."""
        return int(await self._rpc("eth_gasPrice", []), 16)

    async def _get_nonce(self, address: str) -> int:
        """Get transaction count (nonce) for address."""
        return int(await self._rpc("eth_getTransactionCount", [address, "pending"]), 16)

    async def _get_block_number(self) -> int:
        return int(await self._rpc("eth_blockNumber", []), 16)

    def _gas_limit(self, asset: str) -> int:
        return NATIVE_TRANSFER_GAS if self.is_native(asset) else TOKEN_TRANSFER_GAS

    async def get_native_balance(self, address: str) -> Decimal:
        result = await self._rpc("eth_getBalance", [address, "latest"])
        return Decimal(int(result, 16)) / Decimal(10**18)

    async def get_token_balance(self, address: str, token_id: str) -> Decimal:
        asset = self.get_asset_for_token(token_id)
        data = BALANCE_OF_SELECTOR + encode(["address"], [to_checksum_address(address)]).hex()
        result = await self._rpc("eth_call", [{"to": token_id, "data": data}, "latest"])
        units = int(result, 16) if result and result != "0x" else 0
        return self.from_base_units(asset, units)

    async def build_transfer(
        self,
        from_address: str,
        to_address: str,
        asset: str,
        amount: Decimal,
        fee_payer: Optional[str] = None,
    ) -> UnsignedTx:
        asset = asset.upper()
        if fee_payer and fee_payer.lower() != from_address.lower():
            raise ChainError(f"{self.chain} does not support a separate fee payer")

        units = self.to_base_units(asset, amount)
        gas_price = await self._get_gas_price()
        nonce = await self._get_nonce(from_address)
        gas = self._gas_limit(asset)

        if self.is_native(asset):
            body = {
                "to": to_checksum_address(to_address),
                "value": units,
                "data": b"",
            }
        else:
            calldata = encode(["address", "uint256"], [to_checksum_address(to_address), units])
            body = {
                "to": to_checksum_address(self.get_token_id(asset)),
                "value": 0,
                "data": TRANSFER_SELECTOR + calldata.hex(),
            }
        body.update({"nonce": nonce, "gas": gas, "gasPrice": gas_price, "chainId": self.chain_id})

        return UnsignedTx(
            chain=self.chain,
            from_address=from_address,
            to_address=to_address,
            asset=asset,
            amount=Decimal(amount),
            amount_units=units,
            fee_payer=from_address,
            fee_estimate=Decimal(gas * gas_price) / Decimal(10**18),
            required_signers=[from_address],
            payload=body,
        )

    async def sign(self, tx: Union[UnsignedTx, SignedTx], private_key: str) -> SignedTx:
        unsigned = tx.unsigned if isinstance(tx, SignedTx) else tx
        account = Account.from_key(private_key)
        if account.address.lower() != unsigned.from_address.lower():
            raise ChainError(f"{account.address} is not a required signer")

        signed = account.sign_transaction(unsigned.payload)
        return SignedTx(
            unsigned=unsigned,
            raw=to_hex(signed.raw_transaction),
            signers=[unsigned.from_address],
        )

    async def submit(self, signed_tx: SignedTx) -> str:
        try:
            return await self._rpc("eth_sendRawTransaction", [signed_tx.raw])
        except ChainError as e:
            logger.error(f"Broadcast error on {self.chain}: {e}")
            raise TransactionRejected(str(e)) from e

    async def get_confirmations(self, tx_ref: str) -> int:
        receipt = await self._rpc("eth_getTransactionReceipt", [tx_ref])
        if not receipt or not receipt.get("blockNumber"):
            return 0
        head = await self._get_block_number()
        return max(0, head - int(receipt["blockNumber"], 16) + 1)

    async def get_transaction_status(self, tx_ref: str) -> TxStatus:
        receipt = await self._rpc("eth_getTransactionReceipt", [tx_ref])
        if receipt is None:
            tx = await self._rpc("eth_getTransactionByHash", [tx_ref])
            return TxStatus.PENDING if tx else TxStatus.NOT_FOUND
        status = int(receipt.get("status", "0x0"), 16)
        return TxStatus.SUCCESS if status == 1 else TxStatus.FAILED

    async def estimate_fee(self, asset: str) -> Decimal:
        gas_price = await self._get_gas_price()
        fee_wei = Decimal(gas_price * self._gas_limit(asset)) * FEE_BUFFER
        return fee_wei / Decimal(10**18)

    async def list_incoming_transfers(self, address: str, asset: str) -> list[IncomingTransfer]:
        head = await self._get_block_number()
        from_block = max(0, head - self.lookback_blocks + 1)
        if self.is_native(asset):
            return await self._list_native_transfers(address, from_block, head)
        return await self._list_token_transfers(address, asset.upper(), from_block, head)

    async def _list_native_transfers(
        self, address: str, from_block: int, head: int
    ) -> list[IncomingTransfer]:
        # Plain value transfers emit no logs, so walk the blocks
        transfers = []
        for number in range(from_block, head + 1):
            block = await self._rpc("eth_getBlockByNumber", [hex(number), True])
            if not block:
                continue
            for tx in block.get("transactions", []):
                to = tx.get("to")
                value = int(tx.get("value", "0x0"), 16)
                if not to or to.lower() != address.lower() or value == 0:
                    continue
                transfers.append(
                    IncomingTransfer(
                        tx_ref=tx["hash"],
                        asset=self.native_asset,
                        to_address=address,
                        amount=self.from_base_units(self.native_asset, value),
                        confirmations=head - number + 1,
                        from_address=tx.get("from"),
                    )
                )
        return transfers

    async def _list_token_transfers(
        self, address: str, asset: str, from_block: int, head: int
    ) -> list[IncomingTransfer]:
        logs = await self._rpc(
            "eth_getLogs",
            [
                {
                    "fromBlock": hex(from_block),
                    "toBlock": hex(head),
                    "address": self.get_token_id(asset),
                    "topics": [TRANSFER_TOPIC, None, _pad_address(address)],
                }
            ],
        )

        # One deposit per transaction hash
        by_hash: dict[str, IncomingTransfer] = {}
        for log in logs or []:
            tx_hash = log["transactionHash"]
            amount = self.from_base_units(asset, int(log.get("data") or "0x0", 16))
            confirmations = head - int(log["blockNumber"], 16) + 1
            existing = by_hash.get(tx_hash)
            if existing:
                existing.amount += amount
                continue
            sender = log["topics"][1] if len(log.get("topics", [])) > 1 else None
            by_hash[tx_hash] = IncomingTransfer(
                tx_ref=tx_hash,
                asset=asset,
                to_address=address,
                amount=amount,
                confirmations=confirmations,
                from_address=to_checksum_address("0x" + sender[-40:]) if sender else None,
            )
        return list(by_hash.values())

"""Tests for the EVM and Solana chain adapters against mocked JSON-RPC."""

import base64
import json
from decimal import Decimal

import httpx
import pytest
from eth_account import Account
from eth_utils import to_hex
from solders.hash import Hash

from solpay.chains.base import SimulatedChainAdapter, TxStatus
from solpay.chains.evm import TRANSFER_SELECTOR, EVMChainAdapter
from solpay.chains.factory import get_chain_adapter, reset_adapter_cache
from solpay.chains.solana import SolanaChainAdapter
from solpay.errors import ChainError, TransactionRejected
from solpay.wallet.keys import generate_keypair

BASE_USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
SOLANA_USDC = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
BLOCKHASH = str(Hash.default())


class RpcError:
    """Marker for a JSON-RPC error response."""

    def __init__(self, message: str):
        self.message = message


def rpc_transport(responses: dict, calls: list = None) -> httpx.MockTransport:
    """Serve JSON-RPC results keyed by method name.

    A value may be a callable taking the request params.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if calls is not None:
            calls.append(body)
        result = responses[body["method"]]
        if callable(result):
            result = result(body["params"])
        if isinstance(result, RpcError):
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": result.message}}
            )
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})

    return httpx.MockTransport(handler)


def evm_adapter(responses: dict, calls: list = None) -> EVMChainAdapter:
    return EVMChainAdapter(
        "base",
        rpc_url="https://rpc.test",
        token_ids={"USDC": BASE_USDC},
        transport=rpc_transport(responses, calls),
    )


def solana_adapter(responses: dict, calls: list = None) -> SolanaChainAdapter:
    return SolanaChainAdapter(
        rpc_url="https://rpc.test",
        token_ids={"USDC": SOLANA_USDC},
        transport=rpc_transport(responses, calls),
    )


class TestEVMReads:
    """Tests for balance and status reads on Base."""

    @pytest.mark.asyncio
    async def test_native_balance(self):
        adapter = evm_adapter({"eth_getBalance": hex(1_500_000_000_000_000_000)})

        balance = await adapter.get_balance(generate_keypair("evm").address, "ETH")

        assert balance == Decimal("1.5")

    @pytest.mark.asyncio
    async def test_token_balance(self):
        calls = []
        adapter = evm_adapter({"eth_call": "0x" + format(100_000_000, "064x")}, calls)

        balance = await adapter.get_balance(generate_keypair("evm").address, "USDC")

        assert balance == Decimal("100")
        call = calls[0]["params"][0]
        assert call["to"] == BASE_USDC
        assert call["data"].startswith("0x70a08231")

    @pytest.mark.asyncio
    async def test_rpc_error_raises(self):
        adapter = evm_adapter({"eth_getBalance": RpcError("header not found")})

        with pytest.raises(ChainError, match="header not found"):
            await adapter.get_native_balance(generate_keypair("evm").address)

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        adapter = EVMChainAdapter(
            "base",
            rpc_url="https://rpc.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(502)),
        )

        with pytest.raises(ChainError):
            await adapter.get_native_balance(generate_keypair("evm").address)

    @pytest.mark.asyncio
    async def test_confirmations(self):
        adapter = evm_adapter(
            {
                "eth_getTransactionReceipt": {"blockNumber": hex(100), "status": "0x1"},
                "eth_blockNumber": hex(111),
            }
        )

        assert await adapter.get_confirmations("0xabc") == 12
        assert await adapter.get_transaction_status("0xabc") == TxStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_reverted_transaction(self):
        adapter = evm_adapter({"eth_getTransactionReceipt": {"blockNumber": hex(5), "status": "0x0"}})

        assert await adapter.get_transaction_status("0xabc") == TxStatus.FAILED

    @pytest.mark.asyncio
    async def test_pending_and_unknown(self):
        pending = evm_adapter(
            {"eth_getTransactionReceipt": None, "eth_getTransactionByHash": {"hash": "0xabc"}}
        )
        unknown = evm_adapter({"eth_getTransactionReceipt": None, "eth_getTransactionByHash": None})

        assert await pending.get_transaction_status("0xabc") == TxStatus.PENDING
        assert await pending.get_confirmations("0xabc") == 0
        assert await unknown.get_transaction_status("0xabc") == TxStatus.NOT_FOUND


class TestEVMTransfers:
    """Tests for building, signing and submitting Base transfers."""

    RESPONSES = {
        "eth_gasPrice": hex(1_000_000_000),
        "eth_getTransactionCount": hex(5),
    }

    @pytest.mark.asyncio
    async def test_native_transfer_roundtrip(self):
        account = Account.create()
        recipient = generate_keypair("evm").address
        calls = []
        adapter = evm_adapter({**self.RESPONSES, "eth_sendRawTransaction": "0xfeed"}, calls)

        unsigned = await adapter.build_transfer(account.address, recipient, "ETH", Decimal("0.25"))

        assert unsigned.amount_units == 250_000_000_000_000_000
        assert unsigned.fee_payer == account.address
        assert unsigned.fee_estimate == Decimal("0.000021")
        assert unsigned.payload["nonce"] == 5
        assert unsigned.payload["chainId"] == 8453

        signed = await adapter.sign(unsigned, to_hex(account.key))
        assert signed.complete
        assert signed.raw.startswith("0x")

        assert await adapter.submit(signed) == "0xfeed"
        assert calls[-1]["params"] == [signed.raw]

    @pytest.mark.asyncio
    async def test_token_transfer_calls_contract(self):
        sender = generate_keypair("evm").address
        recipient = generate_keypair("evm").address
        adapter = evm_adapter(self.RESPONSES)

        unsigned = await adapter.build_transfer(sender, recipient, "USDC", Decimal("12.5"))

        assert unsigned.amount_units == 12_500_000
        assert unsigned.payload["to"] == BASE_USDC
        assert unsigned.payload["value"] == 0
        assert unsigned.payload["data"].startswith(TRANSFER_SELECTOR)
        assert unsigned.payload["gas"] == 100000

    @pytest.mark.asyncio
    async def test_separate_fee_payer_unsupported(self):
        adapter = evm_adapter(self.RESPONSES)
        sender = generate_keypair("evm").address

        with pytest.raises(ChainError):
            await adapter.build_transfer(
                sender, sender, "ETH", Decimal("1"), fee_payer=generate_keypair("evm").address
            )

    @pytest.mark.asyncio
    async def test_wrong_key_refused(self):
        adapter = evm_adapter(self.RESPONSES)
        sender = generate_keypair("evm").address
        unsigned = await adapter.build_transfer(sender, sender, "ETH", Decimal("1"))

        with pytest.raises(ChainError):
            await adapter.sign(unsigned, generate_keypair("evm").private_key)

    @pytest.mark.asyncio
    async def test_broadcast_error_is_rejection(self):
        account = Account.create()
        adapter = evm_adapter(
            {**self.RESPONSES, "eth_sendRawTransaction": RpcError("nonce too low")}
        )
        unsigned = await adapter.build_transfer(account.address, account.address, "ETH", Decimal("1"))
        signed = await adapter.sign(unsigned, to_hex(account.key))

        with pytest.raises(TransactionRejected, match="nonce too low"):
            await adapter.submit(signed)

    @pytest.mark.asyncio
    async def test_estimate_fee_has_headroom(self):
        adapter = evm_adapter(self.RESPONSES)

        assert await adapter.estimate_fee("ETH") == Decimal("0.0000252")


class TestEVMIncoming:
    """Tests for deposit discovery on Base."""

    @pytest.mark.asyncio
    async def test_token_logs_grouped_by_transaction(self):
        address = generate_keypair("evm").address
        sender = generate_keypair("evm").address
        topic_sender = "0x" + sender.lower()[2:].rjust(64, "0")

        def log(tx_hash, units, block):
            return {
                "transactionHash": tx_hash,
                "blockNumber": hex(block),
                "data": hex(units),
                "topics": ["0xddf2", topic_sender, "0x00"],
            }

        adapter = evm_adapter(
            {
                "eth_blockNumber": hex(200),
                "eth_getLogs": [
                    log("0xaa", 5_000_000, 195),
                    log("0xaa", 2_500_000, 195),
                    log("0xbb", 1_000_000, 200),
                ],
            }
        )

        transfers = await adapter.list_incoming_transfers(address, "USDC")

        by_ref = {t.tx_ref: t for t in transfers}
        assert by_ref["0xaa"].amount == Decimal("7.5")
        assert by_ref["0xaa"].confirmations == 6
        assert by_ref["0xaa"].from_address == sender
        assert by_ref["0xbb"].confirmations == 1

    @pytest.mark.asyncio
    async def test_native_transfers_from_blocks(self):
        address = generate_keypair("evm").address
        other = generate_keypair("evm").address
        blocks = {
            hex(10): {
                "transactions": [
                    {"hash": "0x01", "to": address.lower(), "value": hex(10**18), "from": other},
                    {"hash": "0x02", "to": other, "value": hex(10**18), "from": address},
                ]
            },
        }
        adapter = EVMChainAdapter(
            "base",
            rpc_url="https://rpc.test",
            lookback_blocks=2,
            transport=rpc_transport(
                {
                    "eth_blockNumber": hex(11),
                    "eth_getBlockByNumber": lambda params: blocks.get(params[0]),
                }
            ),
        )

        [transfer] = await adapter.list_incoming_transfers(address, "ETH")

        assert transfer.tx_ref == "0x01"
        assert transfer.amount == Decimal("1")
        assert transfer.confirmations == 2


class TestSolanaReads:
    """Tests for balance and status reads on Solana."""

    @pytest.mark.asyncio
    async def test_native_balance(self):
        adapter = solana_adapter({"getBalance": {"context": {"slot": 1}, "value": 1_500_000_000}})

        assert await adapter.get_balance(generate_keypair("solana").address, "SOL") == Decimal("1.5")

    @pytest.mark.asyncio
    async def test_token_balance(self):
        adapter = solana_adapter(
            {
                "getAccountInfo": {"value": {"lamports": 2039280}},
                "getTokenAccountBalance": {"value": {"amount": "2500000", "decimals": 6}},
            }
        )

        assert await adapter.get_balance(generate_keypair("solana").address, "USDC") == Decimal("2.5")

    @pytest.mark.asyncio
    async def test_token_balance_without_account(self):
        adapter = solana_adapter({"getAccountInfo": {"value": None}})

        assert await adapter.get_balance(generate_keypair("solana").address, "USDC") == Decimal("0")

    @pytest.mark.parametrize(
        "status,confirmations,tx_status",
        [
            ({"confirmationStatus": "finalized", "confirmations": None, "err": None}, 32, TxStatus.SUCCESS),
            ({"confirmationStatus": "confirmed", "confirmations": None, "err": None}, 1, TxStatus.SUCCESS),
            ({"confirmationStatus": "processed", "confirmations": 0, "err": None}, 0, TxStatus.PENDING),
            ({"confirmationStatus": "confirmed", "confirmations": 3, "err": {"InstructionError": []}}, 3, TxStatus.FAILED),
            (None, 0, TxStatus.NOT_FOUND),
        ],
    )
    @pytest.mark.asyncio
    async def test_signature_status(self, status, confirmations, tx_status):
        adapter = solana_adapter({"getSignatureStatuses": {"value": [status]}})

        assert await adapter.get_confirmations("sig") == confirmations
        assert await adapter.get_transaction_status("sig") == tx_status


class TestSolanaTransfers:
    """Tests for sponsored Solana transfers."""

    @pytest.mark.asyncio
    async def test_sponsored_token_transfer_creates_account(self):
        owner = generate_keypair("solana")
        sponsor = generate_keypair("solana")
        recipient = generate_keypair("solana").address
        calls = []
        adapter = solana_adapter(
            {
                "getAccountInfo": {"value": None},
                "getLatestBlockhash": {"value": {"blockhash": BLOCKHASH, "lastValidBlockHeight": 1}},
                "sendTransaction": "5sig",
            },
            calls,
        )

        unsigned = await adapter.build_transfer(
            owner.address, recipient, "USDC", Decimal("100"), fee_payer=sponsor.address
        )

        assert unsigned.creates_token_account
        assert unsigned.fee_payer == sponsor.address
        assert unsigned.required_signers == [sponsor.address, owner.address]
        # Two signatures plus token account rent
        assert unsigned.fee_estimate == Decimal("0.00204928")

        partial = await adapter.sign(unsigned, sponsor.private_key)
        assert not partial.complete
        assert partial.missing_signers == [owner.address]
        with pytest.raises(TransactionRejected):
            await adapter.submit(partial)

        signed = await adapter.sign(partial, owner.private_key)
        assert signed.complete

        assert await adapter.submit(signed) == "5sig"
        encoded = calls[-1]["params"][0]
        assert base64.b64decode(encoded) == bytes(signed.raw)

    @pytest.mark.asyncio
    async def test_self_paid_native_transfer(self):
        owner = generate_keypair("solana")
        adapter = solana_adapter(
            {"getLatestBlockhash": {"value": {"blockhash": BLOCKHASH, "lastValidBlockHeight": 1}}}
        )

        unsigned = await adapter.build_transfer(
            owner.address, generate_keypair("solana").address, "SOL", Decimal("0.5")
        )

        assert unsigned.amount_units == 500_000_000
        assert unsigned.required_signers == [owner.address]
        assert unsigned.fee_estimate == Decimal("0.000005")
        assert not unsigned.creates_token_account

    @pytest.mark.asyncio
    async def test_stranger_cannot_sign(self):
        owner = generate_keypair("solana")
        adapter = solana_adapter(
            {"getLatestBlockhash": {"value": {"blockhash": BLOCKHASH, "lastValidBlockHeight": 1}}}
        )
        unsigned = await adapter.build_transfer(
            owner.address, generate_keypair("solana").address, "SOL", Decimal("0.5")
        )

        with pytest.raises(ChainError):
            await adapter.sign(unsigned, generate_keypair("solana").private_key)


class TestSolanaIncoming:
    """Tests for deposit discovery on Solana."""

    @pytest.mark.asyncio
    async def test_native_deposit(self):
        address = generate_keypair("solana").address
        sender = generate_keypair("solana").address
        adapter = solana_adapter(
            {
                "getSignaturesForAddress": [
                    {"signature": "sig1", "err": None, "confirmationStatus": "finalized"},
                    {"signature": "sig2", "err": {"InstructionError": []}, "confirmationStatus": "finalized"},
                ],
                "getTransaction": {
                    "meta": {
                        "preBalances": [5_000_000_000, 0],
                        "postBalances": [2_999_995_000, 2_000_000_000],
                    },
                    "transaction": {
                        "message": {"accountKeys": [{"pubkey": sender}, {"pubkey": address}]}
                    },
                },
            }
        )

        [transfer] = await adapter.list_incoming_transfers(address, "SOL")

        assert transfer.tx_ref == "sig1"
        assert transfer.amount == Decimal("2")
        assert transfer.confirmations == 32
        assert transfer.from_address == sender

    @pytest.mark.asyncio
    async def test_token_deposit(self):
        address = generate_keypair("solana").address
        sender = generate_keypair("solana").address

        def balance(owner, amount):
            return {"owner": owner, "mint": SOLANA_USDC, "uiTokenAmount": {"amount": str(amount)}}

        adapter = solana_adapter(
            {
                "getSignaturesForAddress": [
                    {"signature": "sig1", "err": None, "confirmationStatus": "confirmed"}
                ],
                "getTransaction": {
                    "meta": {
                        "preBalances": [],
                        "postBalances": [],
                        "preTokenBalances": [balance(sender, 50_000_000)],
                        "postTokenBalances": [balance(sender, 25_000_000), balance(address, 25_000_000)],
                    },
                    "transaction": {"message": {"accountKeys": [sender]}},
                },
            }
        )

        [transfer] = await adapter.list_incoming_transfers(address, "USDC")

        assert transfer.asset == "USDC"
        assert transfer.amount == Decimal("25")
        assert transfer.confirmations == 1


class TestAdapterFactory:
    """Tests for get_chain_adapter."""

    def setup_method(self):
        reset_adapter_cache()

    def teardown_method(self):
        reset_adapter_cache()

    def test_dry_run_uses_simulated_adapter(self):
        adapter = get_chain_adapter("base")

        assert isinstance(adapter, SimulatedChainAdapter)
        assert adapter.required_confirmations == 12
        assert get_chain_adapter("base") is adapter

    def test_unknown_chain(self):
        with pytest.raises(ValueError):
            get_chain_adapter("bitcoin")

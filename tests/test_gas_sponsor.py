"""Tests for gas fee sponsorship."""

import asyncio
from decimal import Decimal
from unittest.mock import patch

import pytest

from solpay.config import get_settings
from solpay.errors import ChainError, InsufficientGasCapacity, SponsorNotConfigured
from solpay.services.gas_sponsor import GasSponsor
from solpay.wallet.keys import generate_keypair

THRESHOLD = Decimal("0.01")


async def register(gas_sponsor: GasSponsor, adapter, chain: str, balance: Decimal) -> str:
    family = "solana" if chain == "solana" else "evm"
    keypair = generate_keypair(family)
    await gas_sponsor.register_wallet(chain, keypair.private_key, THRESHOLD)
    adapter.fund(keypair.address, adapter.native_asset, balance)
    return keypair.address


async def sponsored_transfer(adapter, fee_payer: str):
    owner = generate_keypair("solana")
    adapter.fund(owner.address, "USDC", Decimal("10"))
    recipient = generate_keypair("solana").address
    return await adapter.build_transfer(
        owner.address, recipient, "USDC", Decimal("1"), fee_payer=fee_payer
    )


class TestConfiguration:
    """Tests for sponsor wallet registration."""

    @pytest.mark.asyncio
    async def test_not_configured(self, gas_sponsor: GasSponsor):
        with pytest.raises(SponsorNotConfigured):
            await gas_sponsor.check_capacity("solana")

    @pytest.mark.asyncio
    async def test_register_replaces_active_wallet(self, gas_sponsor: GasSponsor, solana_adapter):
        first = await register(gas_sponsor, solana_adapter, "solana", Decimal("1"))
        second = await register(gas_sponsor, solana_adapter, "solana", Decimal("1"))

        assert first != second
        assert await gas_sponsor.get_sponsor_address("solana") == second

    @pytest.mark.asyncio
    async def test_threshold_defaults_from_settings(
        self, gas_sponsor: GasSponsor, solana_adapter, monkeypatch
    ):
        monkeypatch.setenv("SOLANA_SPONSOR_MIN_BALANCE", "0.25")
        get_settings.cache_clear()
        keypair = solana_adapter.generate_keypair()

        wallet = await gas_sponsor.register_wallet("solana", keypair.private_key)
        solana_adapter.fund(keypair.address, "SOL", Decimal("0.2"))
        capacity = await gas_sponsor.check_capacity("solana")

        assert wallet.min_balance_threshold == Decimal("0.25")
        assert not capacity.sufficient

    @pytest.mark.asyncio
    async def test_stored_key_is_encrypted(self, gas_sponsor: GasSponsor, vault):
        keypair = generate_keypair("solana")
        wallet = await gas_sponsor.register_wallet("solana", keypair.private_key, THRESHOLD)

        assert keypair.private_key not in wallet.encrypted_private_key
        assert vault.decrypt_sync(wallet.encrypted_private_key) == keypair.private_key


class TestCapacity:
    """Tests for the balance check before signing."""

    @pytest.mark.asyncio
    async def test_refuses_below_threshold_without_decrypting(
        self, gas_sponsor: GasSponsor, solana_adapter, vault
    ):
        """0.005 SOL against a 0.01 SOL threshold is refused before the key is touched."""
        sponsor = await register(gas_sponsor, solana_adapter, "solana", Decimal("0.005"))
        tx = await sponsored_transfer(solana_adapter, sponsor)

        with patch.object(vault, "decrypt", wraps=vault.decrypt) as decrypt:
            with pytest.raises(InsufficientGasCapacity) as exc_info:
                await gas_sponsor.sponsor("solana", tx)

        decrypt.assert_not_called()
        assert exc_info.value.chain == "solana"
        assert solana_adapter.submitted == []

    @pytest.mark.asyncio
    async def test_check_capacity(self, gas_sponsor: GasSponsor, solana_adapter):
        await register(gas_sponsor, solana_adapter, "solana", Decimal("0.5"))

        capacity = await gas_sponsor.check_capacity("solana")

        assert capacity.sufficient
        assert capacity.balance == Decimal("0.5")
        assert capacity.required == THRESHOLD + solana_adapter.fee

    @pytest.mark.asyncio
    async def test_concurrent_sponsorship_never_overdraws(
        self, gas_sponsor: GasSponsor, solana_adapter
    ):
        """Only as many fees as the balance above threshold covers are granted."""
        fee = solana_adapter.fee
        sponsor = await register(gas_sponsor, solana_adapter, "solana", THRESHOLD + 3 * fee)
        txs = [await sponsored_transfer(solana_adapter, sponsor) for _ in range(5)]

        results = await asyncio.gather(
            *(gas_sponsor.sponsor("solana", tx) for tx in txs), return_exceptions=True
        )

        granted = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, InsufficientGasCapacity)]
        assert len(granted) == 3
        assert len(refused) == 2

        capacity = await gas_sponsor.check_capacity("solana", fee=Decimal("0"))
        assert capacity.available >= THRESHOLD

    @pytest.mark.asyncio
    async def test_release_returns_reservation(self, gas_sponsor: GasSponsor, solana_adapter):
        fee = solana_adapter.fee
        sponsor = await register(gas_sponsor, solana_adapter, "solana", THRESHOLD + fee)
        tx = await sponsored_transfer(solana_adapter, sponsor)

        await gas_sponsor.sponsor("solana", tx)
        with pytest.raises(InsufficientGasCapacity):
            await gas_sponsor.sponsor("solana", tx)

        gas_sponsor.release("solana", tx.fee_estimate)
        signed = await gas_sponsor.sponsor("solana", tx)
        assert sponsor in signed.signers


class TestSponsoring:
    """Tests for co-signing and top-ups."""

    @pytest.mark.asyncio
    async def test_sponsor_signs_as_fee_payer(self, gas_sponsor: GasSponsor, solana_adapter):
        sponsor = await register(gas_sponsor, solana_adapter, "solana", Decimal("1"))
        tx = await sponsored_transfer(solana_adapter, sponsor)

        signed = await gas_sponsor.sponsor("solana", tx)

        assert signed.signers == [sponsor]
        assert signed.missing_signers == [tx.from_address]

    @pytest.mark.asyncio
    async def test_wrong_fee_payer(self, gas_sponsor: GasSponsor, solana_adapter):
        await register(gas_sponsor, solana_adapter, "solana", Decimal("1"))
        stranger = generate_keypair("solana").address
        tx = await sponsored_transfer(solana_adapter, stranger)

        with pytest.raises(ChainError):
            await gas_sponsor.sponsor("solana", tx)

    @pytest.mark.asyncio
    async def test_evm_has_no_fee_payer(self, gas_sponsor: GasSponsor, base_adapter):
        sponsor = await register(gas_sponsor, base_adapter, "base", Decimal("1"))
        tx = await base_adapter.build_transfer(sponsor, sponsor, "ETH", Decimal("0.1"))

        with pytest.raises(ChainError):
            await gas_sponsor.sponsor("base", tx)

    @pytest.mark.asyncio
    async def test_top_up(self, gas_sponsor: GasSponsor, base_adapter):
        sponsor = await register(gas_sponsor, base_adapter, "base", Decimal("1"))
        target = generate_keypair("evm").address

        tx_ref = await gas_sponsor.top_up("base", target, Decimal("0.001"))

        assert tx_ref in base_adapter.transactions
        assert base_adapter.native_balances[target] == Decimal("0.001")
        spent = Decimal("0.001") + base_adapter.fee
        assert base_adapter.native_balances[sponsor] == Decimal("1") - spent

    @pytest.mark.asyncio
    async def test_top_up_refused_when_short(self, gas_sponsor: GasSponsor, base_adapter):
        await register(gas_sponsor, base_adapter, "base", Decimal("0.0105"))

        with pytest.raises(InsufficientGasCapacity):
            await gas_sponsor.top_up("base", generate_keypair("evm").address, Decimal("0.001"))
        assert base_adapter.submitted == []

    @pytest.mark.asyncio
    async def test_stats(self, gas_sponsor: GasSponsor, solana_adapter):
        await register(gas_sponsor, solana_adapter, "solana", Decimal("1"))

        stats = await gas_sponsor.get_stats("solana")

        assert stats["balance"] == Decimal("1")
        assert stats["min_balance"] == THRESHOLD
        assert stats["estimated_transactions_remaining"] == 198000
        assert stats["sufficient"]

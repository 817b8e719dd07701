"""Pytest configuration and fixtures."""

import os
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DRY_RUN"] = "true"
os.environ["DEBUG"] = "false"
os.environ["ENCRYPTION_KEY"] = "test-master-secret-that-is-long-enough-0123"
os.environ["KDF_ITERATIONS"] = "1000"

from solpay.chains.base import SimulatedChainAdapter
from solpay.config import get_settings
from solpay.crypto import KeyVault
from solpay.ledger.models import Base
from solpay.ledger.repository import LedgerRepository
from solpay.pricing.oracles import ConfiguredFxRateSource, StaticPriceOracle
from solpay.pricing.rate_engine import RateEngine
from solpay.providers.base import SimulatedSettlementProvider
from solpay.providers.identity import StaticIdentityProvider
from solpay.services.deposit_tracker import DepositTracker
from solpay.services.gas_sponsor import GasSponsor
from solpay.services.sweeper import Sweeper
from solpay.wallet.factory import WalletFactory
from solpay.wallet.keys import generate_keypair

TEST_SECRET = "test-master-secret-that-is-long-enough-0123"


@pytest.fixture(autouse=True)
def fresh_settings():
    """Reload settings from the test environment for every test."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Create a file-backed database so concurrent sessions share state."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by the services under test."""
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def ledger_repo(db_session: AsyncSession) -> LedgerRepository:
    """Create ledger repository for testing."""
    return LedgerRepository(db_session)


@pytest.fixture
def vault():
    """KeyVault with a cheap KDF."""
    key_vault = KeyVault(TEST_SECRET, iterations=1000)
    yield key_vault
    key_vault.close()


@pytest.fixture
def solana_adapter() -> SimulatedChainAdapter:
    return SimulatedChainAdapter("solana", required_confirmations=1)


@pytest.fixture
def base_adapter() -> SimulatedChainAdapter:
    return SimulatedChainAdapter("base", required_confirmations=12)


@pytest.fixture
def adapters(solana_adapter, base_adapter) -> dict[str, SimulatedChainAdapter]:
    return {"solana": solana_adapter, "base": base_adapter}


@pytest.fixture
def adapter_provider(adapters):
    return lambda chain: adapters[chain.lower()]


@pytest.fixture
def wallet_factory(session_factory, vault, adapter_provider) -> WalletFactory:
    return WalletFactory(session_factory, vault, adapter_provider=adapter_provider)


@pytest.fixture
def tracker(session_factory, adapter_provider) -> DepositTracker:
    return DepositTracker(session_factory, adapter_provider=adapter_provider)


@pytest.fixture
def gas_sponsor(session_factory, vault, adapter_provider) -> GasSponsor:
    return GasSponsor(session_factory, vault, adapter_provider=adapter_provider)


@pytest.fixture
def treasury_addresses() -> dict[str, str]:
    return {
        "solana": generate_keypair("solana").address,
        "base": generate_keypair("evm").address,
    }


@pytest.fixture
def sweeper(session_factory, vault, gas_sponsor, adapter_provider, treasury_addresses) -> Sweeper:
    return Sweeper(
        session_factory,
        vault,
        gas_sponsor=gas_sponsor,
        adapter_provider=adapter_provider,
        treasury_addresses=treasury_addresses,
        max_attempts=3,
    )


@pytest.fixture
def price_oracle() -> StaticPriceOracle:
    return StaticPriceOracle(
        {"USDC": Decimal("1"), "USDT": Decimal("1"), "SOL": Decimal("150"), "ETH": Decimal("3000")}
    )


@pytest.fixture
def rate_engine(price_oracle) -> RateEngine:
    return RateEngine(
        price_oracle,
        fx_source=ConfiguredFxRateSource({"USD_NGN": Decimal("1600")}),
        spread_bps=50,
        flat_fee=Decimal("100"),
        variable_fee_bps=100,
        quote_lock_seconds=120,
        slippage_tolerance_bps=100,
        cache_ttl_seconds=30,
    )


@pytest.fixture
def settlement_provider() -> SimulatedSettlementProvider:
    return SimulatedSettlementProvider()


@pytest.fixture
def identity() -> StaticIdentityProvider:
    return StaticIdentityProvider({"user-1": 1, "user-2": 2})

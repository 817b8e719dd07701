"""Main entry point - runs the deposit tracker, sweeper and payout reconciler."""

import asyncio
import logging
import signal
from decimal import Decimal

from solpay.chains.registry import get_supported_chains
from solpay.config import get_settings
from solpay.crypto import get_key_vault
from solpay.errors import SponsorNotConfigured
from solpay.ledger.database import close_db, get_session_factory, init_db
from solpay.pricing.oracles import HttpPriceOracle, PythOracle, StaticPriceOracle
from solpay.pricing.rate_engine import RateEngine
from solpay.providers.base import SimulatedSettlementProvider
from solpay.providers.bread import BreadSettlementProvider
from solpay.providers.identity import StaticIdentityProvider
from solpay.services.deposit_tracker import DepositTracker
from solpay.services.gas_sponsor import GasSponsor
from solpay.services.settlement import SettlementDispatcher
from solpay.services.sweeper import Sweeper

logger = logging.getLogger(__name__)

# USD prices served when running without live oracles
DRY_RUN_PRICES = {
    "USDC": Decimal("1"),
    "USDT": Decimal("1"),
    "SOL": Decimal("150"),
    "ETH": Decimal("3000"),
}


class Application:
    """Worker process running all background loops."""

    def __init__(self):
        self.settings = get_settings()
        self.tracker = None
        self.sweeper = None
        self.dispatcher = None
        self._shutdown_event = asyncio.Event()

    def _build_rate_engine(self) -> RateEngine:
        if self.settings.dry_run:
            primary = StaticPriceOracle(DRY_RUN_PRICES)
        else:
            primary = PythOracle(
                self.settings.pyth_price_service_url,
                api_key=self.settings.pyth_api_key,
                timeout=self.settings.oracle_timeout_seconds,
            )
        fallback = None
        if self.settings.price_fallback_url:
            fallback = HttpPriceOracle(
                self.settings.price_fallback_url, timeout=self.settings.oracle_timeout_seconds
            )
        return RateEngine(primary, fallback=fallback)

    def _build_provider(self):
        if self.settings.dry_run or not self.settings.bread_api_key:
            if not self.settings.dry_run:
                logger.warning("BREAD_API_KEY not set - using simulated settlement provider")
            return SimulatedSettlementProvider()
        return BreadSettlementProvider(
            self.settings.bread_api_url,
            self.settings.bread_api_key,
            timeout=self.settings.settlement_timeout_seconds,
        )

    async def start(self):
        """Start all services."""
        log_level = logging.DEBUG if self.settings.debug else logging.INFO
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        logger.info("Starting SolPay worker...")
        logger.info(f"Environment: {self.settings.environment}")
        if self.settings.dry_run:
            logger.warning("DRY_RUN enabled - chains and settlement are simulated")

        await init_db()
        logger.info("Database initialized")

        session_factory = get_session_factory()
        vault = get_key_vault()

        sponsor = GasSponsor(session_factory, vault)
        for chain in get_supported_chains():
            try:
                await sponsor.get_sponsor_address(chain)
            except SponsorNotConfigured:
                logger.warning(
                    f"No gas sponsor registered for {chain} - "
                    f"run scripts/register_gas_sponsor.py {chain}"
                )

        self.tracker = DepositTracker(session_factory)
        self.sweeper = Sweeper(session_factory, vault, gas_sponsor=sponsor)
        self.dispatcher = SettlementDispatcher(
            session_factory,
            self._build_rate_engine(),
            self._build_provider(),
            StaticIdentityProvider(self.settings.verification_tiers),
        )

        tasks = [
            asyncio.create_task(
                self.tracker.run(interval_seconds=self.settings.deposit_poll_interval_seconds)
            ),
            asyncio.create_task(
                self.sweeper.run(interval_seconds=self.settings.sweep_interval_seconds)
            ),
            asyncio.create_task(
                self.dispatcher.run(interval_seconds=self.settings.reconcile_interval_seconds)
            ),
        ]
        logger.info("Worker tasks created")

        await self._shutdown_event.wait()

        self.tracker.stop()
        self.sweeper.stop()
        self.dispatcher.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await self._cleanup(vault)

    async def _cleanup(self, vault):
        """Cleanup resources."""
        logger.info("Cleaning up...")
        vault.close()
        await close_db()
        logger.info("Cleanup complete")

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()


def run():
    """Main entry point."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    app = Application()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        loop.close()


if __name__ == "__main__":
    run()

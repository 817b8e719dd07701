"""Settlement of executed quotes through the fiat offramp provider.

Execution:
1. Quote must be active; it is re-validated (expiry, then slippage)
2. Payout limits for the user's verification tier are enforced
3. Quote -> executed and a pending payout are committed together
4. Offramp request is submitted; the provider reference is recorded

A payout whose submission outcome is unknown (timeout, network failure)
stays pending and is picked up by reconciliation. Reconciliation only
moves a payout to success on an explicit provider status; a reference the
provider does not know is an anomaly for manual review.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from solpay.config import get_settings
from solpay.errors import (
    PayoutLimitExceeded,
    QuoteExpired,
    QuoteNotActive,
    SettlementAnomaly,
)
from solpay.ledger.models import Beneficiary, Payout, PayoutStatus, Quote, QuoteStatus
from solpay.ledger.repository import LedgerRepository
from solpay.pricing.rate_engine import RateEngine
from solpay.providers.base import IdentityProvider, OfframpRequest, SettlementProvider
from solpay.providers.identity import LIMIT_WINDOWS, get_tier_limits
from solpay.result import Err, ErrorKind
from solpay.utils.clock import Clock, utcnow
from solpay.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

# Provider status strings -> payout status
PROVIDER_STATUS_MAP: dict[str, PayoutStatus] = {
    "pending": PayoutStatus.PENDING,
    "processing": PayoutStatus.PROCESSING,
    "completed": PayoutStatus.SUCCESS,
    "success": PayoutStatus.SUCCESS,
    "successful": PayoutStatus.SUCCESS,
    "failed": PayoutStatus.FAILED,
    "reversed": PayoutStatus.REVERSED,
    "refunded": PayoutStatus.REVERSED,
}

TERMINAL_PAYOUT_STATUSES = (PayoutStatus.SUCCESS, PayoutStatus.FAILED, PayoutStatus.REVERSED)


@dataclass
class ReconcileReport:
    """Summary of one reconciliation pass."""

    checked: int = 0
    updated: int = 0
    succeeded: int = 0
    failed: int = 0
    reversed: int = 0
    errors: int = 0
    anomalies: list[SettlementAnomaly] = field(default_factory=list)


class SettlementDispatcher:
    """Executes quotes into fiat payouts and reconciles their status."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        rate_engine: RateEngine,
        provider: SettlementProvider,
        identity: IdentityProvider,
        treasury_addresses: Optional[dict[str, str]] = None,
        clock: Clock = utcnow,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.rate_engine = rate_engine
        self.provider = provider
        self.identity = identity
        self.treasury_addresses = treasury_addresses or {}
        self.timeout = settings.settlement_timeout_seconds
        self.min_age = timedelta(seconds=settings.reconcile_min_age_seconds)
        self.lookback = timedelta(hours=settings.reconcile_lookback_hours)
        self.anomaly_age = timedelta(seconds=settings.anomaly_age_seconds)
        self._clock = clock
        self._quote_locks = KeyedLock("quote")
        self._user_locks = KeyedLock("payout-user")
        self._running = False

    def _treasury_address(self, chain: str) -> Optional[str]:
        return self.treasury_addresses.get(chain) or get_settings().get_treasury_address(chain)

    async def execute(
        self, quote: Union[Quote, str], beneficiary: Union[Beneficiary, str]
    ) -> Payout:
        """Execute a quote and dispatch its payout.

        Args:
            quote: Quote (or its id) previously saved by the caller
            beneficiary: Beneficiary (or its id) receiving the fiat

        Returns:
            The payout, pending/processing or failed

        Raises:
            QuoteNotActive: If the quote is unknown or not active
            QuoteExpired: If the lock window elapsed (quote is marked expired)
            SlippageExceeded: If the price moved beyond tolerance
            PayoutLimitExceeded: If the user's tier limit would be exceeded
        """
        quote_id = quote if isinstance(quote, str) else quote.id
        beneficiary_id = beneficiary if isinstance(beneficiary, str) else beneficiary.id

        async with self._quote_locks.hold(quote_id, operation="execute"):
            async with self.session_factory() as session:
                repo = LedgerRepository(session)
                stored = await repo.get_quote(quote_id)
                target = await repo.get_beneficiary(beneficiary_id)

            if stored is None:
                raise QuoteNotActive(f"Quote {quote_id} not found")
            if stored.status != QuoteStatus.ACTIVE.value:
                raise QuoteNotActive(f"Quote {quote_id} is {stored.status}")
            if target is None:
                raise ValueError(f"Beneficiary {beneficiary_id} not found")
            if stored.user_id and target.user_id != stored.user_id:
                raise ValueError("Beneficiary does not belong to the quote's user")

            try:
                await self.rate_engine.check_quote(stored)
            except QuoteExpired:
                async with self.session_factory() as session:
                    await LedgerRepository(session).mark_quote_expired(quote_id)
                    await session.commit()
                raise

            async with self._user_locks.hold(stored.user_id or quote_id, operation="execute"):
                await self._check_limits(stored)
                async with self.session_factory() as session:
                    repo = LedgerRepository(session)
                    if not await repo.mark_quote_executed(quote_id):
                        raise QuoteNotActive(f"Quote {quote_id} is no longer active")
                    payout = await repo.create_payout(stored, target)
                    await session.commit()

            logger.info(
                f"Quote {quote_id} executed: payout {payout.id} "
                f"{payout.fiat_amount} {payout.currency}"
            )
            return await self._dispatch(payout, stored, target)

    async def _check_limits(self, quote: Quote) -> None:
        """Enforce tier payout limits for the quote's user."""
        if not quote.user_id:
            raise PayoutLimitExceeded(f"Quote {quote.id} has no user")

        tier = await self.identity.get_verification_tier(quote.user_id)
        limits = get_tier_limits(tier)
        if limits is None:
            raise PayoutLimitExceeded(f"User {quote.user_id} (tier {tier}) cannot receive payouts")

        now = self._clock()
        amount = Decimal(quote.fiat_amount)
        async with self.session_factory() as session:
            repo = LedgerRepository(session)
            for period, limit in limits.items():
                used = await repo.get_payout_volume(quote.user_id, now - LIMIT_WINDOWS[period])
                if used + amount > limit:
                    raise PayoutLimitExceeded(
                        f"{period} limit {limit} exceeded for user {quote.user_id}: "
                        f"used {used}, requested {amount}"
                    )

    async def _dispatch(self, payout: Payout, quote: Quote, beneficiary: Beneficiary) -> Payout:
        request = OfframpRequest(
            reference=payout.id,
            chain=quote.chain,
            asset=quote.asset,
            crypto_amount=Decimal(quote.crypto_amount),
            fiat_amount=Decimal(quote.fiat_amount),
            currency=quote.currency,
            bank_code=beneficiary.bank_code,
            account_number=beneficiary.account_number,
            account_name=beneficiary.account_name,
            source_address=self._treasury_address(quote.chain),
        )

        try:
            result = await asyncio.wait_for(
                self.provider.submit_offramp(request), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            result = Err(ErrorKind.TIMEOUT, f"No response within {self.timeout}s")

        async with self.session_factory() as session:
            repo = LedgerRepository(session)
            if result.ok:
                submission = result.value
                status = PROVIDER_STATUS_MAP.get(submission.status, PayoutStatus.PENDING)
                updated = await repo.update_payout_status(
                    payout.id, status, provider_reference=submission.provider_reference
                )
                logger.info(
                    f"Payout {payout.id} submitted to {self.provider.name}: "
                    f"{submission.provider_reference} ({submission.status})"
                )
            elif result.kind == ErrorKind.REJECTED:
                updated = await repo.update_payout_status(
                    payout.id, PayoutStatus.FAILED, error_message=result.detail
                )
                logger.warning(f"Payout {payout.id} rejected by provider: {result.detail}")
            else:
                updated = await repo.flag_payout(
                    payout.id, f"Unresolved submission ({result.kind.value}): {result.detail}"
                )
                logger.error(
                    f"Payout {payout.id} submission unresolved ({result.kind.value}); "
                    f"left pending for reconciliation"
                )
            await session.commit()
        return updated

    async def reconcile(self) -> ReconcileReport:
        """Poll the provider for every unresolved payout inside the window."""
        now = self._clock()
        report = ReconcileReport()

        async with self.session_factory() as session:
            payouts = await LedgerRepository(session).list_unresolved_payouts(
                created_after=now - self.lookback, created_before=now - self.min_age
            )

        for payout in payouts:
            report.checked += 1
            age = now - payout.created_at

            if not payout.provider_reference:
                if age > self.anomaly_age:
                    await self._record_anomaly(report, payout, "No provider reference recorded")
                continue

            result = await self.provider.get_offramp_status(payout.provider_reference)
            if not result.ok:
                if result.kind == ErrorKind.NOT_FOUND:
                    if age > self.anomaly_age:
                        await self._record_anomaly(report, payout, "Provider does not know reference")
                else:
                    report.errors += 1
                    logger.warning(f"Status check failed for payout {payout.id}: {result.detail}")
                continue

            new_status = PROVIDER_STATUS_MAP.get(result.value.status)
            if new_status is None:
                logger.warning(
                    f"Unknown provider status '{result.value.status}' for payout {payout.id}"
                )
                if age > self.anomaly_age:
                    await self._record_anomaly(
                        report, payout, f"Unrecognized provider status {result.value.status}"
                    )
                continue
            if new_status.value == payout.status:
                continue

            async with self.session_factory() as session:
                updated = await LedgerRepository(session).update_payout_status(
                    payout.id, new_status
                )
                if (
                    updated is not None
                    and updated.needs_review
                    and new_status in TERMINAL_PAYOUT_STATUSES
                ):
                    updated.needs_review = False
                    updated.review_reason = (
                        f"Resolved by provider status {result.value.status}: "
                        f"{updated.review_reason}"
                    )
                    logger.info(f"Payout {payout.id} review flag cleared by provider status")
                await session.commit()

            report.updated += 1
            if new_status == PayoutStatus.SUCCESS:
                report.succeeded += 1
            elif new_status == PayoutStatus.FAILED:
                report.failed += 1
            elif new_status == PayoutStatus.REVERSED:
                report.reversed += 1
            logger.info(f"Payout {payout.id}: {payout.status} -> {new_status.value}")

        if report.anomalies:
            logger.error(f"{len(report.anomalies)} payout(s) need manual review")
        return report

    async def _record_anomaly(self, report: ReconcileReport, payout: Payout, reason: str) -> None:
        anomaly = SettlementAnomaly(payout.id, reason, payout.provider_reference)
        async with self.session_factory() as session:
            await LedgerRepository(session).flag_payout(payout.id, str(anomaly))
            await session.commit()
        report.anomalies.append(anomaly)
        logger.error(f"Settlement anomaly: {anomaly}")

    async def resolve_manually(self, payout_id: str, status: PayoutStatus, note: str) -> Payout:
        """Record an operator's decision on an unresolved payout.

        Raises:
            ValueError: If the status is not terminal or the payout is already final
        """
        if status not in TERMINAL_PAYOUT_STATUSES:
            raise ValueError(f"Manual resolution must be terminal, got {status.value}")

        async with self.session_factory() as session:
            repo = LedgerRepository(session)
            payout = await repo.get_payout(payout_id)
            if payout is None:
                raise ValueError(f"Payout {payout_id} not found")
            if payout.status in {s.value for s in TERMINAL_PAYOUT_STATUSES}:
                raise ValueError(f"Payout {payout_id} is already {payout.status}")

            payout = await repo.update_payout_status(payout_id, status)
            payout.needs_review = False
            payout.review_reason = f"Resolved manually: {note}"
            await session.commit()

        logger.info(f"Payout {payout_id} manually resolved as {status.value}: {note}")
        return payout

    async def run(self, interval_seconds: int = 30) -> None:
        """Run reconciliation in a continuous loop."""
        self._running = True
        logger.info(f"Starting payout reconciliation (interval: {interval_seconds}s)")
        while self._running:
            try:
                report = await self.reconcile()
                if report.updated:
                    logger.info(f"Reconciled {report.updated} payout(s)")
            except Exception as e:
                logger.error(f"Reconciliation error: {e}")

            await asyncio.sleep(interval_seconds)

    def stop(self) -> None:
        """Stop the reconciliation loop."""
        self._running = False
        logger.info("Stopping payout reconciliation")

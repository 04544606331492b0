"""
Scheduled downgrade sweeper.

Background loop that carries out deferred subscription changes:
scheduled annual -> monthly downgrades that have come due, retries of
discount price changes the provider rejected, the end of expired
retention discounts, and reverts to the regular price that failed when a
discount ended. Each row is handled on its own so one failure never
blocks the rest.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adapters.payments.lemonsqueezy_adapter import create_lemonsqueezy_adapter
from core.domain.subscription import ensure_utc
from core.interfaces.services import BillingProvider
from infrastructure.config import settings
from infrastructure.database import async_session_maker
from services.event_normalizer import PlanVariants
from services.subscription_errors import SubscriptionError
from services.subscription_lifecycle import SubscriptionLifecycleService
from services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Counts from one sweep pass."""

    downgraded: int = 0
    downgrade_failures: int = 0
    discounts_synced: int = 0
    discounts_ended: int = 0
    price_reverts: int = 0


class ScheduledDowngradeSweeper:
    """Periodically applies due downgrades and discount housekeeping."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_maker,
        provider_factory: Callable[[], BillingProvider] = create_lemonsqueezy_adapter,
        variants: Optional[PlanVariants] = None,
        check_interval: int = settings.downgrade_sweep_interval_seconds,
    ):
        self.session_factory = session_factory
        self.provider_factory = provider_factory
        self.variants = variants or PlanVariants.from_settings(settings)
        self.is_running = False
        self.check_interval = check_interval

    async def start(self):
        """Start the sweeper background loop."""
        if self.is_running:
            logger.warning("Downgrade sweeper is already running")
            return

        self.is_running = True
        logger.info("Downgrade sweeper started - checking every %d seconds", self.check_interval)

        while self.is_running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("Downgrade sweeper error: %s", e, exc_info=True)

            # Sleep until next check
            await asyncio.sleep(self.check_interval)

    async def stop(self):
        """Stop the sweeper."""
        if not self.is_running:
            return

        self.is_running = False
        logger.info("Downgrade sweeper stopped")

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        """Run every pass once."""
        now = ensure_utc(now) if now else datetime.now(timezone.utc)
        report = SweepReport()
        provider = self.provider_factory()

        async with self.session_factory() as db:
            service = SubscriptionLifecycleService(db, provider, self.variants, clock=lambda: now)
            await self.process_due_downgrades(service, now, report)
            await self.retry_discount_syncs(service, now, report)
            await self.end_expired_discounts(service, now, report)
            await self.retry_price_reverts(service, report)

        if any((report.downgraded, report.downgrade_failures, report.discounts_synced,
                report.discounts_ended, report.price_reverts)):
            logger.info(
                "Sweep finished: %d downgraded, %d failed, %d discount prices synced, "
                "%d discounts ended, %d prices reverted",
                report.downgraded, report.downgrade_failures, report.discounts_synced,
                report.discounts_ended, report.price_reverts,
            )
        return report

    async def process_due_downgrades(
        self,
        service: SubscriptionLifecycleService,
        now: datetime,
        report: SweepReport,
    ) -> None:
        """Downgrade every row whose scheduled date has passed."""
        store = SubscriptionStore(service.db)
        due_ids = await store.list_due_downgrades(now)
        if not due_ids:
            logger.debug("No scheduled downgrades due")
            return

        logger.info("Found %d scheduled downgrades due", len(due_ids))
        for subscription_pk in due_ids:
            subscription = await store.get_by_id(subscription_pk)
            # Another worker may have handled it since the query
            if subscription is None or subscription.scheduled_downgrade_to is None:
                continue
            try:
                if await service.execute_scheduled_downgrade(subscription):
                    report.downgraded += 1
                else:
                    report.downgrade_failures += 1
            except SubscriptionError as e:
                report.downgrade_failures += 1
                logger.error(
                    "Scheduled downgrade of %s not saved: %s", subscription_pk, e.message,
                    extra={"action": "scheduled_downgrade"},
                )

    async def retry_discount_syncs(
        self,
        service: SubscriptionLifecycleService,
        now: datetime,
        report: SweepReport,
    ) -> None:
        """Retry provider price changes for discounts recorded only locally."""
        store = SubscriptionStore(service.db)
        for subscription_pk in await store.list_unsynced_discounts(now):
            subscription = await store.get_by_id(subscription_pk)
            if subscription is None:
                continue
            if await service.sync_discount_price(subscription):
                report.discounts_synced += 1

    async def end_expired_discounts(
        self,
        service: SubscriptionLifecycleService,
        now: datetime,
        report: SweepReport,
    ) -> None:
        """Clear discounts whose window has passed."""
        store = SubscriptionStore(service.db)
        for subscription_pk in await store.list_expired_discounts(now):
            subscription = await store.get_by_id(subscription_pk)
            if subscription is None or subscription.discount_end_date is None:
                continue
            ended_on = ensure_utc(subscription.discount_end_date)
            try:
                await service.end_discount(
                    subscription,
                    reason="expired",
                    idempotency_key=f"discount_ended:{subscription.id}:{ended_on.isoformat()}",
                )
                report.discounts_ended += 1
            except SubscriptionError as e:
                logger.error(
                    "Expired discount of %s not cleared: %s", subscription_pk, e.message,
                    extra={"action": "end_discount"},
                )

    async def retry_price_reverts(
        self,
        service: SubscriptionLifecycleService,
        report: SweepReport,
    ) -> None:
        """Retry moving ended discounts back to the monthly variant."""
        store = SubscriptionStore(service.db)
        for subscription_pk in await store.list_pending_price_reverts():
            subscription = await store.get_by_id(subscription_pk)
            if subscription is None:
                continue
            try:
                if await service.retry_price_revert(subscription):
                    report.price_reverts += 1
            except SubscriptionError as e:
                logger.error(
                    "Price revert of %s not saved: %s", subscription_pk, e.message,
                    extra={"action": "revert_discount_price"},
                )


# Singleton instance
downgrade_sweeper = ScheduledDowngradeSweeper()

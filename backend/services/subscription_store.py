"""
Subscription record store.

Reads and writes the ``subscriptions`` row and its ``user_settings``
projection. Every update of a subscription row is a compare-and-set on its
``version`` column, retried once against a fresh read.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.domain.subscription import TERMINAL_STATUSES, PlanType
from infrastructure.database.models.base import utc_now
from infrastructure.database.models.subscription import Subscription, UserSettings
from services.subscription_errors import ConcurrentUpdateError

logger = logging.getLogger(__name__)

# Sentinel for "leave this projection field alone"
_UNSET: Any = object()

# Columns callers may never write directly
_PROTECTED_FIELDS = frozenset({"id", "user_id", "version", "created_at", "updated_at"})

# Fields snapshotted for API responses
SUBSCRIPTION_FIELDS = (
    "status",
    "plan_type",
    "billing_interval",
    "lemonsqueezy_subscription_id",
    "current_period_start",
    "current_period_end",
    "trial_ends_at",
    "renews_at",
    "ends_at",
    "update_payment_method_url",
    "customer_portal_url",
    "is_paused",
    "pause_start_date",
    "pause_end_date",
    "pause_duration_days",
    "discount_percentage",
    "discount_start_date",
    "discount_end_date",
    "discount_reason",
    "original_price",
    "discounted_price",
    "provider_price_synced",
    "scheduled_downgrade_to",
    "scheduled_downgrade_date",
    "updated_at",
)


def snapshot_subscription(subscription: Subscription) -> dict[str, Any]:
    """Plain copy of the response-relevant fields, safe to use after a rollback."""
    return {name: getattr(subscription, name) for name in SUBSCRIPTION_FIELDS}


class SubscriptionStore:
    """Persistence for subscription rows and the user settings projection."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, subscription_pk: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.id == subscription_pk)
        )
        return result.scalar_one_or_none()

    async def get_by_user_id(self, user_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_by_subscription_id(self, lemonsqueezy_subscription_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.lemonsqueezy_subscription_id == lemonsqueezy_subscription_id
            )
        )
        return result.scalar_one_or_none()

    async def create(self, user_id: str, values: dict[str, Any]) -> Subscription:
        """
        Insert a subscription row for a user.

        If a concurrent writer inserted the row first, the values are applied
        to that row instead.
        """
        subscription = Subscription(user_id=user_id, **self._writable(values))
        self.db.add(subscription)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            existing = await self.get_by_user_id(user_id)
            if existing is None:
                raise
            logger.info("Subscription for user %s created concurrently; updating instead", user_id)
            return await self.update_fields(existing, values)

        logger.info("Created subscription row for user %s", user_id)
        return subscription

    async def update_fields(self, subscription: Subscription, values: dict[str, Any]) -> Subscription:
        """
        Apply field values with an optimistic version check.

        The row is refreshed after the write so the instance reflects what
        was stored.

        Raises:
            ConcurrentUpdateError: If the row changed again after one retry
        """
        values = self._writable(values)

        for attempt in range(2):
            expected_version = subscription.version
            result = await self.db.execute(
                update(Subscription)
                .where(
                    and_(
                        Subscription.id == subscription.id,
                        Subscription.version == expected_version,
                    )
                )
                .values(**values, version=expected_version + 1, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 1:
                await self.db.refresh(subscription)
                return subscription

            logger.warning(
                "Version conflict on subscription %s (expected v%s, attempt %d)",
                subscription.id, expected_version, attempt + 1,
                extra={"user_id": subscription.user_id},
            )
            await self.db.refresh(subscription)

        raise ConcurrentUpdateError()

    async def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        result = await self.db.execute(
            select(UserSettings).where(UserSettings.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def _get_or_create_user_settings(self, user_id: str) -> UserSettings:
        user_settings = await self.get_user_settings(user_id)
        if user_settings is None:
            user_settings = UserSettings(user_id=user_id)
            self.db.add(user_settings)
        return user_settings

    async def sync_user_settings(
        self,
        user_id: str,
        *,
        status: Optional[str] = _UNSET,
        plan: Optional[str] = _UNSET,
        ends_at: Optional[datetime] = _UNSET,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> UserSettings:
        """
        Write the subscription summary onto the user's settings row.

        Fields left unset keep their value; billing ids are only written
        when provided. has_used_trial is never touched here.
        """
        user_settings = await self._get_or_create_user_settings(user_id)

        if status is not _UNSET:
            user_settings.subscription_status = status
        if plan is not _UNSET:
            user_settings.subscription_plan = plan
        if ends_at is not _UNSET:
            user_settings.subscription_ends_at = ends_at
        if customer_id:
            user_settings.lemonsqueezy_customer_id = customer_id
        if subscription_id:
            user_settings.lemonsqueezy_subscription_id = subscription_id
        user_settings.updated_at = utc_now()

        await self.db.flush()
        return user_settings

    async def mark_trial_used(self, user_id: str) -> None:
        """Latch has_used_trial; it is never reset."""
        user_settings = await self._get_or_create_user_settings(user_id)
        if not user_settings.has_used_trial:
            user_settings.has_used_trial = True
            logger.info("Marked trial as used for user %s", user_id)
        await self.db.flush()

    async def list_due_downgrades(self, now: datetime) -> list[str]:
        """Ids of live annual rows whose scheduled downgrade to monthly is due."""
        result = await self.db.execute(
            select(Subscription.id)
            .where(
                and_(
                    Subscription.scheduled_downgrade_to == "monthly",
                    Subscription.scheduled_downgrade_date.is_not(None),
                    Subscription.scheduled_downgrade_date <= now,
                    Subscription.plan_type == PlanType.ANNUAL.value,
                    Subscription.status.not_in(TERMINAL_STATUSES),
                )
            )
            .order_by(Subscription.scheduled_downgrade_date)
        )
        return list(result.scalars().all())

    async def list_expired_discounts(self, now: datetime) -> list[str]:
        """Ids of rows whose discount window has ended but is still recorded."""
        result = await self.db.execute(
            select(Subscription.id).where(
                and_(
                    Subscription.discount_end_date.is_not(None),
                    Subscription.discount_end_date <= now,
                )
            )
        )
        return list(result.scalars().all())

    async def list_unsynced_discounts(self, now: datetime) -> list[str]:
        """Ids of rows with an active discount whose provider price change is pending."""
        result = await self.db.execute(
            select(Subscription.id).where(
                and_(
                    Subscription.provider_price_synced.is_(False),
                    Subscription.discount_end_date.is_not(None),
                    Subscription.discount_end_date > now,
                )
            )
        )
        return list(result.scalars().all())

    async def list_pending_price_reverts(self) -> list[str]:
        """
        Ids of rows whose discount is gone but the provider may still bill
        the discounted variant.

        provider_price_synced stays True after the discount fields are
        cleared until the revert to the monthly variant succeeds.
        """
        result = await self.db.execute(
            select(Subscription.id).where(
                and_(
                    Subscription.provider_price_synced.is_(True),
                    Subscription.discount_end_date.is_(None),
                )
            )
        )
        return list(result.scalars().all())

    @staticmethod
    def _writable(values: dict[str, Any]) -> dict[str, Any]:
        rejected = _PROTECTED_FIELDS.intersection(values)
        if rejected:
            raise ValueError(f"Cannot write protected subscription fields: {sorted(rejected)}")
        return values

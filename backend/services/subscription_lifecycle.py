"""
User-initiated subscription lifecycle actions.

Every action follows the same order: validate preconditions, call the
billing provider, write the subscription row, commit, then append history.
A provider failure aborts before any local write. A local write failure
after provider success is logged at CRITICAL with a ``RECONCILE`` prefix so
on-call can repair the row by hand; the next webhook also heals it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from adapters.payments.lemonsqueezy_adapter import LemonSqueezyAPIError, LemonSqueezyError
from core.domain.subscription import (
    TERMINAL_STATUSES,
    BillingInterval,
    DiscountTerms,
    HistoryEventType,
    PauseWindow,
    PlanType,
    SubscriptionStatus,
    ensure_utc,
)
from core.interfaces.services import BillingProvider, ProviderSubscription
from core.plans import PAUSE_MODE, get_plan_price
from infrastructure.database.models.subscription import Subscription, SubscriptionHistory
from services.event_normalizer import PlanVariants, map_status
from services.subscription_errors import (
    ConcurrentUpdateError,
    ConfigurationError,
    NotProviderLinkedError,
    PersistenceError,
    PreconditionError,
    SubscriptionNotFoundError,
    UpstreamError,
)
from services.subscription_history import DEFAULT_HISTORY_LIMIT, SubscriptionHistoryLogger
from services.subscription_store import SubscriptionStore, snapshot_subscription

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEDULED_DOWNGRADE_TARGET = "monthly"


@dataclass
class LifecycleResult:
    """What an action did, detached from the session."""

    message: str
    subscription: dict[str, Any]
    details: dict[str, Any] = field(default_factory=dict)


class SubscriptionLifecycleService:
    """Upgrade, pause, discount and scheduled downgrade for one user's subscription."""

    def __init__(
        self,
        db: AsyncSession,
        provider: BillingProvider,
        variants: PlanVariants,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.db = db
        self.provider = provider
        self.variants = variants
        self.clock = clock
        self.store = SubscriptionStore(db)
        self.history = SubscriptionHistoryLogger(db)

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _load(self, user_id: str, not_found_message: str = "No subscription found") -> Subscription:
        subscription = await self.store.get_by_user_id(user_id)
        if subscription is None:
            raise SubscriptionNotFoundError(not_found_message)
        return subscription

    @staticmethod
    def _require_provider_link(subscription: Subscription) -> str:
        if not subscription.is_provider_linked:
            raise NotProviderLinkedError()
        return subscription.lemonsqueezy_subscription_id

    async def _call_provider(
        self,
        action: str,
        user_id: str,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        """Run a provider call, translating failures to UpstreamError."""
        try:
            return await call()
        except LemonSqueezyAPIError as e:
            logger.error(
                "Provider call failed for %s (user %s): %s", action, user_id, e,
                extra={"user_id": user_id, "action": action},
            )
            raise UpstreamError(
                f"Billing provider rejected the {action.replace('_', ' ')} request",
                details=e.errors or None,
            )
        except LemonSqueezyError as e:
            logger.error(
                "Provider unavailable for %s (user %s): %s", action, user_id, e,
                extra={"user_id": user_id, "action": action},
            )
            raise UpstreamError("Billing provider is unavailable. Please try again.")

    async def _persist(
        self,
        subscription: Subscription,
        values: dict[str, Any],
        action: str,
        provider_result: Optional[ProviderSubscription] = None,
        projection: Optional[dict[str, Any]] = None,
    ) -> Subscription:
        """Write fields and the projection in one commit."""
        user_id = subscription.user_id
        external_id = subscription.lemonsqueezy_subscription_id
        try:
            await self.store.update_fields(subscription, values)
            if projection is not None:
                await self.store.sync_user_settings(user_id, **projection)
            await self.db.commit()
        except (SQLAlchemyError, ConcurrentUpdateError) as e:
            await self.db.rollback()
            if provider_result is not None:
                logger.critical(
                    "RECONCILE: provider accepted %s for user %s but the local write failed (%s). "
                    "LemonSqueezy subscription %s now reports %s",
                    action, user_id, type(e).__name__, external_id, provider_result.summary(),
                    extra={"user_id": user_id, "subscription_id": external_id, "action": action},
                )
            else:
                logger.error(
                    "Local write failed for %s (user %s): %s", action, user_id, type(e).__name__,
                    extra={"user_id": user_id, "action": action},
                )
            if isinstance(e, ConcurrentUpdateError):
                raise
            raise PersistenceError()
        return subscription

    def _monthly_variant(self) -> str:
        if not self.variants.monthly:
            raise ConfigurationError("Monthly plan variant is not configured")
        return self.variants.monthly

    # ------------------------------------------------------------------
    # Current state
    # ------------------------------------------------------------------

    async def get_current(self, user_id: str) -> Optional[dict[str, Any]]:
        subscription = await self.store.get_by_user_id(user_id)
        return snapshot_subscription(subscription) if subscription else None

    # ------------------------------------------------------------------
    # Upgrade
    # ------------------------------------------------------------------

    async def upgrade_to_annual(self, user_id: str) -> LifecycleResult:
        """Switch monthly to annual now, invoicing the prorated difference immediately."""
        subscription = await self._load(user_id, "No active subscription found")
        external_id = self._require_provider_link(subscription)
        if subscription.plan_type == PlanType.ANNUAL.value:
            raise PreconditionError("Already on annual plan")
        if not self.variants.yearly:
            raise ConfigurationError("Annual plan variant is not configured")

        previous_plan = subscription.plan_type
        updated = await self._call_provider(
            "upgrade",
            user_id,
            lambda: self.provider.update_subscription_variant(
                external_id, self.variants.yearly, invoice_immediately=True
            ),
        )

        status = map_status(updated.status).value
        values: dict[str, Any] = {
            "plan_type": PlanType.ANNUAL.value,
            "billing_interval": BillingInterval.YEAR.value,
            "lemonsqueezy_variant_id": self.variants.yearly,
            "status": status,
            "current_period_start": updated.current_period_start,
            "current_period_end": updated.current_period_end,
            "renews_at": updated.renews_at,
            # An upgrade supersedes any pending move back to monthly
            "scheduled_downgrade_to": None,
            "scheduled_downgrade_date": None,
        }
        await self._persist(
            subscription,
            values,
            "upgrade",
            provider_result=updated,
            projection={"status": status, "plan": PlanType.ANNUAL.value},
        )
        snapshot = snapshot_subscription(subscription)
        logger.info("User %s upgraded to annual", user_id, extra={"user_id": user_id, "action": "upgrade"})

        await self.history.record(
            user_id,
            HistoryEventType.UPGRADED,
            "Upgraded from Pro Monthly to Pro Annual",
            from_plan=previous_plan,
            to_plan=PlanType.ANNUAL.value,
            amount=get_plan_price(PlanType.ANNUAL.value),
            metadata={
                "previous_plan": previous_plan,
                "new_period_end": updated.current_period_end.isoformat() if updated.current_period_end else None,
            },
        )
        return LifecycleResult(message="Successfully upgraded to annual plan", subscription=snapshot)

    # ------------------------------------------------------------------
    # Pause / resume
    # ------------------------------------------------------------------

    async def pause(self, user_id: str) -> LifecycleResult:
        """Pause billing for three months; the same resume date goes to provider and store."""
        subscription = await self._load(user_id)
        external_id = self._require_provider_link(subscription)
        if subscription.is_paused or subscription.status == SubscriptionStatus.PAUSED.value:
            raise PreconditionError("Subscription is already paused")

        window = PauseWindow.starting(self.clock())
        updated = await self._call_provider(
            "pause",
            user_id,
            lambda: self.provider.pause_subscription(external_id, mode=PAUSE_MODE, resumes_at=window.end),
        )

        await self._persist(
            subscription,
            {
                "status": SubscriptionStatus.PAUSED.value,
                "is_paused": True,
                "pause_start_date": window.start,
                "pause_end_date": window.end,
                "pause_duration_days": window.duration_days,
            },
            "pause",
            provider_result=updated,
            projection={"status": SubscriptionStatus.PAUSED.value},
        )
        snapshot = snapshot_subscription(subscription)
        logger.info(
            "User %s paused subscription until %s", user_id, window.end.isoformat(),
            extra={"user_id": user_id, "action": "pause"},
        )

        await self.history.record(
            user_id,
            HistoryEventType.PAUSED,
            f"Subscription paused until {window.end.date().isoformat()}",
            from_plan=subscription.plan_type,
            to_plan=subscription.plan_type,
            metadata={
                "pause_start_date": window.start.isoformat(),
                "pause_end_date": window.end.isoformat(),
                "pause_duration_days": window.duration_days,
            },
        )
        return LifecycleResult(
            message=f"Subscription paused until {window.end.date().isoformat()}",
            subscription=snapshot,
            details={"resumes_at": window.end.isoformat()},
        )

    async def resume(self, user_id: str) -> LifecycleResult:
        """Remove a pause; status comes from the provider's answer."""
        subscription = await self._load(user_id)
        external_id = self._require_provider_link(subscription)
        if not subscription.is_paused and subscription.status != SubscriptionStatus.PAUSED.value:
            raise PreconditionError("Subscription is not paused")

        updated = await self._call_provider(
            "resume",
            user_id,
            lambda: self.provider.resume_subscription(external_id),
        )
        status = map_status(updated.status).value

        values: dict[str, Any] = {
            "status": status,
            "is_paused": False,
            "pause_start_date": None,
            "pause_end_date": None,
            "pause_duration_days": None,
        }
        if updated.renews_at is not None:
            values["renews_at"] = updated.renews_at

        await self._persist(
            subscription,
            values,
            "resume",
            provider_result=updated,
            projection={"status": status, "plan": subscription.plan_type},
        )
        snapshot = snapshot_subscription(subscription)
        logger.info("User %s resumed subscription", user_id, extra={"user_id": user_id, "action": "resume"})

        await self.history.record(
            user_id,
            HistoryEventType.RESUMED,
            "Subscription resumed",
            from_plan=subscription.plan_type,
            to_plan=subscription.plan_type,
            amount=get_plan_price(subscription.plan_type),
            metadata={"previous_status": SubscriptionStatus.PAUSED.value, "status": status},
        )
        return LifecycleResult(message="Subscription resumed", subscription=snapshot)

    # ------------------------------------------------------------------
    # Retention discount
    # ------------------------------------------------------------------

    async def apply_discount(self, user_id: str) -> LifecycleResult:
        """
        Record a 50% discount for three months, then try to move the provider
        to the discounted variant.

        The intent is committed first and always kept; whether the provider
        price changed is tracked in provider_price_synced.
        """
        subscription = await self._load(user_id, "No active subscription found")
        self._require_provider_link(subscription)

        now = self.clock()
        current_end = ensure_utc(subscription.discount_end_date)
        if current_end is not None and current_end > now:
            raise PreconditionError("You already have an active discount")

        terms = DiscountTerms.for_plan(subscription.plan_type, now)
        needs_price_change = bool(self.variants.discounted_monthly) and subscription.plan_type != PlanType.ANNUAL.value

        await self._persist(
            subscription,
            {
                "discount_percentage": terms.percentage,
                "discount_start_date": terms.start,
                "discount_end_date": terms.end,
                "discount_reason": terms.reason,
                "original_price": terms.original_price,
                "discounted_price": terms.discounted_price,
                "provider_price_synced": False if needs_price_change else None,
            },
            "apply_discount",
        )
        logger.info(
            "Recorded %s%% discount for user %s until %s", terms.percentage, user_id, terms.end.isoformat(),
            extra={"user_id": user_id, "action": "apply_discount"},
        )

        if needs_price_change:
            await self.sync_discount_price(subscription)
        snapshot = snapshot_subscription(subscription)

        await self.history.record(
            user_id,
            HistoryEventType.DISCOUNT_APPLIED,
            f"{terms.percentage}% retention discount applied until {terms.end.date().isoformat()}",
            from_plan=subscription.plan_type,
            to_plan=subscription.plan_type,
            amount=terms.discounted_price,
            metadata={
                "discount_percentage": terms.percentage,
                "original_price": str(terms.original_price),
                "discounted_price": str(terms.discounted_price),
                "discount_end_date": terms.end.isoformat(),
                "provider_price_synced": snapshot["provider_price_synced"],
            },
        )
        return LifecycleResult(
            message=f"{terms.percentage}% discount applied for 3 months!",
            subscription=snapshot,
            details={
                "discount": {
                    "percentage": terms.percentage,
                    "original_price": float(terms.original_price),
                    "discounted_price": float(terms.discounted_price),
                    "start_date": terms.start.isoformat(),
                    "end_date": terms.end.isoformat(),
                },
                "provider_price_synced": snapshot["provider_price_synced"],
            },
        )

    async def sync_discount_price(self, subscription: Subscription) -> bool:
        """
        Best-effort switch to the discounted variant for a recorded discount.

        Safe to call repeatedly; a failure leaves provider_price_synced False
        so the sweeper retries it.
        """
        if subscription.provider_price_synced is not False or not self.variants.discounted_monthly:
            return bool(subscription.provider_price_synced)

        user_id = subscription.user_id
        try:
            updated = await self.provider.update_subscription_variant(
                subscription.lemonsqueezy_subscription_id,
                self.variants.discounted_monthly,
                invoice_immediately=False,
            )
        except LemonSqueezyError as e:
            logger.warning(
                "Could not switch user %s to discounted variant, tracking locally: %s", user_id, e,
                extra={"user_id": user_id, "action": "sync_discount_price"},
            )
            return False

        try:
            await self._persist(
                subscription,
                {
                    "provider_price_synced": True,
                    "lemonsqueezy_variant_id": self.variants.discounted_monthly,
                },
                "sync_discount_price",
                provider_result=updated,
            )
        except PersistenceError:
            # Flag stays False; the next sweep re-sends the same variant
            await self.db.refresh(subscription)
            return False
        logger.info("Switched user %s to discounted variant", user_id, extra={"user_id": user_id})
        return True

    async def remove_discount(self, user_id: str, reason: str = "removed") -> LifecycleResult:
        """Clear the discount fields and, best-effort, restore the monthly variant."""
        subscription = await self._load(user_id)
        snapshot = await self.end_discount(subscription, reason=reason)
        if snapshot["provider_price_synced"]:
            return LifecycleResult(
                message="Discount removed. Your billing price will update shortly.",
                subscription=snapshot,
                details={"price_revert_pending": True},
            )
        return LifecycleResult(message="Discount removed", subscription=snapshot)

    def _needs_price_revert(self, subscription: Subscription) -> bool:
        return bool(
            subscription.is_provider_linked
            and self.variants.monthly
            and subscription.plan_type == PlanType.PRO.value
            and subscription.provider_price_synced is not None
        )

    async def _revert_to_monthly_variant(self, subscription: Subscription) -> bool:
        user_id = subscription.user_id
        try:
            await self.provider.update_subscription_variant(
                subscription.lemonsqueezy_subscription_id,
                self.variants.monthly,
                invoice_immediately=False,
            )
        except LemonSqueezyError as e:
            logger.warning(
                "Could not revert user %s to the monthly variant: %s", user_id, e,
                extra={"user_id": user_id, "action": "revert_discount_price"},
            )
            return False
        return True

    async def end_discount(
        self,
        subscription: Subscription,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Clear the discount, first reverting the provider price if it was changed.

        When the revert fails and the provider had confirmed the discounted
        variant, provider_price_synced stays True with the discount fields
        cleared; the sweeper retries the revert from that state.
        """
        user_id = subscription.user_id
        plan_type = subscription.plan_type
        had_discount = subscription.discount_percentage is not None
        values: dict[str, Any] = {
            "discount_percentage": None,
            "discount_start_date": None,
            "discount_end_date": None,
            "discount_reason": None,
            "original_price": None,
            "discounted_price": None,
            "provider_price_synced": None,
        }

        revert_pending = False
        if self._needs_price_revert(subscription):
            if await self._revert_to_monthly_variant(subscription):
                values["lemonsqueezy_variant_id"] = self.variants.monthly
            elif subscription.provider_price_synced:
                values["provider_price_synced"] = True
                revert_pending = True

        await self._persist(subscription, values, "remove_discount")
        snapshot = snapshot_subscription(subscription)
        if revert_pending:
            logger.error(
                "User %s discount cleared but LemonSqueezy still bills the discounted variant; revert pending",
                user_id,
                extra={"user_id": user_id, "action": "remove_discount"},
            )

        if had_discount:
            await self.history.record(
                user_id,
                HistoryEventType.DISCOUNT_ENDED,
                "Retention discount ended" if reason == "expired" else "Retention discount removed",
                from_plan=plan_type,
                to_plan=plan_type,
                amount=get_plan_price(plan_type),
                metadata={"reason": reason, "price_revert_pending": revert_pending},
                idempotency_key=idempotency_key,
            )
        return snapshot

    async def retry_price_revert(self, subscription: Subscription) -> bool:
        """Retry moving a subscription whose discount has ended back to the monthly variant."""
        if not subscription.provider_price_synced or subscription.discount_end_date is not None:
            return False

        values: dict[str, Any] = {"provider_price_synced": None}
        if self._needs_price_revert(subscription):
            if not await self._revert_to_monthly_variant(subscription):
                return False
            values["lemonsqueezy_variant_id"] = self.variants.monthly

        await self._persist(subscription, values, "revert_discount_price")
        logger.info(
            "Reverted user %s to the monthly variant", subscription.user_id,
            extra={"user_id": subscription.user_id, "action": "revert_discount_price"},
        )
        return True

    # ------------------------------------------------------------------
    # Scheduled downgrade
    # ------------------------------------------------------------------

    async def schedule_downgrade(self, user_id: str) -> LifecycleResult:
        """Schedule annual -> monthly at the end of the paid annual period."""
        subscription = await self._load(user_id)
        if subscription.plan_type != PlanType.ANNUAL.value:
            raise PreconditionError("Not on annual plan")
        if not subscription.is_provider_linked:
            raise NotProviderLinkedError(
                "Mobile subscription - please manage through the App Store or Google Play"
            )
        if subscription.scheduled_downgrade_to == SCHEDULED_DOWNGRADE_TARGET:
            raise PreconditionError("Downgrade to Monthly already scheduled")

        period_end = ensure_utc(subscription.current_period_end or subscription.renews_at)
        if period_end is None:
            raise PreconditionError("Cannot determine subscription period end date")

        await self._persist(
            subscription,
            {
                "scheduled_downgrade_to": SCHEDULED_DOWNGRADE_TARGET,
                "scheduled_downgrade_date": period_end,
            },
            "schedule_downgrade",
        )
        snapshot = snapshot_subscription(subscription)
        logger.info(
            "User %s scheduled downgrade to monthly on %s", user_id, period_end.isoformat(),
            extra={"user_id": user_id, "action": "schedule_downgrade"},
        )

        await self.history.record(
            user_id,
            HistoryEventType.DOWNGRADE_SCHEDULED,
            f"Downgrade to Pro Monthly scheduled for {period_end.date().isoformat()}. "
            "No refund or credit for the remaining annual period.",
            from_plan=PlanType.ANNUAL.value,
            to_plan=PlanType.PRO.value,
            metadata={"annual_ends_at": period_end.isoformat(), "no_refund": True, "no_credit": True},
        )
        return LifecycleResult(
            message=f"Downgrade to Monthly scheduled for {period_end.date().isoformat()}",
            subscription=snapshot,
            details={"scheduled_date": period_end.isoformat()},
        )

    async def cancel_scheduled_downgrade(self, user_id: str) -> LifecycleResult:
        subscription = await self._load(user_id)
        if not subscription.scheduled_downgrade_to:
            raise PreconditionError("No scheduled downgrade to cancel")

        previous_date = ensure_utc(subscription.scheduled_downgrade_date)
        await self._persist(
            subscription,
            {"scheduled_downgrade_to": None, "scheduled_downgrade_date": None},
            "cancel_scheduled_downgrade",
        )
        snapshot = snapshot_subscription(subscription)
        logger.info(
            "User %s cancelled scheduled downgrade", user_id,
            extra={"user_id": user_id, "action": "cancel_scheduled_downgrade"},
        )

        await self.history.record(
            user_id,
            HistoryEventType.DOWNGRADE_CANCELLED,
            "Scheduled downgrade cancelled; staying on Pro Annual",
            from_plan=subscription.plan_type,
            to_plan=subscription.plan_type,
            metadata={"cancelled_date": previous_date.isoformat() if previous_date else None},
        )
        return LifecycleResult(message="Scheduled downgrade cancelled", subscription=snapshot)

    async def execute_scheduled_downgrade(self, subscription: Subscription) -> bool:
        """
        Carry out a due downgrade: provider first, then clear the schedule.

        Returns False, leaving the schedule in place, when the provider call
        fails; the next sweep retries it.

        Raises:
            PreconditionError: If the row is no longer a live annual plan
        """
        user_id = subscription.user_id
        scheduled_date = ensure_utc(subscription.scheduled_downgrade_date)
        if subscription.plan_type != PlanType.ANNUAL.value or subscription.status in TERMINAL_STATUSES:
            raise PreconditionError("Subscription is no longer an active annual plan")
        try:
            variant = self._monthly_variant()
            updated = await self.provider.update_subscription_variant(
                subscription.lemonsqueezy_subscription_id,
                variant,
                invoice_immediately=False,
            )
        except (LemonSqueezyError, ConfigurationError) as e:
            logger.error(
                "Scheduled downgrade for user %s failed at provider: %s", user_id, e,
                extra={"user_id": user_id, "action": "scheduled_downgrade"},
            )
            return False

        values: dict[str, Any] = {
            "plan_type": PlanType.PRO.value,
            "billing_interval": BillingInterval.MONTH.value,
            "lemonsqueezy_variant_id": variant,
            "scheduled_downgrade_to": None,
            "scheduled_downgrade_date": None,
        }
        if updated.renews_at is not None:
            values["renews_at"] = updated.renews_at

        await self._persist(
            subscription,
            values,
            "scheduled_downgrade",
            provider_result=updated,
            projection={"plan": PlanType.PRO.value},
        )
        logger.info("Downgraded user %s to monthly", user_id, extra={"user_id": user_id})

        await self.history.record(
            user_id,
            HistoryEventType.DOWNGRADED,
            "Downgraded from Pro Annual to Pro Monthly",
            from_plan=PlanType.ANNUAL.value,
            to_plan=PlanType.PRO.value,
            amount=get_plan_price(PlanType.PRO.value),
            metadata={"scheduled_date": scheduled_date.isoformat() if scheduled_date else None},
            idempotency_key=f"downgrade:{subscription.id}:{scheduled_date.isoformat() if scheduled_date else ''}",
        )
        return True

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def get_history(self, user_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[SubscriptionHistory]:
        return await self.history.get_history(user_id, limit)

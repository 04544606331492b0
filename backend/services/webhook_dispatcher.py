"""
Webhook dispatcher.

Applies verified LemonSqueezy events to the subscription store. Every branch
is safe to re-apply: field writes are overwrites and history entries carry
an idempotency key derived from the event.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.domain.subscription import (
    BillingInterval,
    HistoryEventType,
    PlanType,
    SubscriptionStatus,
    ensure_utc,
    parse_iso_datetime,
)
from core.plans import PLANS
from infrastructure.database.models.subscription import Subscription
from services.event_normalizer import PlanVariants, is_known_variant, map_plan_type, map_status
from services.subscription_errors import ConcurrentUpdateError
from services.subscription_history import SubscriptionHistoryLogger
from services.subscription_store import SubscriptionStore
from services.webhook_events import (
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_EXPIRED,
    SUBSCRIPTION_PAYMENT_FAILED,
    SUBSCRIPTION_RESUMED,
    SUBSCRIPTION_UPDATED,
    IgnoredEvent,
    InformationalEvent,
    SubscriptionEvent,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

NO_USER_ID_WARNING = "No user_id provided in custom_data. Subscription not saved."


@dataclass
class DispatchResult:
    """Outcome reported back to the provider."""

    event_name: str
    applied: bool = False
    warning: Optional[str] = None

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {"received": True, "event": self.event_name}
        if self.warning:
            body["warning"] = self.warning
        return body


def _plan_name(plan: Optional[str]) -> str:
    return PLANS.get(plan or "", {}).get("name", plan or "unknown")


def _idempotency_key(event: SubscriptionEvent) -> Optional[str]:
    """Stable key for one delivery of one provider state change."""
    if event.event_name == SUBSCRIPTION_CREATED:
        return f"{SUBSCRIPTION_CREATED}:{event.subscription_id}"
    if event.attributes.updated_at is None:
        return None
    return f"{event.event_name}:{event.subscription_id}:{event.attributes.updated_at.isoformat()}"


class WebhookDispatcher:
    """Routes parsed webhook events to their state transition."""

    def __init__(self, db: AsyncSession, variants: PlanVariants):
        self.db = db
        self.variants = variants
        self.store = SubscriptionStore(db)
        self.history = SubscriptionHistoryLogger(db)
        self._handlers = {
            SUBSCRIPTION_CREATED: self._handle_created_or_updated,
            SUBSCRIPTION_UPDATED: self._handle_created_or_updated,
            SUBSCRIPTION_CANCELLED: self._handle_cancelled,
            SUBSCRIPTION_RESUMED: self._handle_resumed,
            SUBSCRIPTION_EXPIRED: self._handle_expired,
            SUBSCRIPTION_PAYMENT_FAILED: self._handle_payment_failed,
        }

    async def dispatch(self, event: WebhookEvent) -> DispatchResult:
        """
        Apply one event.

        Raises:
            SQLAlchemyError, ConcurrentUpdateError: On store failures, after
                rolling back, so the provider retries the delivery
        """
        if isinstance(event, InformationalEvent):
            logger.info(
                "Webhook %s for %s acknowledged (informational)",
                event.event_name, event.resource_id,
                extra={"event_name": event.event_name},
            )
            return DispatchResult(event.event_name)

        if isinstance(event, IgnoredEvent):
            logger.info(
                "Webhook %s ignored: %s", event.event_name, event.reason,
                extra={"event_name": event.event_name},
            )
            return DispatchResult(event.event_name)

        handler = self._handlers[event.event_name]
        try:
            return await handler(event)
        except (SQLAlchemyError, ConcurrentUpdateError):
            await self.db.rollback()
            raise

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _is_stale(subscription: Subscription, event: SubscriptionEvent) -> bool:
        """An event older than the last applied provider state is stale."""
        incoming = event.attributes.updated_at
        stored = ensure_utc(subscription.provider_updated_at)
        return incoming is not None and stored is not None and incoming < stored

    def _stale_result(self, subscription: Subscription, event: SubscriptionEvent) -> DispatchResult:
        logger.warning(
            "Skipping stale %s for subscription %s (event %s, stored %s)",
            event.event_name, event.subscription_id,
            event.attributes.updated_at, subscription.provider_updated_at,
            extra={"event_name": event.event_name, "subscription_id": event.subscription_id},
        )
        return DispatchResult(
            event.event_name,
            warning="Event is older than the stored subscription state. Not applied.",
        )

    @staticmethod
    def _provider_timestamp(event: SubscriptionEvent, current: Optional[datetime]) -> Optional[datetime]:
        incoming = event.attributes.updated_at
        if incoming is None:
            return current
        return incoming

    def _pause_fields(self, event: SubscriptionEvent, existing: Optional[Subscription]) -> dict[str, Any]:
        """Reconcile the pause sub-state from the provider's pause attribute."""
        attrs = event.attributes
        if not attrs.has_pause_field:
            return {}

        if attrs.pause:
            resumes_at = parse_iso_datetime(attrs.pause.get("resumes_at"))
            started = None
            if existing is not None and existing.is_paused:
                started = ensure_utc(existing.pause_start_date)
            started = started or attrs.updated_at or datetime.now(timezone.utc)
            return {
                "is_paused": True,
                "pause_start_date": started,
                "pause_end_date": resumes_at,
                "pause_duration_days": (resumes_at - started).days if resumes_at else None,
            }

        if existing is not None and existing.is_paused:
            return {
                "is_paused": False,
                "pause_start_date": None,
                "pause_end_date": None,
                "pause_duration_days": None,
            }
        return {}

    async def _lookup(self, event: SubscriptionEvent) -> Optional[Subscription]:
        subscription = await self.store.get_by_subscription_id(event.subscription_id)
        if subscription is None:
            logger.warning(
                "No subscription row for LemonSqueezy subscription %s (%s)",
                event.subscription_id, event.event_name,
                extra={"event_name": event.event_name, "subscription_id": event.subscription_id},
            )
        return subscription

    @staticmethod
    def _not_found(event: SubscriptionEvent) -> DispatchResult:
        return DispatchResult(
            event.event_name,
            warning=f"No subscription found for {event.subscription_id}. Nothing updated.",
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_created_or_updated(self, event: SubscriptionEvent) -> DispatchResult:
        attrs = event.attributes
        user_id = event.user_id
        linked = await self.store.get_by_subscription_id(event.subscription_id)

        if user_id is None:
            if linked is None:
                logger.warning(
                    "%s for %s has no user_id in custom_data; subscription not saved",
                    event.event_name, event.subscription_id,
                    extra={"event_name": event.event_name, "subscription_id": event.subscription_id},
                )
                return DispatchResult(event.event_name, warning=NO_USER_ID_WARNING)
            logger.error(
                "%s for %s has no user_id in custom_data; applying to linked user %s",
                event.event_name, event.subscription_id, linked.user_id,
                extra={"event_name": event.event_name, "subscription_id": event.subscription_id},
            )
            user_id = linked.user_id
        elif linked is not None and linked.user_id != user_id:
            logger.error(
                "LemonSqueezy subscription %s is linked to user %s but %s names user %s; not applied",
                event.subscription_id, linked.user_id, event.event_name, user_id,
                extra={"event_name": event.event_name, "subscription_id": event.subscription_id},
            )
            return DispatchResult(
                event.event_name,
                warning="Subscription is linked to a different user. Not applied.",
            )

        existing = linked or await self.store.get_by_user_id(user_id)
        if existing is not None and self._is_stale(existing, event):
            return self._stale_result(existing, event)

        warning = None
        if is_known_variant(attrs.variant_id, self.variants):
            plan_type = map_plan_type(attrs.variant_id, self.variants).value
        else:
            logger.error(
                "Unmapped LemonSqueezy variant %s on subscription %s; plan not reclassified",
                attrs.variant_id, event.subscription_id,
                extra={"event_name": event.event_name, "subscription_id": event.subscription_id},
            )
            warning = f"Unrecognized variant {attrs.variant_id}. Plan type not updated from it."
            if existing is not None and existing.plan_type != PlanType.FREE.value:
                plan_type = existing.plan_type
            else:
                plan_type = map_plan_type(attrs.variant_id, self.variants).value

        status = map_status(attrs.status).value
        previous_plan = existing.plan_type if existing is not None else None
        previous_provider_ts = existing.provider_updated_at if existing is not None else None

        values: dict[str, Any] = {
            "lemonsqueezy_subscription_id": event.subscription_id,
            "lemonsqueezy_customer_id": attrs.customer_id,
            "lemonsqueezy_order_id": attrs.order_id,
            "lemonsqueezy_product_id": attrs.product_id,
            "lemonsqueezy_variant_id": attrs.variant_id,
            "status": status,
            "plan_type": plan_type,
            "billing_interval": (
                BillingInterval.YEAR.value if plan_type == PlanType.ANNUAL.value else BillingInterval.MONTH.value
            ),
            "billing_anchor": attrs.billing_anchor,
            "current_period_start": attrs.current_period_start,
            "current_period_end": attrs.current_period_end,
            "trial_ends_at": attrs.trial_ends_at,
            "renews_at": attrs.renews_at,
            "ends_at": attrs.ends_at,
            "update_payment_method_url": attrs.update_payment_method_url,
            "customer_portal_url": attrs.customer_portal_url,
            "provider_updated_at": self._provider_timestamp(event, previous_provider_ts),
        }
        if event.user_email:
            values["user_email"] = event.user_email
        values.update(self._pause_fields(event, existing))

        if existing is None:
            await self.store.create(user_id, values)
        else:
            await self.store.update_fields(existing, values)

        await self.store.sync_user_settings(
            user_id,
            status=status,
            plan=plan_type,
            ends_at=attrs.ends_at,
            customer_id=attrs.customer_id,
            subscription_id=event.subscription_id,
        )
        if event.event_name == SUBSCRIPTION_CREATED:
            await self.store.mark_trial_used(user_id)

        await self.db.commit()
        logger.info(
            "Applied %s for user %s: status=%s plan=%s",
            event.event_name, user_id, status, plan_type,
            extra={"event_name": event.event_name, "user_id": user_id, "subscription_id": event.subscription_id},
        )

        if event.event_name == SUBSCRIPTION_CREATED:
            await self.history.record(
                user_id,
                HistoryEventType.SUBSCRIBED,
                f"Subscribed to {_plan_name(plan_type)}"
                + (" (trial)" if status == SubscriptionStatus.ON_TRIAL.value else ""),
                to_plan=plan_type,
                metadata={"status": status, "lemonsqueezy_subscription_id": event.subscription_id},
                idempotency_key=_idempotency_key(event),
            )
        elif previous_plan is not None and previous_plan != plan_type:
            await self.history.record(
                user_id,
                HistoryEventType.PLAN_CHANGED,
                f"Plan changed from {_plan_name(previous_plan)} to {_plan_name(plan_type)}",
                from_plan=previous_plan,
                to_plan=plan_type,
                metadata={"source": "webhook"},
                idempotency_key=_idempotency_key(event),
            )

        return DispatchResult(event.event_name, applied=True, warning=warning)

    async def _handle_cancelled(self, event: SubscriptionEvent) -> DispatchResult:
        subscription = await self._lookup(event)
        if subscription is None:
            return self._not_found(event)
        if self._is_stale(subscription, event):
            return self._stale_result(subscription, event)

        user_id = subscription.user_id
        plan_type = subscription.plan_type
        ends_at = event.attributes.ends_at

        await self.store.update_fields(subscription, {
            "status": SubscriptionStatus.CANCELLED.value,
            "ends_at": ends_at,
            "scheduled_downgrade_to": None,
            "scheduled_downgrade_date": None,
            "provider_updated_at": self._provider_timestamp(event, subscription.provider_updated_at),
        })
        await self.store.sync_user_settings(
            user_id,
            status=SubscriptionStatus.CANCELLED.value,
            plan=PlanType.FREE.value,
            ends_at=ends_at,
        )
        await self.db.commit()
        logger.info(
            "Subscription %s cancelled, access ends %s", event.subscription_id, ends_at,
            extra={"event_name": event.event_name, "user_id": user_id, "subscription_id": event.subscription_id},
        )

        await self.history.record(
            user_id,
            HistoryEventType.CANCELLED,
            "Subscription cancelled" + (f", access until {ends_at.date().isoformat()}" if ends_at else ""),
            from_plan=plan_type,
            to_plan=PlanType.FREE.value,
            metadata={"ends_at": ends_at.isoformat() if ends_at else None},
            idempotency_key=_idempotency_key(event),
        )
        return DispatchResult(event.event_name, applied=True)

    async def _handle_resumed(self, event: SubscriptionEvent) -> DispatchResult:
        subscription = await self._lookup(event)
        if subscription is None:
            return self._not_found(event)
        if self._is_stale(subscription, event):
            return self._stale_result(subscription, event)

        attrs = event.attributes
        user_id = subscription.user_id
        plan_type = subscription.plan_type
        status = map_status(attrs.status).value

        await self.store.update_fields(subscription, {
            "status": status,
            "ends_at": None,
            "renews_at": attrs.renews_at,
            "provider_updated_at": self._provider_timestamp(event, subscription.provider_updated_at),
        })
        await self.store.sync_user_settings(
            user_id,
            status=status,
            plan=plan_type,
            ends_at=None,
        )
        await self.db.commit()
        logger.info(
            "Subscription %s resumed with status %s", event.subscription_id, status,
            extra={"event_name": event.event_name, "user_id": user_id, "subscription_id": event.subscription_id},
        )

        await self.history.record(
            user_id,
            HistoryEventType.REACTIVATED,
            f"Subscription reactivated on {_plan_name(plan_type)}",
            from_plan=plan_type,
            to_plan=plan_type,
            metadata={"status": status},
            idempotency_key=_idempotency_key(event),
        )
        return DispatchResult(event.event_name, applied=True)

    async def _handle_expired(self, event: SubscriptionEvent) -> DispatchResult:
        subscription = await self._lookup(event)
        if subscription is None:
            return self._not_found(event)
        if self._is_stale(subscription, event):
            return self._stale_result(subscription, event)

        user_id = subscription.user_id
        previous_plan = subscription.plan_type
        values: dict[str, Any] = {
            "status": SubscriptionStatus.EXPIRED.value,
            "plan_type": PlanType.FREE.value,
            "scheduled_downgrade_to": None,
            "scheduled_downgrade_date": None,
            "provider_updated_at": self._provider_timestamp(event, subscription.provider_updated_at),
        }
        if event.attributes.ends_at is not None:
            values["ends_at"] = event.attributes.ends_at

        await self.store.update_fields(subscription, values)
        await self.store.sync_user_settings(
            user_id,
            status=SubscriptionStatus.EXPIRED.value,
            plan=PlanType.FREE.value,
            ends_at=subscription.ends_at,
        )
        await self.db.commit()
        logger.info(
            "Subscription %s expired", event.subscription_id,
            extra={"event_name": event.event_name, "user_id": user_id, "subscription_id": event.subscription_id},
        )

        await self.history.record(
            user_id,
            HistoryEventType.EXPIRED,
            "Subscription expired",
            from_plan=previous_plan,
            to_plan=PlanType.FREE.value,
            idempotency_key=_idempotency_key(event),
        )
        return DispatchResult(event.event_name, applied=True)

    async def _handle_payment_failed(self, event: SubscriptionEvent) -> DispatchResult:
        subscription = await self._lookup(event)
        if subscription is None:
            return self._not_found(event)

        # Invoice timestamps are not comparable with subscription timestamps,
        # so payment events neither check nor advance provider_updated_at.
        user_id = subscription.user_id
        plan_type = subscription.plan_type

        await self.store.update_fields(subscription, {"status": SubscriptionStatus.PAST_DUE.value})
        await self.store.sync_user_settings(
            user_id,
            status=SubscriptionStatus.PAST_DUE.value,
            plan=plan_type,
        )
        await self.db.commit()
        logger.warning(
            "Payment failed for subscription %s", event.subscription_id,
            extra={"event_name": event.event_name, "user_id": user_id, "subscription_id": event.subscription_id},
        )

        await self.history.record(
            user_id,
            HistoryEventType.PAYMENT_FAILED,
            "Payment failed; subscription is past due",
            from_plan=plan_type,
            to_plan=plan_type,
            idempotency_key=_idempotency_key(event),
        )
        return DispatchResult(event.event_name, applied=True)

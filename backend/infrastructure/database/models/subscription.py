"""
Subscription, user settings projection and subscription history models.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.domain.subscription import BillingInterval, PlanType, SubscriptionStatus
from .base import Base, TimestampMixin, utc_now


class Subscription(Base, TimestampMixin):
    """Detailed billing state for one user, synced from LemonSqueezy."""

    __tablename__ = "subscriptions"

    # Primary key
    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )

    # Owner (identity provider user id)
    user_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    user_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # LemonSqueezy identifiers
    lemonsqueezy_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    lemonsqueezy_subscription_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
        index=True,
    )
    lemonsqueezy_order_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    lemonsqueezy_product_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    lemonsqueezy_variant_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Status and plan
    status: Mapped[str] = mapped_column(
        String(50),
        default=SubscriptionStatus.INACTIVE.value,
        nullable=False,
    )  # active, on_trial, paused, past_due, cancelled, expired, inactive
    plan_type: Mapped[str] = mapped_column(
        String(50),
        default=PlanType.FREE.value,
        nullable=False,
    )  # free, pro, annual
    billing_interval: Mapped[Optional[str]] = mapped_column(
        String(20),
        default=BillingInterval.MONTH.value,
        nullable=True,
    )
    billing_anchor: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Billing periods (copied verbatim from the provider)
    current_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    renews_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Customer-facing provider URLs
    update_payment_method_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    customer_portal_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Pause (set together, cleared together)
    is_paused: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pause_start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    pause_end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    pause_duration_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Retention discount (set together, cleared together)
    discount_percentage: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    discount_start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    discount_end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    discount_reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    original_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    discounted_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    provider_price_synced: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    """None: no provider-side price change applies. False: pending. True: synced."""

    # Annual -> monthly at period end
    scheduled_downgrade_to: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    scheduled_downgrade_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Ordering / concurrency
    provider_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    """The provider's own updated_at from the last applied webhook."""
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    __table_args__ = (
        Index("ix_subscriptions_scheduled_downgrade", "scheduled_downgrade_to", "scheduled_downgrade_date"),
        Index("ix_subscriptions_discount_end", "discount_end_date"),
    )

    @property
    def is_provider_linked(self) -> bool:
        """Mobile store subscriptions have no LemonSqueezy subscription id."""
        return bool(self.lemonsqueezy_subscription_id)

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, user_id={self.user_id}, status={self.status}, plan={self.plan_type})>"


class UserSettings(Base):
    """Denormalized subscription summary read by the rest of the app."""

    __tablename__ = "user_settings"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )

    subscription_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    subscription_plan: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    subscription_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    lemonsqueezy_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    lemonsqueezy_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # One-way latch gating trial eligibility; never reset
    has_used_trial: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<UserSettings(user_id={self.user_id}, status={self.subscription_status})>"


class SubscriptionHistory(Base):
    """Append-only audit trail of subscription lifecycle transitions."""

    __tablename__ = "subscription_history"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    from_plan: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    to_plan: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    event_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    # Set for entries driven by retried deliveries (webhooks, sweeper)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_subscription_history_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<SubscriptionHistory(user_id={self.user_id}, event_type={self.event_type})>"

"""
Subscription request/response schemas.
"""

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class SubscriptionState(BaseModel):
    """Stored subscription state returned after every action."""

    status: str = Field(..., description="active, on_trial, paused, past_due, cancelled, expired, inactive")
    plan_type: str = Field(..., description="free, pro (monthly) or annual")
    billing_interval: str | None = None
    lemonsqueezy_subscription_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_ends_at: datetime | None = None
    renews_at: datetime | None = Field(None, description="Next charge date, as reported by LemonSqueezy")
    ends_at: datetime | None = None
    update_payment_method_url: str | None = None
    customer_portal_url: str | None = None

    is_paused: bool = False
    pause_start_date: datetime | None = None
    pause_end_date: datetime | None = None
    pause_duration_days: int | None = None

    discount_percentage: int | None = None
    discount_start_date: datetime | None = None
    discount_end_date: datetime | None = None
    discount_reason: str | None = None
    original_price: float | None = None
    discounted_price: float | None = None
    provider_price_synced: bool | None = Field(
        None, description="Whether LemonSqueezy already bills the discounted price"
    )

    scheduled_downgrade_to: str | None = None
    scheduled_downgrade_date: datetime | None = None
    updated_at: datetime | None = None


class CurrentSubscriptionResponse(BaseModel):
    """Current subscription and whether it grants paid features."""

    subscription: SubscriptionState | None = None
    entitled: bool = False


class SubscriptionActionResponse(BaseModel):
    """Result of a lifecycle action."""

    success: bool = True
    message: str
    subscription: SubscriptionState
    details: dict[str, Any] = Field(default_factory=dict)


class HistoryEntry(BaseModel):
    """One subscription history event."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    event_type: str
    description: str
    from_plan: str | None = None
    to_plan: str | None = None
    amount: float | None = None
    currency: str = "USD"
    metadata: dict[str, Any] | None = Field(
        None, validation_alias=AliasChoices("event_metadata", "metadata")
    )
    created_at: datetime


class HistoryResponse(BaseModel):
    """Subscription history, newest first."""

    success: bool = True
    history: list[HistoryEntry]


class WebhookStatusResponse(BaseModel):
    """Diagnostic payload for the webhook endpoint."""

    status: str
    message: str
    timestamp: datetime
    config: dict[str, bool]

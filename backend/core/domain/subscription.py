"""Subscription domain entities."""
import calendar
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from ..plans import (
    DISCOUNT_DURATION_MONTHS,
    DISCOUNT_PERCENTAGE,
    DISCOUNT_REASON,
    PAUSE_DURATION_MONTHS,
    get_discounted_price,
    get_plan_price,
)


class SubscriptionStatus(str, Enum):
    """Internal subscription status."""
    ACTIVE = "active"
    ON_TRIAL = "on_trial"
    PAUSED = "paused"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    INACTIVE = "inactive"


class PlanType(str, Enum):
    """Plan a subscription is billed on."""
    FREE = "free"
    PRO = "pro"  # monthly
    ANNUAL = "annual"


class BillingInterval(str, Enum):
    """Billing interval options."""
    MONTH = "month"
    YEAR = "year"


class HistoryEventType(str, Enum):
    """Event types written to the subscription history."""
    SUBSCRIBED = "subscribed"
    PLAN_CHANGED = "plan_changed"
    UPGRADED = "upgraded"
    DOWNGRADED = "downgraded"
    PAUSED = "paused"
    RESUMED = "resumed"
    DISCOUNT_APPLIED = "discount_applied"
    DISCOUNT_ENDED = "discount_ended"
    CANCELLED = "cancelled"
    REACTIVATED = "reactivated"
    EXPIRED = "expired"
    PAYMENT_FAILED = "payment_failed"
    DOWNGRADE_SCHEDULED = "downgrade_scheduled"
    DOWNGRADE_CANCELLED = "downgrade_cancelled"


ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.ON_TRIAL.value})

# The provider has ended or is ending these; no further plan changes apply
TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value})


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return value as an aware UTC datetime.

    Backends without timezone support hand back naive values; those are
    stored as UTC, so they are tagged rather than converted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso_datetime(value: object) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp from the provider; invalid input yields None."""
    if not value or not isinstance(value, str):
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of the target month.

    Jan 31 + 1 month is Feb 28 (or 29); the time of day is kept.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def has_entitlement(status: Optional[str], plan_type: Optional[str]) -> bool:
    """Check if a status/plan pair grants paid features."""
    return status in ENTITLED_STATUSES and plan_type not in (None, PlanType.FREE.value)


@dataclass(frozen=True)
class PauseWindow:
    """A fixed-length pause computed once and reused for provider and store."""

    start: datetime
    end: datetime

    @classmethod
    def starting(cls, now: datetime, months: int = PAUSE_DURATION_MONTHS) -> "PauseWindow":
        return cls(start=now, end=add_months(now, months))

    @property
    def duration_days(self) -> int:
        return (self.end - self.start).days


@dataclass(frozen=True)
class DiscountTerms:
    """Retention discount terms for a plan."""

    percentage: int
    start: datetime
    end: datetime
    reason: str
    original_price: Decimal
    discounted_price: Decimal

    @classmethod
    def for_plan(cls, plan_type: Optional[str], now: datetime) -> "DiscountTerms":
        billed_plan = PlanType.ANNUAL.value if plan_type == PlanType.ANNUAL.value else PlanType.PRO.value
        original = get_plan_price(billed_plan)
        return cls(
            percentage=DISCOUNT_PERCENTAGE,
            start=now,
            end=add_months(now, DISCOUNT_DURATION_MONTHS),
            reason=DISCOUNT_REASON,
            original_price=original,
            discounted_price=get_discounted_price(original),
        )

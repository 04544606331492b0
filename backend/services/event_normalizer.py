"""
Maps LemonSqueezy vocabulary onto internal subscription enums.

Both mappings are total: unknown input falls back to a default instead of
raising.
"""

from dataclasses import dataclass
from typing import Any, Optional

from core.domain.subscription import PlanType, SubscriptionStatus

# LemonSqueezy subscription status -> internal status
STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "on_trial": SubscriptionStatus.ON_TRIAL,
    "paused": SubscriptionStatus.PAUSED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "cancelled": SubscriptionStatus.CANCELLED,
    "expired": SubscriptionStatus.EXPIRED,
}


@dataclass(frozen=True)
class PlanVariants:
    """Configured LemonSqueezy variant ids for each plan."""

    monthly: Optional[str] = None
    yearly: Optional[str] = None
    discounted_monthly: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Any) -> "PlanVariants":
        return cls(
            monthly=settings.lemonsqueezy_variant_monthly,
            yearly=settings.lemonsqueezy_variant_yearly,
            discounted_monthly=settings.lemonsqueezy_variant_discounted_monthly,
        )


def map_status(status: Optional[str]) -> SubscriptionStatus:
    """Map a provider status string; anything unrecognised is inactive."""
    if not isinstance(status, str):
        return SubscriptionStatus.INACTIVE
    return STATUS_MAP.get(status.strip().lower(), SubscriptionStatus.INACTIVE)


def _normalize_variant(variant_id: Any) -> Optional[str]:
    if variant_id is None or variant_id == "":
        return None
    return str(variant_id).strip()


def is_known_variant(variant_id: Any, variants: PlanVariants) -> bool:
    """True if the variant matches one of the configured plan variants."""
    normalized = _normalize_variant(variant_id)
    if normalized is None:
        return False
    return normalized in {
        v for v in (variants.monthly, variants.yearly, variants.discounted_monthly) if v
    }


def map_plan_type(variant_id: Any, variants: PlanVariants) -> PlanType:
    """
    Map a provider variant id to a plan.

    The yearly variant is annual; everything else, including unknown
    variants, is the monthly pro plan. Callers that must not silently
    re-classify unknown variants check is_known_variant first.
    """
    normalized = _normalize_variant(variant_id)
    if normalized is not None and variants.yearly and normalized == variants.yearly:
        return PlanType.ANNUAL
    return PlanType.PRO

# Domain Entities
# Pure business objects with no external dependencies
from .subscription import (
    BillingInterval,
    DiscountTerms,
    HistoryEventType,
    PauseWindow,
    PlanType,
    SubscriptionStatus,
)

__all__ = [
    "BillingInterval",
    "DiscountTerms",
    "HistoryEventType",
    "PauseWindow",
    "PlanType",
    "SubscriptionStatus",
]

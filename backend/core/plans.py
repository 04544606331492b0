"""
Plan configuration for subscription billing.

This module is the single source of truth for list prices and the fixed
retention-offer terms. It lives in core/ so both service and API layers can
import from it without creating circular dependencies.
"""

from decimal import Decimal

CURRENCY = "USD"

# Plan configuration with list prices
PLANS = {
    "free": {
        "name": "Free",
        "price": Decimal("0"),
        "interval": None,
    },
    "pro": {
        "name": "Pro Monthly",
        "price": Decimal("9.99"),
        "interval": "month",
    },
    "annual": {
        "name": "Pro Annual",
        "price": Decimal("99.00"),
        "interval": "year",
    },
}

# Retention offer: half price for three calendar months
DISCOUNT_PERCENTAGE = 50
DISCOUNT_DURATION_MONTHS = 3
DISCOUNT_REASON = "retention_offer"

# Pause without proration, resumes automatically
PAUSE_DURATION_MONTHS = 3
PAUSE_MODE = "free"


def get_plan_price(plan: str) -> Decimal:
    """Get the list price for a plan, falling back to the monthly price."""
    return PLANS.get(plan, PLANS["pro"])["price"]


def get_discounted_price(price: Decimal, percentage: int = DISCOUNT_PERCENTAGE) -> Decimal:
    """Apply a percentage discount, rounded to cents."""
    discounted = price * (Decimal(100) - Decimal(percentage)) / Decimal(100)
    return discounted.quantize(Decimal("0.01"))

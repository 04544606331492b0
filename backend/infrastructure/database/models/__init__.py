"""
SQLAlchemy database models.
"""

from .base import Base, TimestampMixin
from .subscription import Subscription, SubscriptionHistory, UserSettings

__all__ = [
    "Base",
    "TimestampMixin",
    "Subscription",
    "UserSettings",
    "SubscriptionHistory",
]

"""
API request and response schemas.
"""

from .subscription import (
    CurrentSubscriptionResponse,
    HistoryEntry,
    HistoryResponse,
    SubscriptionActionResponse,
    SubscriptionState,
    WebhookStatusResponse,
)

__all__ = [
    "CurrentSubscriptionResponse",
    "HistoryEntry",
    "HistoryResponse",
    "SubscriptionActionResponse",
    "SubscriptionState",
    "WebhookStatusResponse",
]

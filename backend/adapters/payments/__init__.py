"""Payment adapters for billing and subscription management."""

from .lemonsqueezy_adapter import (
    LemonSqueezyAdapter,
    LemonSqueezyAPIError,
    LemonSqueezyAuthError,
    LemonSqueezyError,
    LemonSqueezySubscription,
    create_lemonsqueezy_adapter,
)

__all__ = [
    "LemonSqueezyAdapter",
    "LemonSqueezySubscription",
    "LemonSqueezyError",
    "LemonSqueezyAPIError",
    "LemonSqueezyAuthError",
    "create_lemonsqueezy_adapter",
]

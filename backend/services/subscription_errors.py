"""
Subscription error taxonomy.

Each error carries the HTTP status it maps to and a message that is safe to
show the caller; main.py renders them as ``{"error": message}``.
"""

from typing import Any, Optional


class SubscriptionError(Exception):
    """Base exception for subscription operations."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class AuthenticationError(SubscriptionError):
    """Missing or invalid bearer token or webhook signature."""

    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class PreconditionError(SubscriptionError):
    """Business rule violated; nothing was changed."""

    status_code = 400


class NotProviderLinkedError(PreconditionError):
    """Subscription has no LemonSqueezy subscription id (mobile store purchase)."""

    def __init__(
        self,
        message: str = "No LemonSqueezy subscription found. This may be a mobile subscription.",
    ):
        super().__init__(message)


class SubscriptionNotFoundError(SubscriptionError):
    """No subscription row for the user."""

    status_code = 404

    def __init__(self, message: str = "No subscription found"):
        super().__init__(message)


class ConfigurationError(SubscriptionError):
    """A required plan variant is not configured."""

    status_code = 503

    def __init__(self, message: str = "Billing is not configured for this operation"):
        super().__init__(message)


class UpstreamError(SubscriptionError):
    """The billing provider rejected the request or could not be reached."""

    status_code = 502


class PersistenceError(SubscriptionError):
    """A local write failed, possibly after the provider already changed state."""

    status_code = 500

    def __init__(self, message: str = "Something went wrong saving your subscription. Please try again."):
        super().__init__(message)


class ConcurrentUpdateError(PersistenceError):
    """The subscription row kept changing under a versioned update."""

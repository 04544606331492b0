"""Service interfaces for external integrations."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class ProviderSubscription:
    """Subscription state as returned by the billing provider."""

    id: str
    status: str
    variant_id: str | None = None
    customer_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    renews_at: datetime | None = None
    ends_at: datetime | None = None
    trial_ends_at: datetime | None = None
    updated_at: datetime | None = None
    pause: dict[str, Any] | None = None
    raw_attributes: dict[str, Any] = field(default_factory=dict, repr=False)

    def summary(self) -> dict[str, Any]:
        """Small, log-safe view of the provider's answer."""
        return {
            "id": self.id,
            "status": self.status,
            "variant_id": self.variant_id,
            "renews_at": self.renews_at.isoformat() if self.renews_at else None,
        }


class BillingProvider(ABC):
    """Abstract subscription management API of the billing provider.

    Every method either returns the updated subscription or raises; a
    timeout is a failure, never an assumed success.
    """

    @abstractmethod
    async def update_subscription_variant(
        self,
        subscription_id: str,
        variant_id: str,
        invoice_immediately: bool = False,
    ) -> ProviderSubscription:
        """Move a subscription to another price variant."""
        ...

    @abstractmethod
    async def pause_subscription(
        self,
        subscription_id: str,
        mode: str,
        resumes_at: datetime | None = None,
    ) -> ProviderSubscription:
        """Pause payment collection until resumes_at."""
        ...

    @abstractmethod
    async def resume_subscription(
        self,
        subscription_id: str,
    ) -> ProviderSubscription:
        """Remove a pause and resume payment collection."""
        ...

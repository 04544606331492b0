"""
Shared test doubles, constants and webhook payload builders.
"""

import json
from datetime import UTC, datetime, timedelta
from typing import Any, Optional

from core.interfaces.services import BillingProvider, ProviderSubscription
from core.security.webhook_signature import compute_webhook_signature

WEBHOOK_SECRET = "test_webhook_secret"
MONTHLY_VARIANT = "1001"
YEARLY_VARIANT = "1002"
DISCOUNTED_VARIANT = "1003"

TEST_USER_ID = "7d0c2f61-3b9e-4a55-9d8e-1f4b2a6c9e01"
TEST_USER_EMAIL = "jane@example.com"
TEST_SUBSCRIPTION_ID = "sub_98765"


class FakeBillingProvider(BillingProvider):
    """In-memory billing provider that records calls and can be told to fail."""

    def __init__(self):
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.error: Optional[Exception] = None
        self.status = "active"
        now = datetime.now(UTC)
        self.current_period_start = now
        self.current_period_end = now + timedelta(days=365)
        self.renews_at = now + timedelta(days=365)

    async def _respond(self, operation: str, subscription_id: str, **kwargs) -> ProviderSubscription:
        self.calls.append((operation, subscription_id, kwargs))
        if self.error is not None:
            raise self.error
        return ProviderSubscription(
            id=subscription_id,
            status=self.status,
            variant_id=kwargs.get("variant_id"),
            current_period_start=self.current_period_start,
            current_period_end=self.current_period_end,
            renews_at=self.renews_at,
        )

    async def update_subscription_variant(self, subscription_id, variant_id, invoice_immediately=False):
        return await self._respond(
            "update_variant", subscription_id,
            variant_id=variant_id, invoice_immediately=invoice_immediately,
        )

    async def pause_subscription(self, subscription_id, mode, resumes_at=None):
        return await self._respond("pause", subscription_id, mode=mode, resumes_at=resumes_at)

    async def resume_subscription(self, subscription_id):
        return await self._respond("resume", subscription_id)

    def calls_named(self, operation: str) -> list[tuple[str, str, dict[str, Any]]]:
        return [call for call in self.calls if call[0] == operation]


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """Signature LemonSqueezy would send for this exact body."""
    return compute_webhook_signature(body, secret)


def encode(payload: dict) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode()


def iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def subscription_payload(
    event_name: str = "subscription_created",
    subscription_id: str = TEST_SUBSCRIPTION_ID,
    user_id: Optional[str] = TEST_USER_ID,
    status: str = "active",
    variant_id: Any = int(MONTHLY_VARIANT),
    updated_at: Optional[datetime] = None,
    **attributes: Any,
) -> dict:
    """LemonSqueezy subscription webhook body."""
    now = datetime.now(UTC)
    updated_at = updated_at or now
    custom_data = {"user_id": user_id, "user_email": TEST_USER_EMAIL} if user_id else {}
    attrs = {
        "store_id": 12345,
        "customer_id": 4455,
        "order_id": 7788,
        "product_id": 3300,
        "variant_id": variant_id,
        "status": status,
        "billing_anchor": now.day,
        "trial_ends_at": None,
        "renews_at": iso(now + timedelta(days=30)),
        "ends_at": None,
        "urls": {
            "update_payment_method": "https://taxclip.lemonsqueezy.com/billing/update",
            "customer_portal": "https://taxclip.lemonsqueezy.com/billing",
        },
        "created_at": iso(now),
        "updated_at": iso(updated_at),
    }
    attrs.update(attributes)
    return {
        "meta": {"event_name": event_name, "custom_data": custom_data},
        "data": {"type": "subscriptions", "id": subscription_id, "attributes": attrs},
    }



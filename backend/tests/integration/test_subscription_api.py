"""
Integration tests for the subscription lifecycle API.

Covers:
- Authentication
- Current subscription and entitlement
- Upgrade, pause/resume, retention discount, scheduled downgrade
- History
- Rate limiting of mutations
"""

from datetime import UTC, datetime, timedelta

import pytest
from fastapi import status
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adapters.payments.lemonsqueezy_adapter import LemonSqueezyAPIError
from infrastructure.database.models import Subscription
from tests.support import (
    MONTHLY_VARIANT,
    TEST_USER_ID,
    YEARLY_VARIANT,
    FakeBillingProvider,
    encode,
    sign,
    subscription_payload,
)

BASE_URL = "/api/v1/subscription"

pytestmark = pytest.mark.asyncio


async def _subscription(db: AsyncSession) -> Subscription:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == TEST_USER_ID)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


class TestAuthentication:
    async def test_requires_bearer_token(self, async_client: AsyncClient):
        response = await async_client.get(BASE_URL)

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json() == {"error": "Unauthorized"}

    async def test_rejects_garbage_token(self, async_client: AsyncClient):
        response = await async_client.post(
            f"{BASE_URL}/pause", headers={"Authorization": "Bearer not-a-jwt"}
        )

        assert response.status_code == status.HTTP_401_UNAUTHORIZED


class TestCurrentSubscription:
    async def test_no_subscription(self, async_client: AsyncClient, auth_headers: dict):
        response = await async_client.get(BASE_URL, headers=auth_headers)

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"subscription": None, "entitled": False}

    async def test_active_subscription_is_entitled(
        self, async_client: AsyncClient, auth_headers: dict, make_subscription
    ):
        await make_subscription()

        response = await async_client.get(BASE_URL, headers=auth_headers)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["entitled"] is True
        assert data["subscription"]["plan_type"] == "pro"
        assert data["subscription"]["status"] == "active"

    async def test_expired_subscription_is_not_entitled(
        self, async_client: AsyncClient, auth_headers: dict, make_subscription
    ):
        await make_subscription(status="expired")

        response = await async_client.get(BASE_URL, headers=auth_headers)

        assert response.json()["entitled"] is False


class TestUpgrade:
    async def test_upgrade_then_confirming_webhook(
        self,
        async_client: AsyncClient,
        auth_headers: dict,
        db_session: AsyncSession,
        fake_provider: FakeBillingProvider,
        make_subscription,
    ):
        await make_subscription()

        response = await async_client.post(f"{BASE_URL}/upgrade", headers=auth_headers)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["success"] is True
        assert data["subscription"]["plan_type"] == "annual"
        assert data["subscription"]["billing_interval"] == "year"
        [(_, _, kwargs)] = fake_provider.calls_named("update_variant")
        assert kwargs == {"variant_id": YEARLY_VARIANT, "invoice_immediately": True}

        body = encode(
            subscription_payload(
                event_name="subscription_updated",
                variant_id=int(YEARLY_VARIANT),
                updated_at=datetime.now(UTC) + timedelta(minutes=1),
            )
        )
        webhook = await async_client.post(
            "/api/v1/webhooks/lemonsqueezy", content=body, headers={"X-Signature": sign(body)}
        )

        assert webhook.status_code == status.HTTP_200_OK
        assert (await _subscription(db_session)).plan_type == "annual"

    async def test_upgrade_without_subscription(self, async_client: AsyncClient, auth_headers: dict):
        response = await async_client.post(f"{BASE_URL}/upgrade", headers=auth_headers)

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert "error" in response.json()

    async def test_upgrade_mobile_subscription(
        self, async_client: AsyncClient, auth_headers: dict, make_subscription
    ):
        await make_subscription(lemonsqueezy_subscription_id=None)

        response = await async_client.post(f"{BASE_URL}/upgrade", headers=auth_headers)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "mobile" in response.json()["error"]

    async def test_upgrade_provider_failure(
        self,
        async_client: AsyncClient,
        auth_headers: dict,
        db_session: AsyncSession,
        fake_provider: FakeBillingProvider,
        make_subscription,
    ):
        await make_subscription()
        fake_provider.error = LemonSqueezyAPIError("API request failed: HTTP 422", status_code=422)

        response = await async_client.post(f"{BASE_URL}/upgrade", headers=auth_headers)

        assert response.status_code == status.HTTP_502_BAD_GATEWAY
        assert "error" in response.json()
        subscription = await _subscription(db_session)
        assert subscription.plan_type == "pro"
        assert subscription.lemonsqueezy_variant_id == MONTHLY_VARIANT


class TestPauseResume:
    async def test_pause_and_resume(
        self, async_client: AsyncClient, auth_headers: dict, make_subscription
    ):
        await make_subscription()

        paused = await async_client.post(f"{BASE_URL}/pause", headers=auth_headers)

        assert paused.status_code == status.HTTP_200_OK
        state = paused.json()["subscription"]
        assert state["is_paused"] is True
        assert state["status"] == "paused"
        assert state["pause_end_date"] is not None

        again = await async_client.post(f"{BASE_URL}/pause", headers=auth_headers)
        assert again.status_code == status.HTTP_400_BAD_REQUEST

        resumed = await async_client.delete(f"{BASE_URL}/pause", headers=auth_headers)

        assert resumed.status_code == status.HTTP_200_OK
        state = resumed.json()["subscription"]
        assert state["is_paused"] is False
        assert state["status"] == "active"

    async def test_resume_when_not_paused(
        self, async_client: AsyncClient, auth_headers: dict, make_subscription
    ):
        await make_subscription()

        response = await async_client.delete(f"{BASE_URL}/pause", headers=auth_headers)

        assert response.status_code == status.HTTP_400_BAD_REQUEST


class TestDiscount:
    async def test_apply_twice_is_rejected(
        self, async_client: AsyncClient, auth_headers: dict, make_subscription
    ):
        await make_subscription()

        first = await async_client.post(f"{BASE_URL}/discount", headers=auth_headers)

        assert first.status_code == status.HTTP_200_OK
        data = first.json()
        assert data["subscription"]["discount_percentage"] == 50
        assert data["subscription"]["discounted_price"] == 5.0
        assert data["subscription"]["provider_price_synced"] is True
        assert data["details"]["discount"]["original_price"] == 9.99

        second = await async_client.post(f"{BASE_URL}/discount", headers=auth_headers)
        assert second.status_code == status.HTTP_400_BAD_REQUEST

    async def test_remove_discount(
        self, async_client: AsyncClient, auth_headers: dict, make_subscription
    ):
        await make_subscription()
        await async_client.post(f"{BASE_URL}/discount", headers=auth_headers)

        response = await async_client.delete(f"{BASE_URL}/discount", headers=auth_headers)

        assert response.status_code == status.HTTP_200_OK
        state = response.json()["subscription"]
        assert state["discount_percentage"] is None
        assert state["provider_price_synced"] is None


class TestScheduledDowngrade:
    async def test_schedule_and_cancel(
        self, async_client: AsyncClient, auth_headers: dict, make_subscription
    ):
        await make_subscription(plan_type="annual", billing_interval="year", lemonsqueezy_variant_id=YEARLY_VARIANT)

        scheduled = await async_client.post(f"{BASE_URL}/downgrade", headers=auth_headers)

        assert scheduled.status_code == status.HTTP_200_OK
        state = scheduled.json()["subscription"]
        assert state["scheduled_downgrade_to"] == "monthly"
        assert state["scheduled_downgrade_date"] is not None
        assert state["plan_type"] == "annual"

        cancelled = await async_client.delete(f"{BASE_URL}/downgrade", headers=auth_headers)

        assert cancelled.status_code == status.HTTP_200_OK
        state = cancelled.json()["subscription"]
        assert state["scheduled_downgrade_to"] is None
        assert state["scheduled_downgrade_date"] is None

    async def test_monthly_cannot_downgrade(
        self, async_client: AsyncClient, auth_headers: dict, make_subscription
    ):
        await make_subscription()

        response = await async_client.post(f"{BASE_URL}/downgrade", headers=auth_headers)

        assert response.status_code == status.HTTP_400_BAD_REQUEST


class TestHistory:
    async def test_newest_first_with_limit(
        self, async_client: AsyncClient, auth_headers: dict, make_subscription
    ):
        await make_subscription()
        await async_client.post(f"{BASE_URL}/pause", headers=auth_headers)
        await async_client.delete(f"{BASE_URL}/pause", headers=auth_headers)

        response = await async_client.get(f"{BASE_URL}/history", headers=auth_headers)

        assert response.status_code == status.HTTP_200_OK
        history = response.json()["history"]
        assert [entry["event_type"] for entry in history] == ["resumed", "paused"]

        limited = await async_client.get(f"{BASE_URL}/history?limit=1", headers=auth_headers)
        assert [entry["event_type"] for entry in limited.json()["history"]] == ["resumed"]

    async def test_limit_is_bounded(self, async_client: AsyncClient, auth_headers: dict):
        response = await async_client.get(f"{BASE_URL}/history?limit=1000", headers=auth_headers)

        assert response.status_code == 422


class TestMutationRateLimit:
    async def test_eleventh_mutation_is_rejected(
        self, async_client: AsyncClient, auth_headers: dict, make_subscription
    ):
        await make_subscription()

        for _ in range(10):
            response = await async_client.delete(f"{BASE_URL}/downgrade", headers=auth_headers)
            assert response.status_code != status.HTTP_429_TOO_MANY_REQUESTS

        response = await async_client.delete(f"{BASE_URL}/downgrade", headers=auth_headers)
        assert response.status_code == status.HTTP_429_TOO_MANY_REQUESTS

"""
Unit tests for LemonSqueezy billing adapter.

Tests the LemonSqueezy API integration including:
- Variant changes (upgrade, discount, downgrade)
- Pause and resume
- Error handling, timeouts and error redaction
"""

from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from adapters.payments.lemonsqueezy_adapter import (
    LemonSqueezyAdapter,
    LemonSqueezyAPIError,
    LemonSqueezyAuthError,
    LemonSqueezyError,
    LemonSqueezySubscription,
    create_lemonsqueezy_adapter,
)

API_URL = "https://api.lemonsqueezy.com/v1/subscriptions/98765"


@pytest.fixture
def adapter():
    """Create LemonSqueezyAdapter instance with test credentials."""
    return LemonSqueezyAdapter(api_key="test_api_key_123", timeout=5.0)


@pytest.fixture
def mock_subscription_response() -> dict[str, Any]:
    """Mock successful subscription API response."""
    return {
        "data": {
            "type": "subscriptions",
            "id": "98765",
            "attributes": {
                "store_id": 12345,
                "customer_id": 4455,
                "order_id": 7788,
                "product_id": 3300,
                "variant_id": 1002,
                "status": "active",
                "pause": None,
                "renews_at": "2026-02-01T00:00:00.000000Z",
                "ends_at": None,
                "updated_at": "2025-02-01T00:00:00.000000Z",
            },
        }
    }


def _response(status_code: int, payload: Any = None) -> httpx.Response:
    return httpx.Response(
        status_code,
        json=payload,
        request=httpx.Request("PATCH", API_URL),
    )


class TestConfiguration:
    def test_factory_uses_arguments(self):
        adapter = create_lemonsqueezy_adapter(api_key="k", timeout=3.0)
        assert adapter.api_key == "k"
        assert adapter.timeout == 3.0

    def test_headers(self, adapter):
        headers = adapter._get_headers()
        assert headers["Authorization"] == "Bearer test_api_key_123"
        assert headers["Content-Type"] == "application/vnd.api+json"

    @pytest.mark.asyncio
    async def test_missing_api_key_raises_before_request(self):
        with patch("adapters.payments.lemonsqueezy_adapter.settings") as mock_settings:
            mock_settings.lemonsqueezy_api_key = None
            mock_settings.lemonsqueezy_timeout = 5.0
            adapter = LemonSqueezyAdapter()

        with patch("httpx.AsyncClient.request", new_callable=AsyncMock) as mock_request:
            with pytest.raises(LemonSqueezyAuthError):
                await adapter.resume_subscription("98765")
            mock_request.assert_not_called()


class TestSubscriptionParsing:
    def test_from_api_response(self, mock_subscription_response):
        subscription = LemonSqueezySubscription.from_api_response(mock_subscription_response["data"])
        assert subscription.id == "98765"
        assert subscription.variant_id == "1002"
        assert subscription.customer_id == "4455"
        assert subscription.renews_at == datetime(2026, 2, 1, tzinfo=timezone.utc)
        assert subscription.pause is None

    def test_summary_is_small(self, mock_subscription_response):
        subscription = LemonSqueezySubscription.from_api_response(mock_subscription_response["data"])
        assert set(subscription.summary()) == {"id", "status", "variant_id", "renews_at"}


class TestUpdateVariant:
    @pytest.mark.asyncio
    async def test_sends_variant_and_invoice_flag(self, adapter, mock_subscription_response):
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = _response(200, mock_subscription_response)

            result = await adapter.update_subscription_variant("98765", "1002", invoice_immediately=True)

        method, url = mock_request.call_args.args[:2]
        body = mock_request.call_args.kwargs["json"]
        assert method == "PATCH"
        assert url == API_URL
        assert body["data"]["type"] == "subscriptions"
        assert body["data"]["id"] == "98765"
        assert body["data"]["attributes"] == {"variant_id": 1002, "invoice_immediately": True}
        assert result.variant_id == "1002"
        assert result.status == "active"

    @pytest.mark.asyncio
    async def test_api_error_is_redacted(self, adapter):
        error_body = {
            "errors": [
                {
                    "status": "422",
                    "title": "Unprocessable Entity",
                    "detail": "The variant_id field is invalid.",
                    "source": {"pointer": "/data/attributes/variant_id"},
                    "meta": {"internal": "trace-123"},
                }
            ]
        }
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = _response(422, error_body)

            with pytest.raises(LemonSqueezyAPIError) as exc_info:
                await adapter.update_subscription_variant("98765", "bad")

        error = exc_info.value
        assert error.status_code == 422
        assert error.errors == [
            {
                "status": "422",
                "title": "Unprocessable Entity",
                "detail": "The variant_id field is invalid.",
            }
        ]
        assert "variant_id field is invalid" in str(error)

    @pytest.mark.asyncio
    async def test_error_without_json_body(self, adapter):
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = httpx.Response(
                503, content=b"upstream down", request=httpx.Request("PATCH", API_URL)
            )
            with pytest.raises(LemonSqueezyAPIError) as exc_info:
                await adapter.update_subscription_variant("98765", "1001")

        assert exc_info.value.status_code == 503
        assert exc_info.value.errors == []

    @pytest.mark.asyncio
    async def test_timeout_is_a_failure(self, adapter):
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = httpx.ReadTimeout("timed out")
            with pytest.raises(LemonSqueezyAPIError, match="timed out"):
                await adapter.update_subscription_variant("98765", "1001")

    @pytest.mark.asyncio
    async def test_connection_error(self, adapter):
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = httpx.ConnectError("refused")
            with pytest.raises(LemonSqueezyError, match="Could not reach"):
                await adapter.update_subscription_variant("98765", "1001")


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_pause_sends_mode_and_resume_date(self, adapter, mock_subscription_response):
        resumes_at = datetime(2025, 5, 1, 12, tzinfo=timezone.utc)
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = _response(200, mock_subscription_response)

            await adapter.pause_subscription("98765", mode="free", resumes_at=resumes_at)

        attributes = mock_request.call_args.kwargs["json"]["data"]["attributes"]
        assert attributes == {"pause": {"mode": "free", "resumes_at": resumes_at.isoformat()}}

    @pytest.mark.asyncio
    async def test_resume_clears_pause(self, adapter, mock_subscription_response):
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = _response(200, mock_subscription_response)

            result = await adapter.resume_subscription("98765")

        assert mock_request.call_args.kwargs["json"]["data"]["attributes"] == {"pause": None}
        assert result.status == "active"

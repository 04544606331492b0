"""
LemonSqueezy billing adapter for subscription management.

Implements the BillingProvider interface against the LemonSqueezy JSON:API:
variant changes (upgrade, discount, scheduled downgrade), pause and resume.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from core.domain.subscription import parse_iso_datetime
from core.interfaces.services import BillingProvider, ProviderSubscription
from infrastructure.config.settings import settings

logger = logging.getLogger(__name__)


# Custom Exceptions
class LemonSqueezyError(Exception):
    """Base exception for LemonSqueezy adapter errors."""

    pass


class LemonSqueezyAPIError(LemonSqueezyError):
    """Raised when LemonSqueezy API returns an error or cannot be reached."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        errors: list[dict[str, Any]] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


class LemonSqueezyAuthError(LemonSqueezyError):
    """Raised when API authentication is not configured."""

    pass


# Fields of a JSON:API error object that are safe to relay to end users
_PUBLIC_ERROR_FIELDS = ("status", "title", "detail")


def _redact_errors(payload: Any) -> list[dict[str, Any]]:
    """Keep only the public fields of JSON:API error objects."""
    if not isinstance(payload, dict):
        return []
    errors = payload.get("errors")
    if not isinstance(errors, list):
        return []
    return [
        {key: error[key] for key in _PUBLIC_ERROR_FIELDS if key in error}
        for error in errors
        if isinstance(error, dict)
    ]


# Dataclasses
@dataclass
class LemonSqueezySubscription(ProviderSubscription):
    """LemonSqueezy subscription information."""

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "LemonSqueezySubscription":
        """Create subscription from API response data."""
        attributes = data.get("attributes") or {}

        variant_id = attributes.get("variant_id")
        customer_id = attributes.get("customer_id")

        return cls(
            id=str(data.get("id", "")),
            status=attributes.get("status", ""),
            variant_id=str(variant_id) if variant_id is not None else None,
            customer_id=str(customer_id) if customer_id is not None else None,
            current_period_start=parse_iso_datetime(attributes.get("current_period_start")),
            current_period_end=parse_iso_datetime(attributes.get("current_period_end")),
            renews_at=parse_iso_datetime(attributes.get("renews_at")),
            ends_at=parse_iso_datetime(attributes.get("ends_at")),
            trial_ends_at=parse_iso_datetime(attributes.get("trial_ends_at")),
            updated_at=parse_iso_datetime(attributes.get("updated_at")),
            pause=attributes.get("pause") if isinstance(attributes.get("pause"), dict) else None,
            raw_attributes=attributes,
        )


class LemonSqueezyAdapter(BillingProvider):
    """
    LemonSqueezy API adapter for subscription billing.

    Every request is bounded by a timeout; a timeout or transport error is
    raised as LemonSqueezyAPIError so callers never assume success.
    """

    # API settings
    API_BASE_URL = "https://api.lemonsqueezy.com/v1"

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float | None = None,
    ):
        """
        Initialize LemonSqueezy adapter.

        Args:
            api_key: LemonSqueezy API key (defaults to settings)
            timeout: Request timeout in seconds (defaults to settings)
        """
        self.api_key = api_key or settings.lemonsqueezy_api_key
        self.timeout = timeout or settings.lemonsqueezy_timeout

        if not self.api_key:
            logger.warning(
                "LemonSqueezy API key not configured. Set lemonsqueezy_api_key in settings."
            )

    def _get_headers(self) -> dict[str, str]:
        """Get HTTP headers for API requests."""
        if not self.api_key:
            raise LemonSqueezyAuthError(
                "LemonSqueezy API key not configured. Set lemonsqueezy_api_key in settings."
            )

        return {
            "Accept": "application/vnd.api+json",
            "Content-Type": "application/vnd.api+json",
            "Authorization": f"Bearer {self.api_key}",
        }

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Make HTTP request to LemonSqueezy API.

        Args:
            method: HTTP method
            endpoint: API endpoint path
            data: Request body data (for PATCH)

        Returns:
            API response as dictionary

        Raises:
            LemonSqueezyAPIError: If API request fails or times out
        """
        url = f"{self.API_BASE_URL}/{endpoint}"
        headers = self._get_headers()

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                logger.info("Making %s request to %s", method, endpoint)

                response = await client.request(method, url, headers=headers, json=data)

                response.raise_for_status()

                if response.status_code == 204 or not response.content:
                    return {}

                return response.json()

        except httpx.HTTPStatusError as e:
            try:
                errors = _redact_errors(e.response.json())
            except ValueError:
                errors = []

            error_detail = errors[0].get("detail") if errors else None
            error_detail = error_detail or f"HTTP {e.response.status_code}"

            logger.error("LemonSqueezy API error on %s %s: %s", method, endpoint, error_detail)
            raise LemonSqueezyAPIError(
                f"API request failed: {error_detail}",
                status_code=e.response.status_code,
                errors=errors,
            )
        except httpx.TimeoutException:
            logger.error("LemonSqueezy request timed out after %ss: %s %s", self.timeout, method, endpoint)
            raise LemonSqueezyAPIError("Request to billing provider timed out")
        except httpx.RequestError as e:
            logger.error("HTTP request error on %s %s: %s", method, endpoint, type(e).__name__)
            raise LemonSqueezyAPIError("Could not reach billing provider")

    async def _patch_subscription(
        self,
        subscription_id: str,
        attributes: dict[str, Any],
    ) -> LemonSqueezySubscription:
        data = {
            "data": {
                "type": "subscriptions",
                "id": subscription_id,
                "attributes": attributes,
            }
        }

        response = await self._make_request(
            "PATCH",
            f"subscriptions/{subscription_id}",
            data=data,
        )
        return LemonSqueezySubscription.from_api_response(response.get("data") or {})

    async def update_subscription_variant(
        self,
        subscription_id: str,
        variant_id: str,
        invoice_immediately: bool = False,
    ) -> LemonSqueezySubscription:
        """
        Switch a subscription to another variant.

        Args:
            subscription_id: LemonSqueezy subscription ID
            variant_id: Target variant ID
            invoice_immediately: Charge the prorated difference now instead
                of at the next renewal

        Returns:
            Updated LemonSqueezySubscription object

        Raises:
            LemonSqueezyAPIError: If API request fails
        """
        logger.info(
            "Changing subscription %s to variant %s (invoice_immediately=%s)",
            subscription_id, variant_id, invoice_immediately,
        )

        subscription = await self._patch_subscription(
            subscription_id,
            {
                "variant_id": int(variant_id) if str(variant_id).isdigit() else variant_id,
                "invoice_immediately": invoice_immediately,
            },
        )

        logger.info("Successfully changed variant of subscription %s", subscription_id)
        return subscription

    async def pause_subscription(
        self,
        subscription_id: str,
        mode: str = "free",
        resumes_at: datetime | None = None,
    ) -> LemonSqueezySubscription:
        """
        Pause a subscription.

        Args:
            subscription_id: LemonSqueezy subscription ID
            mode: Pause mode - "void" (no service) or "free" (keep access, no charge)
            resumes_at: When payment collection resumes automatically

        Returns:
            Updated LemonSqueezySubscription object

        Raises:
            LemonSqueezyAPIError: If API request fails
        """
        logger.info("Pausing subscription %s with mode %s until %s", subscription_id, mode, resumes_at)

        pause: dict[str, Any] = {"mode": mode}
        if resumes_at is not None:
            pause["resumes_at"] = resumes_at.isoformat()

        subscription = await self._patch_subscription(subscription_id, {"pause": pause})

        logger.info("Successfully paused subscription %s", subscription_id)
        return subscription

    async def resume_subscription(self, subscription_id: str) -> LemonSqueezySubscription:
        """
        Resume a paused subscription.

        Args:
            subscription_id: LemonSqueezy subscription ID

        Returns:
            Updated LemonSqueezySubscription object

        Raises:
            LemonSqueezyAPIError: If API request fails
        """
        logger.info("Resuming subscription %s", subscription_id)

        subscription = await self._patch_subscription(subscription_id, {"pause": None})

        logger.info("Successfully resumed subscription %s", subscription_id)
        return subscription


# Factory function for easy instantiation
def create_lemonsqueezy_adapter(
    api_key: str | None = None,
    timeout: float | None = None,
) -> LemonSqueezyAdapter:
    """
    Create a LemonSqueezy adapter instance.

    Args:
        api_key: LemonSqueezy API key (defaults to settings)
        timeout: Request timeout in seconds (defaults to settings)

    Returns:
        LemonSqueezyAdapter instance
    """
    return LemonSqueezyAdapter(
        api_key=api_key,
        timeout=timeout,
    )

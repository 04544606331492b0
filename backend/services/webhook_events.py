"""
Typed LemonSqueezy webhook payloads.

parse_webhook_event turns a decoded JSON body into one of three shapes:
SubscriptionEvent (state-changing), InformationalEvent (acknowledged and
logged) or IgnoredEvent (unknown or incomplete, acknowledged as a no-op).
Only a body that has no usable event name is rejected.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

from core.domain.subscription import parse_iso_datetime


class WebhookPayloadError(ValueError):
    """The webhook body cannot be interpreted at all."""


SUBSCRIPTION_CREATED = "subscription_created"
SUBSCRIPTION_UPDATED = "subscription_updated"
SUBSCRIPTION_CANCELLED = "subscription_cancelled"
SUBSCRIPTION_RESUMED = "subscription_resumed"
SUBSCRIPTION_EXPIRED = "subscription_expired"
SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed"
SUBSCRIPTION_PAYMENT_SUCCESS = "subscription_payment_success"
ORDER_CREATED = "order_created"

SUBSCRIPTION_EVENT_NAMES = frozenset({
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_RESUMED,
    SUBSCRIPTION_EXPIRED,
    SUBSCRIPTION_PAYMENT_FAILED,
})
INFORMATIONAL_EVENT_NAMES = frozenset({
    SUBSCRIPTION_PAYMENT_SUCCESS,
    ORDER_CREATED,
})


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


@dataclass(frozen=True)
class SubscriptionAttributes:
    """The subset of subscription attributes the store cares about."""

    status: Optional[str] = None
    customer_id: Optional[str] = None
    order_id: Optional[str] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    billing_anchor: Optional[int] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    renews_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    update_payment_method_url: Optional[str] = None
    customer_portal_url: Optional[str] = None
    pause: Optional[dict[str, Any]] = None
    has_pause_field: bool = False

    @classmethod
    def from_payload(cls, attributes: dict[str, Any]) -> "SubscriptionAttributes":
        urls = attributes.get("urls") if isinstance(attributes.get("urls"), dict) else {}
        anchor = attributes.get("billing_anchor")
        pause = attributes.get("pause")

        return cls(
            status=_optional_str(attributes.get("status")),
            customer_id=_optional_str(attributes.get("customer_id")),
            order_id=_optional_str(attributes.get("order_id")),
            product_id=_optional_str(attributes.get("product_id")),
            variant_id=_optional_str(attributes.get("variant_id")),
            billing_anchor=anchor if isinstance(anchor, int) and not isinstance(anchor, bool) else None,
            current_period_start=parse_iso_datetime(attributes.get("current_period_start")),
            current_period_end=parse_iso_datetime(attributes.get("current_period_end")),
            trial_ends_at=parse_iso_datetime(attributes.get("trial_ends_at")),
            renews_at=parse_iso_datetime(attributes.get("renews_at")),
            ends_at=parse_iso_datetime(attributes.get("ends_at")),
            updated_at=parse_iso_datetime(attributes.get("updated_at")),
            update_payment_method_url=_optional_str(urls.get("update_payment_method")),
            customer_portal_url=_optional_str(urls.get("customer_portal")),
            pause=pause if isinstance(pause, dict) else None,
            has_pause_field="pause" in attributes,
        )


@dataclass(frozen=True)
class SubscriptionEvent:
    """A state-changing event for one external subscription."""

    event_name: str
    subscription_id: str
    attributes: SubscriptionAttributes
    user_id: Optional[str] = None
    user_email: Optional[str] = None


@dataclass(frozen=True)
class InformationalEvent:
    """Acknowledged and logged; no state change."""

    event_name: str
    resource_id: Optional[str] = None


@dataclass(frozen=True)
class IgnoredEvent:
    """Unknown event or one missing the fields needed to apply it."""

    event_name: str
    reason: str


WebhookEvent = Union[SubscriptionEvent, InformationalEvent, IgnoredEvent]


def parse_webhook_event(payload: Any) -> WebhookEvent:
    """
    Parse a decoded webhook body.

    Raises:
        WebhookPayloadError: If the body is not an object or has no event name
    """
    if not isinstance(payload, dict):
        raise WebhookPayloadError("Webhook body must be a JSON object")

    meta = payload.get("meta")
    if meta is None:
        meta = {}
    if not isinstance(meta, dict):
        raise WebhookPayloadError("Webhook meta must be an object")

    event_name = meta.get("event_name")
    if not isinstance(event_name, str) or not event_name.strip():
        raise WebhookPayloadError("Missing event_name")
    event_name = event_name.strip()

    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    resource_id = _optional_str(data.get("id"))

    if event_name in INFORMATIONAL_EVENT_NAMES:
        return InformationalEvent(event_name=event_name, resource_id=resource_id)

    if event_name not in SUBSCRIPTION_EVENT_NAMES:
        return IgnoredEvent(event_name=event_name, reason="unhandled event type")

    raw_attributes = data.get("attributes") if isinstance(data.get("attributes"), dict) else {}

    # Payment events carry a subscription invoice; the subscription id is an attribute
    subscription_id = resource_id
    if event_name == SUBSCRIPTION_PAYMENT_FAILED and raw_attributes.get("subscription_id"):
        subscription_id = _optional_str(raw_attributes.get("subscription_id"))

    if not subscription_id:
        return IgnoredEvent(event_name=event_name, reason="missing subscription id")

    custom_data = meta.get("custom_data") if isinstance(meta.get("custom_data"), dict) else {}

    return SubscriptionEvent(
        event_name=event_name,
        subscription_id=subscription_id,
        attributes=SubscriptionAttributes.from_payload(raw_attributes),
        user_id=_optional_str(custom_data.get("user_id")),
        user_email=_optional_str(custom_data.get("user_email")) or _optional_str(raw_attributes.get("user_email")),
    )

"""
LemonSqueezy webhook endpoint.
"""

import json
import logging
from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_plan_variants
from api.middleware.rate_limit import get_rate_limit, limiter
from api.schemas.subscription import WebhookStatusResponse
from core.security.webhook_signature import verify_webhook_signature
from infrastructure.config.settings import settings
from infrastructure.database.connection import get_db
from services.event_normalizer import PlanVariants
from services.subscription_errors import ConcurrentUpdateError
from services.webhook_dispatcher import WebhookDispatcher
from services.webhook_events import WebhookPayloadError, parse_webhook_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post("/lemonsqueezy")
@limiter.limit(get_rate_limit("webhook"))
async def handle_lemonsqueezy_webhook(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    db: AsyncSession = Depends(get_db),
    variants: PlanVariants = Depends(get_plan_variants),
):
    """
    Handle LemonSqueezy webhook events.

    - subscription_created / subscription_updated: upsert the user's subscription
    - subscription_cancelled, subscription_resumed, subscription_expired,
      subscription_payment_failed: update the linked subscription
    - subscription_payment_success, order_created: acknowledged only
    - anything else: acknowledged and logged

    Business outcomes always return 200 so LemonSqueezy stops retrying;
    database failures return 500 so it retries.
    """
    # Signature is computed over the raw bytes, before any parsing
    body = await request.body()

    if not x_signature:
        logger.warning("Webhook received without signature")
        return _error(status.HTTP_401_UNAUTHORIZED, "No signature provided")

    if not verify_webhook_signature(body, x_signature, settings.lemonsqueezy_webhook_secret):
        logger.warning("Invalid webhook signature")
        return _error(status.HTTP_401_UNAUTHORIZED, "Invalid signature")

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error("Invalid JSON in webhook payload: %s", e)
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid JSON payload")

    try:
        event = parse_webhook_event(payload)
    except WebhookPayloadError as e:
        logger.error("Rejected webhook payload: %s", e)
        return _error(status.HTTP_400_BAD_REQUEST, str(e))

    logger.info("Webhook received: %s", event.event_name, extra={"event_name": event.event_name})

    dispatcher = WebhookDispatcher(db, variants)
    try:
        result = await dispatcher.dispatch(event)
    except (SQLAlchemyError, ConcurrentUpdateError) as e:
        logger.error(
            "Webhook %s could not be persisted: %s", event.event_name, type(e).__name__,
            extra={"event_name": event.event_name},
        )
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Webhook processing failed")
    except Exception:
        logger.exception("Unexpected error processing webhook %s", event.event_name)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Webhook processing failed")

    logger.info(
        "Webhook %s %s", event.event_name,
        "applied" if result.applied else "acknowledged without changes",
        extra={"event_name": event.event_name, "applied": result.applied},
    )
    return result.to_response()


@router.get("/lemonsqueezy", response_model=WebhookStatusResponse)
async def webhook_status():
    """Liveness and configuration check for the webhook endpoint."""
    return WebhookStatusResponse(
        status="ok",
        message="LemonSqueezy webhook endpoint is reachable",
        timestamp=datetime.now(UTC),
        config={
            "webhook_secret_configured": bool(settings.lemonsqueezy_webhook_secret),
            "api_key_configured": bool(settings.lemonsqueezy_api_key),
            "monthly_variant_configured": bool(settings.lemonsqueezy_variant_monthly),
            "yearly_variant_configured": bool(settings.lemonsqueezy_variant_yearly),
        },
    )

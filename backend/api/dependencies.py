"""
API dependencies for authentication and service wiring.
"""

import logging
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from adapters.payments.lemonsqueezy_adapter import create_lemonsqueezy_adapter
from core.interfaces.services import BillingProvider
from core.security.tokens import TokenService
from infrastructure.config.settings import settings
from infrastructure.database import get_db
from services.event_normalizer import PlanVariants
from services.subscription_errors import AuthenticationError
from services.subscription_lifecycle import SubscriptionLifecycleService

logger = logging.getLogger(__name__)

token_service = TokenService(
    secret_key=settings.supabase_jwt_secret,
    algorithm=settings.jwt_algorithm,
    audience=settings.supabase_jwt_audience,
)


@dataclass(frozen=True)
class CurrentUser:
    """Identity resolved from the bearer token."""

    id: str
    email: str | None = None


async def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
) -> CurrentUser:
    """
    Dependency to get the current authenticated user.

    Every failure mode produces the same 401 so callers can't probe which
    part of the token was wrong.
    """
    token = None
    if authorization and authorization.startswith("Bearer "):
        parts = authorization.split(" ", 1)
        token = parts[1].strip() if len(parts) > 1 and parts[1].strip() else None

    if not token:
        raise AuthenticationError()

    payload = token_service.decode_token(token)
    if not payload:
        logger.info("Rejected invalid or expired access token")
        raise AuthenticationError()

    return CurrentUser(id=payload.sub, email=payload.email)


def get_plan_variants() -> PlanVariants:
    """Configured plan variants."""
    return PlanVariants.from_settings(settings)


def get_billing_provider() -> BillingProvider:
    """Billing provider client, one per request."""
    return create_lemonsqueezy_adapter()


async def get_lifecycle_service(
    db: AsyncSession = Depends(get_db),
    provider: BillingProvider = Depends(get_billing_provider),
    variants: PlanVariants = Depends(get_plan_variants),
) -> SubscriptionLifecycleService:
    return SubscriptionLifecycleService(db, provider, variants)

"""
Subscription lifecycle endpoints.

Every mutation returns the full stored subscription so the client can render
the new state without a second request.
"""

import logging

from fastapi import APIRouter, Depends, Query, Request

from api.dependencies import CurrentUser, get_current_user, get_lifecycle_service
from api.middleware.rate_limit import get_rate_limit, limiter
from api.schemas.subscription import (
    CurrentSubscriptionResponse,
    HistoryEntry,
    HistoryResponse,
    SubscriptionActionResponse,
    SubscriptionState,
)
from core.domain.subscription import has_entitlement
from services.subscription_history import DEFAULT_HISTORY_LIMIT, MAX_HISTORY_LIMIT
from services.subscription_lifecycle import LifecycleResult, SubscriptionLifecycleService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscription", tags=["Subscription"])

MUTATION_LIMIT = get_rate_limit("subscription_mutation")


def _action_response(result: LifecycleResult) -> SubscriptionActionResponse:
    return SubscriptionActionResponse(
        success=True,
        message=result.message,
        subscription=SubscriptionState(**result.subscription),
        details=result.details,
    )


@router.get("", response_model=CurrentSubscriptionResponse)
async def get_subscription(
    current_user: CurrentUser = Depends(get_current_user),
    service: SubscriptionLifecycleService = Depends(get_lifecycle_service),
):
    """Current subscription state and whether it grants paid features."""
    snapshot = await service.get_current(current_user.id)
    if snapshot is None:
        return CurrentSubscriptionResponse(subscription=None, entitled=False)

    return CurrentSubscriptionResponse(
        subscription=SubscriptionState(**snapshot),
        entitled=has_entitlement(snapshot["status"], snapshot["plan_type"]),
    )


@router.post("/upgrade", response_model=SubscriptionActionResponse)
@limiter.limit(MUTATION_LIMIT)
async def upgrade_subscription(
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    service: SubscriptionLifecycleService = Depends(get_lifecycle_service),
):
    """Upgrade monthly to annual immediately, with a prorated charge."""
    return _action_response(await service.upgrade_to_annual(current_user.id))


@router.post("/pause", response_model=SubscriptionActionResponse)
@limiter.limit(MUTATION_LIMIT)
async def pause_subscription(
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    service: SubscriptionLifecycleService = Depends(get_lifecycle_service),
):
    """Pause billing for three months."""
    return _action_response(await service.pause(current_user.id))


@router.delete("/pause", response_model=SubscriptionActionResponse)
@limiter.limit(MUTATION_LIMIT)
async def resume_subscription(
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    service: SubscriptionLifecycleService = Depends(get_lifecycle_service),
):
    """Resume a paused subscription."""
    return _action_response(await service.resume(current_user.id))


@router.post("/discount", response_model=SubscriptionActionResponse)
@limiter.limit(MUTATION_LIMIT)
async def apply_discount(
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    service: SubscriptionLifecycleService = Depends(get_lifecycle_service),
):
    """Apply the 50% retention discount for three months."""
    return _action_response(await service.apply_discount(current_user.id))


@router.delete("/discount", response_model=SubscriptionActionResponse)
@limiter.limit(MUTATION_LIMIT)
async def remove_discount(
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    service: SubscriptionLifecycleService = Depends(get_lifecycle_service),
):
    """Remove an active discount."""
    return _action_response(await service.remove_discount(current_user.id))


@router.post("/downgrade", response_model=SubscriptionActionResponse)
@limiter.limit(MUTATION_LIMIT)
async def schedule_downgrade(
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    service: SubscriptionLifecycleService = Depends(get_lifecycle_service),
):
    """Schedule annual -> monthly at the end of the current annual period."""
    return _action_response(await service.schedule_downgrade(current_user.id))


@router.delete("/downgrade", response_model=SubscriptionActionResponse)
@limiter.limit(MUTATION_LIMIT)
async def cancel_scheduled_downgrade(
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    service: SubscriptionLifecycleService = Depends(get_lifecycle_service),
):
    """Cancel a pending downgrade and stay on annual."""
    return _action_response(await service.cancel_scheduled_downgrade(current_user.id))


@router.get("/history", response_model=HistoryResponse)
async def get_subscription_history(
    limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1, le=MAX_HISTORY_LIMIT),
    current_user: CurrentUser = Depends(get_current_user),
    service: SubscriptionLifecycleService = Depends(get_lifecycle_service),
):
    """Subscription history, newest first."""
    entries = await service.get_history(current_user.id, limit)
    return HistoryResponse(
        success=True,
        history=[HistoryEntry.model_validate(entry) for entry in entries],
    )

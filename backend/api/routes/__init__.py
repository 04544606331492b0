"""API Routes."""

from fastapi import APIRouter

from .health import router as health_router
from .subscription import router as subscription_router
from .webhooks import router as webhooks_router

# Create main API router
api_router = APIRouter()

# Include route modules
api_router.include_router(health_router, tags=["Health"])
api_router.include_router(webhooks_router)
api_router.include_router(subscription_router)

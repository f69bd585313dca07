"""Main API router aggregation."""

from fastapi import APIRouter

from .github_app import router as github_app_router
from .health import router as health_router
from .repositories import router as repositories_router
from .rewards import router as rewards_router
from .webhooks import router as webhooks_router

router = APIRouter()

# Include sub-routers
router.include_router(health_router)
router.include_router(webhooks_router)
router.include_router(repositories_router)
router.include_router(rewards_router)
router.include_router(github_app_router)

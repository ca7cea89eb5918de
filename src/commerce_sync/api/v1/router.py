"""API v1 router that aggregates all endpoint routers."""

from fastapi import APIRouter

from commerce_sync.api.v1 import (
    health,
    tenants,
    webhooks,
)

api_router = APIRouter()

# Include all routers
api_router.include_router(
    health.router,
    tags=["Health"],
)

api_router.include_router(
    webhooks.router,
    prefix="/webhook",
    tags=["Webhooks"],
)

api_router.include_router(
    tenants.router,
    prefix="/tenants",
    tags=["Tenants"],
)

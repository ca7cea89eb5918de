"""Health check endpoints."""

from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync import __version__
from commerce_sync.api.v1.dependencies import get_run_guard
from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.connection import get_session
from commerce_sync.infrastructure.redis import RunGuard

logger = structlog.get_logger()

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    environment: str
    timestamp: str
    dependencies: dict[str, Any]


class ReadinessResponse(BaseModel):
    """Readiness check response model."""

    ready: bool
    checks: dict[str, bool]


@router.get("/health", response_model=HealthResponse)
async def health_check(settings: Settings = Depends(get_settings)) -> HealthResponse:
    """
    Basic health check endpoint.

    Returns the service status and version information.
    """
    return HealthResponse(
        status="healthy",
        version=__version__,
        environment=settings.app_env,
        timestamp=datetime.now(timezone.utc).isoformat(),
        dependencies={
            "postgres": "configured",
            "redis": "configured",
            "commerce_api_version": settings.commerce_api_version,
        },
    )


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(
    session: AsyncSession = Depends(get_session),
    guard: RunGuard = Depends(get_run_guard),
) -> ReadinessResponse:
    """
    Readiness check endpoint.

    The database is required; Redis is reported but optional, since sync
    locks fall back to a process-local guard without it.
    """
    checks: dict[str, bool] = {}

    try:
        await session.execute(text("SELECT 1"))
        checks["postgres"] = True
    except Exception as e:
        logger.warning("Database readiness check failed", error=str(e))
        checks["postgres"] = False

    if guard.client is None:
        checks["redis"] = False
    else:
        try:
            checks["redis"] = bool(await guard.client.ping())
        except Exception:
            checks["redis"] = False

    return ReadinessResponse(ready=checks["postgres"], checks=checks)


@router.get("/health/live")
async def liveness_check() -> dict[str, str]:
    """Returns 200 if the service is running."""
    return {"status": "alive"}

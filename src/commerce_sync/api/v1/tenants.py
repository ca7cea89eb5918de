"""On-demand sync and webhook registration for a tenant."""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.api.v1.dependencies import get_client_factory, get_orchestrator
from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.connection import get_session
from commerce_sync.infrastructure.database.models import SyncStatus, Tenant
from commerce_sync.services.commerce_client import TenantContext
from commerce_sync.services.sync_orchestrator import (
    ClientFactory,
    SyncAlreadyRunning,
    SyncOrchestrator,
    TenantNotFound,
)
from commerce_sync.services.webhook_registration import WebhookRegistrar

logger = structlog.get_logger()

router = APIRouter()


# =============================================================================
# Models
# =============================================================================


class SyncResponse(BaseModel):
    success: bool
    tenant_id: str
    resources: dict[str, dict[str, Any]]
    skipped_resources: list[str]


class SyncStatusItem(BaseModel):
    resource: str
    status: str
    records_synced: int
    last_sync_at: str | None
    error_message: str | None


class WebhookRegistrationResponse(BaseModel):
    tenant_id: str
    topics: dict[str, str]


# =============================================================================
# Endpoints
# =============================================================================


@router.post("/{tenant_id}/sync", response_model=SyncResponse)
async def sync_tenant(
    tenant_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncResponse:
    """
    Synchronize customers, products and orders for one tenant now.

    Returns 409 while another sync of the same tenant is still running.
    """
    try:
        report = await orchestrator.sync_tenant_by_id(tenant_id)
    except TenantNotFound:
        raise HTTPException(status_code=404, detail="Tenant not found")
    except SyncAlreadyRunning:
        raise HTTPException(status_code=409, detail="Sync already in progress")
    except Exception as e:
        logger.error("Sync error", tenant_id=tenant_id, error=str(e))
        raise HTTPException(status_code=500, detail="Sync failed") from e

    return SyncResponse(
        success=True,
        tenant_id=report.tenant_id,
        resources=report.resources,
        skipped_resources=report.skipped_resources,
    )


@router.get("/{tenant_id}/sync/status", response_model=list[SyncStatusItem])
async def get_sync_status(
    tenant_id: str,
    session: AsyncSession = Depends(get_session),
) -> list[SyncStatusItem]:
    """Last sync outcome per resource for a tenant."""
    if await session.get(Tenant, tenant_id) is None:
        raise HTTPException(status_code=404, detail="Tenant not found")

    result = await session.execute(
        select(SyncStatus).where(SyncStatus.tenant_id == tenant_id).order_by(SyncStatus.resource)
    )
    return [
        SyncStatusItem(
            resource=row.resource,
            status=row.status,
            records_synced=row.records_synced,
            last_sync_at=row.last_sync_at.isoformat() if row.last_sync_at else None,
            error_message=row.error_message,
        )
        for row in result.scalars().all()
    ]


@router.post("/{tenant_id}/webhooks/register", response_model=WebhookRegistrationResponse)
async def register_webhooks(
    tenant_id: str,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    client_factory: ClientFactory = Depends(get_client_factory),
) -> WebhookRegistrationResponse:
    """Subscribe the tenant's store to every configured webhook topic."""
    tenant = await session.get(Tenant, tenant_id)
    if tenant is None:
        raise HTTPException(status_code=404, detail="Tenant not found")
    if not tenant.access_token:
        raise HTTPException(status_code=400, detail="Tenant has no access token")

    context = TenantContext.from_tenant(tenant, settings)
    async with client_factory(context) as client:
        outcomes = await WebhookRegistrar(session, client, settings).register_all(tenant)

    return WebhookRegistrationResponse(tenant_id=tenant_id, topics=outcomes)

"""Inbound webhook receiver."""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.api.v1.dependencies import get_tenant_locks
from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.connection import get_session
from commerce_sync.infrastructure.database.models import Tenant
from commerce_sync.services.reconciliation import TenantLocks
from commerce_sync.services.webhook_ingestor import AUTH_FAILURES, WebhookIngestor

logger = structlog.get_logger()

router = APIRouter()


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the upstream platform."""

    received: bool
    topic: str
    action: str | None = None


@router.post("/{tenant_id}", response_model=WebhookResponse)
async def receive_webhook(
    tenant_id: str,
    request: Request,
    x_shopify_topic: Annotated[str | None, Header()] = None,
    x_shopify_hmac_sha256: Annotated[str | None, Header()] = None,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    locks: TenantLocks = Depends(get_tenant_locks),
) -> WebhookResponse:
    """
    Receive one webhook delivery for a tenant.

    The signature is checked against the raw request bytes before anything
    else. Topics without a handler are acknowledged with 200 so the upstream
    stops redelivering them.
    """
    raw_body = await request.body()
    ingestor = WebhookIngestor(session, settings.webhook_secret, locks)

    rejection = ingestor.authenticate(x_shopify_topic, raw_body, x_shopify_hmac_sha256)
    if rejection:
        logger.warning("Webhook authentication failed", tenant_id=tenant_id, reason=rejection)
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    tenant = await session.get(Tenant, tenant_id)
    if tenant is None:
        raise HTTPException(status_code=404, detail="Tenant not found")

    try:
        result = await ingestor.ingest(tenant, x_shopify_topic, raw_body, x_shopify_hmac_sha256)
    except Exception as e:
        logger.error(
            "Webhook processing error",
            tenant_id=tenant_id,
            topic=x_shopify_topic,
            error=str(e),
        )
        raise HTTPException(status_code=500, detail="Webhook processing failed") from e

    if not result.accepted:
        status_code = 401 if result.reason in AUTH_FAILURES else 400
        raise HTTPException(status_code=status_code, detail=result.reason)

    return WebhookResponse(
        received=True,
        topic=x_shopify_topic,
        action=result.action.value if result.action else None,
    )

"""Tenant synchronization tasks."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from celery import shared_task

from commerce_sync.config import get_settings
from commerce_sync.infrastructure.database.connection import (
    get_async_engine,
    get_async_session_factory,
)
from commerce_sync.infrastructure.redis import RunGuard, close_redis, get_redis_client
from commerce_sync.services.sync_orchestrator import SyncOrchestrator, TenantNotFound

logger = structlog.get_logger()


async def _with_orchestrator(
    action: Callable[[SyncOrchestrator], Awaitable[Any]],
) -> Any:
    """Run ``action`` with an orchestrator bound to this task's event loop."""
    settings = get_settings()
    # Each task runs in a fresh event loop, so engine and Redis client are per run
    engine = get_async_engine()
    guard = RunGuard(await get_redis_client(), settings.sync_lock_ttl_seconds)
    orchestrator = SyncOrchestrator(get_async_session_factory(engine), settings, guard=guard)
    try:
        return await action(orchestrator)
    finally:
        await close_redis()
        await engine.dispose()


async def run_fleet_sync() -> dict:
    report = await _with_orchestrator(lambda o: o.sync_fleet())
    return report.to_dict()


async def run_tenant_sync(tenant_id: str) -> dict:
    report = await _with_orchestrator(lambda o: o.sync_tenant_by_id(tenant_id))
    return report.to_dict()


@shared_task(bind=True)
def sync_all_tenants(self) -> dict:
    """
    Synchronize every tenant that holds an access token.

    Overlapping runs are refused by the orchestrator's single-flight guard,
    which is shared with the API process through Redis.

    Returns:
        dict: Summary of the fleet run
    """
    logger.info("Starting scheduled sync for all tenants")
    summary = asyncio.run(run_fleet_sync())
    logger.info(
        "Completed scheduled sync for all tenants",
        total=summary["total"],
        failed=len(summary["failed"]),
        already_running=summary["already_running"],
    )
    return summary


@shared_task(bind=True, max_retries=3, default_retry_delay=300)
def sync_tenant(self, tenant_id: str) -> dict:
    """
    Synchronize a single tenant.

    Args:
        tenant_id: The local tenant id

    Returns:
        dict: Per-resource sync summary
    """
    logger.info("Syncing tenant", tenant_id=tenant_id)
    try:
        return asyncio.run(run_tenant_sync(tenant_id))
    except TenantNotFound:
        logger.error("Tenant not found", tenant_id=tenant_id)
        return {"success": False, "tenant_id": tenant_id, "error": "tenant not found"}
    except Exception as e:
        logger.error("Tenant sync task failed", tenant_id=tenant_id, error=str(e))
        raise self.retry(exc=e)

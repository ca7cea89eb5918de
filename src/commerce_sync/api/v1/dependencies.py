"""Shared FastAPI dependencies."""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.connection import get_session_factory
from commerce_sync.infrastructure.redis import RunGuard
from commerce_sync.services.commerce_client import CommerceClient, TenantContext
from commerce_sync.services.reconciliation import TenantLocks
from commerce_sync.services.sync_orchestrator import ClientFactory, SyncOrchestrator


def get_tenant_locks(request: Request) -> TenantLocks:
    return request.app.state.tenant_locks


def get_run_guard(request: Request) -> RunGuard:
    return request.app.state.run_guard


def get_client_factory(settings: Settings = Depends(get_settings)) -> ClientFactory:
    """Factory building one upstream client per tenant context."""

    def build(context: TenantContext) -> CommerceClient:
        return CommerceClient(context, settings)

    return build


def get_orchestrator(
    settings: Settings = Depends(get_settings),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    locks: TenantLocks = Depends(get_tenant_locks),
    guard: RunGuard = Depends(get_run_guard),
    client_factory: ClientFactory = Depends(get_client_factory),
) -> SyncOrchestrator:
    return SyncOrchestrator(
        session_factory,
        settings,
        locks=locks,
        guard=guard,
        client_factory=client_factory,
    )

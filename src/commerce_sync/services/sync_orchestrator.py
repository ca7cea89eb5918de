"""Full resynchronization of one tenant or of the whole tenant fleet."""

import asyncio
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commerce_sync.config import Settings
from commerce_sync.infrastructure.database.models import SyncStatus, Tenant
from commerce_sync.infrastructure.redis import RunGuard
from commerce_sync.services.commerce_client import (
    CommerceClient,
    PermissionDenied,
    TenantContext,
)
from commerce_sync.services.pagination import PaginationWalker
from commerce_sync.services.reconciliation import ReconciliationEngine, TenantLocks
from shared.constants import (
    CUSTOMERS,
    ORDERS,
    SYNC_ERROR,
    SYNC_IDLE,
    SYNC_RESOURCES,
    SYNC_RUNNING,
    SYNC_SKIPPED,
)

logger = structlog.get_logger()

FLEET_LOCK_KEY = "fleet"

ClientFactory = Callable[[TenantContext], CommerceClient]


class SyncAlreadyRunning(Exception):
    """A sync for the same tenant (or the fleet) is still in progress."""


class TenantNotFound(LookupError):
    pass


@dataclass
class TenantSyncReport:
    tenant_id: str
    resources: dict[str, dict[str, Any]] = field(default_factory=dict)
    skipped_resources: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FleetSyncReport:
    total: int = 0
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    already_running: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SyncOrchestrator:
    """Sequences customer, product and order sync per tenant.

    Orders reference customers and products, so the three resources always run
    in that order. Tenants are independent units of work: the fleet loop runs
    them concurrently up to ``fleet_sync_concurrency`` and never lets one
    tenant's failure stop another.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        locks: TenantLocks | None = None,
        guard: RunGuard | None = None,
        client_factory: ClientFactory | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.locks = locks or TenantLocks()
        self.guard = guard or RunGuard(None, settings.sync_lock_ttl_seconds)
        self.client_factory = client_factory or self._default_client

    def _default_client(self, context: TenantContext) -> CommerceClient:
        return CommerceClient(context, self.settings)

    # -------------------------------------------------------------------------
    # Single tenant
    # -------------------------------------------------------------------------

    async def sync_tenant_by_id(self, tenant_id: str) -> TenantSyncReport:
        async with self.session_factory() as session:
            tenant = await session.get(Tenant, tenant_id)
        if tenant is None:
            raise TenantNotFound(tenant_id)
        return await self.sync_tenant(tenant)

    async def sync_tenant(self, tenant: Tenant) -> TenantSyncReport:
        """Synchronize one tenant now; refuses to overlap a run in progress."""
        key = f"tenant:{tenant.id}"
        if not await self.guard.acquire(key):
            raise SyncAlreadyRunning(tenant.id)
        try:
            return await self._sync_tenant(tenant)
        finally:
            await self.guard.release(key)

    async def _sync_tenant(self, tenant: Tenant) -> TenantSyncReport:
        context = TenantContext.from_tenant(tenant, self.settings)
        report = TenantSyncReport(tenant_id=tenant.id)
        logger.info("Starting tenant sync", tenant_id=tenant.id, shop_domain=context.shop_domain)

        async with self.client_factory(context) as client, self.session_factory() as session:
            walker = PaginationWalker(client, self.settings)
            engine = ReconciliationEngine(session, self.locks)
            refreshed_customers: set[str] | None = None
            snapshot_at: datetime | None = None

            for resource in SYNC_RESOURCES:
                if resource in context.denied_resources:
                    report.skipped_resources.append(resource)
                    continue

                await self._set_status(session, tenant.id, resource, SYNC_RUNNING)
                if resource == CUSTOMERS:
                    # Upstream totals in the listing cover orders created before this instant
                    snapshot_at = datetime.now(timezone.utc).replace(tzinfo=None)
                try:
                    records = await walker.fetch_all(resource)
                except PermissionDenied as e:
                    context.denied_resources.add(resource)
                    report.skipped_resources.append(resource)
                    logger.warning(
                        "Missing permission for resource, skipping",
                        tenant_id=tenant.id,
                        resource=resource,
                        error=str(e),
                    )
                    await self._set_status(
                        session, tenant.id, resource, SYNC_SKIPPED, error_message=str(e)
                    )
                    continue
                except Exception as e:
                    await self._set_status(
                        session, tenant.id, resource, SYNC_ERROR, error_message=str(e)
                    )
                    raise

                summary = await engine.reconcile_batch(
                    tenant.id,
                    resource,
                    records,
                    refreshed_customers=refreshed_customers if resource == ORDERS else None,
                    snapshot_at=snapshot_at,
                )
                if resource == CUSTOMERS:
                    refreshed_customers = summary.external_ids
                report.resources[resource] = summary.to_dict()
                await self._set_status(
                    session, tenant.id, resource, SYNC_IDLE, records_synced=summary.synced
                )

        logger.info("Tenant sync completed", **report.to_dict())
        return report

    async def _set_status(
        self,
        session: AsyncSession,
        tenant_id: str,
        resource: str,
        status: str,
        records_synced: int = 0,
        error_message: str | None = None,
    ) -> None:
        """Upsert the sync status record for one tenant resource."""
        row = await session.get(SyncStatus, (tenant_id, resource))
        if row is None:
            row = SyncStatus(tenant_id=tenant_id, resource=resource)
            session.add(row)
        row.status = status
        row.error_message = error_message
        if records_synced > 0:
            row.records_synced = records_synced
        if status == SYNC_IDLE:
            row.last_sync_at = datetime.now()  # Use naive datetime for DB
        await session.commit()

    # -------------------------------------------------------------------------
    # Fleet
    # -------------------------------------------------------------------------

    async def list_syncable_tenants(self) -> list[Tenant]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Tenant)
                .where(Tenant.access_token.is_not(None), Tenant.access_token != "")
                .order_by(Tenant.created_at, Tenant.id)
            )
            return list(result.scalars().all())

    async def sync_fleet(self) -> FleetSyncReport:
        """Synchronize every tenant holding a credential.

        Only one fleet run may be in progress at a time; a second call while one
        is running returns immediately with ``already_running`` set.
        """
        if not await self.guard.acquire(FLEET_LOCK_KEY):
            logger.warning("Fleet sync already running, skipping this run")
            return FleetSyncReport(already_running=True)

        try:
            tenants = await self.list_syncable_tenants()
            report = FleetSyncReport(total=len(tenants))
            semaphore = asyncio.Semaphore(self.settings.fleet_sync_concurrency)
            logger.info("Starting fleet sync", tenants=len(tenants))

            async def run(tenant: Tenant) -> None:
                async with semaphore:
                    try:
                        await self.sync_tenant(tenant)
                    except SyncAlreadyRunning:
                        report.skipped.append(tenant.id)
                        logger.warning("Tenant sync already running", tenant_id=tenant.id)
                    except Exception as e:
                        report.failed[tenant.id] = str(e) or type(e).__name__
                        logger.error("Tenant sync failed", tenant_id=tenant.id, error=str(e))
                    else:
                        report.succeeded.append(tenant.id)

            await asyncio.gather(*(run(tenant) for tenant in tenants))
        finally:
            await self.guard.release(FLEET_LOCK_KEY)

        logger.info(
            "Fleet sync completed",
            total=report.total,
            succeeded=len(report.succeeded),
            failed=len(report.failed),
            skipped=len(report.skipped),
        )
        return report

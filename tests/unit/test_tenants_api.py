"""Tests for the tenant sync and webhook registration endpoints."""

import httpx
import orjson
import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.api.v1.dependencies import get_client_factory
from commerce_sync.config import Settings
from commerce_sync.infrastructure.database.models import Tenant, WebhookRegistration
from commerce_sync.services.commerce_client import CommerceClient, TenantContext
from commerce_sync.services.sync_orchestrator import ClientFactory


def _override_upstream(app, settings: Settings, handler) -> list[httpx.Request]:
    """Route every upstream call made by the app through ``handler``."""
    seen: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    def factory() -> ClientFactory:
        def build(context: TenantContext) -> CommerceClient:
            http_client = httpx.AsyncClient(transport=httpx.MockTransport(recording))
            return CommerceClient(context, settings, http_client=http_client)

        return build

    app.dependency_overrides[get_client_factory] = factory
    return seen


def _listing(request: httpx.Request) -> httpx.Response:
    resource = request.url.path.rsplit("/", 1)[-1].removesuffix(".json")
    if resource == "customers":
        return httpx.Response(200, json={"customers": [{"id": 1, "email": "a@example.com"}]})
    return httpx.Response(200, json={resource: []})


class TestSyncEndpoint:
    """Tests for POST /api/v1/tenants/{tenant_id}/sync."""

    @pytest.mark.asyncio
    async def test_sync_now(
        self, app, async_client: AsyncClient, test_settings: Settings, tenant: Tenant
    ) -> None:
        _override_upstream(app, test_settings, _listing)

        response = await async_client.post(f"/api/v1/tenants/{tenant.id}/sync")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["resources"]["customers"]["created"] == 1
        assert data["skipped_resources"] == []

    @pytest.mark.asyncio
    async def test_sync_status_after_run(
        self, app, async_client: AsyncClient, test_settings: Settings, tenant: Tenant
    ) -> None:
        _override_upstream(app, test_settings, _listing)
        await async_client.post(f"/api/v1/tenants/{tenant.id}/sync")

        response = await async_client.get(f"/api/v1/tenants/{tenant.id}/sync/status")

        assert response.status_code == 200
        rows = {row["resource"]: row for row in response.json()}
        assert set(rows) == {"customers", "products", "orders"}
        assert rows["customers"]["records_synced"] == 1
        assert rows["customers"]["last_sync_at"] is not None

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, async_client: AsyncClient) -> None:
        response = await async_client.post("/api/v1/tenants/nope/sync")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_conflict_while_running(
        self, app, async_client: AsyncClient, test_settings: Settings, tenant: Tenant
    ) -> None:
        _override_upstream(app, test_settings, _listing)
        await app.state.run_guard.acquire(f"tenant:{tenant.id}")

        response = await async_client.post(f"/api/v1/tenants/{tenant.id}/sync")

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_upstream_failure(
        self, app, async_client: AsyncClient, test_settings: Settings, tenant: Tenant
    ) -> None:
        _override_upstream(app, test_settings, lambda r: httpx.Response(500, text="down"))

        response = await async_client.post(f"/api/v1/tenants/{tenant.id}/sync")

        assert response.status_code == 500
        assert not app.state.run_guard.is_held(f"tenant:{tenant.id}")


class TestWebhookRegistrationEndpoint:
    """Tests for POST /api/v1/tenants/{tenant_id}/webhooks/register."""

    @pytest.mark.asyncio
    async def test_registers_configured_topics(
        self,
        app,
        async_client: AsyncClient,
        session: AsyncSession,
        test_settings: Settings,
        tenant: Tenant,
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            topic = orjson.loads(request.content)["webhook"]["topic"]
            if topic == "customers/create":
                return httpx.Response(422, json={"errors": {"address": ["already taken"]}})
            return httpx.Response(201, json={"webhook": {"id": 880, "topic": topic}})

        seen = _override_upstream(app, test_settings, handler)

        response = await async_client.post(f"/api/v1/tenants/{tenant.id}/webhooks/register")

        assert response.status_code == 200
        assert response.json()["topics"] == {
            "orders/create": "registered",
            "customers/create": "already_registered",
        }
        body = orjson.loads(seen[0].content)["webhook"]
        assert body["address"] == f"https://sync.example.com/api/v1/webhook/{tenant.id}"
        assert body["format"] == "json"
        assert str(seen[0].url).endswith("/admin/api/2023-10/webhooks.json")

        rows = (await session.execute(select(WebhookRegistration))).scalars().all()
        by_topic = {row.topic: row for row in rows}
        assert by_topic["orders/create"].external_id == "880"
        assert by_topic["customers/create"].external_id is None

    @pytest.mark.asyncio
    async def test_failed_topic_reported(
        self, app, async_client: AsyncClient, test_settings: Settings, tenant: Tenant
    ) -> None:
        _override_upstream(app, test_settings, lambda r: httpx.Response(500, text="down"))

        response = await async_client.post(f"/api/v1/tenants/{tenant.id}/webhooks/register")

        assert response.status_code == 200
        assert set(response.json()["topics"].values()) == {"failed"}

    @pytest.mark.asyncio
    async def test_tenant_without_token(
        self, async_client: AsyncClient, session: AsyncSession
    ) -> None:
        session.add(Tenant(id="tenant-empty", name="empty", shop_domain="empty", access_token=None))
        await session.commit()

        response = await async_client.post("/api/v1/tenants/tenant-empty/webhooks/register")

        assert response.status_code == 400

"""Pytest configuration and fixtures."""

from collections.abc import AsyncGenerator, Callable
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.connection import get_session, get_session_factory
from commerce_sync.infrastructure.database.models import Base, Tenant
from commerce_sync.main import create_app
from commerce_sync.services.commerce_client import CommerceClient, TenantContext

Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture
def test_settings() -> Settings:
    """Get test settings with overrides."""
    return Settings(
        app_env="test",
        debug=True,
        webhook_secret="test-webhook-secret",
        public_base_url="https://sync.example.com",
        commerce_api_version="2023-10",
        commerce_page_size=2,
        commerce_max_pages=20,
        commerce_page_delay_seconds=0.0,
        commerce_retry_after_fallback_seconds=0.0,
        commerce_max_rate_limit_retries=3,
        commerce_rate_limit_budget_seconds=60.0,
        fleet_sync_concurrency=1,
        webhook_topics=["orders/create", "customers/create"],
    )


# =============================================================================
# Database
# =============================================================================


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite database with the full schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as s:
        yield s


@pytest_asyncio.fixture
async def tenant(session: AsyncSession) -> Tenant:
    """A connected tenant with a credential."""
    tenant = Tenant(
        id="tenant-alpha",
        name="alpha",
        shop_domain="alpha.myshopify.com",
        access_token="shpat_alpha",
    )
    session.add(tenant)
    await session.commit()
    return tenant


@pytest_asyncio.fixture
async def other_tenant(session: AsyncSession) -> Tenant:
    tenant = Tenant(
        id="tenant-beta",
        name="beta",
        shop_domain="beta.myshopify.com",
        access_token="shpat_beta",
    )
    session.add(tenant)
    await session.commit()
    return tenant


# =============================================================================
# Upstream API
# =============================================================================


@pytest.fixture
def make_client(test_settings: Settings) -> Callable[..., CommerceClient]:
    """Build a CommerceClient whose HTTP traffic goes to ``handler``."""

    def factory(
        handler: Handler,
        tenant_id: str = "tenant-alpha",
        shop_domain: str = "alpha.myshopify.com",
        settings: Settings | None = None,
    ) -> CommerceClient:
        settings = settings or test_settings
        context = TenantContext(
            tenant_id=tenant_id,
            shop_domain=shop_domain,
            access_token="shpat_test",
            api_version=settings.commerce_api_version,
        )
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return CommerceClient(context, settings, http_client=http_client)

    return factory


# =============================================================================
# Application
# =============================================================================


@pytest.fixture
def app(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> Any:
    """Create test application bound to the in-memory database."""

    def get_test_settings() -> Settings:
        return test_settings

    def get_test_session_factory() -> async_sessionmaker[AsyncSession]:
        return session_factory

    async def get_test_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as s:
            try:
                yield s
                await s.commit()
            except Exception:
                await s.rollback()
                raise

    app = create_app()
    app.dependency_overrides[get_settings] = get_test_settings
    app.dependency_overrides[get_session_factory] = get_test_session_factory
    app.dependency_overrides[get_session] = get_test_session
    return app


@pytest_asyncio.fixture
async def async_client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    """Create asynchronous test client."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# =============================================================================
# Sample payloads
# =============================================================================


@pytest.fixture
def sample_customer() -> dict:
    return {
        "id": 7001,
        "email": "ada@example.com",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "total_spent": "150.00",
        "orders_count": 3,
    }


@pytest.fixture
def sample_product() -> dict:
    return {
        "id": 9001,
        "title": "Analytical Engine",
        "variants": [{"id": 1, "price": "49.50"}, {"id": 2, "price": "99.00"}],
    }


@pytest.fixture
def sample_order() -> dict:
    return {
        "id": 5001,
        "order_number": 1001,
        "total_price": "59.99",
        "created_at": "2026-10-01T12:30:00-04:00",
        "customer": {
            "id": 7002,
            "email": "grace@example.com",
            "first_name": "Grace",
            "last_name": "Hopper",
        },
        "line_items": [
            {"id": 1, "product_id": 9101, "title": "Compiler", "quantity": 2, "price": "20.00"},
            {"id": 2, "product_id": 9102, "title": "Debugger", "quantity": 1, "price": "19.99"},
        ],
    }

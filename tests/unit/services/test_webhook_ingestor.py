"""Unit tests for webhook verification and dispatch."""

import asyncio
import base64
import hashlib
import hmac
from decimal import Decimal

import orjson
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commerce_sync.infrastructure.database.models import (
    AppliedOrder,
    Customer,
    Event,
    Order,
    Product,
    Tenant,
)
from commerce_sync.services.reconciliation import ReconcileAction, TenantLocks
from commerce_sync.services.webhook_ingestor import (
    REJECT_INVALID_SIGNATURE,
    REJECT_MALFORMED_PAYLOAD,
    REJECT_MISSING_SIGNATURE,
    REJECT_MISSING_TOPIC,
    WebhookIngestor,
    compute_signature,
    verify_signature,
)

SECRET = "test-webhook-secret"


def _signed(payload: dict) -> tuple[bytes, str]:
    body = orjson.dumps(payload)
    return body, compute_signature(SECRET, body)


async def _count(session: AsyncSession, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


class TestSignature:
    """Tests for HMAC verification."""

    def test_matches_reference_digest(self) -> None:
        body = b'{"id": 1}'
        expected = base64.b64encode(
            hmac.new(SECRET.encode(), body, hashlib.sha256).digest()
        ).decode()
        assert compute_signature(SECRET, body) == expected

    def test_valid_signature(self) -> None:
        body, signature = _signed({"id": 1})
        assert verify_signature(SECRET, body, signature)

    def test_reserialized_body_fails(self) -> None:
        body, signature = _signed({"id": 1, "email": "a@b.c"})
        reformatted = b'{"id": 1, "email": "a@b.c"}'
        assert body != reformatted
        assert not verify_signature(SECRET, reformatted, signature)

    def test_wrong_secret(self) -> None:
        body = b"{}"
        assert not verify_signature(SECRET, body, compute_signature("other", body))

    def test_missing_signature(self) -> None:
        assert not verify_signature(SECRET, b"{}", None)
        assert not verify_signature(SECRET, b"{}", "")


class TestIngest:
    """Tests for end-to-end ingestion against the store."""

    @pytest.mark.asyncio
    async def test_rejections_leave_store_untouched(
        self, session: AsyncSession, tenant: Tenant, sample_order: dict
    ) -> None:
        ingestor = WebhookIngestor(session, SECRET)
        body, signature = _signed(sample_order)

        missing_topic = await ingestor.ingest(tenant, None, body, signature)
        missing_signature = await ingestor.ingest(tenant, "orders/create", body, None)
        tampered = await ingestor.ingest(tenant, "orders/create", body + b" ", signature)

        assert missing_topic.reason == REJECT_MISSING_TOPIC
        assert missing_signature.reason == REJECT_MISSING_SIGNATURE
        assert tampered.reason == REJECT_INVALID_SIGNATURE
        assert not any(r.accepted for r in (missing_topic, missing_signature, tampered))
        assert await _count(session, Order) == 0
        assert await _count(session, Customer) == 0

    @pytest.mark.asyncio
    async def test_malformed_json(self, session: AsyncSession, tenant: Tenant) -> None:
        ingestor = WebhookIngestor(session, SECRET)
        body = b"{not json"
        result = await ingestor.ingest(
            tenant, "orders/create", body, compute_signature(SECRET, body)
        )

        assert not result.accepted
        assert result.reason == REJECT_MALFORMED_PAYLOAD

    @pytest.mark.asyncio
    async def test_order_webhook_applied(
        self, session: AsyncSession, tenant: Tenant, sample_order: dict
    ) -> None:
        ingestor = WebhookIngestor(session, SECRET)
        body, signature = _signed(sample_order)

        result = await ingestor.ingest(tenant, "orders/create", body, signature)

        assert result.accepted
        assert result.action == ReconcileAction.CREATED
        assert await _count(session, Order) == 1

    @pytest.mark.asyncio
    async def test_order_then_customer_out_of_order(
        self, session: AsyncSession, tenant: Tenant, sample_order: dict
    ) -> None:
        ingestor = WebhookIngestor(session, SECRET)
        order_body, order_sig = _signed(sample_order)
        await ingestor.ingest(tenant, "orders/paid", order_body, order_sig)

        customer_body, customer_sig = _signed(
            {"id": 7002, "email": "grace@navy.example", "total_spent": "0.00", "orders_count": 0}
        )
        result = await ingestor.ingest(tenant, "customers/update", customer_body, customer_sig)

        assert result.action == ReconcileAction.UPDATED
        customer = (await session.execute(select(Customer))).scalar_one()
        await session.refresh(customer)
        assert customer.email == "grace@navy.example"
        assert customer.total_spent == Decimal("59.99")
        assert customer.orders_count == 1

    @pytest.mark.asyncio
    async def test_product_webhook(
        self, session: AsyncSession, tenant: Tenant, sample_product: dict
    ) -> None:
        ingestor = WebhookIngestor(session, SECRET)
        body, signature = _signed(sample_product)

        result = await ingestor.ingest(tenant, "products/update", body, signature)

        assert result.action == ReconcileAction.CREATED
        assert await _count(session, Product) == 1

    @pytest.mark.asyncio
    async def test_cart_webhook_records_event(self, session: AsyncSession, tenant: Tenant) -> None:
        ingestor = WebhookIngestor(session, SECRET)
        body, signature = _signed(
            {"id": 44, "abandoned_checkout_url": "https://alpha.example/checkouts/44"}
        )

        result = await ingestor.ingest(tenant, "checkouts/update", body, signature)

        assert result.action == ReconcileAction.CREATED
        assert await _count(session, Event) == 1

    @pytest.mark.asyncio
    async def test_unknown_topic_accepted_without_changes(
        self, session: AsyncSession, tenant: Tenant
    ) -> None:
        ingestor = WebhookIngestor(session, SECRET)
        body, signature = _signed({"id": 1})

        result = await ingestor.ingest(tenant, "app/uninstalled", body, signature)

        assert result.accepted
        assert result.action is None
        assert await _count(session, Customer) == 0
        assert await _count(session, Event) == 0


class TestConcurrentDeliveries:
    """Tests for deliveries racing on separate sessions."""

    @pytest.mark.asyncio
    async def test_concurrent_redeliveries_count_order_once(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        tenant: Tenant,
        sample_order: dict,
    ) -> None:
        locks = TenantLocks()
        body, signature = _signed(sample_order)

        async def deliver():
            async with session_factory() as delivery_session:
                ingestor = WebhookIngestor(delivery_session, SECRET, locks)
                return await ingestor.ingest(tenant, "orders/create", body, signature)

        results = await asyncio.gather(deliver(), deliver(), deliver())

        assert all(result.accepted for result in results)
        assert [result.action for result in results].count(ReconcileAction.CREATED) == 1
        customer = (await session.execute(select(Customer))).scalar_one()
        assert customer.total_spent == Decimal("59.99")
        assert customer.orders_count == 1
        assert await _count(session, AppliedOrder) == 1
        assert await _count(session, Order) == 1

    @pytest.mark.asyncio
    async def test_concurrent_order_and_customer_create_one_customer(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        tenant: Tenant,
        sample_order: dict,
    ) -> None:
        locks = TenantLocks()
        order_body, order_sig = _signed(sample_order)
        customer_body, customer_sig = _signed(
            {"id": 7002, "email": "grace@navy.example", "total_spent": "0.00", "orders_count": 0}
        )

        async def deliver(topic: str, body: bytes, signature: str):
            async with session_factory() as delivery_session:
                ingestor = WebhookIngestor(delivery_session, SECRET, locks)
                return await ingestor.ingest(tenant, topic, body, signature)

        results = await asyncio.gather(
            deliver("orders/create", order_body, order_sig),
            deliver("customers/create", customer_body, customer_sig),
        )

        assert all(result.accepted for result in results)
        assert await _count(session, Customer) == 1
        customer = (await session.execute(select(Customer))).scalar_one()
        assert customer.email == "grace@navy.example"
        assert customer.orders_count == 1

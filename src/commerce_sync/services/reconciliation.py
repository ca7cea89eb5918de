"""Reconciliation engine: how an upstream record becomes a local record.

Both the scheduled sync and the webhook path call into this module, so there is
exactly one implementation of "apply this external record". All lookups are
keyed by ``(external_id, tenant_id)``; mutable fields such as email or title are
never used to match records.

Customer aggregates have two update modes that must not be mixed:

* a customer *listing* sync overwrites ``total_spent``/``orders_count`` with the
  upstream-reported values;
* an *order* application increments them, at most once per order identity,
  guarded by an ``AppliedOrder`` marker row. Orders the listing snapshot
  already counted get the marker without the increment.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from functools import partial
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.infrastructure.database.models import (
    AppliedOrder,
    Customer,
    Event,
    Order,
    OrderItem,
    Product,
)
from shared.constants import CUSTOMERS, EVENT_CART_ABANDONED, ORDERS, PRODUCTS

logger = structlog.get_logger()


class ReconcileAction(str, Enum):
    """Outcome of reconciling one record."""

    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass
class ReconcileResult:
    entity: Any
    action: ReconcileAction
    reason: str | None = None


@dataclass
class BatchSummary:
    """Counts for one resource batch."""

    resource: str
    received: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    # External ids that were reconciled successfully
    external_ids: set[str] = field(default_factory=set, repr=False)

    def record(self, result: ReconcileResult, external_id: str | None) -> None:
        if result.action == ReconcileAction.CREATED:
            self.created += 1
        elif result.action == ReconcileAction.UPDATED:
            self.updated += 1
        else:
            self.skipped += 1
            return
        if external_id is not None:
            self.external_ids.add(external_id)

    @property
    def synced(self) -> int:
        return self.created + self.updated

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("external_ids")
        data["synced"] = self.synced
        return data


class TenantLocks:
    """Per-tenant mutual exclusion for order application within one process."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def for_tenant(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock


# =============================================================================
# Payload coercion
# =============================================================================


def external_id_of(value: Any) -> str | None:
    """Normalize an upstream id (int or str) to the stored string form."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def _decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp into a naive UTC datetime for the DB."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _customer_fields(raw: dict[str, Any]) -> dict[str, Any]:
    mapping = {"email": "email", "first_name": "first_name", "last_name": "last_name"}
    return {column: raw[key] for key, column in mapping.items() if key in raw}


def _covered_by_snapshot(
    raw: dict[str, Any],
    refreshed_customers: set[str] | None,
    snapshot_at: datetime | None,
) -> bool:
    """Whether the customer's listed upstream totals already include this order."""
    if refreshed_customers is None:
        return False
    customer = raw.get("customer")
    customer_id = external_id_of(customer.get("id")) if isinstance(customer, dict) else None
    if customer_id not in refreshed_customers:
        return False
    if snapshot_at is None:
        return True
    # Undated orders are assumed to predate the listing
    created_at = _datetime(raw.get("created_at"))
    return created_at is None or created_at <= snapshot_at


# =============================================================================
# Engine
# =============================================================================


class ReconciliationEngine:
    """Idempotent create-or-update of upstream records for one session."""

    def __init__(self, session: AsyncSession, locks: TenantLocks | None = None):
        self.session = session
        self.locks = locks or TenantLocks()

    async def _find(self, model: Any, tenant_id: str, external_id: str) -> Any | None:
        result = await self.session.execute(
            select(model).where(model.tenant_id == tenant_id, model.external_id == external_id)
        )
        return result.scalar_one_or_none()

    # -------------------------------------------------------------------------
    # Customers
    # -------------------------------------------------------------------------

    async def reconcile_customer(
        self,
        tenant_id: str,
        raw: dict[str, Any],
        overwrite_aggregates: bool = False,
    ) -> ReconcileResult:
        """Upsert a customer.

        ``overwrite_aggregates`` is only set by the customer listing sync, where
        the upstream-reported totals are authoritative.
        """
        external_id = external_id_of(raw.get("id"))
        if external_id is None:
            return ReconcileResult(None, ReconcileAction.SKIPPED, "missing customer id")

        fields = _customer_fields(raw)
        if overwrite_aggregates:
            fields["total_spent"] = _decimal(raw.get("total_spent"))
            fields["orders_count"] = _int(raw.get("orders_count"))

        customer = await self._find(Customer, tenant_id, external_id)
        if customer is None:
            customer = Customer(
                external_id=external_id,
                tenant_id=tenant_id,
                total_spent=Decimal("0"),
                orders_count=0,
            )
            for key, value in fields.items():
                setattr(customer, key, value)
            self.session.add(customer)
            action = ReconcileAction.CREATED
        else:
            for key, value in fields.items():
                setattr(customer, key, value)
            action = ReconcileAction.UPDATED

        await self.session.flush()
        logger.debug(
            "Reconciled customer",
            tenant_id=tenant_id,
            external_id=external_id,
            action=action.value,
        )
        return ReconcileResult(customer, action)

    async def _resolve_customer(
        self, tenant_id: str, payload: Any
    ) -> Customer | None:
        """Find the referenced customer, creating a stub from embedded data if unknown."""
        if not isinstance(payload, dict):
            return None
        external_id = external_id_of(payload.get("id"))
        if external_id is None:
            return None

        customer = await self._find(Customer, tenant_id, external_id)
        if customer is not None:
            return customer

        customer = Customer(
            external_id=external_id,
            tenant_id=tenant_id,
            total_spent=Decimal("0"),
            orders_count=0,
            **_customer_fields(payload),
        )
        self.session.add(customer)
        await self.session.flush()
        logger.info("Created stub customer", tenant_id=tenant_id, external_id=external_id)
        return customer

    # -------------------------------------------------------------------------
    # Products
    # -------------------------------------------------------------------------

    async def reconcile_product(self, tenant_id: str, raw: dict[str, Any]) -> ReconcileResult:
        """Upsert a product; its price comes from the first variant."""
        external_id = external_id_of(raw.get("id"))
        if external_id is None:
            return ReconcileResult(None, ReconcileAction.SKIPPED, "missing product id")

        fields: dict[str, Any] = {}
        if "title" in raw:
            fields["title"] = raw["title"]
        variants = raw.get("variants") or []
        if variants and isinstance(variants[0], dict):
            fields["price"] = _decimal(variants[0].get("price"))

        product = await self._find(Product, tenant_id, external_id)
        if product is None:
            product = Product(external_id=external_id, tenant_id=tenant_id, price=Decimal("0"))
            for key, value in fields.items():
                setattr(product, key, value)
            self.session.add(product)
            action = ReconcileAction.CREATED
        else:
            for key, value in fields.items():
                setattr(product, key, value)
            action = ReconcileAction.UPDATED

        await self.session.flush()
        return ReconcileResult(product, action)

    async def _resolve_product(self, tenant_id: str, line_item: dict[str, Any]) -> Product | None:
        external_id = external_id_of(line_item.get("product_id"))
        if external_id is None:
            return None

        product = await self._find(Product, tenant_id, external_id)
        if product is not None:
            return product

        product = Product(
            external_id=external_id,
            tenant_id=tenant_id,
            title=line_item.get("title"),
            price=_decimal(line_item.get("price")),
        )
        self.session.add(product)
        await self.session.flush()
        logger.info("Created stub product", tenant_id=tenant_id, external_id=external_id)
        return product

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    async def reconcile_order(
        self,
        tenant_id: str,
        raw: dict[str, Any],
        apply_aggregates: bool = True,
    ) -> ReconcileResult:
        """Upsert an order with its line items and credit its customer once.

        Orders whose customer cannot be resolved are skipped without writing
        anything. With ``apply_aggregates=False`` the order is still marked as
        applied but the customer's totals are left alone.
        """
        external_id = external_id_of(raw.get("id"))
        if external_id is None:
            return ReconcileResult(None, ReconcileAction.SKIPPED, "missing order id")

        customer = await self._resolve_customer(tenant_id, raw.get("customer"))
        if customer is None:
            logger.warning(
                "Skipping order without resolvable customer",
                tenant_id=tenant_id,
                external_id=external_id,
            )
            return ReconcileResult(None, ReconcileAction.SKIPPED, "no resolvable customer")

        order_number = raw.get("order_number") or raw.get("name")
        fields = {
            "order_number": str(order_number) if order_number is not None else None,
            "total_price": _decimal(raw.get("total_price")),
            "order_date": _datetime(raw.get("created_at")),
            "customer_id": customer.id,
        }

        order = await self._find(Order, tenant_id, external_id)
        if order is None:
            order = Order(external_id=external_id, tenant_id=tenant_id, **fields)
            self.session.add(order)
            action = ReconcileAction.CREATED
        else:
            for key, value in fields.items():
                setattr(order, key, value)
            action = ReconcileAction.UPDATED
        await self.session.flush()

        for line_item in raw.get("line_items") or []:
            if isinstance(line_item, dict):
                await self._reconcile_line_item(tenant_id, order, line_item)

        applied = await self._apply_to_customer(tenant_id, order, customer, apply_aggregates)
        logger.info(
            "Reconciled order",
            tenant_id=tenant_id,
            external_id=external_id,
            action=action.value,
            aggregates_applied=applied,
        )
        return ReconcileResult(order, action)

    async def _reconcile_line_item(
        self, tenant_id: str, order: Order, line_item: dict[str, Any]
    ) -> OrderItem | None:
        line_item_id = external_id_of(line_item.get("id"))
        product = None
        if line_item_id is not None:
            product = await self._resolve_product(tenant_id, line_item)
        if product is None:
            logger.debug(
                "Skipping line item without id or product",
                tenant_id=tenant_id,
                order_id=order.id,
                line_item_id=line_item_id,
            )
            return None

        result = await self.session.execute(
            select(OrderItem).where(
                OrderItem.order_id == order.id,
                OrderItem.external_line_item_id == line_item_id,
            )
        )
        item = result.scalar_one_or_none()
        quantity = _int(line_item.get("quantity"))
        price = _decimal(line_item.get("price"))

        if item is None:
            item = OrderItem(
                order_id=order.id,
                external_line_item_id=line_item_id,
                product_id=product.id,
                quantity=quantity,
                price=price,
            )
            self.session.add(item)
        else:
            item.product_id = product.id
            item.quantity = quantity
            item.price = price
        await self.session.flush()
        return item

    async def _apply_to_customer(
        self,
        tenant_id: str,
        order: Order,
        customer: Customer,
        apply_aggregates: bool,
    ) -> bool:
        """Check-and-set the applied marker; increment aggregates on first application."""
        marker = await self.session.get(AppliedOrder, (tenant_id, order.id))
        if marker is not None:
            return False

        self.session.add(
            AppliedOrder(
                tenant_id=tenant_id,
                order_id=order.id,
                customer_id=customer.id,
                amount=order.total_price,
            )
        )
        # A concurrent application of the same order fails here on the primary key
        await self.session.flush()

        if not apply_aggregates:
            return False

        await self.session.execute(
            update(Customer)
            .where(Customer.id == customer.id, Customer.tenant_id == tenant_id)
            .values(
                total_spent=Customer.total_spent + order.total_price,
                orders_count=Customer.orders_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(customer)
        return True

    async def run_locked(
        self,
        tenant_id: str,
        operation: Callable[[], Awaitable[ReconcileResult]],
    ) -> ReconcileResult:
        """Run one reconciliation and commit it while holding the tenant's lock.

        All writes for one tenant, webhook or listing, are serialized here.
        """
        async with self.locks.for_tenant(tenant_id):
            try:
                result = await operation()
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                raise
        return result

    async def apply_order(
        self,
        tenant_id: str,
        raw: dict[str, Any],
        apply_aggregates: bool = True,
    ) -> ReconcileResult:
        """Reconcile and commit one order while holding the tenant's lock."""
        return await self.run_locked(
            tenant_id, partial(self.reconcile_order, tenant_id, raw, apply_aggregates)
        )

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def record_cart_abandonment(
        self, tenant_id: str, raw: dict[str, Any]
    ) -> ReconcileResult:
        """Insert a cart-abandonment event; one row per delivery, no dedup."""
        if not raw.get("abandoned_checkout_url"):
            return ReconcileResult(None, ReconcileAction.SKIPPED, "cart not abandoned")

        customer = await self._resolve_customer(tenant_id, raw.get("customer"))
        event = Event(
            tenant_id=tenant_id,
            customer_id=customer.id if customer else None,
            type=EVENT_CART_ABANDONED,
            data={
                "cart": raw,
                "abandoned_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        self.session.add(event)
        await self.session.flush()
        logger.info(
            "Recorded cart abandonment",
            tenant_id=tenant_id,
            customer_id=event.customer_id,
        )
        return ReconcileResult(event, ReconcileAction.CREATED)

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    async def reconcile_batch(
        self,
        tenant_id: str,
        resource: str,
        records: list[dict[str, Any]],
        refreshed_customers: set[str] | None = None,
        snapshot_at: datetime | None = None,
    ) -> BatchSummary:
        """Reconcile a listing batch, committing per record.

        A failing record is rolled back and logged; the rest of the batch still
        runs. For orders, customers in ``refreshed_customers`` already carry
        upstream totals as of ``snapshot_at`` (naive UTC, taken when the
        customer listing started). Their orders created up to that instant are
        marked applied without incrementing; later orders increment normally.
        """
        if resource not in (CUSTOMERS, PRODUCTS, ORDERS):
            raise ValueError(f"Unsupported resource: {resource}")

        summary = BatchSummary(resource=resource, received=len(records))
        for raw in records:
            external_id = external_id_of(raw.get("id"))
            if resource == CUSTOMERS:
                operation = partial(
                    self.reconcile_customer, tenant_id, raw, overwrite_aggregates=True
                )
            elif resource == PRODUCTS:
                operation = partial(self.reconcile_product, tenant_id, raw)
            else:
                apply_aggregates = not _covered_by_snapshot(raw, refreshed_customers, snapshot_at)
                operation = partial(self.reconcile_order, tenant_id, raw, apply_aggregates)
            try:
                result = await self.run_locked(tenant_id, operation)
            except Exception as e:
                summary.errors += 1
                logger.error(
                    "Error reconciling record",
                    tenant_id=tenant_id,
                    resource=resource,
                    external_id=external_id,
                    error=str(e),
                )
                continue
            summary.record(result, external_id)

        logger.info("Batch reconciled", tenant_id=tenant_id, **summary.to_dict())
        return summary

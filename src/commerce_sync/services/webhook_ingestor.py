"""Webhook ingestion: verify, decode and dispatch upstream events.

Deliveries are at-least-once and unordered across topics. Every topic is
routed into :class:`ReconciliationEngine`, the same code the batch sync uses,
so a webhook and a full resync converge on the same local state.
"""

import base64
import hashlib
import hmac
from dataclasses import dataclass
from functools import partial
from typing import Any

import orjson
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.infrastructure.database.models import Tenant
from commerce_sync.services.reconciliation import (
    ReconcileAction,
    ReconciliationEngine,
    TenantLocks,
)
from shared.constants import CART_TOPICS, CUSTOMER_TOPICS, ORDER_TOPICS, PRODUCT_TOPICS

logger = structlog.get_logger()

REJECT_MISSING_TOPIC = "missing_topic"
REJECT_MISSING_SIGNATURE = "missing_signature"
REJECT_INVALID_SIGNATURE = "invalid_signature"
REJECT_MALFORMED_PAYLOAD = "malformed_payload"

AUTH_FAILURES = {REJECT_MISSING_TOPIC, REJECT_MISSING_SIGNATURE, REJECT_INVALID_SIGNATURE}


def compute_signature(secret: str, raw_body: bytes) -> str:
    """Base64-encoded HMAC-SHA256 of the raw request body."""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(secret: str, raw_body: bytes, signature: str | None) -> bool:
    """Compare the header against a digest of the exact bytes received."""
    if not signature:
        return False
    expected = compute_signature(secret, raw_body)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8"))


@dataclass
class IngestResult:
    accepted: bool
    reason: str | None = None
    action: ReconcileAction | None = None


class WebhookIngestor:
    """Applies one verified webhook delivery to the local store."""

    def __init__(
        self,
        session: AsyncSession,
        secret: str,
        locks: TenantLocks | None = None,
    ):
        self.session = session
        self.secret = secret
        self.engine = ReconciliationEngine(session, locks)

    def authenticate(
        self, topic: str | None, raw_body: bytes, signature: str | None
    ) -> str | None:
        """Return a rejection reason, or ``None`` when the delivery is authentic."""
        if not topic:
            return REJECT_MISSING_TOPIC
        if not signature:
            return REJECT_MISSING_SIGNATURE
        if not verify_signature(self.secret, raw_body, signature):
            return REJECT_INVALID_SIGNATURE
        return None

    async def ingest(
        self,
        tenant: Tenant,
        topic: str | None,
        raw_body: bytes,
        signature: str | None,
    ) -> IngestResult:
        rejection = self.authenticate(topic, raw_body, signature)
        if rejection:
            logger.warning("Rejected webhook", tenant_id=tenant.id, topic=topic, reason=rejection)
            return IngestResult(accepted=False, reason=rejection)

        try:
            payload = orjson.loads(raw_body)
        except orjson.JSONDecodeError:
            logger.warning("Malformed webhook payload", tenant_id=tenant.id, topic=topic)
            return IngestResult(accepted=False, reason=REJECT_MALFORMED_PAYLOAD)
        if not isinstance(payload, dict):
            return IngestResult(accepted=False, reason=REJECT_MALFORMED_PAYLOAD)

        action = await self.dispatch(tenant.id, topic, payload)
        return IngestResult(accepted=True, action=action)

    async def dispatch(
        self, tenant_id: str, topic: str, payload: dict[str, Any]
    ) -> ReconcileAction | None:
        """Route a decoded payload by topic. Unknown topics change nothing."""
        if topic in ORDER_TOPICS:
            operation = partial(self.engine.reconcile_order, tenant_id, payload)
        elif topic in CUSTOMER_TOPICS:
            operation = partial(self.engine.reconcile_customer, tenant_id, payload)
        elif topic in PRODUCT_TOPICS:
            operation = partial(self.engine.reconcile_product, tenant_id, payload)
        elif topic in CART_TOPICS:
            operation = partial(self.engine.record_cart_abandonment, tenant_id, payload)
        else:
            logger.info("Unhandled webhook topic", tenant_id=tenant_id, topic=topic)
            return None

        result = await self.engine.run_locked(tenant_id, operation)

        logger.info(
            "Webhook applied",
            tenant_id=tenant_id,
            topic=topic,
            action=result.action.value,
            reason=result.reason,
        )
        return result.action

"""Registration of webhook subscriptions with the upstream store."""

from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.config import Settings
from commerce_sync.infrastructure.database.models import Tenant, WebhookRegistration
from commerce_sync.services.commerce_client import CommerceAPIError, CommerceClient
from commerce_sync.services.reconciliation import external_id_of
from shared.constants import WEBHOOKS

logger = structlog.get_logger()


def callback_address(settings: Settings, tenant_id: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}/api/v1/webhook/{tenant_id}"


class WebhookRegistrar:
    """Subscribes a tenant to the configured topics and records the result."""

    def __init__(self, session: AsyncSession, client: CommerceClient, settings: Settings):
        self.session = session
        self.client = client
        self.settings = settings

    async def register_all(self, tenant: Tenant) -> dict[str, str]:
        """Register every configured topic; returns ``{topic: outcome}``.

        Outcomes are ``registered``, ``already_registered`` (upstream answered
        422) or ``failed``. A failing topic does not stop the others.
        """
        address = callback_address(self.settings, tenant.id)
        outcomes: dict[str, str] = {}

        for topic in self.settings.webhook_topics:
            try:
                response = await self.client.request(
                    f"{WEBHOOKS}.json",
                    method="POST",
                    body={"webhook": {"topic": topic, "address": address, "format": "json"}},
                )
                webhook = response.json().get("webhook") or {}
                outcome = "registered"
            except CommerceAPIError as e:
                if e.status_code != 422:
                    logger.error(
                        "Webhook registration failed",
                        tenant_id=tenant.id,
                        topic=topic,
                        status_code=e.status_code,
                        error=str(e),
                    )
                    outcomes[topic] = "failed"
                    continue
                webhook = {}
                outcome = "already_registered"

            await self._upsert_registration(tenant.id, topic, address, webhook)
            outcomes[topic] = outcome

        await self.session.commit()
        logger.info("Webhook registration completed", tenant_id=tenant.id, outcomes=outcomes)
        return outcomes

    async def _upsert_registration(
        self,
        tenant_id: str,
        topic: str,
        address: str,
        webhook: dict[str, Any],
    ) -> WebhookRegistration:
        result = await self.session.execute(
            select(WebhookRegistration).where(
                WebhookRegistration.tenant_id == tenant_id,
                WebhookRegistration.topic == topic,
            )
        )
        registration = result.scalar_one_or_none()
        external_id = external_id_of(webhook.get("id"))

        if registration is None:
            registration = WebhookRegistration(
                tenant_id=tenant_id,
                topic=topic,
                address=address,
                external_id=external_id,
            )
            self.session.add(registration)
        else:
            registration.address = address
            if external_id is not None:
                registration.external_id = external_id
        await self.session.flush()
        return registration

"""Rate-limited client for the upstream commerce Admin API.

One client serves exactly one tenant. Throttled requests (HTTP 429) are retried
in a bounded loop that honours the server's ``Retry-After`` hint; every other
failure is raised as a :class:`CommerceAPIError` subclass so callers can decide
whether it is transient or terminal.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

import httpx
import structlog

from commerce_sync.config import Settings
from commerce_sync.infrastructure.database.models import Tenant
from shared.constants import ACCESS_TOKEN_HEADER

logger = structlog.get_logger()


# =============================================================================
# Errors
# =============================================================================


class CommerceAPIError(Exception):
    """Non-success response (or no response) from the upstream API."""

    def __init__(self, message: str, status_code: int | None = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def transient(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


class PermissionDenied(CommerceAPIError):
    """The tenant's credential lacks the scope for this resource (403)."""


class RateLimitExceeded(CommerceAPIError):
    """Still throttled after the retry budget was spent."""


class UpstreamTimeout(CommerceAPIError):
    """Timeout or transport failure before a response arrived."""


# =============================================================================
# Tenant context
# =============================================================================


@dataclass
class TenantContext:
    """Per-tenant upstream configuration, computed once per run and passed down.

    ``denied_resources`` remembers resources that answered 403 so later steps in
    the same run skip them. It lives on the context, never in module state, so
    one tenant's permissions cannot leak into another tenant's run.
    """

    tenant_id: str
    shop_domain: str
    access_token: str
    api_version: str
    denied_resources: set[str] = field(default_factory=set)

    @classmethod
    def from_tenant(cls, tenant: Tenant, settings: Settings) -> "TenantContext":
        return cls(
            tenant_id=tenant.id,
            shop_domain=normalize_shop_domain(tenant.shop_domain),
            access_token=tenant.access_token or "",
            api_version=settings.commerce_api_version,
        )

    @property
    def base_url(self) -> str:
        return f"https://{self.shop_domain}/admin/api/{self.api_version}"


def normalize_shop_domain(domain: str) -> str:
    """Accept ``store``, ``store.myshopify.com`` or a full URL."""
    domain = domain.strip()
    if "://" in domain:
        domain = urlsplit(domain).netloc
    domain = domain.rstrip("/")
    if "." not in domain:
        domain = f"{domain}.myshopify.com"
    return domain


def normalize_endpoint(endpoint: str) -> str:
    """Strip leading slashes and make sure the path carries the ``.json`` suffix."""
    path, sep, query = endpoint.lstrip("/").partition("?")
    path = path.rstrip("/")
    if not path.endswith(".json"):
        path = f"{path}.json"
    return f"{path}{sep}{query}"


# =============================================================================
# Client
# =============================================================================


class CommerceClient:
    """Authenticated HTTP access to one tenant's upstream store."""

    def __init__(
        self,
        context: TenantContext,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.context = context
        self.settings = settings
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=settings.commerce_api_timeout)

    async def __aenter__(self) -> "CommerceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def build_url(self, endpoint: str) -> str:
        """Resolve an endpoint against the tenant's versioned API root.

        Absolute URLs (such as ``rel="next"`` links) are returned unchanged.
        """
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.context.base_url}/{normalize_endpoint(endpoint)}"

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Issue one request, retrying while the upstream throttles us."""
        url = self.build_url(endpoint)
        headers = {
            ACCESS_TOKEN_HEADER: self.context.access_token,
            "Content-Type": "application/json",
        }
        max_retries = self.settings.commerce_max_rate_limit_retries
        budget = self.settings.commerce_rate_limit_budget_seconds
        waited = 0.0
        attempt = 0
        started = time.monotonic()

        while True:
            try:
                response = await self._http.request(method, url, headers=headers, json=body)
            except httpx.TimeoutException as e:
                raise UpstreamTimeout(f"Timed out calling {url}") from e
            except httpx.TransportError as e:
                raise UpstreamTimeout(f"Transport error calling {url}: {e}") from e

            if response.status_code != 429:
                break

            delay = self._retry_delay(response)
            elapsed = max(waited, time.monotonic() - started)
            if attempt >= max_retries or elapsed + delay > budget:
                logger.error(
                    "Rate limit retry budget exhausted",
                    tenant_id=self.context.tenant_id,
                    url=url,
                    attempts=attempt + 1,
                )
                raise RateLimitExceeded(
                    f"Still throttled after {attempt + 1} attempts",
                    status_code=429,
                    body=_error_body(response),
                )

            attempt += 1
            waited += delay
            logger.warning(
                "Rate limited by upstream, backing off",
                tenant_id=self.context.tenant_id,
                url=url,
                delay=delay,
                attempt=attempt,
            )
            await asyncio.sleep(delay)

        if response.is_success:
            return response

        error_body = _error_body(response)
        if response.status_code == 403:
            raise PermissionDenied(
                f"Permission denied for {url}", status_code=403, body=error_body
            )
        raise CommerceAPIError(
            f"Upstream returned {response.status_code} for {method} {url}",
            status_code=response.status_code,
            body=error_body,
        )

    async def get_json(self, endpoint: str) -> dict[str, Any]:
        response = await self.request(endpoint)
        return response.json()

    def _retry_delay(self, response: httpx.Response) -> float:
        raw = response.headers.get("Retry-After")
        if raw:
            try:
                return max(float(raw), 0.0)
            except ValueError:
                pass
        return self.settings.commerce_retry_after_fallback_seconds


def _error_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text

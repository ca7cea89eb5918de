"""Pagination walker for upstream listing endpoints."""

import asyncio
import re
from typing import Any

import httpx
import structlog

from commerce_sync.config import Settings
from commerce_sync.services.commerce_client import (
    CommerceAPIError,
    CommerceClient,
    PermissionDenied,
)

logger = structlog.get_logger()

_LINK_PART = re.compile(r"<(?P<url>[^>]*)>(?P<params>[^,]*)")
_REL_NEXT = re.compile(r"""rel\s*=\s*"?next"?""", re.IGNORECASE)


def parse_next_link(header: str | None) -> str | None:
    """Return the URL marked ``rel="next"`` in a ``Link`` header, verbatim."""
    if not header:
        return None
    for match in _LINK_PART.finditer(header):
        if _REL_NEXT.search(match.group("params")):
            return match.group("url").strip() or None
    return None


class PaginationWalker:
    """Drives a :class:`CommerceClient` across every page of a listing.

    Cursor links win when the upstream sends a ``Link`` header; otherwise a
    numeric ``page`` parameter is incremented while pages come back full. The
    walk never issues more than ``commerce_max_pages`` requests.
    """

    def __init__(self, client: CommerceClient, settings: Settings):
        self.client = client
        self.page_size = settings.commerce_page_size
        self.max_pages = settings.commerce_max_pages
        self.page_delay = settings.commerce_page_delay_seconds

    async def fetch_all(self, resource: str) -> list[dict[str, Any]]:
        """Fetch and flatten every page of ``resource``.

        Returns the records accumulated so far when a later page fails. When the
        first page fails, one unpaginated request is attempted before giving up.
        ``PermissionDenied`` is never retried.
        """
        tenant_id = self.client.context.tenant_id
        records: list[dict[str, Any]] = []
        seen_ids: set[str] = set()
        next_endpoint: str | None = f"{resource}.json?limit={self.page_size}"
        link_mode = False
        page = 1
        requests = 0

        while next_endpoint and requests < self.max_pages:
            if requests:
                await asyncio.sleep(self.page_delay)
            try:
                response = await self.client.request(next_endpoint)
                items = _extract_records(response, resource)
            except PermissionDenied:
                raise
            except CommerceAPIError as e:
                if requests == 0:
                    logger.warning(
                        "First page failed, trying unpaginated request",
                        tenant_id=tenant_id,
                        resource=resource,
                        status_code=e.status_code,
                        error=str(e),
                    )
                    return await self._fetch_unpaginated(resource)
                logger.warning(
                    "Page request failed, keeping partial results",
                    tenant_id=tenant_id,
                    resource=resource,
                    pages=requests,
                    records=len(records),
                    error=str(e),
                )
                break

            requests += 1
            added = _append_unique(records, seen_ids, items)

            link_header = response.headers.get("Link")
            if requests == 1 and link_header is not None:
                link_mode = True

            if link_mode:
                next_endpoint = parse_next_link(link_header)
            elif len(items) >= self.page_size and added == 0:
                # Upstream ignores the page parameter
                logger.warning(
                    "Offset page repeated earlier records, stopping pagination",
                    tenant_id=tenant_id,
                    resource=resource,
                    page=page,
                )
                next_endpoint = None
            elif len(items) >= self.page_size:
                page += 1
                next_endpoint = f"{resource}.json?limit={self.page_size}&page={page}"
            else:
                next_endpoint = None

        if next_endpoint and requests >= self.max_pages:
            logger.warning(
                "Page ceiling reached, stopping pagination",
                tenant_id=tenant_id,
                resource=resource,
                max_pages=self.max_pages,
            )

        logger.info(
            "Fetched resource",
            tenant_id=tenant_id,
            resource=resource,
            pages=requests,
            records=len(records),
        )
        return records

    async def _fetch_unpaginated(self, resource: str) -> list[dict[str, Any]]:
        response = await self.client.request(f"{resource}.json")
        records: list[dict[str, Any]] = []
        _append_unique(records, set(), _extract_records(response, resource))
        return records


def _extract_records(response: httpx.Response, resource: str) -> list[dict[str, Any]]:
    """Pull the array field out of a listing envelope."""
    try:
        body = response.json()
    except ValueError as e:
        raise CommerceAPIError(
            f"Non-JSON listing response for {resource}",
            status_code=response.status_code,
            body=response.text,
        ) from e

    if not isinstance(body, dict):
        raise CommerceAPIError(
            f"Unexpected listing envelope for {resource}",
            status_code=response.status_code,
            body=body,
        )
    items = body.get(resource)
    if items is None:
        # Envelopes hold a single array field; tolerate a differently named one
        items = next((v for v in body.values() if isinstance(v, list)), [])
    return [item for item in items if isinstance(item, dict)]


def _append_unique(
    records: list[dict[str, Any]], seen_ids: set[str], items: list[dict[str, Any]]
) -> int:
    """Append records whose id was not seen yet; returns how many were added."""
    added = 0
    for item in items:
        item_id = item.get("id")
        if item_id is not None:
            key = str(item_id)
            if key in seen_ids:
                continue
            seen_ids.add(key)
        records.append(item)
        added += 1
    return added

"""
Klaviyo profiles adapter (read-only rollup source).
"""

from __future__ import annotations

from typing import Any

import httpx

from contact_rollup.api.base import (
    ContactAPIError,
    ContactPage,
    ContactSource,
    Credentials,
)
from contact_rollup.sync.contact import NormalizedContact

KLAVIYO_BASE_URL = "https://a.klaviyo.com/api"
KLAVIYO_REVISION = "2024-10-15"
KLAVIYO_MAX_PAGE_SIZE = 100

DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=10.0)


class KlaviyoContactSource(ContactSource):
    """
    Lists Klaviyo profiles as rollup source contacts.

    Pagination follows JSON:API ``links.next``: the cursor is the full URL
    of the next page.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = KLAVIYO_BASE_URL,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        )

    @property
    def provider(self) -> str:
        return "klaviyo"

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def list_contacts(
        self, credentials: Credentials, cursor: str | None, limit: int
    ) -> ContactPage:
        if cursor:
            url = cursor
            params = None
        else:
            url = f"{self.base_url}/profiles/"
            params = {"page[size]": min(max(1, limit), KLAVIYO_MAX_PAGE_SIZE)}

        try:
            response = await self._http_client.get(
                url,
                params=params,
                headers={
                    "Authorization": f"Klaviyo-API-Key {credentials.token}",
                    "revision": KLAVIYO_REVISION,
                    "Accept": "application/vnd.api+json",
                },
            )
        except httpx.HTTPError as e:
            raise ContactAPIError(f"Klaviyo profiles request failed: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            raise ContactAPIError(
                f"Klaviyo profiles request failed ({response.status_code})",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ContactAPIError(
                "Invalid JSON payload from Klaviyo", status_code=response.status_code
            ) from e

        data = payload.get("data") if isinstance(payload, dict) else None
        records = [r for r in data if isinstance(r, dict)] if isinstance(data, list) else []
        links = payload.get("links") if isinstance(payload, dict) else None
        next_url = links.get("next") if isinstance(links, dict) else None

        return ContactPage(records=records, next_cursor=next_url or None)

    def normalize_contact(self, raw: dict[str, Any]) -> NormalizedContact:
        attributes = raw.get("attributes")
        if not isinstance(attributes, dict):
            attributes = raw
        properties = attributes.get("properties")
        if not isinstance(properties, dict):
            properties = {}

        first_name = str(attributes.get("first_name") or "")
        last_name = str(attributes.get("last_name") or "")
        email = str(attributes.get("email") or "")
        full_name = " ".join(part for part in (first_name, last_name) if part) or email
        tags_raw = properties.get("tags")

        return NormalizedContact(
            id=str(raw.get("id") or ""),
            first_name=first_name,
            last_name=last_name,
            full_name=full_name,
            email=email,
            phone=str(attributes.get("phone_number") or ""),
            tags=[str(tag) for tag in tags_raw if tag] if isinstance(tags_raw, list) else [],
            date_added=str(attributes.get("created") or ""),
        )

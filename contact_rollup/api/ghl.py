"""
LeadConnector (GHL) REST adapter.

Bearer-token auth, a ``locationId`` partition key and JSON bodies. Supports
listing, upserts and deletes, so a GHL account can act as either a rollup
source or the rollup target.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from contact_rollup.api.base import (
    ContactAPIError,
    ContactNotFoundError,
    ContactPage,
    ContactSource,
    Credentials,
    UpsertPayload,
)
from contact_rollup.sync.contact import NormalizedContact

GHL_BASE_URL = "https://services.leadconnectorhq.com"
GHL_API_VERSION = "2021-07-28"
GHL_PAGE_SIZE = 100

# Value written to the contact "source" field on upsert
UPSERT_SOURCE_LABEL = "Contact Rollup"

DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=10.0)

logger = logging.getLogger(__name__)


def _first_text(raw: dict[str, Any], keys: tuple[str, ...]) -> str:
    for key in keys:
        value = raw.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return ""


def _extract_records(payload: Any) -> list[dict[str, Any]]:
    """Find the contact list under contacts, data.contacts or data."""
    if not isinstance(payload, dict):
        return []
    if isinstance(payload.get("contacts"), list):
        records = payload["contacts"]
    else:
        data = payload.get("data")
        if isinstance(data, dict) and isinstance(data.get("contacts"), list):
            records = data["contacts"]
        elif isinstance(data, list):
            records = data
        else:
            records = []
    return [record for record in records if isinstance(record, dict)]


def _strip_empty(values: dict[str, Any]) -> dict[str, Any]:
    """Drop None, blank strings and empty lists."""
    stripped: dict[str, Any] = {}
    for key, value in values.items():
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        if isinstance(value, list) and not value:
            continue
        stripped[key] = value
    return stripped


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("error")
        if isinstance(message, list):
            message = "; ".join(str(m) for m in message)
        if isinstance(message, str) and message.strip():
            return " ".join(message.split())[:200]

    text = response.text.strip()
    if text:
        return " ".join(text.split())[:200]
    return "unknown error"


class GHLContactSource(ContactSource):
    """
    Contact adapter for the LeadConnector (GHL) v2 API.

    Usage:
        async with httpx.AsyncClient() as client:
            ghl = GHLContactSource(http_client=client)
            page = await ghl.list_contacts(credentials, None, 100)
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = GHL_BASE_URL,
    ):
        """
        Initialize the adapter.

        Args:
            http_client: Shared async HTTP client. If None, the adapter
                         creates and owns one.
            base_url: API base URL
        """
        self.base_url = base_url.rstrip("/")
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        )

    @property
    def provider(self) -> str:
        return "ghl"

    @property
    def supports_upsert(self) -> bool:
        return True

    @property
    def supports_delete(self) -> bool:
        return True

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def _headers(self, credentials: Credentials) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {credentials.token}",
            "Version": GHL_API_VERSION,
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        credentials: Credentials,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """
        Send a request and raise ContactAPIError on any non-2xx response.

        Transport failures are raised without a status code, so they are
        never retried.
        """
        try:
            response = await self._http_client.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=json,
                headers=self._headers(credentials),
            )
        except httpx.HTTPError as e:
            raise ContactAPIError(f"GHL {method} {path} failed: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            raise ContactAPIError(
                f"GHL {method} {path} failed ({response.status_code}): "
                f"{_error_message(response)}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ContactAPIError(
                "Invalid JSON payload from GHL", status_code=response.status_code
            ) from e

    async def list_contacts(
        self, credentials: Credentials, cursor: str | None, limit: int
    ) -> ContactPage:
        """
        Fetch one page from GET /contacts/.

        The next cursor is meta.startAfterId, else the id of the last
        record. It is only returned when the page was full and the
        response advertises another page.
        """
        params: dict[str, Any] = {"locationId": credentials.location_id, "limit": limit}
        if cursor:
            params["startAfter"] = cursor
            params["startAfterId"] = cursor

        payload = self._json(
            await self._request("GET", "/contacts/", credentials, params=params)
        )
        records = _extract_records(payload)

        meta = payload.get("meta") if isinstance(payload, dict) else None
        if not isinstance(meta, dict):
            meta = {}

        next_cursor = str(meta.get("startAfterId") or "")
        if not next_cursor and records:
            next_cursor = _first_text(records[-1], ("id", "_id"))

        advertised = bool(
            meta.get("nextPageUrl") or meta.get("nextPage") or meta.get("startAfterId")
        )
        has_more = len(records) >= limit and bool(next_cursor) and advertised

        return ContactPage(records=records, next_cursor=next_cursor if has_more else None)

    async def list_contacts_fallback(
        self, credentials: Credentials, limit: int
    ) -> ContactPage:
        """Single page from GET /contacts/search, for accounts without listing."""
        params = {"locationId": credentials.location_id, "limit": limit}
        payload = self._json(
            await self._request("GET", "/contacts/search", credentials, params=params)
        )
        return ContactPage(records=_extract_records(payload), next_cursor=None)

    def normalize_contact(self, raw: dict[str, Any]) -> NormalizedContact:
        first_name = _first_text(raw, ("firstName", "first_name", "first"))
        last_name = _first_text(raw, ("lastName", "last_name", "last"))
        full_name = _first_text(raw, ("name", "fullName", "full_name")) or " ".join(
            part for part in (first_name, last_name) if part
        )
        tags_raw = raw.get("tags")
        tags = (
            [str(tag) for tag in tags_raw if tag]
            if isinstance(tags_raw, list)
            else []
        )

        return NormalizedContact(
            id=_first_text(raw, ("id", "_id")),
            first_name=first_name,
            last_name=last_name,
            full_name=full_name,
            email=_first_text(raw, ("email",)),
            phone=_first_text(raw, ("phone",)),
            tags=tags,
            date_added=_first_text(raw, ("dateAdded", "date_added", "createdAt")),
        )

    async def upsert_contact(
        self, credentials: Credentials, payload: UpsertPayload
    ) -> None:
        """
        Create or update a contact via POST /contacts/upsert.

        Some locations only accept the contact wrapped in a ``contact``
        object; the wrapped body is tried if the flat body is rejected
        with a non-transient error.
        """
        fields = _strip_empty(
            {
                "firstName": payload.first_name,
                "lastName": payload.last_name,
                "name": payload.full_name,
                "email": payload.email,
                "phone": payload.phone,
                "tags": list(payload.tags),
                "source": UPSERT_SOURCE_LABEL,
            }
        )
        flat_body = {"locationId": credentials.location_id, **fields}
        wrapped_body = {"locationId": credentials.location_id, "contact": fields}

        try:
            await self._request("POST", "/contacts/upsert", credentials, json=flat_body)
            return
        except ContactAPIError as e:
            if e.is_transient:
                raise
            logger.debug(f"Flat upsert body rejected ({e}), retrying wrapped body")

        await self._request("POST", "/contacts/upsert", credentials, json=wrapped_body)

    async def delete_contact(self, credentials: Credentials, contact_id: str) -> bool:
        """Delete via DELETE /contacts/{id}; a 404 means already absent."""
        try:
            await self._request("DELETE", f"/contacts/{contact_id}", credentials)
        except ContactAPIError as e:
            if e.status_code == 404:
                return False
            raise
        return True


__all__ = ["GHLContactSource", "GHL_BASE_URL", "GHL_API_VERSION", "GHL_PAGE_SIZE"]

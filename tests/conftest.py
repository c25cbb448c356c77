"""
Shared fixtures for the contact_rollup tests.

Provides an in-memory provider adapter, an in-memory store and helpers to
build an account directory around fake adapters.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any, Optional

import pytest

from contact_rollup.accounts.directory import AccountDirectory, AccountEntry
from contact_rollup.api.base import (
    ContactPage,
    ContactSource,
    Credentials,
    UpsertPayload,
)
from contact_rollup.api.registry import AdapterRegistry
from contact_rollup.storage.db import RollupStore
from contact_rollup.sync.contact import NormalizedContact


class FakeContactSource(ContactSource):
    """
    Provider adapter backed by in-memory pages.

    ``pages`` is a list of record lists; the cursor is the index of the
    next page. Failures are queued per operation and raised in order.
    """

    def __init__(
        self,
        provider: str = "fake",
        pages: Optional[list[list[dict[str, Any]]]] = None,
        can_upsert: bool = True,
        can_delete: bool = True,
        fallback_page: Optional[list[dict[str, Any]]] = None,
    ):
        self._provider = provider
        self.pages = pages or []
        self.can_upsert = can_upsert
        self.can_delete = can_delete
        self.fallback_page = fallback_page

        self.list_errors: list[Exception] = []
        self.fallback_errors: list[Exception] = []
        self.upsert_errors: dict[str, list[Exception]] = {}
        self.delete_outcomes: dict[str, list[Any]] = {}

        self.list_calls: list[Optional[str]] = []
        self.fallback_calls = 0
        self.upserts: list[UpsertPayload] = []
        self.upsert_attempts = 0
        self.deletes: list[str] = []
        self.delete_attempts = 0
        self.peak_in_flight = 0
        self._in_flight = 0

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def supports_upsert(self) -> bool:
        return self.can_upsert

    @property
    def supports_delete(self) -> bool:
        return self.can_delete

    async def list_contacts(
        self, credentials: Credentials, cursor: Optional[str], limit: int
    ) -> ContactPage:
        self.list_calls.append(cursor)
        if self.list_errors:
            raise self.list_errors.pop(0)
        index = int(cursor) if cursor else 0
        if index >= len(self.pages):
            return ContactPage(records=[], next_cursor=None)
        next_cursor = str(index + 1) if index + 1 < len(self.pages) else None
        return ContactPage(records=list(self.pages[index]), next_cursor=next_cursor)

    async def list_contacts_fallback(
        self, credentials: Credentials, limit: int
    ) -> ContactPage:
        self.fallback_calls += 1
        if self.fallback_errors:
            raise self.fallback_errors.pop(0)
        if self.fallback_page is None:
            return await super().list_contacts_fallback(credentials, limit)
        return ContactPage(records=list(self.fallback_page), next_cursor=None)

    def normalize_contact(self, raw: dict[str, Any]) -> NormalizedContact:
        return NormalizedContact(
            id=str(raw.get("id") or ""),
            first_name=raw.get("firstName", ""),
            last_name=raw.get("lastName", ""),
            full_name=raw.get("name", ""),
            email=raw.get("email", ""),
            phone=raw.get("phone", ""),
            tags=list(raw.get("tags", [])),
            date_added=raw.get("dateAdded", ""),
        )

    async def _track(self) -> None:
        self._in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
        await asyncio.sleep(0)
        self._in_flight -= 1

    async def upsert_contact(
        self, credentials: Credentials, payload: UpsertPayload
    ) -> None:
        self.upsert_attempts += 1
        await self._track()
        errors = self.upsert_errors.get(payload.email or payload.phone)
        if errors:
            raise errors.pop(0)
        self.upserts.append(payload)

    async def delete_contact(self, credentials: Credentials, contact_id: str) -> bool:
        self.delete_attempts += 1
        await self._track()
        outcomes = self.delete_outcomes.get(contact_id)
        outcome: Any = outcomes.pop(0) if outcomes else True
        if isinstance(outcome, Exception):
            raise outcome
        if outcome:
            self.deletes.append(contact_id)
        return bool(outcome)


def build_directory(
    adapters: Mapping[str, ContactSource],
    dealers: Optional[Mapping[str, str]] = None,
    capabilities: Optional[Mapping[str, tuple[str, ...]]] = None,
) -> AccountDirectory:
    """
    Directory with one account per adapter.

    Each account gets its own provider name so it resolves to its own
    adapter instance.
    """
    dealers = dealers or {}
    capabilities = capabilities or {}
    entries: dict[str, AccountEntry] = {}
    factories: dict[str, Any] = {}
    for key, adapter in adapters.items():
        provider = f"fake-{key}"
        entries[key] = AccountEntry(
            key=key,
            provider=provider,
            dealer=dealers.get(key, ""),
            location_id=f"loc-{key}",
            token=f"token-{key}",
            capabilities=capabilities.get(key, ("contacts",)),
        )
        factories[provider] = lambda client, adapter=adapter: adapter
    registry = AdapterRegistry(http_client=None, factories=factories)  # type: ignore[arg-type]
    return AccountDirectory(entries=entries, registry=registry)


def contact_record(
    record_id: str,
    email: str = "",
    phone: str = "",
    first_name: str = "",
    last_name: str = "",
    tags: Optional[list[str]] = None,
    date_added: str = "",
) -> dict[str, Any]:
    """Raw record in the shape FakeContactSource.normalize_contact reads."""
    return {
        "id": record_id,
        "email": email,
        "phone": phone,
        "firstName": first_name,
        "lastName": last_name,
        "name": " ".join(part for part in (first_name, last_name) if part),
        "tags": tags or [],
        "dateAdded": date_added,
    }


@pytest.fixture(autouse=True)
def _package_logs_reach_caplog():
    """Undo setup_logging() side effects so caplog sees package records."""
    logger = logging.getLogger("contact_rollup")
    logger.handlers.clear()
    logger.propagate = True
    logger.disabled = False
    logger.setLevel(logging.NOTSET)
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.NOTSET)
    yield


@pytest.fixture
def store():
    """Initialized in-memory store."""
    db = RollupStore(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def no_sleep():
    """Awaitable sleep that records requested delays without waiting."""
    delays: list[float] = []

    async def sleep(delay: float) -> None:
        delays.append(delay)

    sleep.delays = delays  # type: ignore[attr-defined]
    return sleep

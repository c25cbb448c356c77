"""
Provider-neutral contact API contract.

Every marketing platform that can act as a rollup source or target is
wrapped in a ContactSource adapter. The sync engine only ever talks to
this interface and never branches on provider identity.

Also provides the shared retry policy for transient API failures.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from contact_rollup.sync.contact import NormalizedContact

T = TypeVar("T")

# Retry policy for transient failures (HTTP 429 / 5xx)
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 0.3  # seconds, multiplied by attempt number

logger = logging.getLogger(__name__)


class ContactAPIError(Exception):
    """Raised when a contact API operation fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        """True for rate limiting (429) and server-side (5xx) failures."""
        if self.status_code is None:
            return False
        return self.status_code == 429 or self.status_code >= 500


class ContactNotFoundError(ContactAPIError):
    """Raised when a single-record operation targets a missing contact."""

    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class FallbackUnavailableError(ContactAPIError):
    """Raised by adapters that expose no alternate listing endpoint."""


@dataclass(frozen=True)
class Credentials:
    """
    Resolved credentials for one account.

    Attributes:
        token: Bearer token or API key
        location_id: Provider partition key (may be empty for providers
                     that scope by token alone)
    """

    token: str
    location_id: str = ""

    def __repr__(self) -> str:
        return f"Credentials(token=***, location_id={self.location_id!r})"


@dataclass
class ContactPage:
    """One page of raw provider records."""

    records: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None


@dataclass
class UpsertPayload:
    """Identity fields and tags written to a target account."""

    first_name: str = ""
    last_name: str = ""
    full_name: str = ""
    email: str = ""
    phone: str = ""
    tags: list[str] = field(default_factory=list)


class ContactSource(abc.ABC):
    """
    Adapter contract for one provider.

    Subclasses must implement listing and normalization. Write operations
    are optional capabilities advertised by supports_upsert and
    supports_delete; the defaults raise ContactAPIError.
    """

    @property
    @abc.abstractmethod
    def provider(self) -> str:
        """Stable provider name (e.g., "ghl")."""
        ...

    @property
    def supports_upsert(self) -> bool:
        return False

    @property
    def supports_delete(self) -> bool:
        return False

    @abc.abstractmethod
    async def list_contacts(
        self, credentials: Credentials, cursor: str | None, limit: int
    ) -> ContactPage:
        """Fetch one page of raw contact records."""
        ...

    async def list_contacts_fallback(
        self, credentials: Credentials, limit: int
    ) -> ContactPage:
        """
        Fetch contacts from an alternate listing endpoint.

        Used only when the first page of list_contacts() fails. Providers
        without an alternate endpoint keep this default.
        """
        raise FallbackUnavailableError(
            f"{self.provider} has no alternate contact listing endpoint"
        )

    @abc.abstractmethod
    def normalize_contact(self, raw: dict[str, Any]) -> NormalizedContact:
        """Convert a raw provider record to the provider-neutral shape."""
        ...

    async def upsert_contact(
        self, credentials: Credentials, payload: UpsertPayload
    ) -> None:
        """Create or update a contact keyed by email (else phone)."""
        raise ContactAPIError(f"{self.provider} does not support contact upserts")

    async def delete_contact(self, credentials: Credentials, contact_id: str) -> bool:
        """
        Delete a contact.

        Returns:
            True if deleted, False if the contact was already absent
        """
        raise ContactAPIError(f"{self.provider} does not support contact deletes")

    async def aclose(self) -> None:
        """Release adapter resources."""
        return None


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    operation_name: str,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Execute an operation, retrying transient failures with linear backoff.

    Only ContactAPIError with is_transient set is retried; the wait before
    attempt N+1 is base_delay * N seconds.

    Args:
        operation: Zero-argument coroutine factory
        operation_name: Name for logging purposes
        max_attempts: Total attempts including the first
        base_delay: Backoff unit in seconds
        sleep: Awaitable sleep function (injectable for tests)

    Returns:
        Result of the operation

    Raises:
        ContactAPIError: Last error once attempts are exhausted, or the
                         first non-transient error
    """
    attempts = max(1, max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except ContactAPIError as e:
            if not e.is_transient or attempt >= attempts:
                raise
            delay = base_delay * attempt
            logger.warning(
                f"{operation_name} failed with status {e.status_code}, retrying "
                f"in {delay:.1f}s (attempt {attempt}/{attempts})"
            )
            await sleep(delay)

    # Should not reach here, but just in case
    raise ContactAPIError(f"{operation_name} failed after all retries")

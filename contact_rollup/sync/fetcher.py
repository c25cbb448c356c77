"""
Paginated contact retrieval for one account.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from contact_rollup.api.base import (
    ContactAPIError,
    ContactPage,
    ContactSource,
    Credentials,
    FallbackUnavailableError,
    call_with_retry,
)

# Records requested per page
DEFAULT_PAGE_SIZE = 100

logger = logging.getLogger(__name__)


async def fetch_all_contacts(
    source: ContactSource,
    credentials: Credentials,
    max_records: int,
    account_key: str = "",
    page_size: int = DEFAULT_PAGE_SIZE,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> list[dict[str, Any]]:
    """
    Fetch every raw contact record for an account, up to a hard cap.

    Pages are requested with the cursor returned by the previous page.
    Pagination stops on an empty page, a missing or repeated cursor, or
    once max_records have been collected. If the first page fails, the
    provider's alternate listing endpoint is tried once.

    Args:
        source: Provider adapter
        credentials: Account credentials
        max_records: Hard cap on records returned
        account_key: Account key for logging purposes
        page_size: Records requested per page
        sleep: Awaitable sleep used between retries

    Returns:
        Raw provider records, at most max_records

    Raises:
        ContactAPIError: If a page fails after retries (and, for the first
                         page, the fallback also fails)
    """
    label = account_key or source.provider
    records: list[dict[str, Any]] = []
    cursor: str | None = None
    page_number = 0

    while len(records) < max_records:
        page_number += 1
        try:
            page = await call_with_retry(
                lambda cursor=cursor: source.list_contacts(
                    credentials, cursor, page_size
                ),
                f"List contacts for {label} (page {page_number})",
                sleep=sleep,
            )
        except ContactAPIError as e:
            if page_number > 1:
                raise
            page = await _fetch_fallback(source, credentials, page_size, label, e, sleep)
            records.extend(page.records)
            break

        if not page.records:
            break
        records.extend(page.records)

        if not page.next_cursor or page.next_cursor == cursor:
            break
        cursor = page.next_cursor

    if len(records) > max_records:
        logger.info(f"Capped {label} at {max_records} contacts")
        del records[max_records:]

    logger.debug(f"Fetched {len(records)} contacts for {label} in {page_number} page(s)")
    return records


async def _fetch_fallback(
    source: ContactSource,
    credentials: Credentials,
    page_size: int,
    label: str,
    primary_error: ContactAPIError,
    sleep: Callable[[float], Awaitable[Any]],
) -> ContactPage:
    """Try the alternate listing endpoint after a first-page failure."""
    logger.warning(
        f"First contact page for {label} failed ({primary_error}), "
        "trying alternate listing endpoint"
    )
    try:
        return await call_with_retry(
            lambda: source.list_contacts_fallback(credentials, page_size),
            f"Fallback contact listing for {label}",
            sleep=sleep,
        )
    except FallbackUnavailableError:
        raise primary_error from None
    except ContactAPIError as fallback_error:
        raise ContactAPIError(
            f"{primary_error}; fallback listing failed: {fallback_error}",
            status_code=fallback_error.status_code,
        ) from fallback_error

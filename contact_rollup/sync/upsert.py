"""
Target upsert phase.

Writes merged contacts to the target account with bounded concurrency.
Each contact is retried on transient failures and fails independently.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from contact_rollup.api.base import ContactSource, Credentials, call_with_retry
from contact_rollup.sync.contact import PreparedContact
from contact_rollup.sync.runner import BatchOutcome, run_bounded, summarize_results

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpsertPlan:
    """Contacts queued for this run and how many were deferred."""

    queued: list[PreparedContact]
    truncated: int


def plan_upserts(contacts: Sequence[PreparedContact], max_upserts: int) -> UpsertPlan:
    """
    Truncate the merged set to the per-run maximum.

    Args:
        contacts: Merged contacts in first-seen order
        max_upserts: Maximum writes for this run

    Returns:
        UpsertPlan with the first max_upserts contacts and the overflow count
    """
    limit = max(0, max_upserts)
    queued = list(contacts[:limit])
    return UpsertPlan(queued=queued, truncated=len(contacts) - len(queued))


class UpsertExecutor:
    """
    Writes prepared contacts to the target account.

    Usage:
        executor = UpsertExecutor(target.adapter, target.credentials, concurrency=4)
        outcome = await executor.run(plan.queued)
    """

    def __init__(
        self,
        target: ContactSource,
        credentials: Credentials,
        concurrency: int,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the executor.

        Args:
            target: Target account adapter (must support upserts)
            credentials: Target account credentials
            concurrency: Maximum upserts in flight
            sleep: Awaitable sleep used between retries
        """
        self.target = target
        self.credentials = credentials
        self.concurrency = concurrency
        self._sleep = sleep

    async def upsert_one(self, contact: PreparedContact) -> None:
        payload = contact.to_upsert_payload()
        await call_with_retry(
            lambda: self.target.upsert_contact(self.credentials, payload),
            f"Upsert {contact.dedupe_key}",
            sleep=self._sleep,
        )

    async def run(self, contacts: Sequence[PreparedContact]) -> BatchOutcome:
        """
        Upsert every contact; failures are counted, never raised.

        Returns:
            BatchOutcome with errors keyed "upsert:<index>"
        """
        if not contacts:
            return BatchOutcome()

        logger.info(
            f"Upserting {len(contacts)} contacts to {self.target.provider} "
            f"(concurrency {self.concurrency})"
        )
        operations = [
            (lambda contact=contact: self.upsert_one(contact)) for contact in contacts
        ]
        results = await run_bounded(operations, self.concurrency)
        return summarize_results(results, "upsert")

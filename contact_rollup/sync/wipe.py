"""
Wipe phase: remove rollup-written (or all) contacts from the target.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from contact_rollup.api.base import (
    ContactNotFoundError,
    ContactSource,
    Credentials,
    call_with_retry,
)
from contact_rollup.sync.contact import NormalizedContact, is_rollup_tagged
from contact_rollup.sync.runner import BatchOutcome, run_bounded, summarize_results

WIPE_MODE_TAGGED = "tagged"
WIPE_MODE_ALL = "all"
WIPE_MODES = (WIPE_MODE_TAGGED, WIPE_MODE_ALL)

logger = logging.getLogger(__name__)


def parse_wipe_mode(value: Any) -> str:
    """Anything other than exactly "all" selects the tagged mode."""
    return WIPE_MODE_ALL if value == WIPE_MODE_ALL else WIPE_MODE_TAGGED


def is_wipe_eligible(contact: NormalizedContact, mode: str) -> bool:
    """
    Decide whether a target record may be deleted.

    In "all" mode every record is eligible. In "tagged" mode only records
    carrying a rollup marker or provenance tag are.
    """
    if mode == WIPE_MODE_ALL:
        return True
    return is_rollup_tagged(contact.tags)


@dataclass(frozen=True)
class WipePlan:
    """Deletion candidates for one wipe run."""

    eligible: int
    queued: list[NormalizedContact]
    truncated: int
    skipped_missing_id: int


def plan_wipe(
    contacts: Iterable[NormalizedContact], mode: str, max_deletes: int
) -> WipePlan:
    """
    Filter target records by eligibility and truncate to the per-run maximum.

    Eligible records without a provider id cannot be deleted and are
    counted separately.
    """
    eligible = [contact for contact in contacts if is_wipe_eligible(contact, mode)]
    deletable = [contact for contact in eligible if contact.id]
    limit = max(0, max_deletes)
    queued = deletable[:limit]
    return WipePlan(
        eligible=len(eligible),
        queued=queued,
        truncated=len(deletable) - len(queued),
        skipped_missing_id=len(eligible) - len(deletable),
    )


class WipeExecutor:
    """
    Deletes target contacts with bounded concurrency.

    A not-found response counts as success since the record is already gone.
    """

    def __init__(
        self,
        target: ContactSource,
        credentials: Credentials,
        concurrency: int,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.target = target
        self.credentials = credentials
        self.concurrency = concurrency
        self._sleep = sleep

    async def delete_one(self, contact_id: str) -> bool:
        """
        Delete one contact.

        Returns:
            True if deleted, False if it was already absent
        """
        try:
            return await call_with_retry(
                lambda: self.target.delete_contact(self.credentials, contact_id),
                f"Delete {contact_id}",
                sleep=self._sleep,
            )
        except ContactNotFoundError:
            return False

    async def run(
        self, contacts: Sequence[NormalizedContact]
    ) -> tuple[BatchOutcome, int]:
        """
        Delete every contact; failures are counted, never raised.

        Returns:
            (BatchOutcome with errors keyed "delete:<index>",
             number of contacts that were already absent)
        """
        if not contacts:
            return BatchOutcome(), 0

        logger.info(
            f"Deleting {len(contacts)} contacts from {self.target.provider} "
            f"(concurrency {self.concurrency})"
        )
        operations = [
            (lambda contact_id=contact.id: self.delete_one(contact_id))
            for contact in contacts
        ]
        results = await run_bounded(operations, self.concurrency)
        already_absent = sum(1 for r in results if r.ok and r.value is False)
        if already_absent:
            logger.debug(f"{already_absent} contacts were already absent")
        return summarize_results(results, "delete"), already_absent

"""
Normalization and per-source deduplication.

Turns the raw records fetched from one source account into a map of
PreparedContact keyed by dedupe key, along with the counters reported in
the run summary.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from contact_rollup.sync.contact import NormalizedContact, PreparedContact

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceSyncStats:
    """
    Counters for one source account.

    Attributes:
        fetched: Raw records returned by the provider
        considered: Records inside the incremental window (all, on full sync)
        accepted: Distinct identities produced
        skipped_invalid: Considered records with neither usable email nor phone
        local_duplicates_collapsed: Records merged into an earlier identity
    """

    fetched: int = 0
    considered: int = 0
    accepted: int = 0
    skipped_invalid: int = 0
    local_duplicates_collapsed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "fetched": self.fetched,
            "considered": self.considered,
            "accepted": self.accepted,
            "skippedInvalid": self.skipped_invalid,
            "localDuplicatesCollapsed": self.local_duplicates_collapsed,
        }


@dataclass
class PreparedSource:
    """Prepared identities for one source, in first-seen order."""

    account_key: str
    contacts: dict[str, PreparedContact] = field(default_factory=dict)
    stats: SourceSyncStats = field(default_factory=SourceSyncStats)


def incremental_cutoff(now: datetime, lookback_hours: int) -> datetime:
    """Earliest creation time a record may have to be considered."""
    return now - timedelta(hours=lookback_hours)


def is_within_window(contact: NormalizedContact, cutoff: Optional[datetime]) -> bool:
    """
    Check whether a record falls inside the incremental window.

    A None cutoff means full sync: every record is inside. Records with a
    missing or unparseable creation time are outside the window.
    """
    if cutoff is None:
        return True
    added_at = contact.added_at()
    if added_at is None:
        return False
    return added_at >= cutoff


def prepare_source_contacts(
    account_key: str,
    raw_records: Iterable[dict[str, Any]],
    normalize: Callable[[dict[str, Any]], NormalizedContact],
    cutoff: Optional[datetime] = None,
    scrub_invalid_emails: bool = True,
    scrub_invalid_phones: bool = True,
) -> PreparedSource:
    """
    Normalize, filter, clean and locally deduplicate one source's records.

    Args:
        account_key: Source account the records came from
        raw_records: Raw provider records
        normalize: Provider adapter's normalize_contact
        cutoff: Incremental cutoff, or None for a full sync
        scrub_invalid_emails: Apply the deliverability check to emails
        scrub_invalid_phones: Apply the dialability check to phones

    Returns:
        PreparedSource with merged contacts and counters
    """
    contacts: dict[str, PreparedContact] = {}
    fetched = 0
    considered = 0
    skipped_invalid = 0
    collapsed = 0

    for raw in raw_records:
        fetched += 1
        normalized = normalize(raw)

        if not is_within_window(normalized, cutoff):
            continue
        considered += 1

        prepared = PreparedContact.from_normalized(
            normalized,
            account_key,
            scrub_invalid_emails=scrub_invalid_emails,
            scrub_invalid_phones=scrub_invalid_phones,
        )
        if prepared is None:
            skipped_invalid += 1
            continue

        existing = contacts.get(prepared.dedupe_key)
        if existing is None:
            contacts[prepared.dedupe_key] = prepared
        else:
            existing.merge(prepared)
            collapsed += 1

    stats = SourceSyncStats(
        fetched=fetched,
        considered=considered,
        accepted=len(contacts),
        skipped_invalid=skipped_invalid,
        local_duplicates_collapsed=collapsed,
    )
    logger.debug(
        f"Prepared {account_key}: fetched={fetched}, considered={considered}, "
        f"accepted={len(contacts)}, invalid={skipped_invalid}, "
        f"collapsed={collapsed}"
    )

    return PreparedSource(account_key=account_key, contacts=contacts, stats=stats)

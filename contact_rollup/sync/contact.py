"""
Contact data models for rollup synchronization.

Provides:
- NormalizedContact: provider-neutral view of one raw provider record
- PreparedContact: a cleaned identity ready for merging and upserting
- Merge rules (first-non-empty-wins for scalars, union for tags/sources)
- Provenance tag construction and recognition
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from contact_rollup.api.base import UpsertPayload
from contact_rollup.utils.normalization import (
    is_deliverable_email,
    is_dialable_phone,
    normalize_email,
    normalize_phone,
)

# Fixed marker tags attached to every contact written by the rollup
ROLLUP_MARKER_TAGS = ("contact-rollup", "contact-rollup-merged")

# Prefix of the per-source provenance tag: rollup-src:<accountKey>
SOURCE_TAG_PREFIX = "rollup-src:"

# Downstream systems reject contacts carrying more tags than this
MAX_TAGS_PER_CONTACT = 25

EMAIL_KEY_PREFIX = "email:"
PHONE_KEY_PREFIX = "phone:"


def unique(values: Iterable[str]) -> list[str]:
    """Trim values, drop empties and duplicates, keep first-seen order."""
    seen: dict[str, None] = {}
    for value in values:
        text = str(value or "").strip()
        if text and text not in seen:
            seen[text] = None
    return list(seen)


def parse_timestamp(value: str) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp as an aware datetime.

    Naive values are taken as UTC. Returns None for empty or unparseable
    input.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class NormalizedContact:
    """
    Provider-neutral representation of one raw contact record.

    All string fields are "" when the provider did not supply them.

    Attributes:
        id: Provider record id (used for deletes)
        first_name: Given name
        last_name: Family name
        full_name: Display name
        email: Raw email value as supplied
        phone: Raw phone value as supplied
        tags: Provider tags
        date_added: Creation timestamp as an ISO-8601 string
    """

    id: str = ""
    first_name: str = ""
    last_name: str = ""
    full_name: str = ""
    email: str = ""
    phone: str = ""
    tags: list[str] = field(default_factory=list)
    date_added: str = ""

    def added_at(self) -> Optional[datetime]:
        """Creation time, or None if missing or unparseable."""
        return parse_timestamp(self.date_added)


def resolve_identity(
    email: str,
    phone: str,
    scrub_invalid_emails: bool,
    scrub_invalid_phones: bool,
) -> tuple[str, str]:
    """
    Apply hygiene to a raw email/phone pair.

    Args:
        email: Raw email value
        phone: Raw phone value
        scrub_invalid_emails: Reject emails failing the deliverability check
        scrub_invalid_phones: Reject phones failing the dialability check

    Returns:
        (usable_email, usable_phone); either may be ""
    """
    normalized_email = normalize_email(email)
    normalized_phone = normalize_phone(phone)

    if normalized_email and scrub_invalid_emails:
        if not is_deliverable_email(normalized_email):
            normalized_email = ""
    if normalized_phone and scrub_invalid_phones:
        if not is_dialable_phone(normalized_phone):
            normalized_phone = ""

    return normalized_email, normalized_phone


def build_dedupe_key(email: str, phone: str) -> str:
    """
    Build the identity key for a cleaned email/phone pair.

    Email takes precedence; phone is used only when there is no email.
    Returns "" when neither is present.
    """
    if email:
        return f"{EMAIL_KEY_PREFIX}{email}"
    if phone:
        return f"{PHONE_KEY_PREFIX}{phone}"
    return ""


@dataclass
class PreparedContact:
    """
    A cleaned contact identity, possibly merged from several records.

    ``tags`` and ``source_account_keys`` behave as ordered sets: values
    are unique and keep the order in which they were first contributed.

    Attributes:
        dedupe_key: "email:<normalized>" or "phone:<normalized>"
        first_name: Given name
        last_name: Family name
        full_name: Display name
        email: Cleaned email ("" if none)
        phone: Cleaned phone ("" if none)
        tags: Tags carried from the source records
        source_account_keys: Every source account that contributed
    """

    dedupe_key: str
    first_name: str = ""
    last_name: str = ""
    full_name: str = ""
    email: str = ""
    phone: str = ""
    tags: list[str] = field(default_factory=list)
    source_account_keys: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.dedupe_key:
            raise ValueError("PreparedContact requires a non-empty dedupe_key")
        self.tags = unique(self.tags)
        self.source_account_keys = unique(self.source_account_keys)

    @classmethod
    def from_normalized(
        cls,
        contact: NormalizedContact,
        source_account_key: str,
        scrub_invalid_emails: bool = True,
        scrub_invalid_phones: bool = True,
    ) -> Optional[PreparedContact]:
        """
        Build a PreparedContact from a normalized record.

        Args:
            contact: Normalized provider record
            source_account_key: Account the record was read from
            scrub_invalid_emails: Apply the deliverability check to email
            scrub_invalid_phones: Apply the dialability check to phone

        Returns:
            PreparedContact, or None if neither email nor phone survives
        """
        email, phone = resolve_identity(
            contact.email,
            contact.phone,
            scrub_invalid_emails,
            scrub_invalid_phones,
        )
        dedupe_key = build_dedupe_key(email, phone)
        if not dedupe_key:
            return None

        return cls(
            dedupe_key=dedupe_key,
            first_name=contact.first_name.strip(),
            last_name=contact.last_name.strip(),
            full_name=contact.full_name.strip(),
            email=email,
            phone=phone,
            tags=list(contact.tags),
            source_account_keys=[source_account_key],
        )

    def merge(self, incoming: PreparedContact) -> None:
        """
        Merge another record with the same identity into this one.

        Scalar fields are only filled when currently empty, never
        overwritten. Tags and source accounts are unioned.
        """
        if not self.first_name and incoming.first_name:
            self.first_name = incoming.first_name
        if not self.last_name and incoming.last_name:
            self.last_name = incoming.last_name
        if not self.full_name and incoming.full_name:
            self.full_name = incoming.full_name
        if not self.email and incoming.email:
            self.email = incoming.email
        if not self.phone and incoming.phone:
            self.phone = incoming.phone

        self.tags = unique([*self.tags, *incoming.tags])
        self.source_account_keys = unique(
            [*self.source_account_keys, *incoming.source_account_keys]
        )

    def rollup_tags(self) -> list[str]:
        """
        Deterministic tag set written to the target account.

        Marker tags first, then one provenance tag per source, then the
        contact's own tags; capped at MAX_TAGS_PER_CONTACT.
        """
        tags = unique(
            [
                *ROLLUP_MARKER_TAGS,
                *(f"{SOURCE_TAG_PREFIX}{key}" for key in self.source_account_keys),
                *self.tags,
            ]
        )
        return tags[:MAX_TAGS_PER_CONTACT]

    def to_upsert_payload(self) -> UpsertPayload:
        """Convert to the provider-neutral upsert payload."""
        return UpsertPayload(
            first_name=self.first_name,
            last_name=self.last_name,
            full_name=self.full_name,
            email=self.email,
            phone=self.phone,
            tags=self.rollup_tags(),
        )

    def __repr__(self) -> str:
        return (
            f"PreparedContact(dedupe_key={self.dedupe_key!r}, "
            f"sources={self.source_account_keys!r})"
        )


def is_rollup_tagged(tags: Iterable[str]) -> bool:
    """
    Check whether a target record carries a rollup marker or provenance tag.

    Comparison is case-insensitive since some providers lowercase tags.
    """
    markers = {tag.lower() for tag in ROLLUP_MARKER_TAGS}
    prefix = SOURCE_TAG_PREFIX.lower()
    for tag in tags:
        text = str(tag or "").strip().lower()
        if text in markers or text.startswith(prefix):
            return True
    return False

"""
Cross-source deduplication.

Folds every source's prepared contacts into a single identity map.
"""

from __future__ import annotations

from collections.abc import Iterable

from contact_rollup.sync.contact import PreparedContact


class GlobalDeduper:
    """
    Accumulates prepared contacts from many sources.

    Collisions merge with the same first-non-empty-wins rule used within a
    source, so the surviving record lists every contributing account.

    Usage:
        deduper = GlobalDeduper()
        for source in prepared_sources:
            deduper.add_all(source.contacts.values())
        merged = deduper.contacts()
    """

    def __init__(self) -> None:
        self._contacts: dict[str, PreparedContact] = {}
        self.duplicates_collapsed = 0

    def add(self, contact: PreparedContact) -> None:
        existing = self._contacts.get(contact.dedupe_key)
        if existing is None:
            self._contacts[contact.dedupe_key] = contact
            return
        existing.merge(contact)
        self.duplicates_collapsed += 1

    def add_all(self, contacts: Iterable[PreparedContact]) -> None:
        for contact in contacts:
            self.add(contact)

    def contacts(self) -> list[PreparedContact]:
        """Merged contacts in first-seen order."""
        return list(self._contacts.values())

    def __len__(self) -> int:
        return len(self._contacts)

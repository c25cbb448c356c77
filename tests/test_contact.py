"""
Tests for the contact models.

Covers identity resolution, dedupe keys, merging and provenance tags.
"""

from datetime import timezone

import pytest

from contact_rollup.sync.contact import (
    MAX_TAGS_PER_CONTACT,
    ROLLUP_MARKER_TAGS,
    NormalizedContact,
    PreparedContact,
    build_dedupe_key,
    is_rollup_tagged,
    parse_timestamp,
    resolve_identity,
    unique,
)


class TestUnique:
    """Tests for the ordered-set helper."""

    def test_trims_and_drops_blanks(self):
        """Whitespace is trimmed and empty values dropped."""
        assert unique([" vip ", "", "  ", "lead"]) == ["vip", "lead"]

    def test_keeps_first_seen_order(self):
        """Duplicates keep their first position."""
        assert unique(["b", "a", "b", "c", "a"]) == ["b", "a", "c"]


class TestParseTimestamp:
    """Tests for parse_timestamp."""

    def test_zulu_suffix(self):
        """A trailing Z is UTC."""
        parsed = parse_timestamp("2024-05-01T12:00:00Z")
        assert parsed is not None
        assert parsed.tzinfo == timezone.utc
        assert parsed.hour == 12

    def test_naive_is_utc(self):
        """Values without an offset are taken as UTC."""
        parsed = parse_timestamp("2024-05-01T12:00:00")
        assert parsed is not None
        assert parsed.utcoffset().total_seconds() == 0

    @pytest.mark.parametrize("value", ["", "yesterday", "2024-13-45"])
    def test_unparseable(self, value):
        """Empty or invalid values yield None."""
        assert parse_timestamp(value) is None


class TestResolveIdentity:
    """Tests for resolve_identity."""

    def test_normalizes_both(self):
        """Email is lowercased and phone stripped."""
        assert resolve_identity(" A@Example.com ", "(555) 010-1234", True, True) == (
            "a@example.com",
            "5550101234",
        )

    def test_scrubs_undeliverable_email(self):
        """An undeliverable email is dropped when scrubbing."""
        assert resolve_identity("a@localhost", "", True, True) == ("", "")

    def test_keeps_undeliverable_email_without_scrubbing(self):
        """Scrubbing off keeps any syntactically present email."""
        assert resolve_identity("a@localhost", "", False, True) == ("a@localhost", "")

    def test_keeps_any_value_with_at_sign_without_scrubbing(self):
        """Scrubbing off keeps even a bare local part with an @."""
        assert resolve_identity("Ann@", "", False, True) == ("ann@", "")
        assert resolve_identity("Ann@", "", True, True) == ("", "")

    def test_scrubs_short_phone(self):
        """A short phone is dropped when scrubbing."""
        assert resolve_identity("", "555-0101", True, True) == ("", "")

    def test_keeps_short_phone_without_scrubbing(self):
        """Scrubbing off keeps any phone with digits."""
        assert resolve_identity("", "555-0101", True, False) == ("", "5550101")


class TestBuildDedupeKey:
    """Tests for build_dedupe_key."""

    def test_email_wins(self):
        """Email is used when both are present."""
        assert build_dedupe_key("a@example.com", "5550101234") == "email:a@example.com"

    def test_phone_fallback(self):
        """Phone is used when there is no email."""
        assert build_dedupe_key("", "+15550101234") == "phone:+15550101234"

    def test_neither(self):
        """No identity yields an empty key."""
        assert build_dedupe_key("", "") == ""


class TestPreparedContact:
    """Tests for PreparedContact."""

    def test_requires_dedupe_key(self):
        """An empty key is rejected."""
        with pytest.raises(ValueError):
            PreparedContact(dedupe_key="")

    def test_from_normalized(self):
        """A normalized record becomes a prepared identity."""
        contact = NormalizedContact(
            id="1",
            first_name=" Ann ",
            last_name="Lee",
            full_name="Ann Lee",
            email="ANN@example.com",
            phone="555 010 1234",
            tags=["vip", "vip", " "],
        )
        prepared = PreparedContact.from_normalized(contact, "north")

        assert prepared is not None
        assert prepared.dedupe_key == "email:ann@example.com"
        assert prepared.first_name == "Ann"
        assert prepared.phone == "5550101234"
        assert prepared.tags == ["vip"]
        assert prepared.source_account_keys == ["north"]

    def test_from_normalized_without_identity(self):
        """Records with no usable email or phone are rejected."""
        contact = NormalizedContact(id="1", first_name="Ann", email="bad", phone="12")
        assert PreparedContact.from_normalized(contact, "north") is None

    def test_merge_first_non_empty_wins(self):
        """Existing values are kept; only empty fields are filled."""
        existing = PreparedContact(
            dedupe_key="email:a@example.com",
            first_name="Ann",
            email="a@example.com",
            tags=["vip"],
            source_account_keys=["north"],
        )
        incoming = PreparedContact(
            dedupe_key="email:a@example.com",
            first_name="Annie",
            last_name="Lee",
            phone="5550101234",
            tags=["lead", "vip"],
            source_account_keys=["south", "north"],
        )

        existing.merge(incoming)

        assert existing.first_name == "Ann"
        assert existing.last_name == "Lee"
        assert existing.phone == "5550101234"
        assert existing.tags == ["vip", "lead"]
        assert existing.source_account_keys == ["north", "south"]

    def test_merge_without_conflicts_is_order_independent(self):
        """Disjoint fields end up populated whichever record comes first."""

        def pair():
            a = PreparedContact(
                dedupe_key="email:a@example.com", first_name="Ann", email="a@example.com"
            )
            b = PreparedContact(
                dedupe_key="email:a@example.com", last_name="Lee", phone="5550101234"
            )
            return a, b

        a1, b1 = pair()
        a1.merge(b1)
        a2, b2 = pair()
        b2.merge(a2)

        for field in ("first_name", "last_name", "email", "phone"):
            assert getattr(a1, field) == getattr(b2, field)

    def test_rollup_tags_order(self):
        """Markers come first, then provenance, then own tags."""
        prepared = PreparedContact(
            dedupe_key="email:a@example.com",
            tags=["vip", "contact-rollup"],
            source_account_keys=["north", "south"],
        )
        assert prepared.rollup_tags() == [
            *ROLLUP_MARKER_TAGS,
            "rollup-src:north",
            "rollup-src:south",
            "vip",
        ]

    def test_rollup_tags_capped(self):
        """The tag set never exceeds the cap."""
        prepared = PreparedContact(
            dedupe_key="email:a@example.com",
            tags=[f"tag-{i}" for i in range(40)],
            source_account_keys=["north"],
        )
        tags = prepared.rollup_tags()
        assert len(tags) == MAX_TAGS_PER_CONTACT
        assert tags[:3] == [*ROLLUP_MARKER_TAGS, "rollup-src:north"]

    def test_to_upsert_payload(self):
        """The payload carries identity fields and rollup tags."""
        prepared = PreparedContact(
            dedupe_key="phone:5550101234",
            full_name="Ann Lee",
            phone="5550101234",
            source_account_keys=["north"],
        )
        payload = prepared.to_upsert_payload()
        assert payload.phone == "5550101234"
        assert payload.email == ""
        assert payload.full_name == "Ann Lee"
        assert "rollup-src:north" in payload.tags


class TestIsRollupTagged:
    """Tests for is_rollup_tagged."""

    def test_marker_tag(self):
        """A marker tag identifies a rollup record."""
        assert is_rollup_tagged(["vip", "contact-rollup"]) is True

    def test_provenance_tag_case_insensitive(self):
        """Provenance tags match regardless of case."""
        assert is_rollup_tagged(["Rollup-Src:North"]) is True

    def test_untagged(self):
        """Ordinary tags do not match."""
        assert is_rollup_tagged(["vip", "rollup"]) is False

"""Tests for the wipe phase."""

from conftest import FakeContactSource

from contact_rollup.api.base import ContactAPIError, ContactNotFoundError, Credentials
from contact_rollup.sync.contact import NormalizedContact
from contact_rollup.sync.wipe import (
    WIPE_MODE_ALL,
    WIPE_MODE_TAGGED,
    WipeExecutor,
    is_wipe_eligible,
    parse_wipe_mode,
    plan_wipe,
)

CREDS = Credentials(token="t", location_id="target")


class TestParseWipeMode:
    """Tests for parse_wipe_mode."""

    def test_all(self):
        assert parse_wipe_mode("all") == WIPE_MODE_ALL

    def test_anything_else_is_tagged(self):
        """Unknown, empty and differently-cased values select tagged."""
        for value in ("tagged", "ALL", "", None, "everything"):
            assert parse_wipe_mode(value) == WIPE_MODE_TAGGED


class TestEligibility:
    """Tests for is_wipe_eligible and plan_wipe."""

    def test_tagged_mode_requires_rollup_tag(self):
        """Only rollup-written records are eligible in tagged mode."""
        tagged = NormalizedContact(id="1", tags=["rollup-src:north"])
        untagged = NormalizedContact(id="2", tags=["vip"])
        assert is_wipe_eligible(tagged, WIPE_MODE_TAGGED) is True
        assert is_wipe_eligible(untagged, WIPE_MODE_TAGGED) is False

    def test_all_mode(self):
        """Every record is eligible in all mode."""
        assert is_wipe_eligible(NormalizedContact(id="2"), WIPE_MODE_ALL) is True

    def test_plan_counts(self):
        """Records without ids are eligible but not deletable."""
        contacts = [
            NormalizedContact(id="1", tags=["contact-rollup"]),
            NormalizedContact(id="", tags=["contact-rollup"]),
            NormalizedContact(id="3", tags=["contact-rollup"]),
            NormalizedContact(id="4", tags=["contact-rollup"]),
            NormalizedContact(id="5", tags=["vip"]),
        ]

        plan = plan_wipe(contacts, WIPE_MODE_TAGGED, max_deletes=2)

        assert plan.eligible == 4
        assert plan.skipped_missing_id == 1
        assert [c.id for c in plan.queued] == ["1", "3"]
        assert plan.truncated == 1


class TestWipeExecutor:
    """Tests for WipeExecutor."""

    async def test_deletes_and_already_absent(self, no_sleep):
        """Not-found counts as success and is tallied separately."""
        target = FakeContactSource()
        target.delete_outcomes = {
            "2": [False],
            "3": [ContactNotFoundError("gone")],
            "4": [ContactAPIError("forbidden", status_code=403)],
        }
        contacts = [NormalizedContact(id=str(i)) for i in range(1, 5)]

        outcome, already_absent = await WipeExecutor(
            target, CREDS, concurrency=2, sleep=no_sleep
        ).run(contacts)

        assert outcome.attempted == 4
        assert outcome.succeeded == 3
        assert outcome.failed == 1
        assert outcome.errors == {"delete:3": "forbidden"}
        assert already_absent == 2
        assert target.deletes == ["1"]

    async def test_concurrency_bound(self, no_sleep):
        """No more than the configured deletes run at once."""
        target = FakeContactSource()
        contacts = [NormalizedContact(id=str(i)) for i in range(10)]

        await WipeExecutor(target, CREDS, concurrency=3, sleep=no_sleep).run(contacts)

        assert target.peak_in_flight <= 3
        assert len(target.deletes) == 10

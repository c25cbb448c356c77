"""
Tests for the rollup engine.

Runs full syncs and wipes against fake adapters and an in-memory store.
"""

from datetime import datetime, timezone

import pytest
from conftest import FakeContactSource, build_directory, contact_record

from contact_rollup.api.base import ContactAPIError
from contact_rollup.config.rollup_config import RollupConfigError, RollupConfigInput
from contact_rollup.storage.db import StoreError
from contact_rollup.sync.engine import (
    STATUS_DISABLED,
    STATUS_FAILED,
    STATUS_OK,
    RollupEngine,
    SyncResult,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def sources():
    """Two source accounts sharing one contact, plus a target."""
    return {
        "acct-a": FakeContactSource(
            pages=[
                [
                    contact_record(
                        "a1",
                        email="ann@example.com",
                        first_name="Ann",
                        tags=["vip"],
                        date_added="2024-06-01T08:00:00Z",
                    )
                ]
            ]
        ),
        "acct-b": FakeContactSource(
            pages=[
                [
                    contact_record(
                        "b1",
                        email="ANN@example.com",
                        last_name="Lee",
                        tags=["lead"],
                        date_added="2024-05-01T08:00:00Z",
                    ),
                    contact_record(
                        "b2",
                        phone="(555) 010-1234",
                        first_name="Bob",
                        date_added="2024-05-31T20:00:00Z",
                    ),
                ]
            ]
        ),
        "rollup-hq": FakeContactSource(),
    }


@pytest.fixture
def engine(store, sources, no_sleep):
    directory = build_directory(sources)
    return RollupEngine(store, directory, clock=lambda: NOW, sleep=no_sleep)


# =============================================================================
# Config
# =============================================================================


class TestConfig:
    """Tests for config snapshot and save."""

    def test_default_snapshot(self, engine):
        """With nothing saved the rollup-like account is the target."""
        snapshot = engine.get_config_snapshot()

        assert snapshot.is_default_config is True
        assert snapshot.config.target_account_key == "rollup-hq"
        assert snapshot.config.source_account_keys == ["acct-a", "acct-b"]

    def test_save_drops_target_from_sources(self, engine):
        """The target never appears among the saved sources."""
        saved = engine.save_config(
            RollupConfigInput(
                target_account_key="rollup-hq",
                source_account_keys=["acct-a", " acct-a ", "rollup-hq"],
            ),
            changed_by="ops",
        )

        assert saved.source_account_keys == ["acct-a"]
        assert saved.updated_by == "ops"

    def test_save_rejects_unknown_target(self, engine):
        """Unknown target keys are rejected."""
        with pytest.raises(RollupConfigError, match="Unknown target"):
            engine.save_config(
                RollupConfigInput(target_account_key="nope", source_account_keys=[])
            )

    def test_save_rejects_unknown_sources(self, engine):
        """Unknown source keys are rejected."""
        with pytest.raises(RollupConfigError, match="ghost"):
            engine.save_config(
                RollupConfigInput(
                    target_account_key="rollup-hq", source_account_keys=["ghost"]
                )
            )

    def test_save_rejects_target_like_sources(self, store, no_sleep):
        """A second rollup-like account cannot be used as a source."""
        directory = build_directory(
            {
                "rollup-hq": FakeContactSource(),
                "acct-a": FakeContactSource(),
                "west": FakeContactSource(),
            },
            dealers={"west": "West Rollup Group"},
        )
        engine = RollupEngine(store, directory, clock=lambda: NOW, sleep=no_sleep)

        with pytest.raises(RollupConfigError, match="west"):
            engine.save_config(
                RollupConfigInput(
                    target_account_key="rollup-hq",
                    source_account_keys=["acct-a", "west"],
                )
            )


# =============================================================================
# Sync
# =============================================================================


class TestRunSync:
    """Tests for RollupEngine.run_sync."""

    async def test_dry_run_merges_across_sources(self, engine, sources):
        """One identity seen in two accounts becomes one merged contact."""
        result = await engine.run_sync(dry_run=True, full_sync=True)

        assert isinstance(result, SyncResult)
        assert result.status == STATUS_OK
        assert result.totals.source_accounts_processed == 2
        assert result.totals.fetched_contacts == 3
        assert result.totals.accepted_contacts == 3
        assert result.totals.global_duplicates_collapsed == 1
        assert result.totals.queued_for_target == 2
        assert result.totals.upserts_attempted == 0

        ann = result.contacts[0]
        assert ann.dedupe_key == "email:ann@example.com"
        assert ann.first_name == "Ann"
        assert ann.last_name == "Lee"
        assert ann.tags == ["vip", "lead"]
        assert ann.source_account_keys == ["acct-a", "acct-b"]
        assert sources["rollup-hq"].upsert_attempts == 0

    async def test_upserts_to_target(self, engine, sources):
        """A real run writes each merged contact with provenance tags."""
        result = await engine.run_sync(full_sync=True)

        assert result.ok
        assert result.totals.upserts_succeeded == 2
        written = sources["rollup-hq"].upserts
        assert {p.email or p.phone for p in written} == {
            "ann@example.com",
            "5550101234",
        }
        ann = next(p for p in written if p.email)
        assert "rollup-src:acct-a" in ann.tags
        assert "rollup-src:acct-b" in ann.tags

    async def test_incremental_window(self, engine):
        """Only records added within the lookback window are considered."""
        result = await engine.run_sync(dry_run=True)

        assert result.full_sync is False
        assert result.totals.fetched_contacts == 3
        assert result.totals.considered_contacts == 2
        assert [c.dedupe_key for c in result.contacts] == [
            "email:ann@example.com",
            "phone:5550101234",
        ]

    async def test_source_account_limit(self, engine, sources):
        """Only the first N sources are processed."""
        result = await engine.run_sync(dry_run=True, full_sync=True, source_account_limit=1)

        assert result.source_account_keys == ["acct-a"]
        assert result.totals.source_accounts_requested == 1
        assert sources["acct-b"].list_calls == []

    async def test_max_upserts_truncates(self, store, no_sleep):
        """Contacts beyond the upsert cap are deferred, not written."""
        records = [contact_record(str(i), email=f"c{i}@example.com") for i in range(105)]
        directory = build_directory(
            {"acct-a": FakeContactSource(pages=[records]), "rollup-hq": FakeContactSource()}
        )
        engine = RollupEngine(store, directory, clock=lambda: NOW, sleep=no_sleep)

        result = await engine.run_sync(dry_run=True, full_sync=True, max_upserts=100)

        assert result.totals.queued_for_target == 100
        assert result.totals.truncated_by_max_upserts == 5
        assert len(result.contacts) == 100

    async def test_disabled(self, engine, store, sources):
        """A disabled config short-circuits without touching any account."""
        engine.save_config(
            RollupConfigInput(
                target_account_key="rollup-hq",
                source_account_keys=["acct-a", "acct-b"],
                enabled=False,
            )
        )

        result = await engine.run_sync()

        assert result.status == STATUS_DISABLED
        assert sources["acct-a"].list_calls == []
        saved = store.get_config()
        assert saved.last_sync_status == STATUS_DISABLED
        assert saved.last_sync_summary.reason == "config disabled"
        assert saved.last_sync_summary.source_accounts_requested == 2

    async def test_missing_target(self, store, no_sleep):
        """Without a target account the run fails before fetching."""
        source = FakeContactSource()
        engine = RollupEngine(
            store, build_directory({"acct-a": source}), clock=lambda: NOW, sleep=no_sleep
        )

        result = await engine.run_sync()

        assert result.status == STATUS_FAILED
        assert "config" in result.errors
        assert source.list_calls == []
        assert store.get_config().last_sync_summary.reason == "missing target account"

    async def test_source_failure_is_isolated(self, engine, sources):
        """A failing source is reported while the others still sync."""
        sources["acct-b"].list_errors = [ContactAPIError("forbidden", status_code=403)]

        result = await engine.run_sync(full_sync=True)

        assert result.status == STATUS_FAILED
        assert result.errors == {"acct-b": "forbidden"}
        assert list(result.per_source) == ["acct-a"]
        assert result.totals.source_accounts_processed == 1
        assert result.totals.upserts_succeeded == 1

    async def test_upsert_failures_fail_the_run(self, engine, sources):
        """Per-contact write errors are kept and mark the run failed."""
        sources["rollup-hq"].upsert_errors["ann@example.com"] = [
            ContactAPIError("rejected", status_code=422)
        ]

        result = await engine.run_sync(full_sync=True)

        assert result.status == STATUS_FAILED
        assert result.totals.upserts_failed == 1
        assert result.totals.upserts_succeeded == 1
        assert result.errors == {"upsert:0": "rejected"}

    async def test_target_without_upsert_support(self, engine, sources):
        """A target whose provider cannot upsert fails the run."""
        sources["rollup-hq"].can_upsert = False

        result = await engine.run_sync(full_sync=True)

        assert result.status == STATUS_FAILED
        assert "does not support" in result.errors["target"]

    async def test_dry_run_skips_target_resolution(self, store, sources, no_sleep):
        """An unreachable target does not matter for a dry run."""
        directory = build_directory(sources, capabilities={"rollup-hq": ()})
        engine = RollupEngine(store, directory, clock=lambda: NOW, sleep=no_sleep)

        dry = await engine.run_sync(dry_run=True, full_sync=True)
        real = await engine.run_sync(full_sync=True)

        assert dry.status == STATUS_OK
        assert real.status == STATUS_FAILED
        assert "capability" in real.errors["target"]

    async def test_records_history_and_last_run(self, engine, store):
        """Every run lands in history and on the config row."""
        await engine.run_sync(
            dry_run=True, full_sync=True, trigger_source="cli", triggered_by="ops"
        )

        history = engine.list_run_history()
        assert len(history) == 1
        record = history[0]
        assert record.run_type == "sync"
        assert record.dry_run is True
        assert record.trigger_source == "cli"
        assert record.triggered_by == "ops"
        assert record.totals["queuedForTarget"] == 2

        saved = store.get_config()
        assert saved.target_account_key == "rollup-hq"
        assert saved.last_sync_status == STATUS_OK
        assert saved.last_sync_summary.totals["globalDuplicatesCollapsed"] == 1
        per_source = saved.last_sync_summary.per_source
        assert set(per_source) == {"acct-a", "acct-b"}
        assert per_source["acct-b"]["fetched"] == 2
        assert per_source["acct-b"]["provider"] == "fake"
        assert record.per_source == per_source

    async def test_refuses_while_lease_held(self, engine, store):
        """A second run is refused while another holds the lease."""
        assert store.acquire_lease("wipe-other", "wipe") is None

        result = await engine.run_sync(dry_run=True)

        assert result.status == STATUS_FAILED
        assert "in progress" in result.errors["run"]
        assert store.get_config() is None
        assert engine.list_run_history()[0].status == STATUS_FAILED

    async def test_lease_store_failure_is_reported(self, engine, store, sources):
        """A store error while taking the lease fails the run instead of raising."""

        def locked(*args, **kwargs):
            raise StoreError("Database error: database is locked")

        store.acquire_lease = locked

        result = await engine.run_sync(dry_run=True)

        assert result.status == STATUS_FAILED
        assert "database is locked" in result.errors["run"]
        assert sources["acct-a"].list_calls == []
        assert engine.list_run_history()[0].status == STATUS_FAILED

    async def test_releases_lease(self, engine, store):
        """The lease is free again once a run finishes."""
        await engine.run_sync(dry_run=True)
        assert store.get_lease() is None

    def test_result_to_dict(self):
        """The result serializes with camelCase keys and no contacts."""
        result = SyncResult(
            status=STATUS_OK,
            dry_run=True,
            full_sync=False,
            target_account_key="rollup-hq",
            source_account_keys=["acct-a"],
            started_at="s",
            finished_at="f",
        )

        data = result.to_dict()

        assert data["runType"] == "sync"
        assert data["dryRun"] is True
        assert data["totals"]["upsertsSucceeded"] == 0
        assert "contacts" not in data


# =============================================================================
# Wipe
# =============================================================================


@pytest.fixture
def target_records():
    return [
        contact_record("t1", email="a@example.com", tags=["contact-rollup"]),
        contact_record("t2", email="b@example.com", tags=["rollup-src:acct-a"]),
        contact_record("t3", email="c@example.com", tags=["vip"]),
    ]


class TestRunWipe:
    """Tests for RollupEngine.run_wipe."""

    async def test_tagged_dry_run(self, engine, sources, target_records):
        """A dry run counts eligible records and deletes nothing."""
        sources["rollup-hq"].pages = [target_records]

        result = await engine.run_wipe(dry_run=True)

        assert result.status == STATUS_OK
        assert result.mode == "tagged"
        assert result.totals.target_contacts_fetched == 3
        assert result.totals.eligible_contacts == 2
        assert result.totals.queued_for_delete == 2
        assert sources["rollup-hq"].delete_attempts == 0

    async def test_tagged_deletes_only_rollup_records(self, engine, sources, target_records):
        """Tagged mode leaves records the rollup did not write."""
        sources["rollup-hq"].pages = [target_records]

        result = await engine.run_wipe()

        assert result.ok
        assert sorted(sources["rollup-hq"].deletes) == ["t1", "t2"]
        assert result.totals.deletes_succeeded == 2

    async def test_all_requires_confirmation(self, engine, sources, target_records):
        """A real all-contact wipe without confirmation never fetches."""
        sources["rollup-hq"].pages = [target_records]

        result = await engine.run_wipe(mode="all")

        assert result.status == STATUS_FAILED
        assert "confirm_all" in result.errors["config"]
        assert sources["rollup-hq"].list_calls == []

    async def test_all_dry_run_needs_no_confirmation(self, engine, sources, target_records):
        sources["rollup-hq"].pages = [target_records]

        result = await engine.run_wipe(dry_run=True, mode="all")

        assert result.status == STATUS_OK
        assert result.totals.eligible_contacts == 3

    async def test_all_with_confirmation(self, engine, sources, target_records):
        """Confirmed all-contact wipes delete every record."""
        sources["rollup-hq"].pages = [target_records]

        result = await engine.run_wipe(mode="all", confirm_all=True)

        assert result.ok
        assert sorted(sources["rollup-hq"].deletes) == ["t1", "t2", "t3"]

    async def test_unknown_mode_is_tagged(self, engine):
        result = await engine.run_wipe(dry_run=True, mode="everything")
        assert result.mode == "tagged"

    async def test_target_without_delete_support(self, engine, sources, store):
        """A target whose provider cannot delete fails before fetching."""
        sources["rollup-hq"].can_delete = False

        result = await engine.run_wipe()

        assert result.status == STATUS_FAILED
        assert "does not support" in result.errors["target"]
        assert sources["rollup-hq"].list_calls == []
        summary = store.get_config().last_sync_summary
        assert summary.run_type == "wipe"
        assert summary.reason == "target provider unsupported"

    async def test_target_fetch_failure(self, engine, sources):
        """A failing target listing is reported, nothing is deleted."""
        sources["rollup-hq"].list_errors = [ContactAPIError("forbidden", status_code=403)]

        result = await engine.run_wipe()

        assert result.status == STATUS_FAILED
        assert result.errors["target"] == "forbidden"
        assert sources["rollup-hq"].delete_attempts == 0

    async def test_disabled(self, engine):
        engine.save_config(
            RollupConfigInput(
                target_account_key="rollup-hq",
                source_account_keys=["acct-a"],
                enabled=False,
            )
        )

        result = await engine.run_wipe()

        assert result.status == STATUS_DISABLED

    async def test_lease_store_failure_is_reported(self, engine, store, sources):
        """Wipes also report a store error on the lease as a failed run."""

        def locked(*args, **kwargs):
            raise StoreError("Database error: database is locked")

        store.acquire_lease = locked

        result = await engine.run_wipe(dry_run=True)

        assert result.status == STATUS_FAILED
        assert "database is locked" in result.errors["run"]
        assert sources["rollup-hq"].list_calls == []

    async def test_records_wipe_history(self, engine, sources, target_records):
        """Wipes are recorded with their mode."""
        sources["rollup-hq"].pages = [target_records]

        await engine.run_wipe(dry_run=True, trigger_source="cli")

        record = engine.list_run_history(run_type="wipe")[0]
        assert record.wipe_mode == "tagged"
        assert record.totals["eligibleContacts"] == 2
        assert engine.list_run_history(run_type="sync") == []

"""Tests for rollup config resolution and run summaries."""

import pytest

from contact_rollup.config.rollup_config import (
    AccountOption,
    RollupConfig,
    RollupConfigError,
    RollupConfigInput,
    RunSummary,
    build_default_config,
    build_snapshot,
    changed_fields,
    hydrate_saved_config,
    sort_account_options,
)

OPTIONS = [
    AccountOption(key="north", dealer="North Motors"),
    AccountOption(key="hq-rollup", dealer="Group Rollup", rollup_target=True),
    AccountOption(key="south", dealer="south Autos"),
]


class TestRollupConfig:
    """Tests for the RollupConfig dataclass."""

    def test_sources_exclude_target(self):
        config = RollupConfig(
            target_account_key=" hq ", source_account_keys=["a", "hq", "a", " "]
        )
        assert config.target_account_key == "hq"
        assert config.source_account_keys == ["a"]


class TestDefaults:
    """Tests for default and hydrated configs."""

    def test_sort_account_options(self):
        keys = [o.key for o in sort_account_options(OPTIONS)]
        assert keys == ["hq-rollup", "north", "south"]

    def test_default_config(self):
        """The first rollup-like account is the target, the rest are sources."""
        config = build_default_config(sort_account_options(OPTIONS))
        assert config.target_account_key == "hq-rollup"
        assert config.source_account_keys == ["north", "south"]

    def test_default_without_rollup_account(self):
        config = build_default_config([AccountOption(key="north", dealer="North")])
        assert config.target_account_key == ""
        assert config.source_account_keys == ["north"]

    def test_hydrate_drops_unknown_accounts(self):
        saved = RollupConfig(
            target_account_key="gone", source_account_keys=["north", "ghost", "hq-rollup"]
        )
        config = hydrate_saved_config(OPTIONS, saved)
        assert config.target_account_key == ""
        assert config.source_account_keys == ["north"]


class TestBuildSnapshot:
    """Tests for build_snapshot."""

    def test_no_saved_config(self):
        snapshot = build_snapshot(OPTIONS, None)
        assert snapshot.is_default_config is True
        assert [o.key for o in snapshot.target_options] == ["hq-rollup"]
        assert [o.key for o in snapshot.source_options] == ["north", "south"]

    def test_saved_sources_kept(self):
        saved = RollupConfig(target_account_key="hq-rollup", source_account_keys=["south"])
        snapshot = build_snapshot(OPTIONS, saved)
        assert snapshot.is_default_config is False
        assert snapshot.config.source_account_keys == ["south"]

    def test_empty_sources_fall_back_to_all_eligible(self):
        """If no saved source survives, every eligible source is used."""
        saved = RollupConfig(target_account_key="hq-rollup", source_account_keys=["ghost"])
        snapshot = build_snapshot(OPTIONS, saved)
        assert snapshot.config.source_account_keys == ["north", "south"]

    def test_to_dict(self):
        data = build_snapshot(OPTIONS, None).to_dict()
        assert data["config"]["target_account_key"] == "hq-rollup"
        assert data["account_options"][0]["rollup_target"] is True


class TestChangedFields:
    """Tests for changed_fields."""

    def test_first_save_changes_everything(self):
        after = RollupConfigInput(target_account_key="hq", source_account_keys=[])
        assert "target_account_key" in changed_fields(None, after)

    def test_only_differences(self):
        before = RollupConfig(target_account_key="hq", source_account_keys=["a"])
        after = RollupConfigInput(
            target_account_key="hq", source_account_keys=["a"], enabled=False
        )
        assert changed_fields(before, after) == ["enabled"]


class TestRunSummary:
    """Tests for RunSummary serialization."""

    def test_short_circuit_shape(self):
        """Short-circuit summaries carry a reason instead of totals."""
        data = RunSummary(reason="config disabled", source_accounts_requested=2).to_dict()
        assert data == {
            "runType": "sync",
            "dryRun": False,
            "fullSync": False,
            "reason": "config disabled",
            "sourceAccountsRequested": 2,
        }

    def test_completed_shape_parses_back(self):
        summary = RunSummary(
            run_type="wipe",
            mode="all",
            totals={"deletesSucceeded": 3},
            errors={"delete:1": "forbidden"},
        )
        parsed = RunSummary.from_dict(summary.to_dict())
        assert parsed == summary

    def test_sync_summary_keeps_per_source_stats(self):
        """Per-source stats are written under perSource and read back."""
        summary = RunSummary(
            totals={"fetchedContacts": 3},
            source_accounts=["north"],
            per_source={"north": {"provider": "ghl", "fetched": 3, "accepted": 2}},
        )

        data = summary.to_dict()

        assert data["perSource"] == {"north": {"provider": "ghl", "fetched": 3, "accepted": 2}}
        assert RunSummary.from_dict(data).per_source == summary.per_source

    @pytest.mark.parametrize(
        "payload",
        [
            [],
            {"runType": "merge"},
            {"totals": {"a": "1"}},
            {"totals": {"a": True}},
            {"errors": {"x": 1}},
            {"dryRun": "yes"},
            {"sourceAccounts": "north"},
            {"reason": 5},
            {"perSource": {"north": 3}},
            {"perSource": ["north"]},
        ],
    )
    def test_rejects_malformed(self, payload):
        with pytest.raises(RollupConfigError):
            RunSummary.from_dict(payload)

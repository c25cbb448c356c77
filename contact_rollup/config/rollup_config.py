"""
Rollup configuration and run summary types.

The rollup config is a single stored row that names the target account,
the source accounts, hygiene toggles and the outcome of the last run.
This module defines its structured form and the rules that turn a stored
row (or no row at all) into the effective config for a run.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, Optional

# Stored config row key
SINGLETON_KEY = "primary"

RUN_STATUSES = ("ok", "disabled", "failed")
RUN_TYPES = ("sync", "wipe")


class RollupConfigError(Exception):
    """Raised when a rollup config or run summary payload is invalid."""

    pass


def unique_keys(values: Iterable[str]) -> list[str]:
    """Trim keys, drop blanks and duplicates, keep first-seen order."""
    seen: dict[str, None] = {}
    for value in values:
        key = str(value).strip()
        if key:
            seen.setdefault(key, None)
    return list(seen)


def _require_bool(data: dict[str, Any], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise RollupConfigError(f"{key} must be a boolean, got {type(value).__name__}")
    return value


def _require_str_list(data: dict[str, Any], key: str) -> list[str]:
    value = data.get(key, [])
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise RollupConfigError(f"{key} must be a list of strings")
    return value


@dataclass(frozen=True)
class AccountOption:
    """
    An account offered in the rollup config.

    Attributes:
        key: Account key
        dealer: Display name (falls back to the key)
        rollup_target: Whether the account looks like a rollup target
    """

    key: str
    dealer: str
    rollup_target: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "dealer": self.dealer, "rollup_target": self.rollup_target}


@dataclass
class RunSummary:
    """
    Persisted outcome of one run.

    Short-circuited runs carry ``reason`` and ``source_accounts_requested``;
    completed runs carry ``totals``, ``source_accounts``, ``errors`` and,
    for syncs, ``per_source`` stats keyed by account.
    """

    run_type: str = "sync"
    dry_run: bool = False
    full_sync: bool = False
    mode: Optional[str] = None
    reason: Optional[str] = None
    source_accounts_requested: Optional[int] = None
    totals: dict[str, int] = field(default_factory=dict)
    source_accounts: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    per_source: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> RunSummary:
        """
        Parse a stored summary.

        Raises:
            RollupConfigError: If the payload does not have the expected shape
        """
        if not isinstance(data, dict):
            raise RollupConfigError(
                f"Run summary must be a dictionary, got {type(data).__name__}"
            )

        run_type = data.get("runType", "sync")
        if run_type not in RUN_TYPES:
            raise RollupConfigError(f"Unknown run type: {run_type!r}")

        totals = data.get("totals", {})
        if not isinstance(totals, dict) or not all(
            isinstance(k, str) and isinstance(v, int) and not isinstance(v, bool)
            for k, v in totals.items()
        ):
            raise RollupConfigError("totals must map names to integers")

        errors = data.get("errors", {})
        if not isinstance(errors, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in errors.items()
        ):
            raise RollupConfigError("errors must map keys to messages")

        per_source = data.get("perSource", {})
        if not isinstance(per_source, dict) or not all(
            isinstance(k, str) and isinstance(v, dict) for k, v in per_source.items()
        ):
            raise RollupConfigError("perSource must map account keys to stats")

        requested = data.get("sourceAccountsRequested")
        if requested is not None and (
            not isinstance(requested, int) or isinstance(requested, bool)
        ):
            raise RollupConfigError("sourceAccountsRequested must be an integer")

        reason = data.get("reason")
        mode = data.get("mode")
        for name, value in (("reason", reason), ("mode", mode)):
            if value is not None and not isinstance(value, str):
                raise RollupConfigError(f"{name} must be a string")

        return cls(
            run_type=run_type,
            dry_run=_require_bool(data, "dryRun", False),
            full_sync=_require_bool(data, "fullSync", False),
            mode=mode,
            reason=reason,
            source_accounts_requested=requested,
            totals=dict(totals),
            source_accounts=_require_str_list(data, "sourceAccounts"),
            errors=dict(errors),
            per_source={k: dict(v) for k, v in per_source.items()},
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "runType": self.run_type,
            "dryRun": self.dry_run,
            "fullSync": self.full_sync,
        }
        if self.mode is not None:
            data["mode"] = self.mode
        if self.reason is not None:
            data["reason"] = self.reason
            data["sourceAccountsRequested"] = self.source_accounts_requested or 0
            return data
        data["totals"] = dict(self.totals)
        data["sourceAccounts"] = list(self.source_accounts)
        data["errors"] = dict(self.errors)
        if self.per_source:
            data["perSource"] = {k: dict(v) for k, v in self.per_source.items()}
        return data


@dataclass
class RollupConfig:
    """
    Effective rollup configuration.

    Attributes:
        target_account_key: The single write destination ("" if unset)
        source_account_keys: Accounts read from, never including the target
        enabled: Runs short-circuit as "disabled" when False
        scrub_invalid_emails: Drop emails failing the deliverability check
        scrub_invalid_phones: Drop phones failing the dialability check
        updated_by: Who last saved the config
        created_at: ISO timestamp of the first save
        updated_at: ISO timestamp of the last save
        last_synced_at: ISO timestamp of the last run
        last_sync_status: Status of the last run
        last_sync_summary: Summary of the last run
    """

    target_account_key: str = ""
    source_account_keys: list[str] = field(default_factory=list)
    enabled: bool = True
    scrub_invalid_emails: bool = True
    scrub_invalid_phones: bool = True
    updated_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_synced_at: Optional[str] = None
    last_sync_status: Optional[str] = None
    last_sync_summary: Optional[RunSummary] = None

    def __post_init__(self) -> None:
        self.target_account_key = self.target_account_key.strip()
        self.source_account_keys = [
            key
            for key in unique_keys(self.source_account_keys)
            if key != self.target_account_key
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_account_key": self.target_account_key,
            "source_account_keys": list(self.source_account_keys),
            "enabled": self.enabled,
            "scrub_invalid_emails": self.scrub_invalid_emails,
            "scrub_invalid_phones": self.scrub_invalid_phones,
            "updated_by": self.updated_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_synced_at": self.last_synced_at,
            "last_sync_status": self.last_sync_status,
            "last_sync_summary": (
                self.last_sync_summary.to_dict() if self.last_sync_summary else None
            ),
        }


@dataclass(frozen=True)
class RollupConfigInput:
    """Fields an operator may change when saving the config."""

    target_account_key: str
    source_account_keys: list[str]
    enabled: bool = True
    scrub_invalid_emails: bool = True
    scrub_invalid_phones: bool = True

    @classmethod
    def from_config(cls, config: RollupConfig) -> RollupConfigInput:
        return cls(
            target_account_key=config.target_account_key,
            source_account_keys=list(config.source_account_keys),
            enabled=config.enabled,
            scrub_invalid_emails=config.scrub_invalid_emails,
            scrub_invalid_phones=config.scrub_invalid_phones,
        )

    def normalized(self) -> RollupConfigInput:
        """Trimmed target and de-duplicated, trimmed source keys."""
        return replace(
            self,
            target_account_key=self.target_account_key.strip(),
            source_account_keys=unique_keys(self.source_account_keys),
        )


@dataclass
class ConfigSnapshot:
    """
    Effective config plus the account choices it was resolved against.

    Attributes:
        config: Effective config for the next run
        account_options: Every known account, sorted by dealer name
        target_options: Accounts that look like rollup targets
        source_options: Accounts eligible as sources for the current target
        is_default_config: True when no config row has been saved yet
    """

    config: RollupConfig
    account_options: list[AccountOption] = field(default_factory=list)
    target_options: list[AccountOption] = field(default_factory=list)
    source_options: list[AccountOption] = field(default_factory=list)
    is_default_config: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "config": self.config.to_dict(),
            "account_options": [o.to_dict() for o in self.account_options],
            "target_options": [o.to_dict() for o in self.target_options],
            "source_options": [o.to_dict() for o in self.source_options],
            "is_default_config": self.is_default_config,
        }


def sort_account_options(options: Iterable[AccountOption]) -> list[AccountOption]:
    """Sort by dealer name, then key, case-insensitively."""
    return sorted(options, key=lambda o: (o.dealer.lower(), o.key))


def build_default_config(options: Sequence[AccountOption]) -> RollupConfig:
    """
    Config used before anything has been saved.

    The target is the first rollup-target-like account; every other
    non-target-like account is a source.
    """
    target = next((o for o in options if o.rollup_target), None)
    target_key = target.key if target else ""
    return RollupConfig(
        target_account_key=target_key,
        source_account_keys=[
            o.key for o in options if o.key != target_key and not o.rollup_target
        ],
    )


def hydrate_saved_config(
    options: Sequence[AccountOption], saved: RollupConfig
) -> RollupConfig:
    """
    Reconcile a saved config with the accounts known today.

    Unknown targets are dropped; sources are limited to known accounts that
    are neither the target nor rollup-target-like.
    """
    by_key = {o.key: o for o in options}
    target_key = saved.target_account_key if saved.target_account_key in by_key else ""
    sources = [
        key
        for key in saved.source_account_keys
        if key in by_key and key != target_key and not by_key[key].rollup_target
    ]
    return replace(saved, target_account_key=target_key, source_account_keys=sources)


def build_snapshot(
    options: Iterable[AccountOption], saved: Optional[RollupConfig]
) -> ConfigSnapshot:
    """
    Resolve the effective config.

    When no saved source survives hydration, every eligible source is used.
    """
    account_options = sort_account_options(options)
    config = (
        hydrate_saved_config(account_options, saved)
        if saved is not None
        else build_default_config(account_options)
    )

    target_options = [o for o in account_options if o.rollup_target]
    source_options = [
        o
        for o in account_options
        if o.key != config.target_account_key and not o.rollup_target
    ]
    eligible = {o.key for o in source_options}
    safe_sources = [key for key in config.source_account_keys if key in eligible]
    if not safe_sources:
        safe_sources = [o.key for o in source_options]

    return ConfigSnapshot(
        config=replace(config, source_account_keys=safe_sources),
        account_options=account_options,
        target_options=target_options,
        source_options=source_options,
        is_default_config=saved is None,
    )


def changed_fields(before: Optional[RollupConfig], after: RollupConfigInput) -> list[str]:
    """Names of operator-editable fields that differ between two configs."""
    names = [
        "target_account_key",
        "source_account_keys",
        "enabled",
        "scrub_invalid_emails",
        "scrub_invalid_phones",
    ]
    if before is None:
        return names
    return [name for name in names if getattr(before, name) != getattr(after, name)]

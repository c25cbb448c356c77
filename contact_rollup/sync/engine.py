"""
Rollup engine.

Orchestrates the two rollup operations:

- sync: fetch every source account (bounded), normalize and dedupe locally,
  fold into one identity map, then upsert into the target account
- wipe: fetch the target account, select rollup-written (or all) records,
  then delete them

Every run records its outcome, including dry runs and runs that stopped at
a precondition. Nothing raises out of run_sync() / run_wipe(): failures are
reported through the result's status and errors map.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from typing import Any, Optional

from contact_rollup.accounts.directory import (
    AccountDirectory,
    AccountResolutionError,
    ResolvedAccount,
)
from contact_rollup.api.base import ContactAPIError
from contact_rollup.config.rollup_config import (
    ConfigSnapshot,
    RollupConfig,
    RollupConfigError,
    RollupConfigInput,
    RunSummary,
    build_snapshot,
)
from contact_rollup.config.tunables import RollupTunables, resolve_source_account_limit
from contact_rollup.storage.db import (
    DEFAULT_LEASE_TTL,
    RollupStore,
    RunRecord,
    StoreError,
    to_timestamp,
    utc_now,
)
from contact_rollup.sync.contact import PreparedContact
from contact_rollup.sync.dedupe import GlobalDeduper
from contact_rollup.sync.fetcher import fetch_all_contacts
from contact_rollup.sync.prepare import (
    PreparedSource,
    SourceSyncStats,
    incremental_cutoff,
    prepare_source_contacts,
)
from contact_rollup.sync.runner import run_bounded
from contact_rollup.sync.upsert import UpsertExecutor, plan_upserts
from contact_rollup.sync.wipe import (
    WIPE_MODE_ALL,
    WipeExecutor,
    parse_wipe_mode,
    plan_wipe,
)

STATUS_OK = "ok"
STATUS_DISABLED = "disabled"
STATUS_FAILED = "failed"

DEFAULT_TRIGGER_SOURCE = "manual"

logger = logging.getLogger(__name__)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class SyncTotals:
    """Aggregate counters of a sync run."""

    source_accounts_requested: int = 0
    source_accounts_processed: int = 0
    fetched_contacts: int = 0
    considered_contacts: int = 0
    accepted_contacts: int = 0
    skipped_invalid: int = 0
    local_duplicates_collapsed: int = 0
    global_duplicates_collapsed: int = 0
    queued_for_target: int = 0
    truncated_by_max_upserts: int = 0
    upserts_attempted: int = 0
    upserts_succeeded: int = 0
    upserts_failed: int = 0

    def add_source(self, stats: SourceSyncStats) -> None:
        self.source_accounts_processed += 1
        self.fetched_contacts += stats.fetched
        self.considered_contacts += stats.considered
        self.accepted_contacts += stats.accepted
        self.skipped_invalid += stats.skipped_invalid
        self.local_duplicates_collapsed += stats.local_duplicates_collapsed

    def to_dict(self) -> dict[str, int]:
        return {_camel(f.name): getattr(self, f.name) for f in fields(self)}


@dataclass
class WipeTotals:
    """Aggregate counters of a wipe run."""

    target_contacts_fetched: int = 0
    eligible_contacts: int = 0
    queued_for_delete: int = 0
    truncated_by_max_deletes: int = 0
    skipped_missing_id: int = 0
    deletes_attempted: int = 0
    deletes_succeeded: int = 0
    deletes_failed: int = 0
    already_absent: int = 0

    def to_dict(self) -> dict[str, int]:
        return {_camel(f.name): getattr(self, f.name) for f in fields(self)}


@dataclass
class SourceReport:
    """Per-source outcome kept in the sync result."""

    provider: str
    stats: SourceSyncStats

    def to_dict(self) -> dict[str, Any]:
        return {"provider": self.provider, **self.stats.to_dict()}


@dataclass
class SyncResult:
    """
    Outcome of one sync run.

    ``contacts`` holds the merged identities queued for the target. It is
    returned to the caller for previews and is never persisted.
    """

    status: str
    dry_run: bool
    full_sync: bool
    target_account_key: str
    source_account_keys: list[str]
    started_at: str
    finished_at: str = ""
    totals: SyncTotals = field(default_factory=SyncTotals)
    per_source: dict[str, SourceReport] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    contacts: list[PreparedContact] = field(default_factory=list, repr=False)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "runType": "sync",
            "dryRun": self.dry_run,
            "fullSync": self.full_sync,
            "targetAccountKey": self.target_account_key,
            "sourceAccountKeys": list(self.source_account_keys),
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "totals": self.totals.to_dict(),
            "perSource": {key: r.to_dict() for key, r in self.per_source.items()},
            "errors": dict(self.errors),
        }


@dataclass
class WipeResult:
    """Outcome of one wipe run."""

    status: str
    dry_run: bool
    mode: str
    target_account_key: str
    started_at: str
    finished_at: str = ""
    totals: WipeTotals = field(default_factory=WipeTotals)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "runType": "wipe",
            "dryRun": self.dry_run,
            "mode": self.mode,
            "targetAccountKey": self.target_account_key,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "totals": self.totals.to_dict(),
            "errors": dict(self.errors),
        }


class RollupEngine:
    """
    Runs rollup syncs and wipes against a store and an account directory.

    Usage:
        engine = RollupEngine(store, directory, RollupTunables.from_sources(settings))
        result = await engine.run_sync(dry_run=True, full_sync=True)
        print(result.totals.global_duplicates_collapsed)
    """

    def __init__(
        self,
        store: RollupStore,
        directory: AccountDirectory,
        tunables: Optional[RollupTunables] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        lease_ttl: timedelta = DEFAULT_LEASE_TTL,
    ):
        """
        Initialize the engine.

        Args:
            store: Config and run history store
            directory: Resolves account keys to adapters and credentials
            tunables: Concurrency limits and caps (defaults if None)
            clock: Returns the current time
            sleep: Awaitable sleep used between API retries
            lease_ttl: How long a run may hold the run lease
        """
        self.store = store
        self.directory = directory
        self.tunables = tunables or RollupTunables()
        self.clock = clock
        self.sleep = sleep
        self.lease_ttl = lease_ttl

    # =========================================================================
    # Config
    # =========================================================================

    def get_config_snapshot(self) -> ConfigSnapshot:
        """Effective config resolved against the accounts known today."""
        return build_snapshot(self.directory.options(), self.store.get_config())

    def save_config(
        self, config_input: RollupConfigInput, changed_by: Optional[str] = None
    ) -> RollupConfig:
        """
        Validate and save the rollup config.

        Raises:
            RollupConfigError: If the target or a source is not a known
                               account, or a source looks like a rollup target
        """
        config_input = config_input.normalized()
        known = set(self.directory.entries)
        target = config_input.target_account_key

        if target and target not in known:
            raise RollupConfigError(f"Unknown target account: {target}")
        unknown = [key for key in config_input.source_account_keys if key not in known]
        if unknown:
            raise RollupConfigError(f"Unknown source accounts: {', '.join(unknown)}")
        target_like = [
            key
            for key in config_input.source_account_keys
            if key != target and self.directory.is_rollup_target_like(key)
        ]
        if target_like:
            raise RollupConfigError(
                f"Rollup target accounts cannot be sources: {', '.join(target_like)}"
            )

        sources = [key for key in config_input.source_account_keys if key != target]
        return self.store.save_config(
            RollupConfigInput(
                target_account_key=target,
                source_account_keys=sources,
                enabled=config_input.enabled,
                scrub_invalid_emails=config_input.scrub_invalid_emails,
                scrub_invalid_phones=config_input.scrub_invalid_phones,
            ),
            changed_by=changed_by,
        )

    def list_run_history(
        self, limit: int = 20, run_type: Optional[str] = None
    ) -> list[RunRecord]:
        return self.store.list_run_history(limit=limit, run_type=run_type)

    # =========================================================================
    # Persistence helpers
    # =========================================================================

    def _now(self) -> str:
        return to_timestamp(self.clock())

    def _persist(
        self,
        record: RunRecord,
        errors: dict[str, str],
        config: Optional[RollupConfig] = None,
        summary: Optional[RunSummary] = None,
    ) -> None:
        """Write run history and, when given, the config's last-run fields."""
        try:
            if config is not None and summary is not None:
                self.store.record_run_outcome(config, record.status, summary)
            self.store.add_run_record(record)
        except StoreError as e:
            logger.error(f"Failed to record {record.run_type} run: {e}")
            errors["persist"] = str(e)

    def _acquire_lease(self, run_type: str) -> tuple[str, Optional[str]]:
        """
        Take the run lease.

        Returns:
            (holder id, error message if the lease could not be taken)
        """
        holder = f"{run_type}-{uuid.uuid4().hex[:12]}"
        try:
            held = self.store.acquire_lease(holder, run_type, ttl=self.lease_ttl)
        except StoreError as e:
            logger.error(f"Failed to take run lease for {run_type}: {e}")
            return holder, f"Could not take the run lease: {e}"
        if held is None:
            return holder, None
        return holder, (
            f"Another {held.run_type} run ({held.holder}) is in progress "
            f"until {held.expires_at}"
        )

    def _release_lease(self, holder: str) -> None:
        try:
            self.store.release_lease(holder)
        except StoreError as e:
            logger.error(f"Failed to release run lease {holder}: {e}")

    # =========================================================================
    # Sync
    # =========================================================================

    async def run_sync(
        self,
        dry_run: bool = False,
        full_sync: bool = False,
        source_account_limit: Any = None,
        max_upserts: Any = None,
        trigger_source: str = DEFAULT_TRIGGER_SOURCE,
        triggered_by: Optional[str] = None,
    ) -> SyncResult:
        """
        Run a rollup sync.

        Args:
            dry_run: Fetch, clean and dedupe but write nothing to the target
            full_sync: Consider every source record regardless of age
            source_account_limit: Only process the first N source accounts
            max_upserts: Override the per-run upsert cap
            trigger_source: Who started the run (e.g., "cli", "scheduler")
            triggered_by: Operator name, if known

        Returns:
            SyncResult with status "ok", "disabled" or "failed"
        """
        started_at = self._now()
        upsert_limit = self.tunables.resolve_max_upserts(max_upserts)
        source_limit = resolve_source_account_limit(source_account_limit)

        def history(result: SyncResult) -> RunRecord:
            return RunRecord(
                run_type="sync",
                status=result.status,
                dry_run=dry_run,
                full_sync=full_sync,
                trigger_source=trigger_source,
                triggered_by=triggered_by,
                target_account_key=result.target_account_key,
                source_account_keys=result.source_account_keys,
                totals=result.totals.to_dict(),
                per_source={key: r.to_dict() for key, r in result.per_source.items()},
                errors=result.errors,
                started_at=result.started_at,
                finished_at=result.finished_at,
            )

        try:
            snapshot = self.get_config_snapshot()
        except (StoreError, RollupConfigError) as e:
            logger.error(f"Could not load rollup config: {e}")
            result = SyncResult(
                status=STATUS_FAILED,
                dry_run=dry_run,
                full_sync=full_sync,
                target_account_key="",
                source_account_keys=[],
                started_at=started_at,
                finished_at=self._now(),
                errors={"config": str(e)},
            )
            self._persist(history(result), result.errors)
            return result

        config = snapshot.config
        source_keys = [k for k in config.source_account_keys if k != config.target_account_key]
        if source_limit is not None:
            source_keys = source_keys[:source_limit]

        result = SyncResult(
            status=STATUS_OK,
            dry_run=dry_run,
            full_sync=full_sync,
            target_account_key=config.target_account_key,
            source_account_keys=source_keys,
            started_at=started_at,
        )
        result.totals.source_accounts_requested = len(source_keys)

        if not config.enabled:
            logger.info("Rollup sync skipped: config disabled")
            return self._finish_short_sync(
                result, config, STATUS_DISABLED, "config disabled", history
            )

        if not config.target_account_key:
            logger.warning("Rollup sync failed: no target account configured")
            result.errors["config"] = "No rollup target account is configured"
            return self._finish_short_sync(
                result, config, STATUS_FAILED, "missing target account", history
            )

        holder, lease_error = self._acquire_lease("sync")
        if lease_error:
            logger.warning(f"Rollup sync refused: {lease_error}")
            result.status = STATUS_FAILED
            result.errors["run"] = lease_error
            result.finished_at = self._now()
            self._persist(history(result), result.errors)
            return result

        try:
            logger.info(
                f"Starting rollup sync ({'full' if full_sync else 'incremental'}"
                f"{', dry run' if dry_run else ''}): {len(source_keys)} sources "
                f"into {config.target_account_key}"
            )
            await self._sync_sources(result, config, source_keys, full_sync)
            queued = plan_upserts(result.contacts, upsert_limit)
            result.contacts = queued.queued
            result.totals.queued_for_target = len(queued.queued)
            result.totals.truncated_by_max_upserts = queued.truncated
            if queued.truncated:
                logger.info(
                    f"Deferred {queued.truncated} contacts beyond the "
                    f"{upsert_limit} upsert limit"
                )

            if not dry_run and queued.queued:
                await self._upsert_target(result, config)
        except Exception as e:
            logger.exception(f"Rollup sync aborted: {e}")
            result.errors["run"] = str(e) or type(e).__name__
        finally:
            self._release_lease(holder)

        if result.errors:
            result.status = STATUS_FAILED
        result.finished_at = self._now()

        summary = RunSummary(
            run_type="sync",
            dry_run=dry_run,
            full_sync=full_sync,
            totals=result.totals.to_dict(),
            source_accounts=source_keys,
            errors=dict(result.errors),
            per_source={key: r.to_dict() for key, r in result.per_source.items()},
        )
        self._persist(history(result), result.errors, config, summary)

        t = result.totals
        logger.info(
            f"Rollup sync {result.status}: {t.source_accounts_processed}/"
            f"{t.source_accounts_requested} sources, {t.fetched_contacts} fetched, "
            f"{t.accepted_contacts} accepted, {t.queued_for_target} queued, "
            f"{t.upserts_succeeded} upserted, {t.upserts_failed} failed"
        )
        return result

    def _finish_short_sync(
        self,
        result: SyncResult,
        config: RollupConfig,
        status: str,
        reason: str,
        history: Callable[[SyncResult], RunRecord],
    ) -> SyncResult:
        result.status = status
        result.finished_at = self._now()
        summary = RunSummary(
            run_type="sync",
            dry_run=result.dry_run,
            full_sync=result.full_sync,
            reason=reason,
            source_accounts_requested=len(result.source_account_keys),
        )
        self._persist(history(result), result.errors, config, summary)
        return result

    async def _sync_sources(
        self,
        result: SyncResult,
        config: RollupConfig,
        source_keys: list[str],
        full_sync: bool,
    ) -> None:
        """Fetch, prepare and globally dedupe every source."""
        cutoff = (
            None
            if full_sync
            else incremental_cutoff(self.clock(), self.tunables.incremental_lookback_hours)
        )

        async def load_source(key: str) -> tuple[str, PreparedSource]:
            account = self.directory.resolve(key)
            raw = await fetch_all_contacts(
                account.adapter,
                account.credentials,
                self.tunables.max_source_contacts_per_account,
                account_key=key,
                sleep=self.sleep,
            )
            prepared = prepare_source_contacts(
                key,
                raw,
                account.adapter.normalize_contact,
                cutoff=cutoff,
                scrub_invalid_emails=config.scrub_invalid_emails,
                scrub_invalid_phones=config.scrub_invalid_phones,
            )
            return account.adapter.provider, prepared

        operations = [(lambda key=key: load_source(key)) for key in source_keys]
        settled = await run_bounded(operations, self.tunables.source_account_concurrency)

        deduper = GlobalDeduper()
        for key, outcome in zip(source_keys, settled):
            if not outcome.ok or outcome.value is None:
                result.errors[key] = outcome.error_message
                logger.warning(f"Source {key} failed: {outcome.error_message}")
                continue
            provider, prepared = outcome.value
            result.per_source[key] = SourceReport(provider=provider, stats=prepared.stats)
            result.totals.add_source(prepared.stats)
            deduper.add_all(prepared.contacts.values())
            logger.info(
                f"Source {key}: {prepared.stats.fetched} fetched, "
                f"{prepared.stats.accepted} accepted"
            )

        result.totals.global_duplicates_collapsed = deduper.duplicates_collapsed
        result.contacts = deduper.contacts()

    async def _upsert_target(self, result: SyncResult, config: RollupConfig) -> None:
        try:
            target = self.directory.resolve(config.target_account_key)
        except AccountResolutionError as e:
            result.errors["target"] = str(e)
            logger.warning(f"Rollup target unavailable: {e}")
            return

        if not target.adapter.supports_upsert:
            result.errors["target"] = (
                f'Target provider "{target.adapter.provider}" does not support '
                "contact upserts"
            )
            return

        executor = UpsertExecutor(
            target.adapter,
            target.credentials,
            self.tunables.target_upsert_concurrency,
            sleep=self.sleep,
        )
        outcome = await executor.run(result.contacts)
        result.totals.upserts_attempted = outcome.attempted
        result.totals.upserts_succeeded = outcome.succeeded
        result.totals.upserts_failed = outcome.failed
        result.errors.update(outcome.errors)

    # =========================================================================
    # Wipe
    # =========================================================================

    async def run_wipe(
        self,
        dry_run: bool = False,
        mode: Any = "tagged",
        max_deletes: Any = None,
        confirm_all: bool = False,
        trigger_source: str = DEFAULT_TRIGGER_SOURCE,
        triggered_by: Optional[str] = None,
    ) -> WipeResult:
        """
        Delete rollup-written (or all) contacts from the target account.

        Args:
            dry_run: Fetch and select but delete nothing
            mode: "tagged" (rollup-written records only) or "all"
            max_deletes: Override the per-run delete cap
            confirm_all: Required for a non-dry "all" wipe
            trigger_source: Who started the run
            triggered_by: Operator name, if known

        Returns:
            WipeResult with status "ok", "disabled" or "failed"
        """
        started_at = self._now()
        wipe_mode = parse_wipe_mode(mode)
        delete_limit = self.tunables.resolve_max_deletes(max_deletes)

        def history(result: WipeResult) -> RunRecord:
            return RunRecord(
                run_type="wipe",
                status=result.status,
                dry_run=dry_run,
                wipe_mode=wipe_mode,
                trigger_source=trigger_source,
                triggered_by=triggered_by,
                target_account_key=result.target_account_key,
                totals=result.totals.to_dict(),
                errors=result.errors,
                started_at=result.started_at,
                finished_at=result.finished_at,
            )

        result = WipeResult(
            status=STATUS_OK,
            dry_run=dry_run,
            mode=wipe_mode,
            target_account_key="",
            started_at=started_at,
        )

        try:
            snapshot = self.get_config_snapshot()
        except (StoreError, RollupConfigError) as e:
            logger.error(f"Could not load rollup config: {e}")
            result.status = STATUS_FAILED
            result.errors["config"] = str(e)
            result.finished_at = self._now()
            self._persist(history(result), result.errors)
            return result

        config = snapshot.config
        result.target_account_key = config.target_account_key

        if not config.enabled:
            logger.info("Rollup wipe skipped: config disabled")
            return self._finish_short_wipe(
                result, config, STATUS_DISABLED, "config disabled", history
            )

        if not config.target_account_key:
            result.errors["config"] = "No rollup target account is configured"
            return self._finish_short_wipe(
                result, config, STATUS_FAILED, "missing target account", history
            )

        if wipe_mode == WIPE_MODE_ALL and not dry_run and not confirm_all:
            result.errors["config"] = (
                "confirm_all is required for non-dry all-contact wipes"
            )
            return self._finish_short_wipe(
                result, config, STATUS_FAILED, "confirmation required", history
            )

        try:
            target = self.directory.resolve(config.target_account_key)
        except AccountResolutionError as e:
            result.errors["target"] = str(e)
            return self._finish_short_wipe(
                result, config, STATUS_FAILED, "target unavailable", history
            )

        if not target.adapter.supports_delete:
            result.errors["target"] = (
                f'Target provider "{target.adapter.provider}" does not support '
                "contact deletes"
            )
            return self._finish_short_wipe(
                result, config, STATUS_FAILED, "target provider unsupported", history
            )

        holder, lease_error = self._acquire_lease("wipe")
        if lease_error:
            logger.warning(f"Rollup wipe refused: {lease_error}")
            result.status = STATUS_FAILED
            result.errors["run"] = lease_error
            result.finished_at = self._now()
            self._persist(history(result), result.errors)
            return result

        try:
            logger.info(
                f"Starting rollup wipe ({wipe_mode} mode"
                f"{', dry run' if dry_run else ''}) on {target.key}"
            )
            await self._wipe_target(result, target, wipe_mode, delete_limit, dry_run)
        except Exception as e:
            logger.exception(f"Rollup wipe aborted: {e}")
            result.errors["run"] = str(e) or type(e).__name__
        finally:
            self._release_lease(holder)

        if result.errors:
            result.status = STATUS_FAILED
        result.finished_at = self._now()

        summary = RunSummary(
            run_type="wipe",
            dry_run=dry_run,
            mode=wipe_mode,
            totals=result.totals.to_dict(),
            errors=dict(result.errors),
        )
        self._persist(history(result), result.errors, config, summary)

        t = result.totals
        logger.info(
            f"Rollup wipe {result.status}: {t.target_contacts_fetched} fetched, "
            f"{t.eligible_contacts} eligible, {t.queued_for_delete} queued, "
            f"{t.deletes_succeeded} deleted, {t.deletes_failed} failed"
        )
        return result

    def _finish_short_wipe(
        self,
        result: WipeResult,
        config: RollupConfig,
        status: str,
        reason: str,
        history: Callable[[WipeResult], RunRecord],
    ) -> WipeResult:
        result.status = status
        result.finished_at = self._now()
        summary = RunSummary(
            run_type="wipe",
            dry_run=result.dry_run,
            mode=result.mode,
            reason=reason,
            source_accounts_requested=0,
        )
        self._persist(history(result), result.errors, config, summary)
        return result

    async def _wipe_target(
        self,
        result: WipeResult,
        target: ResolvedAccount,
        mode: str,
        delete_limit: int,
        dry_run: bool,
    ) -> None:
        try:
            raw = await fetch_all_contacts(
                target.adapter,
                target.credentials,
                self.tunables.max_target_contacts_for_wipe,
                account_key=target.key,
                sleep=self.sleep,
            )
        except ContactAPIError as e:
            result.errors["target"] = str(e)
            logger.warning(f"Could not fetch target contacts: {e}")
            return

        contacts = [target.adapter.normalize_contact(record) for record in raw]
        plan = plan_wipe(contacts, mode, delete_limit)

        totals = result.totals
        totals.target_contacts_fetched = len(contacts)
        totals.eligible_contacts = plan.eligible
        totals.queued_for_delete = len(plan.queued)
        totals.truncated_by_max_deletes = plan.truncated
        totals.skipped_missing_id = plan.skipped_missing_id

        if dry_run or not plan.queued:
            return

        executor = WipeExecutor(
            target.adapter,
            target.credentials,
            self.tunables.target_delete_concurrency,
            sleep=self.sleep,
        )
        outcome, already_absent = await executor.run(plan.queued)
        totals.deletes_attempted = outcome.attempted
        totals.deletes_succeeded = outcome.succeeded
        totals.deletes_failed = outcome.failed
        totals.already_absent = already_absent
        result.errors.update(outcome.errors)

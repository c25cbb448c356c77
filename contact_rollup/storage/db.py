"""
SQLite database module for rollup state.

Provides persistent storage for the rollup config row, its change history,
run history and the run lease that keeps two runs from overlapping.
"""

import json
import logging
import sqlite3
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from contact_rollup.config.rollup_config import (
    SINGLETON_KEY,
    RollupConfig,
    RollupConfigError,
    RollupConfigInput,
    RunSummary,
    changed_fields,
)

# Runs holding the lease longer than this are presumed crashed
DEFAULT_LEASE_TTL = timedelta(hours=6)

# SQL Schema for rollup config, history and run fencing tables
SCHEMA = """
CREATE TABLE IF NOT EXISTS rollup_config (
    singleton_key TEXT PRIMARY KEY,
    target_account_key TEXT NOT NULL DEFAULT '',
    source_account_keys TEXT NOT NULL DEFAULT '[]',
    enabled INTEGER NOT NULL DEFAULT 1,
    scrub_invalid_emails INTEGER NOT NULL DEFAULT 1,
    scrub_invalid_phones INTEGER NOT NULL DEFAULT 1,
    updated_by TEXT,
    last_synced_at TEXT,
    last_sync_status TEXT,
    last_sync_summary TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rollup_config_history (
    id INTEGER PRIMARY KEY,
    singleton_key TEXT NOT NULL,
    target_account_key TEXT NOT NULL,
    source_account_keys TEXT NOT NULL,
    enabled INTEGER NOT NULL,
    scrub_invalid_emails INTEGER NOT NULL,
    scrub_invalid_phones INTEGER NOT NULL,
    changed_fields TEXT NOT NULL,
    changed_by TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_config_history_created
    ON rollup_config_history(created_at);

CREATE TABLE IF NOT EXISTS rollup_run_history (
    id INTEGER PRIMARY KEY,
    run_type TEXT NOT NULL,
    status TEXT NOT NULL,
    dry_run INTEGER NOT NULL DEFAULT 0,
    full_sync INTEGER NOT NULL DEFAULT 0,
    wipe_mode TEXT,
    trigger_source TEXT,
    triggered_by TEXT,
    target_account_key TEXT,
    source_account_keys TEXT NOT NULL DEFAULT '[]',
    totals TEXT NOT NULL DEFAULT '{}',
    per_source TEXT NOT NULL DEFAULT '{}',
    errors TEXT NOT NULL DEFAULT '{}',
    started_at TEXT NOT NULL,
    finished_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_run_history_started ON rollup_run_history(started_at);
CREATE INDEX IF NOT EXISTS idx_run_history_type ON rollup_run_history(run_type);

CREATE TABLE IF NOT EXISTS rollup_run_lease (
    lease_key TEXT PRIMARY KEY,
    holder TEXT NOT NULL,
    run_type TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
"""

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when a database operation fails."""

    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO string, so stored values sort chronologically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


@dataclass
class RunRecord:
    """One row of run history."""

    run_type: str
    status: str
    started_at: str
    finished_at: str
    dry_run: bool = False
    full_sync: bool = False
    wipe_mode: Optional[str] = None
    trigger_source: Optional[str] = None
    triggered_by: Optional[str] = None
    target_account_key: Optional[str] = None
    source_account_keys: list[str] = field(default_factory=list)
    totals: dict[str, int] = field(default_factory=dict)
    per_source: dict[str, dict[str, Any]] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    id: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_type": self.run_type,
            "status": self.status,
            "dry_run": self.dry_run,
            "full_sync": self.full_sync,
            "wipe_mode": self.wipe_mode,
            "trigger_source": self.trigger_source,
            "triggered_by": self.triggered_by,
            "target_account_key": self.target_account_key,
            "source_account_keys": list(self.source_account_keys),
            "totals": dict(self.totals),
            "per_source": {k: dict(v) for k, v in self.per_source.items()},
            "errors": dict(self.errors),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass(frozen=True)
class RunLease:
    """Current holder of the run lease."""

    holder: str
    run_type: str
    acquired_at: str
    expires_at: str


class RollupStore:
    """
    SQLite store for the rollup config and run bookkeeping.

    Provides methods for:
    - Reading and saving the singleton rollup config (with change history)
    - Recording the outcome of the last run on the config row
    - Appending to and listing run history
    - Acquiring and releasing the run lease

    Usage:
        store = RollupStore('/path/to/rollup.db')
        store.initialize()

        # Or use in-memory for testing:
        store = RollupStore(':memory:')
        store.initialize()
    """

    def __init__(self, db_path: str, clock: Callable[[], datetime] = utc_now):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
            clock: Returns the current time (injectable for tests)
        """
        self.db_path = db_path
        self.clock = clock
        self._shared_connection: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        For in-memory databases, returns a shared connection to ensure
        schema persists across operations. For file databases, creates
        a new connection each time.
        """
        if self.db_path == ":memory:":
            if self._shared_connection is None:
                self._shared_connection = sqlite3.connect(":memory:")
                self._shared_connection.row_factory = sqlite3.Row
            return self._shared_connection

        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success and rolls back on error. SQLite errors are
        re-raised as StoreError.

        Usage:
            with store.connection() as conn:
                conn.execute("SELECT * FROM rollup_config")
        """
        conn = self._get_connection()
        is_shared = self.db_path == ":memory:"
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Database operation failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            if not is_shared:
                conn.close()

    def initialize(self) -> None:
        """Create tables if they don't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    def close(self) -> None:
        if self._shared_connection is not None:
            self._shared_connection.close()
            self._shared_connection = None

    def _now(self) -> str:
        return to_timestamp(self.clock())

    # =========================================================================
    # Config Operations
    # =========================================================================

    @staticmethod
    def _row_to_config(row: sqlite3.Row) -> RollupConfig:
        try:
            source_keys = json.loads(row["source_account_keys"] or "[]")
        except json.JSONDecodeError as e:
            raise RollupConfigError(f"Stored source_account_keys is not JSON: {e}") from e
        if not isinstance(source_keys, list):
            raise RollupConfigError("Stored source_account_keys must be a JSON list")

        summary: Optional[RunSummary] = None
        if row["last_sync_summary"]:
            try:
                summary = RunSummary.from_dict(json.loads(row["last_sync_summary"]))
            except (json.JSONDecodeError, RollupConfigError) as e:
                logger.warning(f"Ignoring unreadable last run summary: {e}")

        return RollupConfig(
            target_account_key=row["target_account_key"] or "",
            source_account_keys=[str(key) for key in source_keys],
            enabled=bool(row["enabled"]),
            scrub_invalid_emails=bool(row["scrub_invalid_emails"]),
            scrub_invalid_phones=bool(row["scrub_invalid_phones"]),
            updated_by=row["updated_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_synced_at=row["last_synced_at"],
            last_sync_status=row["last_sync_status"],
            last_sync_summary=summary,
        )

    def get_config(self) -> Optional[RollupConfig]:
        """
        Get the saved rollup config.

        Returns:
            RollupConfig, or None if nothing has been saved yet

        Raises:
            RollupConfigError: If the stored row cannot be parsed
        """
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM rollup_config WHERE singleton_key = ?",
                (SINGLETON_KEY,),
            ).fetchone()
        return self._row_to_config(row) if row else None

    def save_config(
        self, config_input: RollupConfigInput, changed_by: Optional[str] = None
    ) -> RollupConfig:
        """
        Insert or update the rollup config and append a history row.

        Source keys are trimmed and de-duplicated before saving. Last-run
        fields are left untouched.

        Args:
            config_input: Operator-editable fields
            changed_by: Who made the change

        Returns:
            The saved config
        """
        config_input = config_input.normalized()
        before = self.get_config()
        fields_changed = changed_fields(before, config_input)
        now = self._now()
        source_json = json.dumps(config_input.source_account_keys)

        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO rollup_config (
                    singleton_key, target_account_key, source_account_keys,
                    enabled, scrub_invalid_emails, scrub_invalid_phones,
                    updated_by, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(singleton_key) DO UPDATE SET
                    target_account_key = excluded.target_account_key,
                    source_account_keys = excluded.source_account_keys,
                    enabled = excluded.enabled,
                    scrub_invalid_emails = excluded.scrub_invalid_emails,
                    scrub_invalid_phones = excluded.scrub_invalid_phones,
                    updated_by = excluded.updated_by,
                    updated_at = excluded.updated_at
                """,
                (
                    SINGLETON_KEY,
                    config_input.target_account_key,
                    source_json,
                    int(config_input.enabled),
                    int(config_input.scrub_invalid_emails),
                    int(config_input.scrub_invalid_phones),
                    changed_by,
                    now,
                    now,
                ),
            )
            conn.execute(
                """
                INSERT INTO rollup_config_history (
                    singleton_key, target_account_key, source_account_keys,
                    enabled, scrub_invalid_emails, scrub_invalid_phones,
                    changed_fields, changed_by, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    SINGLETON_KEY,
                    config_input.target_account_key,
                    source_json,
                    int(config_input.enabled),
                    int(config_input.scrub_invalid_emails),
                    int(config_input.scrub_invalid_phones),
                    json.dumps(fields_changed),
                    changed_by,
                    now,
                ),
            )

        logger.info(
            f"Saved rollup config (changed: {', '.join(fields_changed) or 'nothing'})"
        )
        saved = self.get_config()
        if saved is None:
            raise StoreError("Config row missing after save")
        return saved

    def list_config_history(self, limit: int = 20) -> list[dict[str, Any]]:
        """
        Get config changes, newest first.

        Args:
            limit: Maximum number of rows

        Returns:
            List of history dictionaries
        """
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM rollup_config_history
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (max(1, limit),),
            ).fetchall()

        history = []
        for row in rows:
            entry = dict(row)
            entry["source_account_keys"] = json.loads(entry["source_account_keys"])
            entry["changed_fields"] = json.loads(entry["changed_fields"])
            entry["enabled"] = bool(entry["enabled"])
            entry["scrub_invalid_emails"] = bool(entry["scrub_invalid_emails"])
            entry["scrub_invalid_phones"] = bool(entry["scrub_invalid_phones"])
            history.append(entry)
        return history

    def record_run_outcome(
        self, config: RollupConfig, status: str, summary: RunSummary
    ) -> None:
        """
        Store the outcome of a run on the config row.

        The effective config the run used is written along with the status,
        so the first run also persists a default config.
        """
        now = self._now()
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO rollup_config (
                    singleton_key, target_account_key, source_account_keys,
                    enabled, scrub_invalid_emails, scrub_invalid_phones,
                    updated_by, last_synced_at, last_sync_status,
                    last_sync_summary, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(singleton_key) DO UPDATE SET
                    target_account_key = excluded.target_account_key,
                    source_account_keys = excluded.source_account_keys,
                    enabled = excluded.enabled,
                    scrub_invalid_emails = excluded.scrub_invalid_emails,
                    scrub_invalid_phones = excluded.scrub_invalid_phones,
                    last_synced_at = excluded.last_synced_at,
                    last_sync_status = excluded.last_sync_status,
                    last_sync_summary = excluded.last_sync_summary
                """,
                (
                    SINGLETON_KEY,
                    config.target_account_key,
                    json.dumps(config.source_account_keys),
                    int(config.enabled),
                    int(config.scrub_invalid_emails),
                    int(config.scrub_invalid_phones),
                    config.updated_by,
                    now,
                    status,
                    json.dumps(summary.to_dict()),
                    now,
                    now,
                ),
            )

    # =========================================================================
    # Run History Operations
    # =========================================================================

    def add_run_record(self, record: RunRecord) -> int:
        """
        Append a run to history.

        Returns:
            The new row id
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO rollup_run_history (
                    run_type, status, dry_run, full_sync, wipe_mode,
                    trigger_source, triggered_by, target_account_key,
                    source_account_keys, totals, per_source, errors, started_at,
                    finished_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.run_type,
                    record.status,
                    int(record.dry_run),
                    int(record.full_sync),
                    record.wipe_mode,
                    record.trigger_source,
                    record.triggered_by,
                    record.target_account_key,
                    json.dumps(record.source_account_keys),
                    json.dumps(record.totals),
                    json.dumps(record.per_source),
                    json.dumps(record.errors),
                    record.started_at,
                    record.finished_at,
                ),
            )
            row_id = cursor.lastrowid
        record.id = row_id
        return int(row_id or 0)

    def list_run_history(
        self, limit: int = 20, run_type: Optional[str] = None
    ) -> list[RunRecord]:
        """
        Get recorded runs, newest first.

        Args:
            limit: Maximum number of runs
            run_type: Only return "sync" or "wipe" runs when given
        """
        query = "SELECT * FROM rollup_run_history"
        params: list[Any] = []
        if run_type:
            query += " WHERE run_type = ?"
            params.append(run_type)
        query += " ORDER BY started_at DESC, id DESC LIMIT ?"
        params.append(max(1, limit))

        with self.connection() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            RunRecord(
                id=row["id"],
                run_type=row["run_type"],
                status=row["status"],
                dry_run=bool(row["dry_run"]),
                full_sync=bool(row["full_sync"]),
                wipe_mode=row["wipe_mode"],
                trigger_source=row["trigger_source"],
                triggered_by=row["triggered_by"],
                target_account_key=row["target_account_key"],
                source_account_keys=json.loads(row["source_account_keys"]),
                totals=json.loads(row["totals"]),
                per_source=json.loads(row["per_source"]),
                errors=json.loads(row["errors"]),
                started_at=row["started_at"],
                finished_at=row["finished_at"],
            )
            for row in rows
        ]

    # =========================================================================
    # Run Lease Operations
    # =========================================================================

    def acquire_lease(
        self, holder: str, run_type: str, ttl: timedelta = DEFAULT_LEASE_TTL
    ) -> Optional[RunLease]:
        """
        Try to take the run lease.

        The lease is taken if it is free, expired, or already held by
        ``holder``. The insert-or-update is a single statement, so two
        processes cannot both win.

        Returns:
            None if acquired, otherwise the lease currently held
        """
        now = self.clock()
        acquired_at = to_timestamp(now)
        expires_at = to_timestamp(now + ttl)

        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO rollup_run_lease (
                    lease_key, holder, run_type, acquired_at, expires_at
                ) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(lease_key) DO UPDATE SET
                    holder = excluded.holder,
                    run_type = excluded.run_type,
                    acquired_at = excluded.acquired_at,
                    expires_at = excluded.expires_at
                WHERE rollup_run_lease.expires_at <= excluded.acquired_at
                    OR rollup_run_lease.holder = excluded.holder
                """,
                (SINGLETON_KEY, holder, run_type, acquired_at, expires_at),
            )
            row = conn.execute(
                "SELECT * FROM rollup_run_lease WHERE lease_key = ?", (SINGLETON_KEY,)
            ).fetchone()

        if row is None or row["holder"] == holder:
            return None
        return RunLease(
            holder=row["holder"],
            run_type=row["run_type"],
            acquired_at=row["acquired_at"],
            expires_at=row["expires_at"],
        )

    def release_lease(self, holder: str) -> bool:
        """
        Release the run lease if ``holder`` owns it.

        Returns:
            True if a lease was released
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM rollup_run_lease WHERE lease_key = ? AND holder = ?",
                (SINGLETON_KEY, holder),
            )
            return cursor.rowcount > 0

    def get_lease(self) -> Optional[RunLease]:
        """Get the current lease, including an expired one."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM rollup_run_lease WHERE lease_key = ?", (SINGLETON_KEY,)
            ).fetchone()
        if row is None:
            return None
        return RunLease(
            holder=row["holder"],
            run_type=row["run_type"],
            acquired_at=row["acquired_at"],
            expires_at=row["expires_at"],
        )

"""
Command-line interface for contact_rollup.

Provides CLI commands for running rollup syncs and wipes, editing the
rollup config and inspecting run history.

Usage:
    # Show help
    contact-rollup --help

    # Preview a sync, then run it
    contact-rollup sync --dry-run
    contact-rollup sync --full

    # Choose target and sources
    contact-rollup config set --target rollup-hq --source north --source south

    # Remove rollup-written contacts from the target
    contact-rollup wipe --dry-run
"""

import asyncio
import json
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import click
import httpx

from contact_rollup import __version__
from contact_rollup.accounts.directory import AccountDirectory
from contact_rollup.api.ghl import DEFAULT_TIMEOUT
from contact_rollup.api.registry import AdapterRegistry
from contact_rollup.cli.formatters import (
    show_config_snapshot,
    show_contact_preview,
    show_last_run,
    show_run_history,
    show_sync_result,
    show_wipe_result,
)
from contact_rollup.config.generator import save_config_file
from contact_rollup.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from contact_rollup.config.rollup_config import RollupConfigError, RollupConfigInput
from contact_rollup.config.tunables import RollupTunables
from contact_rollup.storage.db import RollupStore, StoreError
from contact_rollup.sync.engine import STATUS_FAILED, RollupEngine
from contact_rollup.sync.wipe import WIPE_MODES
from contact_rollup.utils import resolve_config_dir, resolve_database_path
from contact_rollup.utils.logging import cleanup_old_logs, get_logger, setup_logging

# Trigger source recorded in run history for CLI runs
CLI_TRIGGER_SOURCE = "cli"


def get_config_dir(config_dir: str | None) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def get_config_file(config_dir: Path, config_file: str | None) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file)
    return config_dir / DEFAULT_CONFIG_FILE


def open_store(ctx: click.Context) -> RollupStore:
    """Open and initialize the rollup database for this invocation."""
    config_dir: Path = ctx.obj["config_dir"]
    db_path = resolve_database_path(config_dir, ctx.obj["config"].get("database_path"))
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = RollupStore(str(db_path))
    store.initialize()
    return store


def build_offline_engine(ctx: click.Context, store: RollupStore) -> RollupEngine:
    """Engine for config and history commands; cannot make API calls."""
    settings = ctx.obj["config"]
    return RollupEngine(
        store,
        AccountDirectory.from_settings(settings),
        RollupTunables.from_sources(settings),
    )


@asynccontextmanager
async def open_engine(ctx: click.Context) -> AsyncIterator[RollupEngine]:
    """
    Engine wired to live provider adapters.

    All adapters share one HTTP client, closed on exit together with
    the store.
    """
    settings = ctx.obj["config"]
    store = open_store(ctx)
    try:
        async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as client:
            registry = AdapterRegistry(client)
            try:
                yield RollupEngine(
                    store,
                    AccountDirectory.from_settings(settings, registry),
                    RollupTunables.from_sources(settings),
                )
            finally:
                await registry.aclose()
    finally:
        store.close()


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=False))


@click.group()
@click.version_option(version=__version__, prog_name="contact-rollup")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="CONTACT_ROLLUP_CONFIG_DIR",
    help="Configuration directory path (default: ~/.contact-rollup).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="CONTACT_ROLLUP_CONFIG_FILE",
    help="Configuration file path (default: <config-dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: str | None,
    config_file: str | None,
) -> None:
    """
    Multi-account contact rollup.

    Folds the contacts of many source accounts into one deduplicated
    target account.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    resolved_config_file = get_config_file(resolved_config_dir, config_file)

    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    # A broken settings file should not stop init-config or health
    config: dict[str, Any] = {}
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        config = loader.load_from_file(resolved_config_file)
        if config:
            loader.validate(config)
    except ConfigError as e:
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    ctx.obj["config"] = config

    effective_verbose = verbose or config.get("verbose", False)
    ctx.obj["verbose"] = effective_verbose

    log_dir = (
        Path(config["log_dir"]).expanduser()
        if config.get("log_dir")
        else resolved_config_dir / "logs"
    )
    setup_logging(verbose=effective_verbose, log_dir=log_dir)
    cleanup_old_logs(log_dir, keep_count=config.get("log_retention_count", 10))


# =============================================================================
# Sync Command
# =============================================================================


@cli.command("sync")
@click.option(
    "--dry-run", "-n", is_flag=True, help="Preview the rollup without writing to the target."
)
@click.option(
    "--full", "full_sync", is_flag=True, help="Consider every contact, not just recent ones."
)
@click.option(
    "--source-limit",
    type=int,
    default=None,
    help="Only process the first N source accounts.",
)
@click.option(
    "--max-upserts",
    type=int,
    default=None,
    help="Cap the number of contacts written this run (100-250000).",
)
@click.option("--triggered-by", default=None, help="Operator name recorded in history.")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
@click.pass_context
def sync_command(
    ctx: click.Context,
    dry_run: bool,
    full_sync: bool,
    source_limit: int | None,
    max_upserts: int | None,
    triggered_by: str | None,
    as_json: bool,
) -> None:
    """
    Roll source contacts up into the target account.

    Examples:

        # Preview what would be written
        contact-rollup sync --dry-run

        # Full sync of the first two sources only
        contact-rollup sync --full --source-limit 2
    """
    logger = get_logger(__name__)

    async def run() -> Any:
        async with open_engine(ctx) as engine:
            return await engine.run_sync(
                dry_run=dry_run,
                full_sync=full_sync,
                source_account_limit=source_limit,
                max_upserts=max_upserts,
                trigger_source=CLI_TRIGGER_SOURCE,
                triggered_by=triggered_by,
            )

    try:
        result = asyncio.run(run())
    except StoreError as e:
        logger.error(f"Sync could not start: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    if as_json:
        _echo_json(result.to_dict())
    else:
        show_sync_result(result)
        if dry_run:
            show_contact_preview(result.contacts)

    if result.status == STATUS_FAILED:
        sys.exit(1)


# =============================================================================
# Wipe Command
# =============================================================================


@cli.command("wipe")
@click.option(
    "--dry-run", "-n", is_flag=True, help="Count eligible contacts without deleting."
)
@click.option(
    "--mode",
    type=click.Choice(WIPE_MODES, case_sensitive=False),
    default="tagged",
    help="tagged: rollup-written contacts only (default). all: every contact.",
)
@click.option(
    "--confirm-all",
    is_flag=True,
    help="Required to delete every target contact with --mode all.",
)
@click.option(
    "--max-deletes",
    type=int,
    default=None,
    help="Cap the number of contacts deleted this run.",
)
@click.option("--triggered-by", default=None, help="Operator name recorded in history.")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
@click.pass_context
def wipe_command(
    ctx: click.Context,
    dry_run: bool,
    mode: str,
    confirm_all: bool,
    max_deletes: int | None,
    triggered_by: str | None,
    as_json: bool,
) -> None:
    """
    Delete rollup-written contacts from the target account.

    Examples:

        # Count what would be removed
        contact-rollup wipe --dry-run

        # Empty the target account completely
        contact-rollup wipe --mode all --confirm-all
    """
    logger = get_logger(__name__)

    async def run() -> Any:
        async with open_engine(ctx) as engine:
            return await engine.run_wipe(
                dry_run=dry_run,
                mode=mode,
                max_deletes=max_deletes,
                confirm_all=confirm_all,
                trigger_source=CLI_TRIGGER_SOURCE,
                triggered_by=triggered_by,
            )

    try:
        result = asyncio.run(run())
    except StoreError as e:
        logger.error(f"Wipe could not start: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    if as_json:
        _echo_json(result.to_dict())
    else:
        show_wipe_result(result)

    if result.status == STATUS_FAILED:
        sys.exit(1)


# =============================================================================
# Config Commands
# =============================================================================


@cli.group("config")
def config_group() -> None:
    """
    Show or change the rollup target and sources.
    """


@config_group.command("show")
@click.option("--json", "as_json", is_flag=True, help="Print the config as JSON.")
@click.pass_context
def config_show_command(ctx: click.Context, as_json: bool) -> None:
    """
    Show the effective rollup config.

    Example:

        contact-rollup config show
    """
    logger = get_logger(__name__)
    try:
        store = open_store(ctx)
        try:
            snapshot = build_offline_engine(ctx, store).get_config_snapshot()
        finally:
            store.close()
    except (StoreError, RollupConfigError) as e:
        logger.error(f"Could not read rollup config: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    if as_json:
        _echo_json(snapshot.to_dict())
    else:
        show_config_snapshot(snapshot)


@config_group.command("set")
@click.option("--target", default=None, help="Account key of the rollup target.")
@click.option(
    "--source",
    "sources",
    multiple=True,
    help="Source account key (repeatable). Replaces the current sources.",
)
@click.option("--enable/--disable", "enabled", default=None, help="Enable or disable runs.")
@click.option(
    "--scrub-emails/--no-scrub-emails",
    default=None,
    help="Drop emails that fail the deliverability check.",
)
@click.option(
    "--scrub-phones/--no-scrub-phones",
    default=None,
    help="Drop phones that fail the dialability check.",
)
@click.option("--updated-by", default=None, help="Name recorded in config history.")
@click.pass_context
def config_set_command(
    ctx: click.Context,
    target: str | None,
    sources: tuple[str, ...],
    enabled: bool | None,
    scrub_emails: bool | None,
    scrub_phones: bool | None,
    updated_by: str | None,
) -> None:
    """
    Change the rollup config.

    Options that are not given keep their current value.

    Examples:

        contact-rollup config set --target rollup-hq --source north --source south
        contact-rollup config set --disable --updated-by alex
    """
    logger = get_logger(__name__)
    try:
        store = open_store(ctx)
        try:
            engine = build_offline_engine(ctx, store)
            current = RollupConfigInput.from_config(engine.get_config_snapshot().config)
            saved = engine.save_config(
                RollupConfigInput(
                    target_account_key=(
                        target if target is not None else current.target_account_key
                    ),
                    source_account_keys=(
                        list(sources) if sources else current.source_account_keys
                    ),
                    enabled=current.enabled if enabled is None else enabled,
                    scrub_invalid_emails=(
                        current.scrub_invalid_emails if scrub_emails is None else scrub_emails
                    ),
                    scrub_invalid_phones=(
                        current.scrub_invalid_phones if scrub_phones is None else scrub_phones
                    ),
                ),
                changed_by=updated_by,
            )
        finally:
            store.close()
    except RollupConfigError as e:
        click.echo(click.style(f"Invalid config: {e}", fg="red"), err=True)
        sys.exit(1)
    except StoreError as e:
        logger.error(f"Could not save rollup config: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    click.echo(click.style("Rollup config saved.", fg="green"))
    click.echo(f"Target: {saved.target_account_key or '(none)'}")
    click.echo(f"Sources: {', '.join(saved.source_account_keys) or '(none)'}")
    click.echo(f"Enabled: {'yes' if saved.enabled else 'no'}")


# =============================================================================
# Status / History Commands
# =============================================================================


@cli.command("status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    """
    Show the last run and whether a run is in progress.

    Example:

        contact-rollup status
    """
    logger = get_logger(__name__)
    try:
        store = open_store(ctx)
        try:
            snapshot = build_offline_engine(ctx, store).get_config_snapshot()
            lease = store.get_lease()
        finally:
            store.close()
    except (StoreError, RollupConfigError) as e:
        logger.exception(f"Error getting status: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    show_last_run(snapshot, lease)


@cli.command("history")
@click.option("--limit", "-l", type=int, default=20, help="Number of runs to show.")
@click.option(
    "--type",
    "run_type",
    type=click.Choice(["sync", "wipe"], case_sensitive=False),
    default=None,
    help="Only show runs of this type.",
)
@click.option("--json", "as_json", is_flag=True, help="Print the history as JSON.")
@click.pass_context
def history_command(
    ctx: click.Context, limit: int, run_type: str | None, as_json: bool
) -> None:
    """
    List recent sync and wipe runs, newest first.

    Example:

        contact-rollup history --type wipe --limit 5
    """
    logger = get_logger(__name__)
    try:
        store = open_store(ctx)
        try:
            records = build_offline_engine(ctx, store).list_run_history(
                limit=limit, run_type=run_type
            )
        finally:
            store.close()
    except StoreError as e:
        logger.error(f"Could not read run history: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    if as_json:
        _echo_json([record.to_dict() for record in records])
    else:
        show_run_history(records)


# =============================================================================
# Init-Config / Health Commands
# =============================================================================


@cli.command("init-config")
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite existing configuration file if it exists.",
)
@click.pass_context
def init_config_command(ctx: click.Context, force: bool) -> None:
    """
    Generate a default configuration file.

    Creates a configuration file with all available options documented
    and commented out, plus an example accounts section.

    Examples:

        contact-rollup init-config
        contact-rollup init-config --force
    """
    logger = get_logger(__name__)
    config_file = ctx.obj["config_file"]

    click.echo(f"Creating configuration file: {config_file}")

    success, error = save_config_file(config_file, overwrite=force)

    if success:
        click.echo(click.style("Configuration file created successfully!", fg="green"))
        click.echo(f"\nLocation: {config_file}")
        click.echo("\nNext steps:")
        click.echo("1. Add your accounts under 'accounts:'")
        click.echo("2. Run 'contact-rollup config show' to check target and sources")
        click.echo("3. Run 'contact-rollup sync --dry-run' to preview a rollup")
        logger.info(f"Created configuration file: {config_file}")
    else:
        click.echo(click.style(f"Error: {error}", fg="red"), err=True)
        logger.error(f"Failed to create configuration file: {error}")
        sys.exit(1)


@cli.command("health")
def health_command() -> None:
    """
    Check application health status.

    Example:

        contact-rollup health
    """
    click.echo("healthy")


def main() -> None:
    """Console script entry point."""
    cli(obj={})

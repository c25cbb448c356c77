"""CLI output formatting functions.

This module contains functions for displaying sync and wipe results, the
effective rollup config and run history on the command line.
"""

from typing import TYPE_CHECKING, Optional

import click

if TYPE_CHECKING:
    from contact_rollup.config.rollup_config import ConfigSnapshot
    from contact_rollup.storage.db import RunLease, RunRecord
    from contact_rollup.sync.contact import PreparedContact
    from contact_rollup.sync.engine import SyncResult, WipeResult

# Rows shown before collapsing into "... and N more"
PREVIEW_LIMIT = 10

STATUS_COLORS = {"ok": "green", "disabled": "yellow", "failed": "red"}


def style_status(status: Optional[str]) -> str:
    if not status:
        return "never run"
    return click.style(status, fg=STATUS_COLORS.get(status, "white"))


def _echo_errors(errors: dict[str, str]) -> None:
    if not errors:
        return
    click.echo(click.style(f"\nErrors ({len(errors)}):", fg="red"))
    for key, message in list(errors.items())[:PREVIEW_LIMIT]:
        click.echo(f"  {key}: {message}")
    if len(errors) > PREVIEW_LIMIT:
        click.echo(f"  ... and {len(errors) - PREVIEW_LIMIT} more")


def show_contact_preview(contacts: list["PreparedContact"]) -> None:
    """
    Display the merged identities a sync would write.

    Args:
        contacts: Contacts queued for the target
    """
    click.echo("\n=== Contacts To Upsert ===")
    if not contacts:
        click.echo("  (none)")
        return
    for contact in contacts[:PREVIEW_LIMIT]:
        name = contact.full_name or contact.email or contact.phone or contact.dedupe_key
        sources = ", ".join(contact.source_account_keys)
        click.echo(f"  + {name} [{contact.dedupe_key}] from {sources}")
    if len(contacts) > PREVIEW_LIMIT:
        click.echo(f"  ... and {len(contacts) - PREVIEW_LIMIT} more")


def show_sync_result(result: "SyncResult") -> None:
    """
    Display a sync result.

    Args:
        result: The SyncResult returned by the engine
    """
    mode = "full" if result.full_sync else "incremental"
    header = "=== Rollup Sync (dry run) ===" if result.dry_run else "=== Rollup Sync ==="
    click.echo(header)
    click.echo(f"Status: {style_status(result.status)}")
    click.echo(f"Mode: {mode}")
    click.echo(f"Target: {result.target_account_key or '(none)'}")
    click.echo(f"Sources: {', '.join(result.source_account_keys) or '(none)'}")

    if result.per_source:
        click.echo("\nPer source:")
        for key, report in result.per_source.items():
            stats = report.stats
            click.echo(
                f"  {key} ({report.provider}): {stats.fetched} fetched, "
                f"{stats.accepted} accepted, {stats.skipped_invalid} skipped, "
                f"{stats.local_duplicates_collapsed} duplicates"
            )

    t = result.totals
    click.echo("\nTotals:")
    click.echo(f"  Sources processed: {t.source_accounts_processed}/{t.source_accounts_requested}")
    click.echo(f"  Contacts fetched: {t.fetched_contacts}")
    click.echo(f"  Contacts accepted: {t.accepted_contacts}")
    click.echo(f"  Cross-source duplicates: {t.global_duplicates_collapsed}")
    click.echo(f"  Queued for target: {t.queued_for_target}")
    if t.truncated_by_max_upserts:
        click.echo(f"  Deferred by upsert limit: {t.truncated_by_max_upserts}")
    if not result.dry_run:
        click.echo(
            f"  Upserts: {t.upserts_succeeded} succeeded, {t.upserts_failed} failed"
        )

    _echo_errors(result.errors)


def show_wipe_result(result: "WipeResult") -> None:
    """
    Display a wipe result.

    Args:
        result: The WipeResult returned by the engine
    """
    header = "=== Rollup Wipe (dry run) ===" if result.dry_run else "=== Rollup Wipe ==="
    click.echo(header)
    click.echo(f"Status: {style_status(result.status)}")
    click.echo(f"Mode: {result.mode}")
    click.echo(f"Target: {result.target_account_key or '(none)'}")

    t = result.totals
    click.echo("\nTotals:")
    click.echo(f"  Target contacts fetched: {t.target_contacts_fetched}")
    click.echo(f"  Eligible: {t.eligible_contacts}")
    click.echo(f"  Queued for delete: {t.queued_for_delete}")
    if t.truncated_by_max_deletes:
        click.echo(f"  Deferred by delete limit: {t.truncated_by_max_deletes}")
    if t.skipped_missing_id:
        click.echo(f"  Skipped (no id): {t.skipped_missing_id}")
    if not result.dry_run:
        click.echo(
            f"  Deletes: {t.deletes_succeeded} succeeded, {t.deletes_failed} failed, "
            f"{t.already_absent} already absent"
        )

    _echo_errors(result.errors)


def show_config_snapshot(snapshot: "ConfigSnapshot") -> None:
    """Display the effective rollup config and the available accounts."""
    config = snapshot.config
    click.echo("=== Rollup Config ===\n")
    if snapshot.is_default_config:
        click.echo(click.style("(defaults - nothing saved yet)", fg="cyan"))
    enabled = click.style("yes", fg="green") if config.enabled else click.style("no", fg="yellow")
    click.echo(f"Enabled: {enabled}")
    click.echo(f"Target: {config.target_account_key or click.style('(none)', fg='red')}")
    click.echo(f"Sources: {', '.join(config.source_account_keys) or '(none)'}")
    click.echo(f"Scrub invalid emails: {'yes' if config.scrub_invalid_emails else 'no'}")
    click.echo(f"Scrub invalid phones: {'yes' if config.scrub_invalid_phones else 'no'}")
    if config.updated_at:
        click.echo(f"Last saved: {config.updated_at} by {config.updated_by or 'unknown'}")

    click.echo("\nAccounts:")
    if not snapshot.account_options:
        click.echo("  (none configured)")
    for option in snapshot.account_options:
        marker = " [rollup target]" if option.rollup_target else ""
        click.echo(f"  {option.key}: {option.dealer}{marker}")


def show_last_run(snapshot: "ConfigSnapshot", lease: Optional["RunLease"]) -> None:
    """Display the last recorded run and any run in progress."""
    config = snapshot.config
    click.echo("=== Rollup Status ===\n")
    click.echo(f"Last run: {config.last_synced_at or 'Never'}")
    click.echo(f"Last status: {style_status(config.last_sync_status)}")

    summary = config.last_sync_summary
    if summary is not None:
        flags = [summary.run_type]
        if summary.dry_run:
            flags.append("dry run")
        if summary.full_sync:
            flags.append("full")
        if summary.mode:
            flags.append(summary.mode)
        click.echo(f"Last run type: {', '.join(flags)}")
        if summary.reason:
            click.echo(f"Reason: {summary.reason}")
        for name, value in summary.totals.items():
            click.echo(f"  {name}: {value}")
        _echo_errors(summary.errors)

    click.echo()
    if lease is None:
        click.echo("No run in progress.")
    else:
        click.echo(
            click.style(
                f"Run in progress: {lease.run_type} ({lease.holder}) "
                f"until {lease.expires_at}",
                fg="yellow",
            )
        )


def show_run_history(records: list["RunRecord"]) -> None:
    """Display run history, newest first."""
    if not records:
        click.echo("No runs recorded yet.")
        return
    for record in records:
        flags = []
        if record.dry_run:
            flags.append("dry run")
        if record.full_sync:
            flags.append("full")
        if record.wipe_mode:
            flags.append(record.wipe_mode)
        suffix = f" ({', '.join(flags)})" if flags else ""
        click.echo(
            f"#{record.id} {record.started_at} {record.run_type}{suffix}: "
            f"{style_status(record.status)} via {record.trigger_source}"
            + (f" by {record.triggered_by}" if record.triggered_by else "")
        )
        if record.errors:
            click.echo(f"    {len(record.errors)} error(s)")

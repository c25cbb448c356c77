"""CLI package for contact_rollup."""

from contact_rollup.cli.formatters import (
    show_config_snapshot,
    show_run_history,
    show_sync_result,
    show_wipe_result,
)
from contact_rollup.cli.main import cli, get_config_dir, main

__all__ = [
    "cli",
    "get_config_dir",
    "main",
    "show_config_snapshot",
    "show_run_history",
    "show_sync_result",
    "show_wipe_result",
]

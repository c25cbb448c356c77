"""
Entry point for running contact_rollup as a module.

Usage:
    python -m contact_rollup --help
    python -m contact_rollup sync --dry-run
    python -m contact_rollup wipe --dry-run
"""

from contact_rollup.cli import cli

if __name__ == "__main__":
    cli()

"""
Entry point for running accounting_sync as a module.

Usage:
    python -m accounting_sync --help
    python -m accounting_sync connect
    python -m accounting_sync sync --kind contacts --dry-run
"""

from accounting_sync.cli import cli

if __name__ == "__main__":
    cli()

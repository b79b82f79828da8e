"""CLI package for accounting_sync."""

from accounting_sync.cli.main import cli, get_config_dir, get_service

__all__ = ["cli", "get_config_dir", "get_service"]

"""
accounting_sync.utils - Utility module

Common utilities including logging configuration, string normalization
and configuration directory resolution.
"""

from accounting_sync.utils.normalization import (
    normalize_company_name,
    normalize_email,
    normalize_phone,
    normalize_string,
)
from accounting_sync.utils.paths import DEFAULT_CONFIG_DIR, resolve_config_dir

__all__ = [
    "normalize_string",
    "normalize_company_name",
    "normalize_email",
    "normalize_phone",
    "resolve_config_dir",
    "DEFAULT_CONFIG_DIR",
]

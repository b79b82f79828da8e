"""
accounting_sync.config - Configuration management module

Contains YAML configuration loading, validation, and default settings.
"""

from accounting_sync.config.generator import generate_default_config, save_config_file
from accounting_sync.config.loader import DEFAULT_CONFIG_FILE, ConfigLoader
from accounting_sync.config.settings import (
    ConfigError,
    MonitorSettings,
    ProviderSettings,
    Settings,
    SyncSettings,
    TokenSettings,
)

__all__ = [
    "ConfigError",
    "ConfigLoader",
    "DEFAULT_CONFIG_FILE",
    "MonitorSettings",
    "ProviderSettings",
    "Settings",
    "SyncSettings",
    "TokenSettings",
    "generate_default_config",
    "save_config_file",
]

"""
Typed settings for the accounting sync engine.

Settings are read from the ``config.yaml`` file (see ConfigLoader) and
converted into dataclasses with validation. Every section is optional;
missing values fall back to defaults suitable for the provider's public
endpoints.

Configuration file format (config.yaml):

    database: ~/.accounting-sync/sync.db
    provider:
      client_id: ABC123
      redirect_uri: http://localhost:8080/callback
      scopes: [openid, offline_access, accounting.contacts]
    sync:
      concurrency: 4
      page_size: 100
    tokens:
      interactive_margin_minutes: 20
      background_margin_minutes: 5
    duplicates:
      threshold: 0.8

Notes:
    - client_id and client_secret may be supplied through the
      ACCOUNTING_SYNC_CLIENT_ID / ACCOUNTING_SYNC_CLIENT_SECRET environment
      variables instead of the file; the environment wins.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from accounting_sync.utils.paths import default_database_path

ENV_CLIENT_ID = "ACCOUNTING_SYNC_CLIENT_ID"
ENV_CLIENT_SECRET = "ACCOUNTING_SYNC_CLIENT_SECRET"

DEFAULT_AUTHORIZE_URL = "https://login.xero.com/identity/connect/authorize"
DEFAULT_TOKEN_URL = "https://identity.xero.com/connect/token"
DEFAULT_CONNECTIONS_URL = "https://api.xero.com/connections"
DEFAULT_API_BASE_URL = "https://api.xero.com/api.xro/2.0"
DEFAULT_TENANT_HEADER = "Xero-tenant-id"
DEFAULT_SCOPES = [
    "openid",
    "offline_access",
    "accounting.contacts",
    "accounting.transactions",
]

VALID_KINDS = ("contacts", "invoices", "payments")


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(
            f"'{name}' section must be a dictionary, got {type(value).__name__}"
        )
    return value


def _get(
    section: dict[str, Any],
    prefix: str,
    key: str,
    expected: type | tuple[type, ...],
    default: Any,
) -> Any:
    value = section.get(key, default)
    if value is None:
        return default
    # bool is an int subclass; reject it where a number is expected
    if isinstance(value, bool) and bool not in (
        expected if isinstance(expected, tuple) else (expected,)
    ):
        raise ConfigError(f"Invalid type for '{prefix}.{key}': got bool")
    if not isinstance(value, expected):
        names = (
            " or ".join(t.__name__ for t in expected)
            if isinstance(expected, tuple)
            else expected.__name__
        )
        raise ConfigError(
            f"Invalid type for '{prefix}.{key}': expected {names}, "
            f"got {type(value).__name__}"
        )
    return value


def _positive(prefix: str, key: str, value: float) -> None:
    if value <= 0:
        raise ConfigError(f"{prefix}.{key} must be > 0, got {value}")


@dataclass
class ProviderSettings:
    """OAuth2 and REST endpoint settings for the accounting provider."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = "http://localhost:8080/callback"
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    authorize_url: str = DEFAULT_AUTHORIZE_URL
    token_url: str = DEFAULT_TOKEN_URL
    connections_url: str = DEFAULT_CONNECTIONS_URL
    api_base_url: str = DEFAULT_API_BASE_URL
    tenant_header: str = DEFAULT_TENANT_HEADER
    request_timeout: float = 30.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderSettings:
        p = "provider"
        scopes = _get(data, p, "scopes", list, list(DEFAULT_SCOPES))
        for i, scope in enumerate(scopes):
            if not isinstance(scope, str):
                raise ConfigError(
                    f"provider.scopes[{i}] must be a string, got {type(scope).__name__}"
                )

        settings = cls(
            client_id=_get(data, p, "client_id", str, ""),
            client_secret=_get(data, p, "client_secret", str, ""),
            redirect_uri=_get(data, p, "redirect_uri", str, cls.redirect_uri),
            scopes=scopes,
            authorize_url=_get(data, p, "authorize_url", str, DEFAULT_AUTHORIZE_URL),
            token_url=_get(data, p, "token_url", str, DEFAULT_TOKEN_URL),
            connections_url=_get(
                data, p, "connections_url", str, DEFAULT_CONNECTIONS_URL
            ),
            api_base_url=_get(data, p, "api_base_url", str, DEFAULT_API_BASE_URL),
            tenant_header=_get(data, p, "tenant_header", str, DEFAULT_TENANT_HEADER),
            request_timeout=float(
                _get(data, p, "request_timeout", (int, float), 30.0)
            ),
        )
        _positive(p, "request_timeout", settings.request_timeout)

        # Environment wins over the file for secrets
        settings.client_id = os.environ.get(ENV_CLIENT_ID, settings.client_id)
        settings.client_secret = os.environ.get(
            ENV_CLIENT_SECRET, settings.client_secret
        )
        return settings


@dataclass
class SyncSettings:
    """Sync orchestration limits and retry behaviour."""

    concurrency: int = 4
    page_size: int = 100
    job_timeout: float = 1800.0
    max_rate_limit_retries: int = 3
    max_retries: int = 3
    initial_retry_delay: float = 1.0
    max_retry_delay: float = 60.0
    retry_window_minutes: int = 60
    kinds: list[str] = field(default_factory=lambda: list(VALID_KINDS))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncSettings:
        p = "sync"
        settings = cls(
            concurrency=_get(data, p, "concurrency", int, 4),
            page_size=_get(data, p, "page_size", int, 100),
            job_timeout=float(_get(data, p, "job_timeout", (int, float), 1800.0)),
            max_rate_limit_retries=_get(data, p, "max_rate_limit_retries", int, 3),
            max_retries=_get(data, p, "max_retries", int, 3),
            initial_retry_delay=float(
                _get(data, p, "initial_retry_delay", (int, float), 1.0)
            ),
            max_retry_delay=float(
                _get(data, p, "max_retry_delay", (int, float), 60.0)
            ),
            retry_window_minutes=_get(data, p, "retry_window_minutes", int, 60),
            kinds=_get(data, p, "kinds", list, list(VALID_KINDS)),
        )

        for key in ("concurrency", "page_size", "max_retries", "retry_window_minutes"):
            _positive(p, key, getattr(settings, key))
        for key in ("job_timeout", "initial_retry_delay", "max_retry_delay"):
            _positive(p, key, getattr(settings, key))
        if settings.max_rate_limit_retries < 0:
            raise ConfigError(
                "sync.max_rate_limit_retries must be >= 0, "
                f"got {settings.max_rate_limit_retries}"
            )
        if settings.page_size > 1000:
            raise ConfigError(f"sync.page_size must be <= 1000, got {settings.page_size}")

        invalid = [kind for kind in settings.kinds if kind not in VALID_KINDS]
        if invalid:
            raise ConfigError(
                f"Invalid sync.kinds {invalid}. Must be any of: {', '.join(VALID_KINDS)}"
            )
        return settings


@dataclass
class TokenSettings:
    """Safety margins applied before handing out an access token."""

    interactive_margin_minutes: int = 20
    background_margin_minutes: int = 5

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenSettings:
        p = "tokens"
        settings = cls(
            interactive_margin_minutes=_get(
                data, p, "interactive_margin_minutes", int, 20
            ),
            background_margin_minutes=_get(
                data, p, "background_margin_minutes", int, 5
            ),
        )
        for key in ("interactive_margin_minutes", "background_margin_minutes"):
            if getattr(settings, key) < 0:
                raise ConfigError(f"tokens.{key} must be >= 0")
        return settings


@dataclass
class MonitorSettings:
    """Connection status poll loop timings (seconds)."""

    status_url: str = ""
    base_interval: float = 300.0
    min_backoff: float = 10.0
    max_backoff: float = 1800.0
    jitter_factor: float = 0.2

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MonitorSettings:
        p = "monitor"
        settings = cls(
            status_url=_get(data, p, "status_url", str, ""),
            base_interval=float(_get(data, p, "base_interval", (int, float), 300.0)),
            min_backoff=float(_get(data, p, "min_backoff", (int, float), 10.0)),
            max_backoff=float(_get(data, p, "max_backoff", (int, float), 1800.0)),
            jitter_factor=float(_get(data, p, "jitter_factor", (int, float), 0.2)),
        )
        for key in ("base_interval", "min_backoff", "max_backoff"):
            _positive(p, key, getattr(settings, key))
        if settings.min_backoff > settings.max_backoff:
            raise ConfigError("monitor.min_backoff must not exceed monitor.max_backoff")
        if not 0.0 <= settings.jitter_factor <= 1.0:
            raise ConfigError(
                f"monitor.jitter_factor must be between 0.0 and 1.0, "
                f"got {settings.jitter_factor}"
            )
        return settings


@dataclass
class Settings:
    """
    Complete application settings.

    Usage:
        settings = Settings.from_dict(ConfigLoader().load())
        settings.sync.concurrency
    """

    database: str = ""
    verbose: bool = False
    log_dir: str | None = None
    log_retention_count: int = 10
    duplicate_threshold: float = 0.8
    daemon_interval: str = "15m"
    reminder_window_days: int = 7
    unsynced_after_days: int = 3
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    tokens: TokenSettings = field(default_factory=TokenSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Settings:
        """
        Build settings from a parsed YAML dictionary.

        Raises:
            ConfigError: If a value has the wrong type or is out of range
        """
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(data).__name__}"
            )

        top = "config"
        duplicates = _section(data, "duplicates")
        reminders = _section(data, "reminders")
        daemon = _section(data, "daemon")

        threshold = float(_get(duplicates, "duplicates", "threshold", (int, float), 0.8))
        if not 0.0 <= threshold <= 1.0:
            raise ConfigError(
                f"duplicates.threshold must be between 0.0 and 1.0, got {threshold}"
            )

        daemon_interval = daemon.get("interval", "15m")
        if not isinstance(daemon_interval, (str, int)) or isinstance(
            daemon_interval, bool
        ):
            raise ConfigError("daemon.interval must be a string like '15m' or seconds")

        retention = _get(data, top, "log_retention_count", int, 10)
        if retention < 0:
            raise ConfigError(f"log_retention_count must be >= 0, got {retention}")

        window_days = _get(reminders, "reminders", "window_days", int, 7)
        unsynced_days = _get(reminders, "reminders", "unsynced_after_days", int, 3)
        _positive("reminders", "window_days", window_days)
        if unsynced_days < 0:
            raise ConfigError("reminders.unsynced_after_days must be >= 0")

        database = _get(data, top, "database", str, "")
        return cls(
            database=str(Path(database).expanduser()) if database else "",
            verbose=_get(data, top, "verbose", bool, False),
            log_dir=_get(data, top, "log_dir", str, None),
            log_retention_count=retention,
            duplicate_threshold=threshold,
            daemon_interval=str(daemon_interval),
            reminder_window_days=window_days,
            unsynced_after_days=unsynced_days,
            provider=ProviderSettings.from_dict(_section(data, "provider")),
            sync=SyncSettings.from_dict(_section(data, "sync")),
            tokens=TokenSettings.from_dict(_section(data, "tokens")),
            monitor=MonitorSettings.from_dict(_section(data, "monitor")),
        )

    def database_path(self, config_dir: Path | str | None = None) -> str:
        """Return the configured database path or the config-dir default."""
        if self.database:
            return self.database
        return str(default_database_path(config_dir))

"""
Default configuration file generator.

Writes a commented config.yaml documenting every option the loader accepts.
"""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def generate_default_config() -> str:
    """
    Generate default YAML configuration with all options documented.

    Returns:
        String containing YAML configuration with comments
    """
    return """# Accounting Sync Configuration
# =============================
#
# Settings for accounting-sync. CLI arguments override these values.
# Uncomment and modify the options you need.

# Logging
# -------

# Enable verbose output with detailed logging
# verbose: false

# Directory for log files (default: <config dir>/logs)
# log_dir: ~/.accounting-sync/logs

# Number of log files to keep
# log_retention_count: 10

# Local database (default: <config dir>/sync.db)
# database: ~/.accounting-sync/sync.db


# Accounting provider
# -------------------
# client_id / client_secret may also come from ACCOUNTING_SYNC_CLIENT_ID and
# ACCOUNTING_SYNC_CLIENT_SECRET.

provider:
  # client_id: your-client-id
  # client_secret: your-client-secret
  # redirect_uri: http://localhost:8080/callback
  # scopes:
  #   - offline_access
  #   - accounting.transactions
  #   - accounting.contacts
  # request_timeout: 30


# Sync behaviour
# --------------

sync:
  # Worker pool size for record writes
  # concurrency: 4

  # Records per page on both sides (max 1000)
  # page_size: 100

  # Seconds after which records not yet started are skipped
  # job_timeout: 1800

  # Retries of a record after HTTP 429
  # max_rate_limit_retries: 3

  # Retries of network failures and 5xx responses
  # max_retries: 3
  # initial_retry_delay: 1.0
  # max_retry_delay: 60

  # Repeated failures of one record inside this window share a log entry
  # retry_window_minutes: 60

  # Entity kinds synced by 'sync --all' and the daemon
  # kinds: [contacts, invoices, payments]


# Token safety margins (minutes)
# ------------------------------

tokens:
  # interactive_margin_minutes: 20
  # background_margin_minutes: 5


# Connection status monitor (seconds)
# -----------------------------------

monitor:
  # status_url: https://example.com/api/accounting/status
  # base_interval: 300
  # jitter_factor: 0.2
  # min_backoff: 10
  # max_backoff: 1800


# Duplicate contact detection
# ---------------------------

duplicates:
  # threshold: 0.8


# Maintenance reminders
# ---------------------

reminders:
  # window_days: 7
  # unsynced_after_days: 3


# Background daemon
# -----------------

daemon:
  # Sync interval: 30s, 15m, 1h, 1d or plain seconds
  # interval: 15m
"""


def save_config_file(
    config_path: Path, overwrite: bool = False
) -> tuple[bool, str | None]:
    """
    Save the default configuration file to config_path.

    Returns:
        Tuple of (success, error_message)
    """
    try:
        config_path = config_path.expanduser().resolve()

        if config_path.exists() and not overwrite:
            return (
                False,
                f"Configuration file already exists: {config_path}\n"
                "Use --force to overwrite.",
            )

        config_path.parent.mkdir(parents=True, mode=0o700, exist_ok=True)
        config_path.write_text(generate_default_config(), encoding="utf-8")

        # Holds the client secret
        config_path.chmod(0o600)

        logger.info(f"Created configuration file: {config_path}")
        return (True, None)

    except OSError as e:
        error_msg = f"Failed to create configuration file: {e}"
        logger.error(error_msg)
        return (False, error_msg)

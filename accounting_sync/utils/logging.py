"""
Logging setup for accounting-sync.

All modules log through the ``accounting_sync`` logger hierarchy. The CLI
calls setup_logging() once; it attaches a console handler on stderr and,
unless disabled, a dated file under <config dir>/logs in the verbose
format. Both handlers strip OAuth secrets (bearer tokens, refresh tokens,
client secrets, authorization codes) before a record is written, since
provider errors and token responses end up in log messages.

Environment:
    ACCOUNTING_SYNC_LOG_LEVEL  level name (default INFO)
    ACCOUNTING_SYNC_DEBUG      1/true/yes forces DEBUG
    ACCOUNTING_SYNC_LOG_FILE   explicit log file, or none/disabled
"""

import logging
import os
import re
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from accounting_sync.utils.paths import resolve_config_dir

ROOT_LOGGER_NAME = "accounting_sync"

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Files are named accounting_sync_YYYYMMDD.log, one per day
LOG_FILE_PREFIX = "accounting_sync_"

ENV_LOG_LEVEL = "ACCOUNTING_SYNC_LOG_LEVEL"
ENV_DEBUG = "ACCOUNTING_SYNC_DEBUG"
ENV_LOG_FILE = "ACCOUNTING_SYNC_LOG_FILE"

LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

REDACTED = "***"

_SECRET_PATTERNS = (
    re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE),
    re.compile(
        r"""(\b(?:access_token|refresh_token|id_token|client_secret)["']?"""
        r"""\s*[:=]\s*["']?)[^\s"'&,}]+""",
        re.IGNORECASE,
    ),
    # Authorization code in a callback URL
    re.compile(r"([?&]code=)[^\s&#]+"),
)

# Set by setup_logging() so cleanup_old_logs() finds the same directory
_configured_log_dir: Optional[Path] = None


def redact_secrets(text: str) -> str:
    """Mask OAuth secrets in a log message."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(lambda m: m.group(1) + REDACTED, text)
    return text


class SecretRedactingFilter(logging.Filter):
    """Rewrites each record's message with secrets masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class ColoredFormatter(logging.Formatter):
    """Console formatter that colors the level name on a capable terminal."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self._supports_color()

    @staticmethod
    def _supports_color() -> bool:
        if not hasattr(sys.stderr, "isatty") or not sys.stderr.isatty():
            return False
        # https://no-color.org/
        if os.environ.get("NO_COLOR"):
            return False
        return os.environ.get("TERM", "") != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname) if self.use_colors else None
        if color is None:
            return super().format(record)
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(colored)


def get_log_level_from_env() -> int:
    """Level from ACCOUNTING_SYNC_DEBUG, then ACCOUNTING_SYNC_LOG_LEVEL, else INFO."""
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG
    return LEVELS.get(os.environ.get(ENV_LOG_LEVEL, "INFO").upper(), logging.INFO)


def _dated_log_name() -> str:
    return f"{LOG_FILE_PREFIX}{datetime.now().strftime('%Y%m%d')}.log"


def get_log_file_path() -> Optional[Path]:
    """
    Where the file handler writes when no directory is passed in.

    Returns:
        ACCOUNTING_SYNC_LOG_FILE if set, None if it disables file logging,
        otherwise today's file under <config dir>/logs
    """
    log_file = os.environ.get(ENV_LOG_FILE)
    if log_file is not None:
        if log_file.lower() in ("none", "disabled", ""):
            return None
        return Path(log_file)
    return resolve_config_dir() / "logs" / _dated_log_name()


def _console_handler(level: int, verbose: bool, use_colors: bool) -> logging.Handler:
    fmt = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    if use_colors:
        handler.setFormatter(ColoredFormatter(fmt, DATE_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(fmt, DATE_FORMAT))
    handler.addFilter(SecretRedactingFilter())
    return handler


def _file_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT))
    handler.addFilter(SecretRedactingFilter())
    return handler


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    log_file: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure the accounting_sync logger. Safe to call more than once.

    Args:
        level: Console level; None reads the environment
        verbose: DEBUG level and the verbose console format
        log_dir: Directory for the dated log file
        log_file: Exact log file path (wins over log_dir)
        enable_file_logging: Attach the file handler at all
        use_colors: Color the console level names when the terminal allows

    Returns:
        The package root logger
    """
    global _configured_log_dir

    if verbose:
        level = logging.DEBUG
    elif level is None:
        level = get_log_level_from_env()

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = False
    logger.addHandler(_console_handler(level, verbose, use_colors))

    if enable_file_logging:
        if log_file:
            file_path: Optional[Path] = log_file
        elif log_dir:
            file_path = log_dir / _dated_log_name()
        else:
            file_path = get_log_file_path()

        if file_path:
            try:
                logger.addHandler(_file_handler(file_path))
                logger.debug(f"Log file: {file_path}")
            except OSError as e:
                logger.warning(f"Could not create log file {file_path}: {e}")

    _configured_log_dir = log_dir or (log_file.parent if log_file else None)
    return logger


def cleanup_old_logs(log_dir: Optional[Path] = None, keep_count: int = 10) -> int:
    """
    Delete all but the keep_count newest dated log files.

    keep_count 0 disables cleanup. Returns the number of files deleted.
    """
    if keep_count <= 0:
        return 0

    logs_dir = log_dir or _configured_log_dir or resolve_config_dir() / "logs"
    if not logs_dir.exists():
        return 0

    by_age = sorted(
        logs_dir.glob(f"{LOG_FILE_PREFIX}*.log"),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )

    deleted = 0
    for stale in by_age[keep_count:]:
        try:
            stale.unlink()
            deleted += 1
        except OSError as e:
            logging.getLogger(__name__).debug(f"Could not delete {stale}: {e}")
    return deleted


def get_logger(name: str) -> logging.Logger:
    """Logger for name, placed under accounting_sync if it is not already."""
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def set_log_level(level: int) -> None:
    """Change the console level at runtime; file handlers stay at DEBUG."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    for handler in logger.handlers:
        if not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)


__all__ = [
    "setup_logging",
    "get_logger",
    "set_log_level",
    "cleanup_old_logs",
    "redact_secrets",
    "ColoredFormatter",
    "SecretRedactingFilter",
    "get_log_level_from_env",
    "get_log_file_path",
    "ROOT_LOGGER_NAME",
    "DEFAULT_FORMAT",
    "CONSOLE_FORMAT",
    "VERBOSE_FORMAT",
    "DATE_FORMAT",
]

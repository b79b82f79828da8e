"""
Daemon scheduler for background accounting synchronization.

Provides a DaemonScheduler class that manages:
- Sync cycles at a configurable interval
- Signal handling for graceful shutdown (SIGTERM/SIGINT)
- PID file management to prevent two daemons on one database
"""

from __future__ import annotations

import logging
import os
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from accounting_sync.daemon import parse_interval
from accounting_sync.utils.dates import utc_now
from accounting_sync.utils.paths import resolve_config_dir

if TYPE_CHECKING:
    from accounting_sync.service import IntegrationService

logger = logging.getLogger(__name__)

PID_FILE_NAME = "daemon.pid"


class DaemonError(Exception):
    """Base exception for daemon-related errors."""

    pass


class PIDFileError(DaemonError):
    """Raised when PID file operations fail."""

    pass


class DaemonAlreadyRunningError(DaemonError):
    """Raised when attempting to start a daemon that is already running."""

    pass


@dataclass
class DaemonStats:
    """Uptime and sync cycle counters."""

    started_at: datetime = field(default_factory=utc_now)
    sync_count: int = 0
    sync_success_count: int = 0
    sync_error_count: int = 0
    last_sync_at: datetime | None = None
    last_sync_success: bool = False
    last_error: str | None = None


class PIDFileManager:
    """Creates, reads and removes the daemon PID file."""

    def __init__(self, pid_file: Path | None = None):
        self.pid_file = pid_file or resolve_config_dir() / PID_FILE_NAME

    def create(self) -> None:
        """
        Write the current process id, replacing a stale file.

        Raises:
            PIDFileError: If the PID file cannot be created.
            DaemonAlreadyRunningError: If a daemon is already running.
        """
        existing_pid = self.read()
        if existing_pid is not None:
            if self._is_process_running(existing_pid):
                raise DaemonAlreadyRunningError(
                    f"Daemon already running with PID {existing_pid}"
                )
            logger.warning(
                f"Removing stale PID file (process {existing_pid} not running)"
            )
            self.remove()

        try:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            pid = os.getpid()
            self.pid_file.write_text(str(pid))
            logger.debug(f"Created PID file: {self.pid_file} (PID: {pid})")
        except OSError as e:
            raise PIDFileError(f"Failed to create PID file {self.pid_file}: {e}") from e

    def read(self) -> int | None:
        """
        Returns:
            The stored PID, or None if the file doesn't exist.

        Raises:
            PIDFileError: If the file exists but cannot be read or parsed.
        """
        if not self.pid_file.exists():
            return None

        content = ""
        try:
            content = self.pid_file.read_text().strip()
            return int(content)
        except ValueError as e:
            raise PIDFileError(f"Invalid PID in file {self.pid_file}: {content}") from e
        except OSError as e:
            raise PIDFileError(f"Failed to read PID file {self.pid_file}: {e}") from e

    def remove(self) -> None:
        if not self.pid_file.exists():
            return
        try:
            self.pid_file.unlink()
            logger.debug(f"Removed PID file: {self.pid_file}")
        except OSError as e:
            raise PIDFileError(f"Failed to remove PID file {self.pid_file}: {e}") from e

    def _is_process_running(self, pid: int) -> bool:
        try:
            # Signal 0 only checks that the process exists
            os.kill(pid, 0)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            return True


def make_sync_callback(
    service: IntegrationService, dry_run: bool = False
) -> Callable[[], bool]:
    """
    Build the per-cycle callback: refresh the token, sync every configured
    kind in dependency order, then run the reminder scan.

    The callback returns False if any pass aborted or had failures.
    """

    def cycle() -> bool:
        service.refresh_token_if_needed()
        reports = service.sync_all(dry_run=dry_run)
        success = True
        for report in reports:
            if report.aborted:
                logger.error(f"{report.kind.value} sync aborted: {report.abort_reason}")
                success = False
            elif report.stats.failed:
                success = False
        if not dry_run:
            created = service.run_reminder_scan()
            if created:
                logger.info(f"{len(created)} new reminders need attention")
        return success

    return cycle


class DaemonScheduler:
    """
    Runs the sync callback every interval until a shutdown signal.

    Usage:
        scheduler = DaemonScheduler(interval="15m", pid_file=path)
        scheduler.set_sync_callback(make_sync_callback(service))
        scheduler.run()   # blocks until SIGTERM/SIGINT

    Attributes:
        interval: Sync interval in seconds
        stats: Daemon statistics
    """

    def __init__(
        self,
        interval: str | int = 900,
        pid_file: Path | None = None,
        run_immediately: bool = True,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        install_signal_handlers: bool = True,
    ):
        """
        Args:
            interval: Seconds or a string like "15m"
            pid_file: PID file path; defaults to <config dir>/daemon.pid
            run_immediately: Run one cycle before the first wait
            install_signal_handlers: Off when running outside the main thread
        """
        self.interval = parse_interval(interval)
        self.run_immediately = run_immediately
        self.install_signal_handlers = install_signal_handlers
        self._pid_manager = PIDFileManager(pid_file)
        self._clock = clock
        self._sleep = sleep
        self._sync_callback: Callable[[], bool] | None = None
        self._running = False
        self._shutdown_requested = False
        self._original_handlers: dict[int, object] = {}
        self.stats = DaemonStats()

    @property
    def pid_file(self) -> Path:
        return self._pid_manager.pid_file

    def set_sync_callback(self, callback: Callable[[], bool]) -> None:
        """The callback returns True on success, False on failure."""
        self._sync_callback = callback

    def _setup_signal_handlers(self) -> None:
        for signum in (signal.SIGTERM, signal.SIGINT):
            self._original_handlers[signum] = signal.signal(
                signum, self._signal_handler
            )
        logger.debug("Signal handlers installed for SIGTERM and SIGINT")

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._original_handlers.items():
            signal.signal(signum, handler)  # type: ignore[arg-type]
        self._original_handlers.clear()

    def _signal_handler(self, signum: int, frame: object) -> None:
        signal_name = signal.Signals(signum).name
        logger.info(f"Received {signal_name}, initiating graceful shutdown...")
        self._shutdown_requested = True

    def _run_sync(self) -> bool:
        """
        Execute the sync callback and update statistics.

        A failing cycle is logged and counted; the loop keeps running.
        """
        if self._sync_callback is None:
            logger.warning("No sync callback configured, skipping sync")
            return False

        self.stats.sync_count += 1
        self.stats.last_sync_at = utc_now()

        try:
            logger.info(f"Starting sync (cycle #{self.stats.sync_count})")
            success = self._sync_callback()
        except Exception as e:
            self.stats.sync_error_count += 1
            self.stats.last_sync_success = False
            self.stats.last_error = str(e)
            logger.error(f"Sync failed with exception: {e}")
            return False

        if success:
            self.stats.sync_success_count += 1
            self.stats.last_sync_success = True
            self.stats.last_error = None
            logger.info("Sync completed successfully")
        else:
            self.stats.sync_error_count += 1
            self.stats.last_sync_success = False
            logger.warning("Sync completed with errors")
        return success

    def _sleep_interruptible(self, seconds: float) -> bool:
        """
        Sleep in one-second steps so shutdown is noticed quickly.

        Wall-clock time keeps advancing while the machine is suspended, so a
        cycle due during suspension runs right after wake.

        Returns:
            True if the sleep completed, False if shutdown was requested.
        """
        end_time = self._clock() + seconds
        while not self._shutdown_requested:
            remaining = end_time - self._clock()
            if remaining <= 0:
                break
            self._sleep(min(1.0, remaining))
        return not self._shutdown_requested

    def run(self) -> None:
        """
        Run until a shutdown signal or stop().

        Raises:
            DaemonAlreadyRunningError: If another daemon holds the PID file.
            PIDFileError: If the PID file cannot be written.
        """
        logger.info(f"Starting daemon scheduler (interval: {self.interval}s)")
        self._pid_manager.create()
        logger.info(f"Daemon started (PID: {os.getpid()}, PID file: {self.pid_file})")

        if self.install_signal_handlers:
            self._setup_signal_handlers()

        self._running = True
        self._shutdown_requested = False
        self.stats = DaemonStats()

        try:
            if self.run_immediately:
                self._run_sync()

            while not self._shutdown_requested:
                logger.debug(f"Sleeping for {self.interval} seconds until next sync")
                if not self._sleep_interruptible(self.interval):
                    break
                self._run_sync()
        finally:
            self._running = False
            self._restore_signal_handlers()
            self._pid_manager.remove()
            logger.info(
                f"Daemon scheduler stopped after {self.stats.sync_count} cycles "
                f"({self.stats.sync_error_count} with errors)"
            )

    def stop(self) -> None:
        """Request shutdown; safe to call from the sync callback."""
        logger.info("Stop requested")
        self._shutdown_requested = True

    def is_running(self) -> bool:
        return self._running

    @classmethod
    def get_running_pid(cls, pid_file: Path | None = None) -> int | None:
        manager = PIDFileManager(pid_file)
        pid = manager.read()
        if pid is not None and manager._is_process_running(pid):
            return pid
        return None

    @classmethod
    def stop_running_daemon(cls, pid_file: Path | None = None) -> bool:
        """
        Send SIGTERM to the running daemon.

        Returns:
            True if the signal was sent, False if no daemon is running.
        """
        pid = cls.get_running_pid(pid_file)
        if pid is None:
            logger.info("No running daemon found")
            return False

        try:
            os.kill(pid, signal.SIGTERM)
            logger.info(f"Sent SIGTERM to daemon (PID: {pid})")
            return True
        except ProcessLookupError:
            logger.warning(f"Daemon process {pid} not found")
            return False
        except PermissionError:
            logger.error(f"Permission denied sending signal to PID {pid}")
            return False

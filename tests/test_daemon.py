"""
Tests for the daemon scheduler, PID file handling and interval parsing.
"""

import os
import signal
from unittest.mock import MagicMock, patch

import pytest

from accounting_sync.daemon import (
    DaemonAlreadyRunningError,
    DaemonScheduler,
    PIDFileError,
    PIDFileManager,
    make_sync_callback,
    parse_interval,
)


class FakeTime:
    """Wall clock that advances only when slept on."""

    def __init__(self):
        self.now = 1_700_000_000.0
        self.slept = 0.0

    def clock(self):
        return self.now

    def sleep(self, seconds):
        self.slept += seconds
        self.now += seconds


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def scheduler(tmp_path, fake_time):
    return DaemonScheduler(
        interval="1m",
        pid_file=tmp_path / "daemon.pid",
        clock=fake_time.clock,
        sleep=fake_time.sleep,
        install_signal_handlers=False,
    )


class TestParseInterval:
    """Tests for parse_interval()."""

    @pytest.mark.parametrize(
        "value, expected",
        [("30s", 30), ("15m", 900), ("1h", 3600), ("1d", 86400), ("120", 120), (45, 45)],
    )
    def test_valid(self, value, expected):
        """Test the accepted formats."""
        assert parse_interval(value) == expected

    def test_whitespace_and_case(self):
        """Test that unit parsing is lenient about case and spacing."""
        assert parse_interval(" 5 M ") == 300

    @pytest.mark.parametrize("value", ["0", 0, "0m", -5, "5x", "m", "", True, 1.5])
    def test_invalid(self, value):
        """Test that zero, negative and malformed intervals are rejected."""
        with pytest.raises(ValueError):
            parse_interval(value)


class TestPIDFileManager:
    """Tests for PIDFileManager."""

    def test_create_and_remove(self, tmp_path):
        """Test the PID file life cycle."""
        manager = PIDFileManager(tmp_path / "run" / "daemon.pid")

        manager.create()
        assert manager.read() == os.getpid()

        manager.remove()
        assert manager.read() is None

    def test_running_daemon_blocks_create(self, tmp_path):
        """Test that a live PID prevents a second daemon."""
        manager = PIDFileManager(tmp_path / "daemon.pid")
        manager.create()

        with pytest.raises(DaemonAlreadyRunningError):
            PIDFileManager(tmp_path / "daemon.pid").create()

    def test_stale_pid_replaced(self, tmp_path):
        """Test that a PID file of a dead process is replaced."""
        path = tmp_path / "daemon.pid"
        path.write_text("999999")
        manager = PIDFileManager(path)

        with patch.object(manager, "_is_process_running", return_value=False):
            manager.create()

        assert manager.read() == os.getpid()

    def test_invalid_content(self, tmp_path):
        """Test that garbage in the PID file raises PIDFileError."""
        path = tmp_path / "daemon.pid"
        path.write_text("not-a-pid")

        with pytest.raises(PIDFileError, match="Invalid PID"):
            PIDFileManager(path).read()

    def test_get_running_pid(self, tmp_path):
        """Test lookup of the running daemon."""
        path = tmp_path / "daemon.pid"
        assert DaemonScheduler.get_running_pid(path) is None

        PIDFileManager(path).create()
        assert DaemonScheduler.get_running_pid(path) == os.getpid()

    def test_stop_without_daemon(self, tmp_path):
        """Test that stopping with no PID file reports False."""
        assert DaemonScheduler.stop_running_daemon(tmp_path / "daemon.pid") is False


class TestDaemonScheduler:
    """Tests for the run loop."""

    def test_runs_cycles_until_stopped(self, scheduler, fake_time):
        """Test immediate first cycle then one per interval."""
        calls = []

        def callback():
            calls.append(fake_time.now)
            if len(calls) == 3:
                scheduler.stop()
            return True

        scheduler.set_sync_callback(callback)
        scheduler.run()

        assert len(calls) == 3
        assert calls[1] - calls[0] == 60
        assert calls[2] - calls[1] == 60
        assert scheduler.stats.sync_success_count == 3
        assert not scheduler.pid_file.exists()
        assert not scheduler.is_running()

    def test_failing_cycle_keeps_loop_alive(self, scheduler):
        """Test that exceptions and failures are counted, not raised."""
        outcomes = iter([RuntimeError("provider down"), False, True])

        def callback():
            outcome = next(outcomes)
            if isinstance(outcome, Exception):
                raise outcome
            if outcome:
                scheduler.stop()
            return outcome

        scheduler.set_sync_callback(callback)
        scheduler.run()

        assert scheduler.stats.sync_count == 3
        assert scheduler.stats.sync_error_count == 2
        assert scheduler.stats.last_sync_success is True
        assert scheduler.stats.last_error is None

    def test_exception_message_recorded(self, scheduler):
        """Test that the last error message is kept."""

        def callback():
            scheduler.stop()
            raise RuntimeError("token revoked")

        scheduler.set_sync_callback(callback)
        scheduler.run()

        assert scheduler.stats.last_error == "token revoked"

    def test_no_callback(self, scheduler):
        """Test that a missing callback is a failed cycle."""
        assert scheduler._run_sync() is False

    def test_signal_handler_requests_shutdown(self, scheduler):
        """Test that SIGTERM ends the loop after the current cycle."""
        scheduler._signal_handler(signal.SIGTERM, None)

        assert scheduler._sleep_interruptible(60) is False

    def test_pid_file_removed_on_error(self, scheduler):
        """Test cleanup when the callback stops the loop via KeyboardInterrupt."""

        def callback():
            raise KeyboardInterrupt

        scheduler.set_sync_callback(callback)

        with pytest.raises(KeyboardInterrupt):
            scheduler.run()

        assert not scheduler.pid_file.exists()

    def test_sleep_resumes_after_clock_jump(self, scheduler, fake_time):
        """Test that a wall-clock jump (suspend) ends the wait early."""
        original_sleep = fake_time.sleep

        def jumping_sleep(seconds):
            original_sleep(seconds)
            fake_time.now += 3600

        scheduler._sleep = jumping_sleep

        assert scheduler._sleep_interruptible(60) is True
        assert fake_time.slept == 1.0


class TestMakeSyncCallback:
    """Tests for make_sync_callback()."""

    def _report(self, aborted=False, failed=0):
        report = MagicMock()
        report.aborted = aborted
        report.stats.failed = failed
        return report

    def test_successful_cycle(self):
        """Test refresh, sync and reminder scan in order."""
        service = MagicMock()
        service.sync_all.return_value = [self._report(), self._report()]
        service.run_reminder_scan.return_value = []

        assert make_sync_callback(service)() is True
        service.refresh_token_if_needed.assert_called_once()
        service.sync_all.assert_called_once_with(dry_run=False)
        service.run_reminder_scan.assert_called_once()

    def test_aborted_pass_fails_cycle(self):
        """Test that an aborted pass makes the cycle fail."""
        service = MagicMock()
        service.sync_all.return_value = [self._report(aborted=True)]

        assert make_sync_callback(service)() is False

    def test_record_failures_fail_cycle(self):
        """Test that record failures make the cycle fail."""
        service = MagicMock()
        service.sync_all.return_value = [self._report(failed=2)]

        assert make_sync_callback(service)() is False

    def test_dry_run_skips_reminders(self):
        """Test that a dry run writes no reminders."""
        service = MagicMock()
        service.sync_all.return_value = []

        make_sync_callback(service, dry_run=True)()

        service.run_reminder_scan.assert_not_called()

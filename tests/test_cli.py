"""
Tests for the CLI module.

Tests the command-line interface using Click's testing utilities. An
IntegrationService over the in-memory fakes is injected through ctx.obj.
"""

from unittest.mock import MagicMock

import pytest
from click.testing import CliRunner

from accounting_sync import __version__
from accounting_sync.api.accounting_api import NetworkTransientError
from accounting_sync.cli import cli, get_config_dir
from accounting_sync.config.settings import Settings, SyncSettings
from accounting_sync.daemon.scheduler import DaemonScheduler
from accounting_sync.service import IntegrationService
from accounting_sync.sync.error_log import SyncAttempt, SyncStatus
from conftest import START, add_contact


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def service(db, token_manager, provider):
    return IntegrationService(
        db, token_manager, provider, Settings(sync=SyncSettings(concurrency=1))
    )


@pytest.fixture
def invoke(runner, service, tmp_path):
    def run(*args, obj_service=None):
        return runner.invoke(
            cli,
            ["--config-dir", str(tmp_path), *args],
            obj={"service": obj_service or service},
        )

    return run


class TestCliGroup:
    """Tests for the main CLI group."""

    def test_version(self, runner):
        """Test --version output."""
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self, runner):
        """Test that --help shows the command groups."""
        result = runner.invoke(cli, ["--help"])

        for command in ("sync", "status", "conflicts", "duplicates", "errors", "daemon"):
            assert command in result.output

    def test_get_config_dir(self, tmp_path):
        """Test that an explicit directory is resolved."""
        assert get_config_dir(str(tmp_path)) == tmp_path.resolve()

    def test_broken_config_warns(self, invoke, tmp_path):
        """Test that a broken config file does not block the CLI."""
        (tmp_path / "config.yaml").write_text("sync:\n  concurrency: zero\n")

        result = invoke("status")

        assert result.exit_code == 0
        assert "Configuration error" in result.output


class TestInitCommand:
    """Tests for the init command."""

    def test_init_creates_config(self, runner, tmp_path):
        """Test that init writes config.yaml."""
        result = runner.invoke(cli, ["--config-dir", str(tmp_path), "init"])

        assert result.exit_code == 0
        assert (tmp_path / "config.yaml").exists()
        assert "created successfully" in result.output

    def test_init_refuses_overwrite(self, runner, tmp_path):
        """Test that an existing file needs --force."""
        (tmp_path / "config.yaml").write_text("verbose: false\n")

        result = runner.invoke(cli, ["--config-dir", str(tmp_path), "init"])

        assert result.exit_code == 1
        assert "--force" in result.output


class TestConnectionCommands:
    """Tests for connect, callback, disconnect and status."""

    def test_connect_prints_url_and_state(self, invoke):
        """Test the authorization instructions."""
        result = invoke("connect")

        assert result.exit_code == 0
        assert "https://login.example.com/authorize?state=" in result.output
        assert "accounting-sync callback CODE STATE" in result.output

    def test_callback_with_unknown_state(self, invoke):
        """Test that a forged state is rejected."""
        result = invoke("callback", "code-1", "forged")

        assert result.exit_code == 1
        assert "Invalid or expired authorization state" in result.output

    def test_callback_connects(self, invoke, service):
        """Test a full connect with a valid state."""
        _, state = service.begin_authorization()

        result = invoke("callback", "code-1", state)

        assert result.exit_code == 0
        assert "Connected to Acme Ltd" in result.output

    def test_status_not_connected(self, invoke):
        """Test status output without a connection."""
        result = invoke("status")

        assert result.exit_code == 0
        assert "=== Accounting Sync Status ===" in result.output
        assert "Not connected" in result.output
        assert "accounting-sync connect" in result.output

    def test_status_json(self, invoke, connection):
        """Test JSON status output."""
        result = invoke("status", "--json")

        assert result.exit_code == 0
        assert '"connected": true' in result.output
        assert '"pending_conflicts": 0' in result.output

    def test_disconnect(self, invoke, connection):
        """Test disconnect with --yes."""
        result = invoke("disconnect", "--yes")

        assert result.exit_code == 0
        assert "Disconnected." in result.output

    def test_disconnect_without_connection(self, invoke):
        """Test disconnect when nothing is connected."""
        result = invoke("disconnect", "--yes")

        assert "No active connection." in result.output


class TestSyncCommand:
    """Tests for the sync command."""

    def test_sync_requires_connection(self, invoke):
        """Test the not-connected error."""
        result = invoke("sync", "--kind", "contacts")

        assert result.exit_code == 1
        assert "accounting-sync connect" in result.output

    def test_sync_contacts(self, invoke, connection, provider, db):
        """Test a successful pull of contacts."""
        provider.add("Contacts", {"Name": "Acme Ltd"})

        result = invoke("sync", "--kind", "contacts")

        assert result.exit_code == 0
        assert "Sync contacts [both]" in result.output
        assert "create_local: 1" in result.output
        assert "Sync complete." in result.output
        assert db.count_entities("contacts") == 1

    def test_dry_run_writes_nothing(self, invoke, connection, provider, db):
        """Test that --dry-run plans without writing."""
        provider.add("Contacts", {"Name": "Acme Ltd"})

        result = invoke("sync", "--kind", "contacts", "--dry-run")

        assert result.exit_code == 0
        assert "(dry run)" in result.output
        assert db.count_entities("contacts") == 0

    def test_failed_records_exit_nonzero(self, invoke, connection, provider, db, clock):
        """Test that record failures give exit code 1."""
        add_contact(db, clock, "Acme Ltd")
        provider.write_errors = [NetworkTransientError("server error (503)")]

        result = invoke("sync", "--kind", "contacts", "--direction", "push")

        assert result.exit_code == 1
        assert "errors list" in result.output

    def test_sync_all_json(self, invoke, connection):
        """Test JSON reports for every kind."""
        result = invoke("sync", "--json")

        assert result.exit_code == 0
        assert '"kind": "payments"' in result.output


class TestConflictCommands:
    """Tests for the conflicts group."""

    def _conflict(self, db):
        contact_id = db.insert_entity(
            "contacts", {"name": "Acme"}, external_id="ext-1", created_at=START
        )
        return db.insert_conflict(
            "contacts",
            contact_id,
            "ext-1",
            {"fields": {"email": "a@acme.com"}},
            {"fields": {"email": "b@acme.com"}},
            START,
        )

    def test_list_empty(self, invoke):
        """Test the empty list message."""
        result = invoke("conflicts", "list")

        assert "No unresolved conflicts." in result.output

    def test_list_shows_differences(self, invoke, db):
        """Test that differing fields are printed."""
        self._conflict(db)

        result = invoke("conflicts", "list")

        assert "email: local='a@acme.com' remote='b@acme.com'" in result.output
        assert "1 unresolved conflict(s)" in result.output

    def test_resolve_manual(self, invoke, db):
        """Test that the manual policy leaves the conflict open."""
        conflict_id = self._conflict(db)

        result = invoke("conflicts", "resolve", str(conflict_id), "--policy", "manual")

        assert result.exit_code == 0
        assert "left for manual review" in result.output

    def test_resolve_unknown(self, invoke):
        """Test that a missing conflict exits with an error."""
        result = invoke("conflicts", "resolve", "99", "--policy", "manual")

        assert result.exit_code == 1
        assert "Conflict 99 not found" in result.output

    def test_policy_is_validated(self, invoke):
        """Test that click rejects unknown policies."""
        result = invoke("conflicts", "resolve", "1", "--policy", "newest")

        assert result.exit_code == 2


class TestDuplicateCommand:
    """Tests for the duplicates command."""

    def test_groups_printed(self, invoke, db, clock):
        """Test the group listing with the suggested keeper."""
        first = add_contact(db, clock, "Acme Ltd", email="ap@acme.com")
        add_contact(db, clock, "ACME", email="ap@acme.com")

        result = invoke("duplicates")

        assert "Group 1" in result.output
        assert f"{first} Acme Ltd (suggested keep)" in result.output

    def test_stats(self, invoke, db, clock):
        """Test --stats output."""
        add_contact(db, clock, "Acme Ltd")

        result = invoke("duplicates", "--stats")

        assert "Total contacts: 1" in result.output

    def test_unknown_contact(self, invoke):
        """Test --contact with a missing id."""
        result = invoke("duplicates", "--contact", "42")

        assert result.exit_code == 1
        assert "Contact 42 not found" in result.output

    def test_threshold_range(self, invoke):
        """Test that click enforces the threshold range."""
        result = invoke("duplicates", "--threshold", "2")

        assert result.exit_code == 2


class TestErrorCommands:
    """Tests for the errors group."""

    def test_list_empty(self, invoke):
        """Test the empty ledger message."""
        result = invoke("errors", "list")

        assert "No matching entries." in result.output

    def test_list_and_resolve(self, invoke, service):
        """Test listing then resolving an entry."""
        entry = service.error_log.append(
            SyncAttempt(
                sync_type="contacts",
                status=SyncStatus.FAILED,
                entity_id=1,
                entity_name="Acme Ltd",
                error_message="Email address must be valid.",
            )
        )

        listed = invoke("errors", "list", "--unresolved")
        resolved = invoke("errors", "resolve", str(entry.id), "--by", "alice")

        assert "Acme Ltd" in listed.output
        assert "Email address must be valid." in listed.output
        assert resolved.exit_code == 0
        assert service.list_sync_errors()[0].resolved_by == "alice"

    def test_resolve_unknown(self, invoke):
        """Test that a missing entry exits with an error."""
        result = invoke("errors", "resolve", "7")

        assert result.exit_code == 1

    def test_stats(self, invoke):
        """Test --stats output."""
        result = invoke("errors", "list", "--stats")

        assert "Total entries: 0" in result.output


class TestReminderCommand:
    """Tests for the reminders command."""

    def test_scan_and_list(self, invoke, db, clock):
        """Test --scan creating and listing a reminder."""
        db.insert_entity("invoices", {"invoice_number": "INV-7"}, created_at=START)
        clock.advance(days=5)

        result = invoke("reminders", "--scan")

        assert "Scan created 1 new reminder(s)." in result.output
        assert "[unsynced_invoice]" in result.output

    def test_resolve_missing(self, invoke):
        """Test resolving an unknown reminder."""
        result = invoke("reminders", "--resolve", "5")

        assert result.exit_code == 1


class TestDaemonCommands:
    """Tests for the daemon group."""

    def test_status_stopped(self, invoke):
        """Test status without a PID file."""
        result = invoke("daemon", "status")

        assert result.exit_code == 0
        assert "Stopped" in result.output

    def test_stop_without_daemon(self, invoke):
        """Test stop when nothing runs."""
        result = invoke("daemon", "stop")

        assert "No daemon is currently running." in result.output

    def test_start_invalid_interval(self, invoke):
        """Test that a bad interval is rejected before starting."""
        result = invoke("daemon", "start", "--interval", "soon")

        assert result.exit_code == 1
        assert "Invalid interval format" in result.output

    def test_start_runs_scheduler(self, invoke, monkeypatch):
        """Test that start hands a callback to the scheduler and reports stats."""
        runs = []

        def fake_run(self):
            runs.append(self.interval)
            self.stats.sync_count = 2

        monkeypatch.setattr(DaemonScheduler, "run", fake_run)

        result = invoke("daemon", "start", "--interval", "30m", obj_service=MagicMock())

        assert result.exit_code == 0
        assert runs == [1800]
        assert "Daemon stopped after 2 cycle(s)" in result.output

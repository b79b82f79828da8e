"""
Command-line interface for accounting_sync.

Provides CLI commands for connecting to the accounting provider, running
syncs, and reviewing conflicts, duplicates, sync errors and reminders.

Usage:
    # Show help
    accounting-sync --help

    # Connect
    accounting-sync connect
    accounting-sync callback CODE STATE

    # Run synchronization
    accounting-sync sync --kind contacts
    accounting-sync sync --kind all --dry-run

    # Review
    accounting-sync conflicts list
    accounting-sync errors list --unresolved
"""

import json
import sys
import time
from pathlib import Path
from typing import Any, NoReturn

import click

from accounting_sync import __version__
from accounting_sync.api.accounting_api import AccountingAPIError
from accounting_sync.auth.oauth import AuthenticationError, NotConnectedError
from accounting_sync.config.generator import save_config_file
from accounting_sync.config.loader import DEFAULT_CONFIG_FILE, ConfigLoader
from accounting_sync.config.settings import VALID_KINDS, ConfigError, Settings
from accounting_sync.sync.conflict import ConflictNotFoundError, ConflictPolicy
from accounting_sync.sync.error_log import SyncLogFilter, SyncLogNotFoundError, SyncStatus
from accounting_sync.sync.records import SyncDirection
from accounting_sync.utils.dates import to_iso
from accounting_sync.utils.logging import cleanup_old_logs, get_logger, setup_logging
from accounting_sync.utils.paths import resolve_config_dir

# Errors reported as a one-line message and exit code 1
OPERATION_ERRORS = (
    AuthenticationError,
    AccountingAPIError,
    ConflictNotFoundError,
    SyncLogNotFoundError,
    ConfigError,
    ValueError,
)


def get_config_dir(config_dir: str | None) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def get_config_file(config_dir: Path, config_file: str | None) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file)
    return config_dir / DEFAULT_CONFIG_FILE


def fail(message: str) -> NoReturn:
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(1)


def get_service(ctx: click.Context) -> Any:
    """Return the IntegrationService for this invocation, building it once."""
    service = ctx.obj.get("service")
    if service is None:
        from accounting_sync.service import IntegrationService

        service = IntegrationService.from_settings(
            ctx.obj["settings"], ctx.obj["config_dir"]
        )
        ctx.obj["service"] = service
    return service


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.version_option(version=__version__, prog_name="accounting-sync")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="ACCOUNTING_SYNC_CONFIG_DIR",
    help="Configuration directory path (default: ~/.accounting-sync).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="ACCOUNTING_SYNC_CONFIG_FILE",
    help="Configuration file path (default: <config dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: str | None,
    config_file: str | None,
) -> None:
    """
    Accounting provider sync.

    Keeps local contacts, invoices and payments consistent with an external
    accounting provider over its OAuth2-protected REST API.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    resolved_config_file = get_config_file(resolved_config_dir, config_file)
    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    settings = Settings()
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        settings = loader.load_settings(resolved_config_file)
    except ConfigError as e:
        # Keep the CLI usable (init, status) with a broken config file
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
    ctx.obj["settings"] = settings

    effective_verbose = verbose or settings.verbose
    ctx.obj["verbose"] = effective_verbose

    log_dir = (
        Path(settings.log_dir).expanduser()
        if settings.log_dir
        else resolved_config_dir / "logs"
    )
    setup_logging(verbose=effective_verbose, log_dir=log_dir, enable_file_logging=True)
    if settings.log_retention_count > 0:
        cleanup_old_logs(log_dir=log_dir, keep_count=settings.log_retention_count)


# =============================================================================
# Setup and connection
# =============================================================================


@cli.command("init")
@click.option(
    "--force", is_flag=True, help="Overwrite existing configuration file if it exists."
)
@click.pass_context
def init_command(ctx: click.Context, force: bool) -> None:
    """
    Generate a default configuration file.

    Example:

        accounting-sync init
    """
    logger = get_logger(__name__)
    config_file = ctx.obj["config_file"]

    click.echo(f"Creating configuration file: {config_file}")
    success, error = save_config_file(config_file, overwrite=force)
    if not success:
        logger.error(f"Failed to create configuration file: {error}")
        fail(str(error))

    click.echo(click.style("Configuration file created successfully!", fg="green"))
    click.echo("\nNext steps:")
    click.echo("1. Set provider.client_id and provider.client_secret")
    click.echo("2. Run 'accounting-sync connect'")


@cli.command("connect")
@click.option("--open", "open_browser", is_flag=True, help="Open the URL in a browser.")
@click.pass_context
def connect_command(ctx: click.Context, open_browser: bool) -> None:
    """
    Start authorization with the accounting provider.

    Prints the authorization URL. After granting access, pass the code and
    state from the redirect to 'accounting-sync callback'.
    """
    try:
        url, state = get_service(ctx).begin_authorization()
    except OPERATION_ERRORS as e:
        fail(str(e))

    click.echo("Open this URL to authorize access:\n")
    click.echo(f"  {url}\n")
    click.echo(f"State: {state}")
    click.echo("Then run: accounting-sync callback CODE STATE")
    if open_browser:
        click.launch(url)


@cli.command("callback")
@click.argument("code")
@click.argument("state")
@click.option("--tenant-id", default=None, help="Organisation to bind when several.")
@click.pass_context
def callback_command(
    ctx: click.Context, code: str, state: str, tenant_id: str | None
) -> None:
    """Complete authorization with the code and state from the redirect."""
    logger = get_logger(__name__)
    try:
        connection = get_service(ctx).complete_authorization(code, state, tenant_id)
    except OPERATION_ERRORS as e:
        logger.error(f"Authorization failed: {e}")
        fail(str(e))

    name = connection.tenant_name or connection.tenant_id
    click.echo(click.style(f"Connected to {name}", fg="green"))


@cli.command("disconnect")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def disconnect_command(ctx: click.Context, yes: bool) -> None:
    """Deactivate the current connection. History is kept."""
    if not yes:
        click.confirm("Disconnect from the accounting provider?", abort=True)

    if get_service(ctx).disconnect():
        click.echo(click.style("Disconnected.", fg="green"))
    else:
        click.echo("No active connection.")


def _print_status(status: Any) -> None:
    if status.connected:
        click.echo(f"Connection: {click.style('Connected', fg='green')}")
    elif status.token_expired:
        click.echo(f"Connection: {click.style('Token expired', fg='yellow')}")
    else:
        click.echo(f"Connection: {click.style('Not connected', fg='red')}")

    if status.reason:
        click.echo(f"Reason: {status.reason}")
    if status.tenant_id:
        click.echo(f"Organisation: {status.tenant_name or status.tenant_id}")
    if status.expires_at:
        click.echo(
            f"Token expires: {to_iso(status.expires_at)} "
            f"({status.expires_in_minutes} min)"
        )
    if status.connected_at:
        click.echo(f"Connected at: {to_iso(status.connected_at)}")
    click.echo(f"Last sync: {to_iso(status.last_sync_at) or 'never'}")
    if status.needs_reconnect:
        click.echo("\nRun 'accounting-sync connect' to authorize.")


@cli.command("status")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option(
    "--watch", is_flag=True, help="Keep polling and report connection changes."
)
@click.pass_context
def status_command(ctx: click.Context, as_json: bool, watch: bool) -> None:
    """
    Show connection status and unresolved work.

    Example:

        accounting-sync status
    """
    service = get_service(ctx)
    status = service.get_connection_status()

    if as_json:
        data = status.to_dict()
        data["pending_conflicts"] = len(service.list_unresolved_conflicts())
        data["sync_errors"] = service.sync_error_stats().to_dict()
        echo_json(data)
    else:
        click.echo("=== Accounting Sync Status ===\n")
        _print_status(status)
        stats = service.sync_error_stats()
        click.echo(f"\nPending conflicts: {len(service.list_unresolved_conflicts())}")
        click.echo(f"Unresolved sync failures: {stats.unresolved_failures}")
        click.echo(f"Failures in the last 24h: {stats.failures_last_24h}")

    if watch:
        _watch_status(ctx, service)


def _watch_status(ctx: click.Context, service: Any) -> None:
    from accounting_sync.monitor import (
        ConnectionStatusMonitor,
        HttpStatusFetcher,
        StatusResponse,
        ThreadingTimerScheduler,
    )

    settings = ctx.obj["settings"]
    if settings.monitor.status_url:
        fetcher = HttpStatusFetcher(settings.monitor.status_url)
    else:

        def fetcher() -> StatusResponse:
            return StatusResponse(200, {}, service.get_connection_status().to_dict())

    def on_change(connected: bool, payload: dict[str, Any] | None) -> None:
        if connected:
            click.echo(click.style("Connection restored", fg="green"))
        else:
            reason = (payload or {}).get("reason") or "unknown reason"
            click.echo(click.style(f"Connection lost: {reason}", fg="red"))

    monitor = ConnectionStatusMonitor.from_settings(
        settings.monitor, fetcher, ThreadingTimerScheduler(), on_change=on_change
    )
    click.echo("\nWatching connection status (Ctrl+C to stop)")
    monitor.start()
    try:
        while not monitor.disposed:
            time.sleep(1.0)
    except KeyboardInterrupt:
        click.echo("\nStopped watching.")
    finally:
        monitor.stop()


# =============================================================================
# Sync
# =============================================================================


@cli.command("sync")
@click.option(
    "--kind",
    "-k",
    type=click.Choice([*VALID_KINDS, "all"], case_sensitive=False),
    default="all",
    help="Entity kind to sync (default: all configured kinds).",
)
@click.option(
    "--direction",
    "-d",
    type=click.Choice([d.value for d in SyncDirection], case_sensitive=False),
    default=SyncDirection.BOTH.value,
    help="pull from the provider, push to it, or both (default).",
)
@click.option(
    "--dry-run", "-n", is_flag=True, help="Preview changes without applying them."
)
@click.option("--json", "as_json", is_flag=True, help="Output reports as JSON.")
@click.pass_context
def sync_command(
    ctx: click.Context, kind: str, direction: str, dry_run: bool, as_json: bool
) -> None:
    """
    Synchronize entities with the accounting provider.

    Examples:

        # Preview a contacts sync
        accounting-sync sync --kind contacts --dry-run

        # Push local invoices only
        accounting-sync sync --kind invoices --direction push
    """
    logger = get_logger(__name__)
    service = get_service(ctx)

    try:
        if kind == "all":
            reports = service.sync_all(direction=direction, dry_run=dry_run)
        else:
            reports = [service.sync_entities(kind, direction, dry_run)]
    except NotConnectedError as e:
        fail(f"{e}. Run 'accounting-sync connect' first.")
    except OPERATION_ERRORS as e:
        logger.error(f"Sync failed: {e}")
        fail(str(e))

    if as_json:
        echo_json([report.to_dict() for report in reports])
    else:
        for report in reports:
            click.echo(report.summary())
            click.echo()

    if any(r.aborted or r.stats.failed for r in reports):
        aborted = next((r for r in reports if r.aborted), None)
        if aborted is not None:
            click.echo(click.style(aborted.abort_reason, fg="red"), err=True)
        else:
            click.echo(
                click.style(
                    "Some records failed; see 'accounting-sync errors list'.",
                    fg="yellow",
                ),
                err=True,
            )
        sys.exit(1)

    if not as_json:
        click.echo(click.style("Sync complete.", fg="green"))


# =============================================================================
# Conflicts
# =============================================================================


@cli.group("conflicts")
def conflicts_group() -> None:
    """Review and resolve sync conflicts."""


@conflicts_group.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def conflicts_list_command(ctx: click.Context, as_json: bool) -> None:
    """List conflicts waiting for a decision."""
    conflicts = get_service(ctx).list_unresolved_conflicts()

    if as_json:
        echo_json(
            [
                {
                    "id": c.id,
                    "entity_type": c.entity_type,
                    "entity_id": c.entity_id,
                    "external_id": c.external_id,
                    "detected_at": to_iso(c.detected_at),
                    "local": c.local_snapshot,
                    "remote": c.remote_snapshot,
                }
                for c in conflicts
            ]
        )
        return

    if not conflicts:
        click.echo("No unresolved conflicts.")
        return

    for c in conflicts:
        click.echo(
            click.style(f"#{c.id} {c.entity_type} {c.entity_id}", bold=True)
            + f" (external {c.external_id}, detected {to_iso(c.detected_at)})"
        )
        local_fields = c.local_snapshot.get("fields", {})
        remote_fields = c.remote_snapshot.get("fields", {})
        for name in sorted(set(local_fields) | set(remote_fields)):
            local_value = local_fields.get(name)
            remote_value = remote_fields.get(name)
            if local_value != remote_value:
                click.echo(f"    {name}: local={local_value!r} remote={remote_value!r}")
    click.echo(f"\n{len(conflicts)} unresolved conflict(s)")


@conflicts_group.command("resolve")
@click.argument("conflict_id", type=int)
@click.option(
    "--policy",
    "-p",
    type=click.Choice([p.value for p in ConflictPolicy], case_sensitive=False),
    required=True,
    help="use_local pushes the local copy; use_remote pulls the remote one.",
)
@click.option("--by", "resolved_by", default="operator", help="Who resolved it.")
@click.pass_context
def conflicts_resolve_command(
    ctx: click.Context, conflict_id: int, policy: str, resolved_by: str
) -> None:
    """Resolve one conflict with a policy."""
    try:
        conflict = get_service(ctx).resolve_conflict(conflict_id, policy, resolved_by)
    except OPERATION_ERRORS as e:
        fail(str(e))

    if conflict.status.value == "RESOLVED":
        click.echo(
            click.style(f"Conflict {conflict_id} resolved ({policy}).", fg="green")
        )
    else:
        click.echo(f"Conflict {conflict_id} left for manual review.")


# =============================================================================
# Duplicates
# =============================================================================


@cli.command("duplicates")
@click.option(
    "--threshold",
    "-t",
    type=click.FloatRange(0.0, 1.0),
    default=None,
    help="Minimum similarity (default: duplicates.threshold or 0.8).",
)
@click.option("--contact", "contact_id", type=int, help="Only duplicates of one contact.")
@click.option("--stats", "show_stats", is_flag=True, help="Show summary numbers only.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def duplicates_command(
    ctx: click.Context,
    threshold: float | None,
    contact_id: int | None,
    show_stats: bool,
    as_json: bool,
) -> None:
    """
    Find likely duplicate contacts. Nothing is merged.

    Examples:

        accounting-sync duplicates --threshold 0.9
        accounting-sync duplicates --contact 42
    """
    service = get_service(ctx)
    try:
        if show_stats:
            stats = service.duplicate_stats(threshold)
            if as_json:
                echo_json(stats)
            else:
                for key, value in stats.items():
                    click.echo(f"{key.replace('_', ' ').capitalize()}: {value}")
            return

        if contact_id is not None:
            kwargs = {} if threshold is None else {"threshold": threshold}
            matches = service.find_duplicates_for_contact(contact_id, **kwargs)
            if as_json:
                echo_json([m.__dict__ for m in matches])
            elif not matches:
                click.echo(f"No likely duplicates of contact {contact_id}.")
            else:
                for m in matches:
                    click.echo(
                        f"  {m.contact_id} {m.name} ({m.similarity_score:.0%}: "
                        f"{', '.join(m.match_reasons) or 'name'})"
                    )
            return

        groups = service.scan_duplicates(threshold)
    except OPERATION_ERRORS as e:
        fail(str(e))

    if as_json:
        echo_json([g.to_dict() for g in groups])
        return
    if not groups:
        click.echo("No duplicate contacts found.")
        return

    for i, group in enumerate(groups, 1):
        click.echo(
            click.style(f"Group {i}", bold=True)
            + f" ({group.similarity_score:.0%}: {', '.join(group.match_reasons)})"
        )
        for cid in group.contact_ids:
            marker = " (suggested keep)" if cid == group.suggested_canonical_id else ""
            click.echo(f"  {cid} {group.names.get(cid, '')}{marker}")
    click.echo(f"\n{len(groups)} group(s) of likely duplicates")


# =============================================================================
# Sync error ledger
# =============================================================================


@cli.group("errors")
def errors_group() -> None:
    """Review and resolve sync failures."""


@errors_group.command("list")
@click.option("--unresolved", is_flag=True, help="Only entries not yet resolved.")
@click.option("--hours", type=float, default=None, help="Only the last N hours.")
@click.option(
    "--type",
    "sync_type",
    type=click.Choice(list(VALID_KINDS), case_sensitive=False),
    default=None,
    help="Only one entity kind.",
)
@click.option(
    "--status",
    type=click.Choice([s.value for s in SyncStatus], case_sensitive=False),
    default=None,
    help="Only one outcome.",
)
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--stats", "show_stats", is_flag=True, help="Show summary numbers only.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def errors_list_command(
    ctx: click.Context,
    unresolved: bool,
    hours: float | None,
    sync_type: str | None,
    status: str | None,
    limit: int,
    show_stats: bool,
    as_json: bool,
) -> None:
    """List sync attempts recorded in the ledger."""
    service = get_service(ctx)

    if show_stats:
        stats = service.sync_error_stats()
        if as_json:
            echo_json(stats.to_dict())
        else:
            click.echo(f"Total entries: {stats.total}")
            click.echo(f"Unresolved failures: {stats.unresolved_failures}")
            click.echo(f"Failures in the last 24h: {stats.failures_last_24h}")
            for kind, counts in sorted(stats.by_type.items()):
                summary = ", ".join(f"{k}={v}" for k, v in sorted(counts.items()))
                click.echo(f"  {kind}: {summary}")
        return

    entries = service.list_sync_errors(
        SyncLogFilter(
            unresolved_only=unresolved,
            recent_hours=hours,
            sync_type=sync_type,
            status=SyncStatus(status.upper()) if status else None,
            limit=limit,
        )
    )

    if as_json:
        echo_json(
            [
                {
                    "id": e.id,
                    "sync_type": e.sync_type,
                    "status": e.status.value,
                    "entity_id": e.entity_id,
                    "entity_name": e.entity_name,
                    "external_id": e.external_id,
                    "error_message": e.error_message,
                    "error_details": e.error_details,
                    "attempt_count": e.attempt_count,
                    "created_at": to_iso(e.created_at),
                    "last_attempt_at": to_iso(e.last_attempt_at),
                    "resolved_at": to_iso(e.resolved_at),
                    "resolved_by": e.resolved_by,
                    "notes": e.notes,
                }
                for e in entries
            ]
        )
        return

    if not entries:
        click.echo("No matching entries.")
        return

    colors = {"SUCCESS": "green", "FAILED": "red", "SKIPPED": "yellow"}
    for e in entries:
        label = click.style(e.status.value, fg=colors[e.status.value])
        resolved = " [resolved]" if e.is_resolved else ""
        click.echo(
            f"#{e.id} {label} {e.sync_type} {e.entity_name or e.entity_id or ''}"
            f" (attempts: {e.attempt_count}){resolved}"
        )
        if e.error_message:
            click.echo(f"    {e.error_message}")


@errors_group.command("resolve")
@click.argument("log_id", type=int)
@click.option("--by", "resolved_by", default="operator", help="Who resolved it.")
@click.option("--notes", default=None, help="Resolution notes.")
@click.pass_context
def errors_resolve_command(
    ctx: click.Context, log_id: int, resolved_by: str, notes: str | None
) -> None:
    """Mark a ledger entry resolved."""
    try:
        get_service(ctx).resolve_sync_error(log_id, resolved_by, notes)
    except OPERATION_ERRORS as e:
        fail(str(e))
    click.echo(click.style(f"Entry {log_id} resolved.", fg="green"))


# =============================================================================
# Reminders
# =============================================================================


@cli.command("reminders")
@click.option("--scan", is_flag=True, help="Run the reminder scan first.")
@click.option("--resolve", "resolve_id", type=int, help="Resolve a reminder by id.")
@click.pass_context
def reminders_command(ctx: click.Context, scan: bool, resolve_id: int | None) -> None:
    """List open maintenance reminders."""
    service = get_service(ctx)

    if resolve_id is not None:
        if service.resolve_reminder(resolve_id):
            click.echo(click.style(f"Reminder {resolve_id} resolved.", fg="green"))
        else:
            fail(f"Reminder {resolve_id} not found or already resolved")
        return

    if scan:
        created = service.run_reminder_scan()
        click.echo(f"Scan created {len(created)} new reminder(s).")

    reminders = service.list_reminders()
    if not reminders:
        click.echo("No open reminders.")
        return
    for r in reminders:
        click.echo(f"#{r.id} [{r.reminder_type}] {r.message}")


# =============================================================================
# Daemon
# =============================================================================


@cli.group("daemon")
def daemon_group() -> None:
    """
    Manage the background sync daemon.

    Examples:

        accounting-sync daemon start --interval 30m
        accounting-sync daemon status
        accounting-sync daemon stop
    """


def _pid_file(ctx: click.Context) -> Path:
    from accounting_sync.daemon.scheduler import PID_FILE_NAME

    return ctx.obj["config_dir"] / PID_FILE_NAME


@daemon_group.command("start")
@click.option(
    "--interval",
    "-i",
    default=None,
    help="Sync interval (e.g., '30s', '15m', '1h'). Defaults to daemon.interval.",
)
@click.option(
    "--no-initial-sync", is_flag=True, help="Skip the sync on daemon startup."
)
@click.option("--dry-run", is_flag=True, help="Plan every cycle without writing.")
@click.pass_context
def daemon_start_command(
    ctx: click.Context, interval: str | None, no_initial_sync: bool, dry_run: bool
) -> None:
    """
    Run sync cycles in the foreground until SIGTERM or Ctrl+C.

    Each cycle refreshes the token if needed, syncs the configured kinds
    and runs the reminder scan.
    """
    logger = get_logger(__name__)
    from accounting_sync.daemon import (
        DaemonError,
        DaemonScheduler,
        make_sync_callback,
        parse_interval,
    )

    effective_interval = interval or ctx.obj["settings"].daemon_interval
    try:
        interval_seconds = parse_interval(effective_interval)
    except ValueError as e:
        fail(str(e))

    click.echo(f"Starting daemon with {effective_interval} sync interval...")
    click.echo("Running in foreground mode (Ctrl+C to stop)")
    if ctx.obj["verbose"]:
        click.echo(f"  Config directory: {ctx.obj['config_dir']}")
        click.echo(f"  Interval: {interval_seconds} seconds")

    scheduler = DaemonScheduler(
        interval=interval_seconds,
        pid_file=_pid_file(ctx),
        run_immediately=not no_initial_sync,
    )
    scheduler.set_sync_callback(make_sync_callback(get_service(ctx), dry_run=dry_run))

    try:
        scheduler.run()
    except DaemonError as e:
        logger.error(f"Daemon failed: {e}")
        fail(str(e))

    stats = scheduler.stats
    click.echo(
        f"Daemon stopped after {stats.sync_count} cycle(s), "
        f"{stats.sync_error_count} with errors."
    )


@daemon_group.command("stop")
@click.pass_context
def daemon_stop_command(ctx: click.Context) -> None:
    """Send SIGTERM to the running daemon."""
    from accounting_sync.daemon import DaemonScheduler

    pid_file = _pid_file(ctx)
    pid = DaemonScheduler.get_running_pid(pid_file)
    if pid is None:
        click.echo("No daemon is currently running.")
        return

    click.echo(f"Stopping daemon (PID: {pid})...")
    if DaemonScheduler.stop_running_daemon(pid_file):
        click.echo(click.style("Stop signal sent successfully.", fg="green"))
    else:
        fail("Failed to send stop signal to daemon.")


@daemon_group.command("status")
@click.pass_context
def daemon_status_command(ctx: click.Context) -> None:
    """Show whether the daemon is running."""
    from accounting_sync.daemon import DaemonScheduler, PIDFileError, PIDFileManager

    pid_file = _pid_file(ctx)
    try:
        pid = DaemonScheduler.get_running_pid(pid_file)
        stale_pid = PIDFileManager(pid_file).read() if pid is None else None
    except PIDFileError as e:
        fail(str(e))

    if pid is not None:
        click.echo(f"Status: {click.style('Running', fg='green')}")
        click.echo(f"Process ID: {pid}")
        return

    click.echo(f"Status: {click.style('Stopped', fg='yellow')}")
    if stale_pid is not None:
        click.echo(f"Stale PID file exists (PID: {stale_pid}); removed on next start.")

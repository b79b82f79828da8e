"""
Operations exposed to the surrounding application.

IntegrationService wires storage, tokens, the REST client and the sync
components together. Every operation that talks to the provider looks up
the active connection explicitly and passes it down.

Usage:
    service = IntegrationService.from_settings(settings, config_dir)
    status = service.get_connection_status()
    report = service.sync_entities("contacts", "both")
"""

import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

from accounting_sync.api.accounting_api import AccountingAPI
from accounting_sync.auth.connection import ConnectionStatus, IntegrationConnection
from accounting_sync.auth.oauth import OAuthClient
from accounting_sync.auth.token_manager import TokenManager
from accounting_sync.config.settings import Settings
from accounting_sync.storage.db import SyncDatabase
from accounting_sync.sync.conflict import (
    ConflictDetector,
    ConflictPolicy,
    ConflictResolver,
    SyncConflict,
)
from accounting_sync.sync.duplicates import (
    DEFAULT_CONTACT_THRESHOLD,
    DuplicateContactDetector,
    DuplicateGroup,
    DuplicateMatch,
)
from accounting_sync.sync.engine import SyncOrchestrator, SyncReport
from accounting_sync.sync.error_log import (
    SyncErrorLog,
    SyncLogEntry,
    SyncLogFilter,
    SyncLogStats,
)
from accounting_sync.sync.records import EntityKind, SyncDirection
from accounting_sync.sync.reminders import Reminder, ReminderScanner

logger = logging.getLogger(__name__)


class IntegrationService:
    """Facade over the sync engine for the CLI, the daemon and callers."""

    def __init__(
        self,
        db: SyncDatabase,
        token_manager: TokenManager,
        api: AccountingAPI,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or Settings()
        self.db = db
        self.token_manager = token_manager
        self.api = api
        clock = token_manager.clock

        self.error_log = SyncErrorLog(
            db,
            retry_window=timedelta(minutes=self.settings.sync.retry_window_minutes),
            clock=clock,
        )
        self.detector = ConflictDetector(db, clock=clock)
        self.orchestrator = SyncOrchestrator(
            db,
            api,
            token_manager,
            self.error_log,
            detector=self.detector,
            settings=self.settings.sync,
            clock=clock,
        )
        self.resolver = ConflictResolver(db, api, token_manager, clock=clock)
        self.duplicates = DuplicateContactDetector(db)
        self.reminders = ReminderScanner(
            db,
            window_days=self.settings.reminder_window_days,
            unsynced_after_days=self.settings.unsynced_after_days,
            clock=clock,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, config_dir: Path | str | None = None
    ) -> "IntegrationService":
        """Build the full object graph from settings and open the database."""
        db = SyncDatabase(settings.database_path(config_dir))
        if not db.is_memory:
            Path(db.db_path).parent.mkdir(parents=True, exist_ok=True)
        db.initialize()

        provider = settings.provider
        token_manager = TokenManager(
            db,
            OAuthClient(provider),
            interactive_margin=timedelta(
                minutes=settings.tokens.interactive_margin_minutes
            ),
            background_margin=timedelta(
                minutes=settings.tokens.background_margin_minutes
            ),
        )
        api = AccountingAPI(
            provider.api_base_url,
            tenant_header=provider.tenant_header,
            timeout=provider.request_timeout,
            page_size=settings.sync.page_size,
            max_retries=settings.sync.max_retries,
            initial_retry_delay=settings.sync.initial_retry_delay,
            max_retry_delay=settings.sync.max_retry_delay,
        )
        return cls(db, token_manager, api, settings)

    def close(self) -> None:
        self.db.close()

    # =========================================================================
    # Connection
    # =========================================================================

    def active_connection(self) -> IntegrationConnection:
        """
        Raises:
            NotConnectedError: If no connection is active
        """
        return self.token_manager.require_active_connection()

    def get_connection_status(self) -> ConnectionStatus:
        return self.token_manager.connection_status()

    def begin_authorization(self) -> tuple[str, str]:
        return self.token_manager.begin_authorization()

    def complete_authorization(
        self, code: str, state: str, tenant_id: Optional[str] = None
    ) -> IntegrationConnection:
        return self.token_manager.complete_authorization(code, state, tenant_id)

    def disconnect(self) -> bool:
        """
        Deactivate the active connection.

        Returns:
            False if nothing was connected
        """
        connection = self.token_manager.get_active_connection()
        if connection is None:
            return False
        return self.token_manager.disconnect(connection)

    def refresh_token_if_needed(self) -> bool:
        """Refresh the active token when it is inside the background margin."""
        return self.token_manager.refresh_if_needed(self.active_connection())

    # =========================================================================
    # Sync
    # =========================================================================

    def sync_entities(
        self,
        kind: EntityKind | str,
        direction: SyncDirection | str = SyncDirection.BOTH,
        dry_run: bool = False,
    ) -> SyncReport:
        return self.orchestrator.sync_entities(
            self.active_connection(), kind, direction, dry_run
        )

    def sync_all(
        self,
        direction: SyncDirection | str = SyncDirection.BOTH,
        dry_run: bool = False,
        kinds: Optional[list[str]] = None,
    ) -> list[SyncReport]:
        """Sync the configured kinds in dependency order."""
        return self.orchestrator.sync_all(
            self.active_connection(),
            kinds or self.settings.sync.kinds,
            direction,
            dry_run,
        )

    # =========================================================================
    # Conflicts
    # =========================================================================

    def list_unresolved_conflicts(self) -> list[SyncConflict]:
        return self.resolver.list_unresolved()

    def resolve_conflict(
        self,
        conflict_id: int,
        policy: ConflictPolicy | str,
        resolved_by: str = "operator",
    ) -> SyncConflict:
        policy = ConflictPolicy(policy)
        if policy == ConflictPolicy.MANUAL:
            # No provider call, so no connection needed
            connection = self.token_manager.get_active_connection()
        else:
            connection = self.active_connection()
        return self.resolver.resolve(conflict_id, policy, connection, resolved_by)

    # =========================================================================
    # Duplicates
    # =========================================================================

    def scan_duplicates(self, threshold: Optional[float] = None) -> list[DuplicateGroup]:
        if threshold is None:
            threshold = self.settings.duplicate_threshold
        return self.duplicates.scan_duplicates(threshold)

    def find_duplicates_for_contact(
        self, contact_id: int, threshold: float = DEFAULT_CONTACT_THRESHOLD
    ) -> list[DuplicateMatch]:
        return self.duplicates.find_duplicates_for_contact(contact_id, threshold)

    def duplicate_stats(self, threshold: Optional[float] = None) -> dict[str, Any]:
        if threshold is None:
            threshold = self.settings.duplicate_threshold
        return self.duplicates.duplicate_stats(threshold)

    # =========================================================================
    # Sync error ledger
    # =========================================================================

    def list_sync_errors(
        self, log_filter: Optional[SyncLogFilter] = None
    ) -> list[SyncLogEntry]:
        return self.error_log.query(log_filter)

    def resolve_sync_error(
        self, log_id: int, resolved_by: str = "operator", notes: Optional[str] = None
    ) -> SyncLogEntry:
        return self.error_log.resolve(log_id, resolved_by, notes)

    def sync_error_stats(self) -> SyncLogStats:
        return self.error_log.stats()

    # =========================================================================
    # Reminders
    # =========================================================================

    def run_reminder_scan(self) -> list[Reminder]:
        return self.reminders.scan()

    def list_reminders(self) -> list[Reminder]:
        return self.reminders.list_open()

    def resolve_reminder(self, reminder_id: int) -> bool:
        return self.reminders.resolve(reminder_id)

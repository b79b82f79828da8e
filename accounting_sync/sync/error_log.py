"""
Durable ledger of sync attempt outcomes.

Every sync attempt lands here through a single append() call. A retry of
the same logical operation (sync type + entity id + external id) inside the
retry window bumps attempt_count on the existing unresolved row instead of
adding a new one.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from accounting_sync.storage.db import SyncDatabase
from accounting_sync.utils.dates import utc_now

DEFAULT_RETRY_WINDOW = timedelta(minutes=60)

# Recorded as resolved_by on successful attempts
AUTO_RESOLVER = "auto"

logger = logging.getLogger(__name__)


class SyncStatus(Enum):
    """Outcome of one sync attempt."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class SyncLogNotFoundError(Exception):
    """Raised when resolving a log entry that does not exist."""

    pass


@dataclass
class SyncAttempt:
    """An outcome to append to the ledger."""

    sync_type: str
    status: SyncStatus
    entity_id: Optional[int] = None
    entity_name: Optional[str] = None
    external_id: Optional[str] = None
    error_message: Optional[str] = None
    error_details: Optional[dict[str, Any]] = None


@dataclass
class SyncLogEntry:
    """One ledger row."""

    id: int
    sync_type: str
    status: SyncStatus
    attempt_count: int
    created_at: datetime
    last_attempt_at: datetime
    entity_id: Optional[int] = None
    entity_name: Optional[str] = None
    external_id: Optional[str] = None
    error_message: Optional[str] = None
    error_details: Optional[dict[str, Any]] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SyncLogEntry":
        return cls(
            id=row["id"],
            sync_type=row["sync_type"],
            status=SyncStatus(row["status"]),
            attempt_count=row["attempt_count"],
            created_at=row["created_at"],
            last_attempt_at=row["last_attempt_at"],
            entity_id=row.get("entity_id"),
            entity_name=row.get("entity_name"),
            external_id=row.get("external_id"),
            error_message=row.get("error_message"),
            error_details=row.get("error_details"),
            resolved_at=row.get("resolved_at"),
            resolved_by=row.get("resolved_by"),
            notes=row.get("notes"),
        )


@dataclass
class SyncLogFilter:
    """
    Query filter for the ledger.

    Attributes:
        unresolved_only: Only rows without resolved_at
        recent_hours: Only rows attempted within this many hours
        sync_type: Only this entity kind
        status: Only this outcome
        limit: Maximum number of rows
    """

    unresolved_only: bool = False
    recent_hours: Optional[float] = None
    sync_type: Optional[str] = None
    status: Optional[SyncStatus] = None
    limit: Optional[int] = None


@dataclass
class SyncLogStats:
    """Dashboard summary of the ledger."""

    total: int = 0
    unresolved_failures: int = 0
    failures_last_24h: int = 0
    by_type: dict[str, dict[str, int]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "unresolved_failures": self.unresolved_failures,
            "failures_last_24h": self.failures_last_24h,
            "by_type": self.by_type,
        }


class SyncErrorLog:
    """
    Append/query/resolve contract over the sync_log table.

    Usage:
        log = SyncErrorLog(db)
        log.append(SyncAttempt("contacts", SyncStatus.FAILED, entity_id=7,
                               error_message="Invalid email"))
        for entry in log.query(SyncLogFilter(unresolved_only=True)):
            ...
        log.resolve(entry.id, resolved_by="alice", notes="fixed email")
    """

    def __init__(
        self,
        db: SyncDatabase,
        retry_window: timedelta = DEFAULT_RETRY_WINDOW,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.retry_window = retry_window
        self.clock = clock
        # Serializes the find-then-write for file databases shared by workers
        self._append_lock = threading.Lock()

    def append(self, attempt: SyncAttempt) -> SyncLogEntry:
        """
        Record an attempt, merging retries of the same logical operation.

        A SUCCESS closes the row (resolved_by='auto') so it drops out of the
        unresolved view; a later failure of the same operation starts a new row.

        Returns:
            The inserted or updated entry
        """
        now = self.clock()
        status = SyncStatus(attempt.status)
        resolved_at = now if status == SyncStatus.SUCCESS else None
        resolved_by = AUTO_RESOLVER if status == SyncStatus.SUCCESS else None

        with self._append_lock, self.db.transaction(immediate=True) as conn:
            existing = self.db.find_open_sync_log(
                attempt.sync_type,
                attempt.entity_id,
                attempt.external_id,
                since=now - self.retry_window,
                conn=conn,
            )
            if existing is not None:
                self.db.record_sync_log_retry(
                    existing["id"],
                    status=status.value,
                    error_message=attempt.error_message,
                    error_details=attempt.error_details,
                    attempted_at=now,
                    resolved_at=resolved_at,
                    resolved_by=resolved_by,
                    conn=conn,
                )
                log_id = existing["id"]
            else:
                log_id = self.db.insert_sync_log(
                    sync_type=attempt.sync_type,
                    status=status.value,
                    entity_id=attempt.entity_id,
                    entity_name=attempt.entity_name,
                    external_id=attempt.external_id,
                    error_message=attempt.error_message,
                    error_details=attempt.error_details,
                    created_at=now,
                    resolved_at=resolved_at,
                    resolved_by=resolved_by,
                    conn=conn,
                )
            row = self.db.get_sync_log(log_id, conn=conn)

        if status != SyncStatus.SUCCESS:
            logger.debug(
                f"Sync {status.value.lower()} for {attempt.sync_type} "
                f"{attempt.entity_name or attempt.entity_id}: {attempt.error_message}"
            )
        return SyncLogEntry.from_row(row)

    def get(self, log_id: int) -> Optional[SyncLogEntry]:
        row = self.db.get_sync_log(log_id)
        return SyncLogEntry.from_row(row) if row else None

    def query(self, log_filter: Optional[SyncLogFilter] = None) -> list[SyncLogEntry]:
        """Return ledger rows matching the filter, newest first."""
        f = log_filter or SyncLogFilter()
        rows = self.db.query_sync_logs(
            unresolved_only=f.unresolved_only,
            since=self._since(f.recent_hours),
            sync_type=f.sync_type,
            status=f.status.value if f.status else None,
            limit=f.limit,
        )
        return [SyncLogEntry.from_row(row) for row in rows]

    def group_counts(
        self, log_filter: Optional[SyncLogFilter] = None
    ) -> dict[tuple[str, str], int]:
        """Count rows grouped by (sync_type, status)."""
        f = log_filter or SyncLogFilter()
        rows = self.db.count_sync_logs_grouped(
            unresolved_only=f.unresolved_only,
            since=self._since(f.recent_hours),
            sync_type=f.sync_type,
            status=f.status.value if f.status else None,
        )
        return {(row["sync_type"], row["status"]): row["count"] for row in rows}

    def stats(self) -> SyncLogStats:
        """Summarize the ledger for a dashboard."""
        stats = SyncLogStats()
        for (sync_type, status), count in self.group_counts().items():
            stats.total += count
            stats.by_type.setdefault(sync_type, {})[status] = count

        unresolved = self.group_counts(
            SyncLogFilter(unresolved_only=True, status=SyncStatus.FAILED)
        )
        stats.unresolved_failures = sum(unresolved.values())

        recent = self.group_counts(
            SyncLogFilter(recent_hours=24, status=SyncStatus.FAILED)
        )
        stats.failures_last_24h = sum(recent.values())
        return stats

    def resolve(
        self, log_id: int, resolved_by: str, notes: Optional[str] = None
    ) -> SyncLogEntry:
        """
        Mark an entry resolved. Resolving a resolved entry is a no-op.

        Raises:
            SyncLogNotFoundError: If no entry has this id
        """
        if self.db.get_sync_log(log_id) is None:
            raise SyncLogNotFoundError(f"Sync log entry {log_id} not found")

        if self.db.resolve_sync_log(log_id, resolved_by, notes, self.clock()):
            logger.info(f"Sync log entry {log_id} resolved by {resolved_by}")
        return self.get(log_id)

    def _since(self, hours: Optional[float]) -> Optional[datetime]:
        if hours is None:
            return None
        return self.clock() - timedelta(hours=hours)

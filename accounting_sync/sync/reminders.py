"""
Maintenance reminder scan.

Creates reminders for work that needs an operator: local invoices that
were never synced to the provider, and conflicts left pending too long.
Scans are idempotent under overlapping runs: each candidate is checked for
an unresolved reminder of the same type within the recency window inside
the same immediate transaction that would create it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from accounting_sync.storage.db import SyncDatabase
from accounting_sync.utils.dates import utc_now

UNSYNCED_INVOICE = "unsynced_invoice"
STALE_CONFLICT = "stale_conflict"

DEFAULT_WINDOW_DAYS = 7
DEFAULT_UNSYNCED_AFTER_DAYS = 3

logger = logging.getLogger(__name__)


@dataclass
class Reminder:
    id: int
    reminder_type: str
    entity_type: str
    entity_id: int
    message: str
    created_at: datetime
    resolved_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Reminder":
        return cls(
            id=row["id"],
            reminder_type=row["reminder_type"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            message=row.get("message") or "",
            created_at=row["created_at"],
            resolved_at=row.get("resolved_at"),
        )


class ReminderScanner:
    """
    Overlap-safe reminder scan.

    Usage:
        scanner = ReminderScanner(db)
        created = scanner.scan()
    """

    def __init__(
        self,
        db: SyncDatabase,
        window_days: int = DEFAULT_WINDOW_DAYS,
        unsynced_after_days: int = DEFAULT_UNSYNCED_AFTER_DAYS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.window = timedelta(days=window_days)
        self.unsynced_after = timedelta(days=unsynced_after_days)
        self.clock = clock

    def scan(self) -> list[Reminder]:
        """
        Run one scan.

        Returns:
            Reminders created by this run (empty when all are already open)
        """
        now = self.clock()
        cutoff = now - self.unsynced_after
        created: list[Reminder] = []

        candidates: list[tuple[str, str, int, str]] = []
        for row in self.db.list_unsynced_entities("invoices", created_before=cutoff):
            label = row.get("invoice_number") or f"#{row['id']}"
            candidates.append(
                (
                    UNSYNCED_INVOICE,
                    "invoices",
                    row["id"],
                    f"Invoice {label} has not been synced to the accounting provider",
                )
            )
        for row in self.db.list_conflicts("PENDING"):
            if row["detected_at"] < cutoff:
                candidates.append(
                    (
                        STALE_CONFLICT,
                        row["entity_type"],
                        row["entity_id"],
                        f"Sync conflict {row['id']} on {row['entity_type']} "
                        f"{row['entity_id']} is waiting for a decision",
                    )
                )

        for reminder_type, entity_type, entity_id, message in candidates:
            reminder = self._create_once(reminder_type, entity_type, entity_id, message, now)
            if reminder is not None:
                created.append(reminder)

        if created:
            logger.info(f"Created {len(created)} reminders")
        return created

    def _create_once(
        self,
        reminder_type: str,
        entity_type: str,
        entity_id: int,
        message: str,
        now: datetime,
    ) -> Optional[Reminder]:
        # Check and insert under one write lock so overlapping scans agree
        with self.db.transaction(immediate=True) as conn:
            existing = self.db.find_recent_reminder(
                reminder_type, entity_type, entity_id, since=now - self.window, conn=conn
            )
            if existing is not None:
                return None
            reminder_id = self.db.insert_reminder(
                reminder_type, entity_type, entity_id, message, created_at=now, conn=conn
            )
        return Reminder(
            id=reminder_id,
            reminder_type=reminder_type,
            entity_type=entity_type,
            entity_id=entity_id,
            message=message,
            created_at=now,
        )

    def list_open(self) -> list[Reminder]:
        return [Reminder.from_row(row) for row in self.db.list_reminders(unresolved_only=True)]

    def resolve(self, reminder_id: int) -> bool:
        return self.db.resolve_reminder(reminder_id)

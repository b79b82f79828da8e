"""
accounting_sync.sync - Synchronization module

Contains the sync orchestrator, per-kind adapters, conflict handling,
duplicate detection, the sync attempt ledger and reminder scans.
"""

from accounting_sync.sync.conflict import (
    ConflictDetector,
    ConflictPolicy,
    ConflictResolver,
    ConflictStatus,
    SyncConflict,
)
from accounting_sync.sync.duplicates import DuplicateContactDetector, DuplicateGroup
from accounting_sync.sync.engine import SyncOrchestrator, SyncReport
from accounting_sync.sync.error_log import (
    SyncAttempt,
    SyncErrorLog,
    SyncLogFilter,
    SyncLogNotFoundError,
    SyncStatus,
)
from accounting_sync.sync.records import EntityKind, SyncAction, SyncDirection
from accounting_sync.sync.reminders import ReminderScanner

__all__ = [
    "ConflictDetector",
    "ConflictPolicy",
    "ConflictResolver",
    "ConflictStatus",
    "DuplicateContactDetector",
    "DuplicateGroup",
    "EntityKind",
    "ReminderScanner",
    "SyncAction",
    "SyncAttempt",
    "SyncConflict",
    "SyncDirection",
    "SyncErrorLog",
    "SyncLogFilter",
    "SyncLogNotFoundError",
    "SyncOrchestrator",
    "SyncReport",
    "SyncStatus",
]

"""
accounting_sync.storage - Persistence module

SQLite storage for connections, local entities, mappings and sync bookkeeping.
"""

from accounting_sync.storage.db import DuplicateMappingError, SyncDatabase

__all__ = ["DuplicateMappingError", "SyncDatabase"]

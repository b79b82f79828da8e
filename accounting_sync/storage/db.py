"""
SQLite database module for the accounting sync engine.

Provides persistent storage for the external connection, the local business
entities (contacts, invoices, payments) and their external mappings, the sync
attempt ledger, sync conflicts, OAuth authorization states and maintenance
reminders.

Timestamps are stored as ISO-8601 UTC text and returned as aware datetimes.
"""

import json
import sqlite3
import threading
from collections.abc import Generator, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Optional

from accounting_sync.utils.dates import parse_timestamp, to_iso, utc_now

SCHEMA = """
CREATE TABLE IF NOT EXISTS integration_connections (
    id INTEGER PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    tenant_name TEXT,
    access_token TEXT NOT NULL,
    refresh_token TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    scopes TEXT,
    connected_at TEXT NOT NULL,
    last_sync_at TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    deactivated_at TEXT
);

-- At most one active connection at any time
CREATE UNIQUE INDEX IF NOT EXISTS idx_connections_single_active
    ON integration_connections(is_active) WHERE is_active = 1;

CREATE TABLE IF NOT EXISTS contacts (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT,
    phone TEXT,
    registration_number TEXT,
    is_customer INTEGER NOT NULL DEFAULT 1,
    is_supplier INTEGER NOT NULL DEFAULT 0,
    external_id TEXT UNIQUE,
    last_synced_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS invoices (
    id INTEGER PRIMARY KEY,
    invoice_number TEXT,
    contact_id INTEGER REFERENCES contacts(id),
    status TEXT NOT NULL DEFAULT 'DRAFT',
    total REAL NOT NULL DEFAULT 0,
    currency TEXT,
    due_date TEXT,
    external_id TEXT UNIQUE,
    last_synced_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS payments (
    id INTEGER PRIMARY KEY,
    reference TEXT,
    invoice_id INTEGER REFERENCES invoices(id),
    amount REAL NOT NULL DEFAULT 0,
    paid_on TEXT,
    external_id TEXT UNIQUE,
    last_synced_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_log (
    id INTEGER PRIMARY KEY,
    sync_type TEXT NOT NULL,
    status TEXT NOT NULL,
    entity_id INTEGER,
    entity_name TEXT,
    external_id TEXT,
    error_message TEXT,
    error_details TEXT,
    attempt_count INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    last_attempt_at TEXT NOT NULL,
    resolved_at TEXT,
    resolved_by TEXT,
    notes TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_log_key
    ON sync_log(sync_type, entity_id, external_id);
CREATE INDEX IF NOT EXISTS idx_sync_log_created ON sync_log(created_at);

CREATE TABLE IF NOT EXISTS sync_conflicts (
    id INTEGER PRIMARY KEY,
    entity_type TEXT NOT NULL,
    entity_id INTEGER NOT NULL,
    external_id TEXT,
    local_snapshot TEXT NOT NULL,
    remote_snapshot TEXT NOT NULL,
    detected_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING',
    resolution_policy TEXT,
    resolved_at TEXT,
    resolved_by TEXT
);

CREATE INDEX IF NOT EXISTS idx_conflicts_entity
    ON sync_conflicts(entity_type, entity_id, status);

CREATE TABLE IF NOT EXISTS oauth_states (
    state TEXT PRIMARY KEY,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS reminders (
    id INTEGER PRIMARY KEY,
    reminder_type TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id INTEGER NOT NULL,
    message TEXT,
    created_at TEXT NOT NULL,
    resolved_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_reminders_entity
    ON reminders(reminder_type, entity_type, entity_id);
"""

# Columns returned as datetimes rather than ISO strings
TIMESTAMP_COLUMNS = frozenset(
    {
        "expires_at",
        "connected_at",
        "last_sync_at",
        "deactivated_at",
        "last_synced_at",
        "created_at",
        "updated_at",
        "last_attempt_at",
        "resolved_at",
        "detected_at",
    }
)

# Columns returned as decoded JSON
JSON_COLUMNS = frozenset({"error_details", "local_snapshot", "remote_snapshot"})

# Writable business columns per entity table; table names are never taken
# from user input, only from this whitelist
ENTITY_COLUMNS: dict[str, tuple[str, ...]] = {
    "contacts": (
        "name",
        "email",
        "phone",
        "registration_number",
        "is_customer",
        "is_supplier",
    ),
    "invoices": (
        "invoice_number",
        "contact_id",
        "status",
        "total",
        "currency",
        "due_date",
    ),
    "payments": ("reference", "invoice_id", "amount", "paid_on"),
}


class DuplicateMappingError(Exception):
    """Raised when an external id is already mapped to another local entity."""

    pass


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[dict[str, Any]]:
    if row is None:
        return None
    result = dict(row)
    for key, value in result.items():
        if key in TIMESTAMP_COLUMNS and value is not None:
            result[key] = parse_timestamp(value)
        elif key in JSON_COLUMNS and value is not None:
            result[key] = json.loads(value)
    return result


def _check_table(table: str) -> None:
    if table not in ENTITY_COLUMNS:
        raise ValueError(f"Unknown entity table: {table}")


class SyncDatabase:
    """
    SQLite database manager for connections, entities and sync bookkeeping.

    Methods that take an optional ``conn`` run inside that connection's
    transaction; without it they open (and commit) their own unit of work.

    Usage:
        db = SyncDatabase('/path/to/sync.db')
        db.initialize()

        with db.transaction(immediate=True) as conn:
            db.update_entity("contacts", 1, {"name": "Acme"}, conn=conn)
            db.set_mapping("contacts", 1, "ext-1", synced_at, conn=conn)

        # Or use in-memory for testing:
        db = SyncDatabase(':memory:')
        db.initialize()
    """

    def __init__(self, db_path: str):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
        """
        self.db_path = db_path
        self._shared_connection: Optional[sqlite3.Connection] = None
        self._shared_lock = threading.RLock()

    @property
    def is_memory(self) -> bool:
        return self.db_path == ":memory:"

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        For in-memory databases, returns a shared connection to ensure
        schema persists across operations. For file databases, creates
        a new connection each time.
        """
        if self.is_memory:
            if self._shared_connection is None:
                # Worker threads share it; access is serialized by _shared_lock
                self._shared_connection = sqlite3.connect(
                    ":memory:", check_same_thread=False
                )
                self._shared_connection.row_factory = sqlite3.Row
            return self._shared_connection

        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(
        self, immediate: bool = False
    ) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for one unit of work.

        Commits on success and rolls back on any exception.

        Args:
            immediate: Start with BEGIN IMMEDIATE so the write lock is taken
                       before the first read (check-then-insert sequences)

        Usage:
            with db.connection() as conn:
                conn.execute("SELECT * FROM contacts")
        """
        if self.is_memory:
            self._shared_lock.acquire()
        try:
            conn = self._get_connection()
            try:
                if immediate and not conn.in_transaction:
                    conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                if not self.is_memory:
                    conn.close()
        finally:
            if self.is_memory:
                self._shared_lock.release()

    # Alias that reads better at call sites grouping several writes
    transaction = connection

    @contextmanager
    def _use(
        self, conn: Optional[sqlite3.Connection] = None
    ) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with self.connection() as own:
                yield own

    def initialize(self) -> None:
        """Create all tables and indexes if they don't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    def close(self) -> None:
        """Close the shared in-memory connection, if any."""
        with self._shared_lock:
            if self._shared_connection is not None:
                self._shared_connection.close()
                self._shared_connection = None

    # =========================================================================
    # Integration Connection Operations
    # =========================================================================

    def get_active_connection(
        self, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[dict[str, Any]]:
        """Return the single active connection row, or None."""
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM integration_connections WHERE is_active = 1"
            ).fetchone()
            return _row_to_dict(row)

    def get_connection_by_id(
        self, connection_id: int, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[dict[str, Any]]:
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM integration_connections WHERE id = ?", (connection_id,)
            ).fetchone()
            return _row_to_dict(row)

    def list_connections(self) -> list[dict[str, Any]]:
        """Return all connections, newest first (inactive rows included)."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM integration_connections ORDER BY id DESC"
            ).fetchall()
            return [_row_to_dict(row) for row in rows]

    def insert_active_connection(
        self,
        tenant_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        tenant_name: Optional[str] = None,
        scopes: Optional[str] = None,
        connected_at: Optional[datetime] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        """
        Store a new active connection, deactivating any previous one.

        Returns:
            The id of the new connection row
        """
        now = connected_at or utc_now()
        with self._use(conn) as c:
            c.execute(
                """
                UPDATE integration_connections
                SET is_active = 0, deactivated_at = ?
                WHERE is_active = 1
                """,
                (to_iso(now),),
            )
            cursor = c.execute(
                """
                INSERT INTO integration_connections (
                    tenant_id, tenant_name, access_token, refresh_token,
                    expires_at, scopes, connected_at, is_active
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 1)
                """,
                (
                    tenant_id,
                    tenant_name,
                    access_token,
                    refresh_token,
                    to_iso(expires_at),
                    scopes,
                    to_iso(now),
                ),
            )
            return int(cursor.lastrowid)

    def update_connection_tokens(
        self,
        connection_id: int,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """
        Persist a rotated token pair on an active connection.

        Returns:
            True if the active row was updated
        """
        with self._use(conn) as c:
            cursor = c.execute(
                """
                UPDATE integration_connections
                SET access_token = ?, refresh_token = ?, expires_at = ?
                WHERE id = ? AND is_active = 1
                """,
                (access_token, refresh_token, to_iso(expires_at), connection_id),
            )
            return cursor.rowcount > 0

    def deactivate_connection(
        self, connection_id: int, conn: Optional[sqlite3.Connection] = None
    ) -> bool:
        """
        Mark a connection inactive. Rows are kept for audit history.

        Returns:
            True if the connection was active before the call
        """
        with self._use(conn) as c:
            cursor = c.execute(
                """
                UPDATE integration_connections
                SET is_active = 0, deactivated_at = ?
                WHERE id = ? AND is_active = 1
                """,
                (to_iso(utc_now()), connection_id),
            )
            return cursor.rowcount > 0

    def update_connection_last_sync(
        self, connection_id: int, last_sync_at: Optional[datetime] = None
    ) -> None:
        with self.connection() as conn:
            conn.execute(
                "UPDATE integration_connections SET last_sync_at = ? WHERE id = ?",
                (to_iso(last_sync_at or utc_now()), connection_id),
            )

    # =========================================================================
    # Entity Operations
    # =========================================================================

    def insert_entity(
        self,
        table: str,
        values: dict[str, Any],
        external_id: Optional[str] = None,
        last_synced_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        """
        Insert a local entity row.

        Args:
            table: One of 'contacts', 'invoices', 'payments'
            values: Business column values (unknown keys are rejected)
            external_id: Optional external mapping to store with the row
            last_synced_at: Mapping sync marker, when external_id is given
            created_at: Creation time (defaults to now); also used as updated_at

        Returns:
            The new row id

        Raises:
            DuplicateMappingError: If external_id is already mapped
        """
        _check_table(table)
        columns = self._entity_columns(table, values)
        now = created_at or utc_now()

        names = list(columns) + [
            "external_id",
            "last_synced_at",
            "created_at",
            "updated_at",
        ]
        params = [values[name] for name in columns] + [
            external_id,
            to_iso(last_synced_at),
            to_iso(now),
            to_iso(now),
        ]
        placeholders = ", ".join("?" for _ in names)
        sql = (
            f"INSERT INTO {table} ({', '.join(names)}) "  # nosec B608
            f"VALUES ({placeholders})"
        )
        with self._use(conn) as c:
            try:
                cursor = c.execute(sql, params)
            except sqlite3.IntegrityError as e:
                raise DuplicateMappingError(
                    f"External id {external_id} is already mapped in {table}"
                ) from e
            return int(cursor.lastrowid)

    def update_entity(
        self,
        table: str,
        entity_id: int,
        values: dict[str, Any],
        updated_at: Optional[datetime] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """
        Update business columns of a local entity and bump updated_at.

        Returns:
            True if a row was updated
        """
        _check_table(table)
        columns = self._entity_columns(table, values)
        if not columns:
            return False

        assignments = [f"{name} = ?" for name in columns] + ["updated_at = ?"]
        params = [values[name] for name in columns]
        params += [to_iso(updated_at or utc_now()), entity_id]
        sql = (
            f"UPDATE {table} SET {', '.join(assignments)} "  # nosec B608
            "WHERE id = ?"
        )
        with self._use(conn) as c:
            return c.execute(sql, params).rowcount > 0

    def get_entity(
        self, table: str, entity_id: int, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[dict[str, Any]]:
        _check_table(table)
        with self._use(conn) as c:
            row = c.execute(
                f"SELECT * FROM {table} WHERE id = ?",  # nosec B608
                (entity_id,),
            ).fetchone()
            return _row_to_dict(row)

    def get_entity_by_external_id(
        self, table: str, external_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[dict[str, Any]]:
        _check_table(table)
        with self._use(conn) as c:
            row = c.execute(
                f"SELECT * FROM {table} WHERE external_id = ?",  # nosec B608
                (external_id,),
            ).fetchone()
            return _row_to_dict(row)

    def list_entities(
        self,
        table: str,
        limit: Optional[int] = None,
        offset: int = 0,
        conn: Optional[sqlite3.Connection] = None,
    ) -> list[dict[str, Any]]:
        """Return entity rows ordered by id, optionally one page at a time."""
        _check_table(table)
        sql = f"SELECT * FROM {table} ORDER BY id"  # nosec B608
        params: tuple[int, ...] = ()
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params = (limit, offset)
        with self._use(conn) as c:
            return [_row_to_dict(row) for row in c.execute(sql, params).fetchall()]

    def count_entities(self, table: str) -> int:
        _check_table(table)
        with self.connection() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS n FROM {table}"  # nosec B608
            ).fetchone()
            return int(row["n"])

    def list_unsynced_entities(
        self, table: str, created_before: datetime, conn: Optional[sqlite3.Connection] = None
    ) -> list[dict[str, Any]]:
        """Return rows with no external mapping created before the cutoff."""
        _check_table(table)
        with self._use(conn) as c:
            rows = c.execute(
                f"SELECT * FROM {table} "  # nosec B608
                "WHERE external_id IS NULL AND created_at < ? ORDER BY id",
                (to_iso(created_before),),
            ).fetchall()
            return [_row_to_dict(row) for row in rows]

    def set_mapping(
        self,
        table: str,
        entity_id: int,
        external_id: str,
        last_synced_at: datetime,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        """
        Store the external mapping and sync marker of a local entity.

        updated_at is left untouched so the mapping write itself never
        counts as a local change.

        Raises:
            DuplicateMappingError: If external_id is mapped to another row
        """
        _check_table(table)
        with self._use(conn) as c:
            try:
                c.execute(
                    f"UPDATE {table} "  # nosec B608
                    "SET external_id = ?, last_synced_at = ? WHERE id = ?",
                    (external_id, to_iso(last_synced_at), entity_id),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateMappingError(
                    f"External id {external_id} is already mapped in {table}"
                ) from e

    def _entity_columns(self, table: str, values: dict[str, Any]) -> list[str]:
        allowed = ENTITY_COLUMNS[table]
        unknown = [key for key in values if key not in allowed]
        if unknown:
            raise ValueError(f"Unknown columns for {table}: {', '.join(unknown)}")
        return [name for name in allowed if name in values]

    # =========================================================================
    # Sync Log Operations
    # =========================================================================

    def find_open_sync_log(
        self,
        sync_type: str,
        entity_id: Optional[int],
        external_id: Optional[str],
        since: datetime,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[dict[str, Any]]:
        """
        Find the latest unresolved log row for one logical operation.

        NULL entity/external ids compare equal (IS rather than =).
        """
        with self._use(conn) as c:
            row = c.execute(
                """
                SELECT * FROM sync_log
                WHERE sync_type = ?
                  AND entity_id IS ?
                  AND external_id IS ?
                  AND resolved_at IS NULL
                  AND last_attempt_at >= ?
                ORDER BY id DESC
                LIMIT 1
                """,
                (sync_type, entity_id, external_id, to_iso(since)),
            ).fetchone()
            return _row_to_dict(row)

    def insert_sync_log(
        self,
        sync_type: str,
        status: str,
        entity_id: Optional[int] = None,
        entity_name: Optional[str] = None,
        external_id: Optional[str] = None,
        error_message: Optional[str] = None,
        error_details: Optional[dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
        resolved_at: Optional[datetime] = None,
        resolved_by: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        now = to_iso(created_at or utc_now())
        with self._use(conn) as c:
            cursor = c.execute(
                """
                INSERT INTO sync_log (
                    sync_type, status, entity_id, entity_name, external_id,
                    error_message, error_details, attempt_count,
                    created_at, last_attempt_at, resolved_at, resolved_by
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?)
                """,
                (
                    sync_type,
                    status,
                    entity_id,
                    entity_name,
                    external_id,
                    error_message,
                    json.dumps(error_details) if error_details is not None else None,
                    now,
                    now,
                    to_iso(resolved_at),
                    resolved_by,
                ),
            )
            return int(cursor.lastrowid)

    def record_sync_log_retry(
        self,
        log_id: int,
        status: str,
        error_message: Optional[str],
        error_details: Optional[dict[str, Any]],
        attempted_at: datetime,
        resolved_at: Optional[datetime] = None,
        resolved_by: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        """Increment attempt_count and store the latest outcome."""
        with self._use(conn) as c:
            c.execute(
                """
                UPDATE sync_log
                SET attempt_count = attempt_count + 1,
                    status = ?,
                    error_message = ?,
                    error_details = ?,
                    last_attempt_at = ?,
                    resolved_at = ?,
                    resolved_by = ?
                WHERE id = ?
                """,
                (
                    status,
                    error_message,
                    json.dumps(error_details) if error_details is not None else None,
                    to_iso(attempted_at),
                    to_iso(resolved_at),
                    resolved_by,
                    log_id,
                ),
            )

    def get_sync_log(
        self, log_id: int, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[dict[str, Any]]:
        with self._use(conn) as c:
            row = c.execute("SELECT * FROM sync_log WHERE id = ?", (log_id,)).fetchone()
            return _row_to_dict(row)

    def query_sync_logs(
        self,
        unresolved_only: bool = False,
        since: Optional[datetime] = None,
        sync_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Return log rows matching all given filters, newest first."""
        where, params = self._sync_log_filters(unresolved_only, since, sync_type, status)
        sql = f"SELECT * FROM sync_log {where} ORDER BY last_attempt_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self.connection() as conn:
            rows = conn.execute(sql, params).fetchall()  # nosec B608
            return [_row_to_dict(row) for row in rows]

    def count_sync_logs_grouped(
        self,
        unresolved_only: bool = False,
        since: Optional[datetime] = None,
        sync_type: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Return row counts grouped by (sync_type, status)."""
        where, params = self._sync_log_filters(unresolved_only, since, sync_type, status)
        sql = (
            "SELECT sync_type, status, COUNT(*) AS count, "  # nosec B608
            f"SUM(attempt_count) AS attempts FROM sync_log {where} "
            "GROUP BY sync_type, status ORDER BY sync_type, status"
        )
        with self.connection() as conn:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]

    def resolve_sync_log(
        self,
        log_id: int,
        resolved_by: str,
        notes: Optional[str] = None,
        resolved_at: Optional[datetime] = None,
    ) -> bool:
        """
        Set the resolution fields on an unresolved row.

        Returns:
            True if the row was unresolved and is now resolved
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_log
                SET resolved_at = ?, resolved_by = ?, notes = ?
                WHERE id = ? AND resolved_at IS NULL
                """,
                (to_iso(resolved_at or utc_now()), resolved_by, notes, log_id),
            )
            return cursor.rowcount > 0

    @staticmethod
    def _sync_log_filters(
        unresolved_only: bool,
        since: Optional[datetime],
        sync_type: Optional[str],
        status: Optional[str],
    ) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if unresolved_only:
            clauses.append("resolved_at IS NULL")
        if since is not None:
            clauses.append("last_attempt_at >= ?")
            params.append(to_iso(since))
        if sync_type is not None:
            clauses.append("sync_type = ?")
            params.append(sync_type)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    # =========================================================================
    # Conflict Operations
    # =========================================================================

    def find_pending_conflict(
        self,
        entity_type: str,
        entity_id: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[dict[str, Any]]:
        with self._use(conn) as c:
            row = c.execute(
                """
                SELECT * FROM sync_conflicts
                WHERE entity_type = ? AND entity_id = ? AND status = 'PENDING'
                ORDER BY id DESC LIMIT 1
                """,
                (entity_type, entity_id),
            ).fetchone()
            return _row_to_dict(row)

    def insert_conflict(
        self,
        entity_type: str,
        entity_id: int,
        external_id: Optional[str],
        local_snapshot: dict[str, Any],
        remote_snapshot: dict[str, Any],
        detected_at: Optional[datetime] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        with self._use(conn) as c:
            cursor = c.execute(
                """
                INSERT INTO sync_conflicts (
                    entity_type, entity_id, external_id, local_snapshot,
                    remote_snapshot, detected_at, status
                ) VALUES (?, ?, ?, ?, ?, ?, 'PENDING')
                """,
                (
                    entity_type,
                    entity_id,
                    external_id,
                    json.dumps(local_snapshot, default=str, sort_keys=True),
                    json.dumps(remote_snapshot, default=str, sort_keys=True),
                    to_iso(detected_at or utc_now()),
                ),
            )
            return int(cursor.lastrowid)

    def get_conflict(
        self, conflict_id: int, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[dict[str, Any]]:
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM sync_conflicts WHERE id = ?", (conflict_id,)
            ).fetchone()
            return _row_to_dict(row)

    def list_conflicts(self, status: Optional[str] = None) -> list[dict[str, Any]]:
        sql = "SELECT * FROM sync_conflicts"
        params: tuple[str, ...] = ()
        if status is not None:
            sql += " WHERE status = ?"
            params = (status,)
        sql += " ORDER BY detected_at, id"
        with self.connection() as conn:
            return [_row_to_dict(row) for row in conn.execute(sql, params).fetchall()]

    def update_conflict(
        self,
        conflict_id: int,
        status: str,
        resolution_policy: Optional[str],
        resolved_by: Optional[str] = None,
        resolved_at: Optional[datetime] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        with self._use(conn) as c:
            c.execute(
                """
                UPDATE sync_conflicts
                SET status = ?, resolution_policy = ?, resolved_by = ?, resolved_at = ?
                WHERE id = ?
                """,
                (
                    status,
                    resolution_policy,
                    resolved_by,
                    to_iso(resolved_at),
                    conflict_id,
                ),
            )

    # =========================================================================
    # OAuth State Operations
    # =========================================================================

    def save_oauth_state(self, state: str, created_at: Optional[datetime] = None) -> None:
        with self.connection() as conn:
            conn.execute(
                "INSERT INTO oauth_states (state, created_at) VALUES (?, ?)",
                (state, to_iso(created_at or utc_now())),
            )

    def consume_oauth_state(self, state: str, issued_after: datetime) -> bool:
        """
        Delete an authorization state, reporting whether it was valid.

        A state is valid once, and only if issued after the cutoff.
        """
        with self.connection(immediate=True) as conn:
            row = conn.execute(
                "SELECT created_at FROM oauth_states WHERE state = ?", (state,)
            ).fetchone()
            if row is None:
                return False
            conn.execute("DELETE FROM oauth_states WHERE state = ?", (state,))
            return parse_timestamp(row["created_at"]) >= issued_after

    def purge_oauth_states(self, issued_before: datetime) -> int:
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM oauth_states WHERE created_at < ?",
                (to_iso(issued_before),),
            )
            return cursor.rowcount

    # =========================================================================
    # Reminder Operations
    # =========================================================================

    def find_recent_reminder(
        self,
        reminder_type: str,
        entity_type: str,
        entity_id: int,
        since: datetime,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[dict[str, Any]]:
        with self._use(conn) as c:
            row = c.execute(
                """
                SELECT * FROM reminders
                WHERE reminder_type = ? AND entity_type = ? AND entity_id = ?
                  AND resolved_at IS NULL AND created_at >= ?
                ORDER BY id DESC LIMIT 1
                """,
                (reminder_type, entity_type, entity_id, to_iso(since)),
            ).fetchone()
            return _row_to_dict(row)

    def insert_reminder(
        self,
        reminder_type: str,
        entity_type: str,
        entity_id: int,
        message: str,
        created_at: Optional[datetime] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        with self._use(conn) as c:
            cursor = c.execute(
                """
                INSERT INTO reminders (
                    reminder_type, entity_type, entity_id, message, created_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (
                    reminder_type,
                    entity_type,
                    entity_id,
                    message,
                    to_iso(created_at or utc_now()),
                ),
            )
            return int(cursor.lastrowid)

    def list_reminders(self, unresolved_only: bool = True) -> list[dict[str, Any]]:
        sql = "SELECT * FROM reminders"
        if unresolved_only:
            sql += " WHERE resolved_at IS NULL"
        sql += " ORDER BY created_at, id"
        with self.connection() as conn:
            return [_row_to_dict(row) for row in conn.execute(sql).fetchall()]

    def resolve_reminder(self, reminder_id: int) -> bool:
        with self.connection() as conn:
            cursor = conn.execute(
                "UPDATE reminders SET resolved_at = ? "
                "WHERE id = ? AND resolved_at IS NULL",
                (to_iso(utc_now()), reminder_id),
            )
            return cursor.rowcount > 0

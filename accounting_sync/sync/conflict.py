"""
Conflict detection and resolution for mapped records.

A conflict exists when both the local and the remote copy of a mapped
record changed since the mapping's last_synced_at and their contents now
differ. A record changed on one side only is a plain update.

Resolution policies:
- use_local: push the local state to the provider
- use_remote: pull the remote state over the local row
- manual: leave the conflict PENDING for an operator
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from accounting_sync.api.accounting_api import AccountingAPI
from accounting_sync.auth.connection import IntegrationConnection
from accounting_sync.auth.token_manager import INTERACTIVE_SAFETY_MARGIN, TokenManager
from accounting_sync.storage.db import SyncDatabase
from accounting_sync.sync.entities import get_adapter
from accounting_sync.sync.records import LocalRecord, RemoteRecord
from accounting_sync.utils.dates import latest, utc_now

logger = logging.getLogger(__name__)


class ConflictPolicy(Enum):
    """Available conflict resolution policies."""

    USE_LOCAL = "use_local"
    USE_REMOTE = "use_remote"
    MANUAL = "manual"


class ConflictStatus(Enum):
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"


class ConflictNotFoundError(Exception):
    """Raised when resolving a conflict id that does not exist."""

    pass


@dataclass
class ChangeState:
    """
    How a mapped record moved since its last sync.

    Attributes:
        local_changed: Local updated_at is past last_synced_at
        remote_changed: Remote updated_at is past last_synced_at
        same_content: Both copies hash equal
    """

    local_changed: bool
    remote_changed: bool
    same_content: bool

    @property
    def is_conflict(self) -> bool:
        return self.local_changed and self.remote_changed and not self.same_content


@dataclass
class SyncConflict:
    """A recorded divergence between the two copies of a mapped record."""

    id: int
    entity_type: str
    entity_id: int
    external_id: Optional[str]
    local_snapshot: dict[str, Any]
    remote_snapshot: dict[str, Any]
    detected_at: datetime
    status: ConflictStatus
    resolution_policy: Optional[ConflictPolicy] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SyncConflict":
        policy = row.get("resolution_policy")
        return cls(
            id=row["id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            external_id=row.get("external_id"),
            local_snapshot=row["local_snapshot"],
            remote_snapshot=row["remote_snapshot"],
            detected_at=row["detected_at"],
            status=ConflictStatus(row["status"]),
            resolution_policy=ConflictPolicy(policy) if policy else None,
            resolved_at=row.get("resolved_at"),
            resolved_by=row.get("resolved_by"),
        )

    def __repr__(self) -> str:
        return (
            f"SyncConflict(id={self.id}, {self.entity_type}#{self.entity_id}, "
            f"status={self.status.value})"
        )


class ConflictDetector:
    """
    Classifies mapped records and records conflicts idempotently.

    Usage:
        detector = ConflictDetector(db)
        state = detector.classify(local, remote)
        if state.is_conflict:
            conflict, created = detector.record(local, remote)
    """

    def __init__(self, db: SyncDatabase, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    def classify(self, local: LocalRecord, remote: RemoteRecord) -> ChangeState:
        marker = local.last_synced_at
        return ChangeState(
            local_changed=local.changed_since_sync(),
            remote_changed=remote.changed_since(marker),
            same_content=local.content_hash() == remote.content_hash(),
        )

    def has_pending(self, entity_type: str, entity_id: int) -> bool:
        return self.db.find_pending_conflict(entity_type, entity_id) is not None

    def record(
        self, local: LocalRecord, remote: RemoteRecord
    ) -> tuple[SyncConflict, bool]:
        """
        Store a conflict with both snapshots unless one is already PENDING.

        Returns:
            Tuple of (conflict, True if newly created)
        """
        entity_type = local.kind.value
        with self.db.transaction(immediate=True) as conn:
            existing = self.db.find_pending_conflict(entity_type, local.id, conn=conn)
            if existing is not None:
                return SyncConflict.from_row(existing), False
            conflict_id = self.db.insert_conflict(
                entity_type=entity_type,
                entity_id=local.id,
                external_id=remote.external_id,
                local_snapshot=local.snapshot(),
                remote_snapshot=remote.snapshot(),
                detected_at=self.clock(),
                conn=conn,
            )
            row = self.db.get_conflict(conflict_id, conn=conn)

        logger.warning(
            f"Conflict detected for {entity_type} {local.id} "
            f"(external {remote.external_id}): both sides changed"
        )
        return SyncConflict.from_row(row), True


class ConflictResolver:
    """
    Applies a resolution policy to a recorded conflict.

    The entity, the mapping's last_synced_at and the conflict status are
    written in one local transaction.

    Usage:
        resolver = ConflictResolver(db, api, token_manager)
        resolver.resolve(conflict_id, ConflictPolicy.USE_LOCAL, connection)
    """

    def __init__(
        self,
        db: SyncDatabase,
        api: AccountingAPI,
        token_manager: TokenManager,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.api = api
        self.token_manager = token_manager
        self.clock = clock

    def list_unresolved(self) -> list[SyncConflict]:
        return [
            SyncConflict.from_row(row)
            for row in self.db.list_conflicts(ConflictStatus.PENDING.value)
        ]

    def get(self, conflict_id: int) -> SyncConflict:
        row = self.db.get_conflict(conflict_id)
        if row is None:
            raise ConflictNotFoundError(f"Conflict {conflict_id} not found")
        return SyncConflict.from_row(row)

    def resolve(
        self,
        conflict_id: int,
        policy: ConflictPolicy,
        connection: IntegrationConnection,
        resolved_by: str = "operator",
    ) -> SyncConflict:
        """
        Resolve a conflict. Resolving a resolved conflict is a no-op.

        Raises:
            ConflictNotFoundError: If the conflict does not exist
            AccountingAPIError / AuthenticationError: If the provider call fails;
                nothing is written locally in that case
        """
        policy = ConflictPolicy(policy)
        conflict = self.get(conflict_id)
        if conflict.status == ConflictStatus.RESOLVED:
            logger.debug(f"Conflict {conflict_id} already resolved")
            return conflict

        if policy == ConflictPolicy.MANUAL:
            self.db.update_conflict(
                conflict_id, ConflictStatus.PENDING.value, policy.value
            )
            return self.get(conflict_id)

        adapter = get_adapter(conflict.entity_type)
        local = adapter.load_local(self.db, conflict.entity_id)
        if local is None:
            raise ConflictNotFoundError(
                f"{conflict.entity_type} {conflict.entity_id} no longer exists"
            )
        external_id = local.external_id or conflict.external_id
        token = self.token_manager.get_valid_access_token(
            connection, INTERACTIVE_SAFETY_MARGIN
        )

        if policy == ConflictPolicy.USE_LOCAL:
            remote = adapter.push(
                self.api, token, connection.tenant_id, local, external_id
            )
            with self.db.transaction(immediate=True) as conn:
                adapter.map_to_external_id(
                    self.db,
                    local.id,
                    remote.external_id,
                    latest(local.updated_at, remote.updated_at),
                    conn,
                )
                self._close(conflict_id, policy, resolved_by, conn)
        else:
            remote = adapter.fetch_remote_one(
                self.api, token, connection.tenant_id, external_id
            )
            with self.db.transaction(immediate=True) as conn:
                adapter.apply_remote_update(
                    self.db, remote, local.id, conn=conn, now=self.clock()
                )
                self._close(conflict_id, policy, resolved_by, conn)

        logger.info(f"Conflict {conflict_id} resolved with {policy.value}")
        return self.get(conflict_id)

    def _close(self, conflict_id, policy, resolved_by, conn) -> None:
        self.db.update_conflict(
            conflict_id,
            ConflictStatus.RESOLVED.value,
            policy.value,
            resolved_by=resolved_by,
            resolved_at=self.clock(),
            conn=conn,
        )

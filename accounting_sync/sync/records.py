"""
Record model shared by the sync adapters, detector and orchestrator.

Local and remote copies of a business record are both reduced to a flat
``fields`` dict in the same vocabulary, so the two sides compare directly.
Cross-kind references (an invoice's contact, a payment's invoice) are
expressed as external ids on both sides.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class EntityKind(Enum):
    """Syncable entity kinds."""

    CONTACTS = "contacts"
    INVOICES = "invoices"
    PAYMENTS = "payments"


class SyncDirection(Enum):
    """Which side a sync pass is allowed to write."""

    PULL = "pull"
    PUSH = "push"
    BOTH = "both"

    @property
    def allows_pull(self) -> bool:
        return self in (SyncDirection.PULL, SyncDirection.BOTH)

    @property
    def allows_push(self) -> bool:
        return self in (SyncDirection.PUSH, SyncDirection.BOTH)


class SyncAction(Enum):
    """The single action chosen for one logical record."""

    NOOP = "noop"
    UPDATE_REMOTE = "update_remote"
    UPDATE_LOCAL = "update_local"
    CONFLICT = "conflict"
    CREATE_MAPPING = "create_mapping"
    CREATE_REMOTE = "create_remote"
    CREATE_LOCAL = "create_local"


def normalize_field(value: Any) -> Any:
    """Canonical form of a field value for comparison and hashing."""
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return round(value, 2)
    if isinstance(value, int):
        return round(float(value), 2)
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def content_hash(fields: dict[str, Any]) -> str:
    """SHA-256 of the normalized fields; equal content gives equal hashes."""
    normalized = {key: normalize_field(value) for key, value in fields.items()}
    encoded = json.dumps(normalized, sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass
class LocalRecord:
    """
    Local copy of a record plus its mapping state.

    Attributes:
        id: Local row id
        kind: Entity kind
        fields: Business fields in the shared vocabulary
        external_id: Mapped external id, if any
        last_synced_at: Mapping sync marker
        created_at: Row creation time
        updated_at: Last local modification time
    """

    id: int
    kind: EntityKind
    fields: dict[str, Any]
    updated_at: datetime
    created_at: datetime
    external_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None

    def content_hash(self) -> str:
        return content_hash(self.fields)

    def changed_since_sync(self) -> bool:
        return self.last_synced_at is None or self.updated_at > self.last_synced_at

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "updated_at": self.updated_at.isoformat(),
            "fields": dict(self.fields),
        }


@dataclass
class RemoteRecord:
    """
    Remote copy of a record as listed by the provider.

    Attributes:
        external_id: Provider id
        kind: Entity kind
        fields: Business fields in the shared vocabulary
        updated_at: Provider modification time; None when the payload omits
            it, in which case the record only counts as changed before its
            first sync
        raw: Original provider payload
    """

    external_id: str
    kind: EntityKind
    fields: dict[str, Any]
    updated_at: Optional[datetime]
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def content_hash(self) -> str:
        return content_hash(self.fields)

    def changed_since(self, marker: Optional[datetime]) -> bool:
        if marker is None:
            return True
        return self.updated_at is not None and self.updated_at > marker

    def newer_than(self, moment: datetime) -> bool:
        return self.updated_at is not None and self.updated_at > moment

    def snapshot(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "fields": dict(self.fields),
        }

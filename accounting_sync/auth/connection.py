"""
Connection and status models for the external accounting provider.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from accounting_sync.utils.dates import to_iso


@dataclass
class IntegrationConnection:
    """
    One authorized link to a provider tenant (organisation).

    Instances are snapshots of a database row. The row is the source of
    truth; TokenManager re-reads it before handing out a token.
    """

    id: int
    tenant_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    connected_at: datetime
    tenant_name: str | None = None
    scopes: str | None = None
    last_sync_at: datetime | None = None
    is_active: bool = True

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> IntegrationConnection:
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            tenant_name=row.get("tenant_name"),
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            scopes=row.get("scopes"),
            connected_at=row["connected_at"],
            last_sync_at=row.get("last_sync_at"),
            is_active=bool(row["is_active"]),
        )

    def expires_within(self, margin: timedelta, now: datetime) -> bool:
        """True if the access token expires before now + margin."""
        return self.expires_at <= now + margin

    def __repr__(self) -> str:
        # Never print tokens
        return (
            f"IntegrationConnection(id={self.id}, tenant_id={self.tenant_id!r}, "
            f"expires_at={self.expires_at.isoformat()}, is_active={self.is_active})"
        )


@dataclass
class ConnectionStatus:
    """
    User-facing connection health.

    token_expired marks a recoverable condition (a refresh may fix it);
    needs_reconnect means the operator must authorize again.
    """

    connected: bool
    reason: str | None = None
    token_expired: bool = False
    needs_reconnect: bool = False
    tenant_id: str | None = None
    tenant_name: str | None = None
    expires_at: datetime | None = None
    expires_in_minutes: int | None = None
    connected_at: datetime | None = None
    last_sync_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "connected": self.connected,
            "reason": self.reason,
            "token_expired": self.token_expired,
            "needs_reconnect": self.needs_reconnect,
            "tenant_id": self.tenant_id,
            "tenant_name": self.tenant_name,
            "expires_at": to_iso(self.expires_at),
            "expires_in_minutes": self.expires_in_minutes,
            "connected_at": to_iso(self.connected_at),
            "last_sync_at": to_iso(self.last_sync_at),
        }

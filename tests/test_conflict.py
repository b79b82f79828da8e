"""
Tests for conflict detection and resolution.
"""

from datetime import timedelta

import pytest

from accounting_sync.api.accounting_api import NetworkTransientError
from accounting_sync.sync.conflict import (
    ConflictDetector,
    ConflictNotFoundError,
    ConflictPolicy,
    ConflictResolver,
    ConflictStatus,
)
from accounting_sync.sync.entities import get_adapter
from conftest import START

ADAPTER = get_adapter("contacts")


@pytest.fixture
def detector(db, clock):
    return ConflictDetector(db, clock=clock)


@pytest.fixture
def resolver(db, provider, token_manager, clock):
    return ConflictResolver(db, provider, token_manager, clock=clock)


@pytest.fixture
def diverged(db, clock, provider):
    """A mapped contact edited on both sides after the last sync."""
    external_id = provider.add(
        "Contacts", {"Name": "Acme Ltd", "EmailAddress": "ap@acme.com"}, updated_at=START
    )
    contact_id = db.insert_entity(
        "contacts",
        {"name": "Acme Ltd", "email": "ap@acme.com"},
        external_id=external_id,
        last_synced_at=START,
        created_at=START,
    )
    clock.advance(minutes=5)
    db.update_entity("contacts", contact_id, {"phone": "5550100"}, updated_at=clock())
    provider.add(
        "Contacts",
        {"ContactID": external_id, "Name": "Acme Ltd", "EmailAddress": "billing@acme.com"},
    )
    local = ADAPTER.load_local(db, contact_id)
    remote = ADAPTER.from_payload(provider.get("Contacts", external_id))
    return local, remote


class TestClassify:
    """Tests for ConflictDetector.classify()."""

    def test_both_changed_with_different_content_is_conflict(self, detector, diverged):
        """Test the conflict rule."""
        local, remote = diverged

        state = detector.classify(local, remote)

        assert state.local_changed and state.remote_changed
        assert state.is_conflict

    def test_one_side_changed_is_not_conflict(self, detector, diverged):
        """Test that a change on one side alone is an update."""
        local, remote = diverged
        remote.updated_at = START

        state = detector.classify(local, remote)

        assert state.local_changed
        assert not state.remote_changed
        assert not state.is_conflict

    def test_equal_content_is_not_conflict(self, detector, diverged):
        """Test that both sides reaching the same content is not a conflict."""
        local, remote = diverged
        remote.fields = dict(local.fields)

        assert not detector.classify(local, remote).is_conflict


class TestRecord:
    """Tests for ConflictDetector.record()."""

    def test_record_stores_snapshots(self, detector, diverged, clock):
        """Test that both copies are captured."""
        local, remote = diverged

        conflict, created = detector.record(local, remote)

        assert created
        assert conflict.status == ConflictStatus.PENDING
        assert conflict.detected_at == clock()
        assert conflict.local_snapshot["fields"]["phone"] == "5550100"
        assert conflict.remote_snapshot["fields"]["email"] == "billing@acme.com"

    def test_record_is_idempotent(self, db, detector, diverged):
        """Test that a pending conflict is returned instead of duplicated."""
        local, remote = diverged
        first, _ = detector.record(local, remote)

        second, created = detector.record(local, remote)

        assert not created
        assert second.id == first.id
        assert len(db.list_conflicts()) == 1
        assert detector.has_pending("contacts", local.id)


class TestResolve:
    """Tests for ConflictResolver.resolve()."""

    def test_use_local_pushes_and_resolves(
        self, db, clock, provider, detector, resolver, diverged, connection
    ):
        """Test that use_local overwrites the remote copy."""
        local, remote = diverged
        conflict, _ = detector.record(local, remote)

        resolved = resolver.resolve(conflict.id, ConflictPolicy.USE_LOCAL, connection, "alice")

        assert resolved.status == ConflictStatus.RESOLVED
        assert resolved.resolution_policy == ConflictPolicy.USE_LOCAL
        assert resolved.resolved_by == "alice"
        stored = provider.get("Contacts", remote.external_id)
        assert stored["EmailAddress"] == "ap@acme.com"
        assert stored["Phones"][0]["PhoneNumber"] == "5550100"
        row = db.get_entity("contacts", local.id)
        assert row["last_synced_at"] >= row["updated_at"]

    def test_use_remote_pulls_and_resolves(
        self, db, detector, resolver, diverged, connection
    ):
        """Test that use_remote overwrites the local copy."""
        local, remote = diverged
        conflict, _ = detector.record(local, remote)

        resolved = resolver.resolve(conflict.id, "use_remote", connection)

        assert resolved.status == ConflictStatus.RESOLVED
        row = db.get_entity("contacts", local.id)
        assert row["email"] == "billing@acme.com"
        assert row["phone"] is None
        assert resolver.list_unresolved() == []

    def test_manual_leaves_conflict_pending(self, detector, resolver, diverged, provider):
        """Test that the manual policy records the choice without resolving."""
        local, remote = diverged
        conflict, _ = detector.record(local, remote)
        writes = provider.writes()

        result = resolver.resolve(conflict.id, ConflictPolicy.MANUAL, None)

        assert result.status == ConflictStatus.PENDING
        assert result.resolution_policy == ConflictPolicy.MANUAL
        assert provider.writes() == writes

    def test_resolving_resolved_conflict_is_noop(
        self, detector, resolver, diverged, connection, provider
    ):
        """Test that a second resolution performs no provider call."""
        local, remote = diverged
        conflict, _ = detector.record(local, remote)
        resolver.resolve(conflict.id, ConflictPolicy.USE_LOCAL, connection)
        writes = provider.writes()

        again = resolver.resolve(conflict.id, ConflictPolicy.USE_REMOTE, connection)

        assert again.resolution_policy == ConflictPolicy.USE_LOCAL
        assert provider.writes() == writes

    def test_provider_failure_writes_nothing_locally(
        self, db, detector, resolver, diverged, connection, provider
    ):
        """Test that a failed push leaves the conflict pending and the row untouched."""
        local, remote = diverged
        conflict, _ = detector.record(local, remote)
        provider.write_errors = [NetworkTransientError("provider down")]

        with pytest.raises(NetworkTransientError):
            resolver.resolve(conflict.id, ConflictPolicy.USE_LOCAL, connection)

        assert resolver.get(conflict.id).status == ConflictStatus.PENDING
        assert db.get_entity("contacts", local.id)["last_synced_at"] == START

    def test_unknown_conflict_raises(self, resolver, connection):
        """Test that a missing conflict id raises."""
        with pytest.raises(ConflictNotFoundError):
            resolver.resolve(404, ConflictPolicy.USE_LOCAL, connection)

    def test_resolution_uses_interactive_margin(
        self, db, clock, detector, resolver, diverged, connection, oauth
    ):
        """Test that an operator action refreshes a token with under 20 minutes left."""
        db.update_connection_tokens(
            connection.id, "access-0", "refresh-0", clock() + timedelta(minutes=10)
        )
        local, remote = diverged
        conflict, _ = detector.record(local, remote)

        resolver.resolve(conflict.id, ConflictPolicy.USE_REMOTE, connection)

        assert oauth.refresh_calls == 1

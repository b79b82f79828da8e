"""
Tests for the token manager module.

Covers safety-margin refreshes, single-flight refresh under concurrency,
terminal and transient refresh failures, and the authorization flow.
"""

import sqlite3
import threading
import time
from datetime import timedelta
from unittest.mock import patch

import pytest

from accounting_sync.auth.oauth import (
    AuthenticationError,
    NotConnectedError,
    OAuthTransientError,
    Tenant,
    TokenExpiredError,
    TokenRevokedError,
)
from accounting_sync.auth.token_manager import (
    BACKGROUND_SAFETY_MARGIN,
    INTERACTIVE_SAFETY_MARGIN,
    ConnectionState,
    TokenManager,
)


def expire_in(db, clock, connection, **delta):
    db.update_connection_tokens(
        connection.id,
        connection.access_token,
        connection.refresh_token,
        clock() + timedelta(**delta),
    )


class TestValidAccessToken:
    """Tests for get_valid_access_token()."""

    def test_fresh_token_is_returned_without_refresh(self, token_manager, connection, oauth):
        """Test that a token valid beyond the margin is used as is."""
        token = token_manager.get_valid_access_token(connection)

        assert token == "access-0"
        assert oauth.refresh_calls == 0

    def test_token_inside_interactive_margin_is_refreshed(
        self, db, clock, token_manager, connection, oauth
    ):
        """Test that a token expiring in 10 minutes is refreshed for a 20 minute margin."""
        expire_in(db, clock, connection, minutes=10)

        token = token_manager.get_valid_access_token(connection, INTERACTIVE_SAFETY_MARGIN)

        assert token == "access-1"
        assert oauth.refresh_calls == 1
        row = db.get_connection_by_id(connection.id)
        assert row["access_token"] == "access-1"
        assert row["refresh_token"] == "refresh-1"
        assert row["expires_at"] == clock() + timedelta(minutes=30)

    def test_background_margin_is_narrower(self, db, clock, token_manager, connection, oauth):
        """Test that the same token is good enough for background work."""
        expire_in(db, clock, connection, minutes=10)

        token = token_manager.get_valid_access_token(connection, BACKGROUND_SAFETY_MARGIN)

        assert token == "access-0"
        assert oauth.refresh_calls == 0

    def test_expired_token_is_refreshed(self, db, clock, token_manager, connection):
        """Test that an already expired token is refreshed before use."""
        expire_in(db, clock, connection, minutes=-5)

        assert token_manager.get_valid_access_token(connection) == "access-1"

    def test_stale_snapshot_reads_latest_token(self, db, clock, token_manager, connection):
        """Test that the stored row wins over the caller's copy."""
        db.update_connection_tokens(
            connection.id, "access-new", "refresh-new", clock() + timedelta(hours=1)
        )

        assert token_manager.get_valid_access_token(connection) == "access-new"

    def test_refreshed_token_still_inside_margin_raises(
        self, db, clock, token_manager, connection, oauth
    ):
        """Test that a short-lived refreshed token is not handed out."""
        oauth.lifetime = timedelta(minutes=10)
        expire_in(db, clock, connection, minutes=1)

        with pytest.raises(TokenExpiredError, match="safety margin"):
            token_manager.get_valid_access_token(connection, INTERACTIVE_SAFETY_MARGIN)

    def test_inactive_connection_raises_revoked(self, db, token_manager, connection):
        """Test that a deactivated connection never yields a token."""
        db.deactivate_connection(connection.id)

        with pytest.raises(TokenRevokedError):
            token_manager.get_valid_access_token(connection)

    def test_refresh_if_needed_uses_background_margin(
        self, db, clock, token_manager, connection, oauth
    ):
        """Test refresh_if_needed() only refreshes inside the background margin."""
        expire_in(db, clock, connection, minutes=10)
        assert token_manager.refresh_if_needed(connection) is True
        assert oauth.refresh_calls == 0

        expire_in(db, clock, connection, minutes=3)
        assert token_manager.refresh_if_needed(connection) is True
        assert oauth.refresh_calls == 1


class TestSingleFlightRefresh:
    """Tests for concurrent refreshes of one connection."""

    def test_concurrent_callers_share_one_refresh(
        self, db, clock, token_manager, connection, oauth
    ):
        """Test that two callers needing a refresh cause exactly one provider call."""
        expire_in(db, clock, connection, minutes=1)
        oauth.refresh_delay = threading.Event()
        results: list[str] = []
        errors: list[Exception] = []

        def worker():
            try:
                results.append(token_manager.get_valid_access_token(connection))
            except Exception as e:  # surfaced through the errors list
                errors.append(e)

        first = threading.Thread(target=worker)
        first.start()
        deadline = time.monotonic() + 5
        while oauth.refresh_calls == 0 and time.monotonic() < deadline:
            time.sleep(0.01)

        second = threading.Thread(target=worker)
        second.start()
        time.sleep(0.05)
        oauth.refresh_delay.set()
        first.join(timeout=5)
        second.join(timeout=5)

        assert errors == []
        assert results == ["access-1", "access-1"]
        assert oauth.refresh_calls == 1

    def test_follower_sees_leader_failure(self, db, clock, token_manager, connection, oauth):
        """Test that a terminal failure is reported to every waiting caller."""
        expire_in(db, clock, connection, minutes=1)
        oauth.refresh_delay = threading.Event()
        oauth.refresh_errors = [TokenRevokedError("revoked", "invalid_grant")]
        errors: list[Exception] = []

        def worker():
            try:
                token_manager.get_valid_access_token(connection)
            except TokenRevokedError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        threads[0].start()
        deadline = time.monotonic() + 5
        while oauth.refresh_calls == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        threads[1].start()
        time.sleep(0.05)
        oauth.refresh_delay.set()
        for thread in threads:
            thread.join(timeout=5)

        assert len(errors) == 2
        assert oauth.refresh_calls == 1

    def test_sequential_refreshes_rotate_tokens(self, db, clock, token_manager, connection):
        """Test that each explicit refresh stores the newly rotated pair."""
        token_manager.refresh(connection)
        refreshed = token_manager.refresh(connection)

        assert refreshed.access_token == "access-2"
        assert refreshed.refresh_token == "refresh-2"

    def test_rejected_token_is_refreshed(self, token_manager, connection, oauth):
        """Test that a token the provider rejected is replaced even if not expired."""
        refreshed = token_manager.refresh(connection, rejected_token="access-0")

        assert oauth.refresh_calls == 1
        assert refreshed.access_token == "access-1"

    def test_rejected_token_already_replaced_skips_provider(
        self, token_manager, connection, oauth
    ):
        """Test that a late caller reuses the token another caller refreshed."""
        token_manager.refresh(connection, rejected_token="access-0")

        refreshed = token_manager.refresh(connection, rejected_token="access-0")

        assert oauth.refresh_calls == 1
        assert refreshed.access_token == "access-1"


class TestRefreshFailures:
    """Tests for refresh error classification."""

    def test_terminal_failure_deactivates_connection(
        self, db, clock, token_manager, connection, oauth
    ):
        """Test that invalid_grant deactivates the connection."""
        expire_in(db, clock, connection, minutes=1)
        oauth.refresh_errors = [TokenRevokedError("invalid_grant", "invalid_grant")]

        with pytest.raises(TokenRevokedError):
            token_manager.get_valid_access_token(connection)

        assert db.get_connection_by_id(connection.id)["is_active"] == 0
        assert token_manager.get_active_connection() is None
        assert token_manager.get_state(connection.id) == ConnectionState.DISCONNECTED

    def test_transient_failures_are_retried(
        self, db, clock, oauth, connection
    ):
        """Test that transient refresh failures back off and retry."""
        sleeps: list[float] = []
        manager = TokenManager(
            db, oauth, clock=clock, initial_retry_delay=1.0, sleep=sleeps.append
        )
        expire_in(db, clock, connection, minutes=1)
        oauth.refresh_errors = [OAuthTransientError("timeout"), OAuthTransientError("503")]

        assert manager.get_valid_access_token(connection) == "access-3"
        assert oauth.refresh_calls == 3
        assert sleeps == [1.0, 2.0]
        assert manager.get_state(connection.id) == ConnectionState.CONNECTED

    def test_exhausted_retries_keep_connection_active(self, db, clock, oauth, connection):
        """Test that a refresh failing only transiently leaves the connection usable."""
        manager = TokenManager(db, oauth, clock=clock, max_retries=2, sleep=lambda _: None)
        expire_in(db, clock, connection, minutes=1)
        oauth.refresh_errors = [OAuthTransientError("timeout") for _ in range(3)]

        with pytest.raises(TokenExpiredError, match="after 3 attempts"):
            manager.get_valid_access_token(connection)

        assert db.get_connection_by_id(connection.id)["is_active"] == 1
        assert manager.get_state(connection.id) == ConnectionState.CONNECTED

    def test_storage_error_does_not_leave_refreshing_state(
        self, db, clock, token_manager, connection
    ):
        """Test that an unexpected error while persisting returns to CONNECTED."""
        expire_in(db, clock, connection, minutes=1)

        with patch.object(
            db,
            "update_connection_tokens",
            side_effect=sqlite3.OperationalError("database is locked"),
        ):
            with pytest.raises(sqlite3.OperationalError):
                token_manager.get_valid_access_token(connection)

        assert token_manager.get_state(connection.id) == ConnectionState.CONNECTED


class TestAuthorization:
    """Tests for the authorization code flow."""

    def test_begin_authorization_returns_url_with_state(self, token_manager):
        """Test that the URL carries the generated state."""
        url, state = token_manager.begin_authorization()

        assert len(state) >= 32
        assert state in url

    def test_complete_authorization_stores_connection(self, token_manager, clock):
        """Test that a valid callback creates the active connection."""
        _, state = token_manager.begin_authorization()

        connection = token_manager.complete_authorization("abc", state)

        assert connection.is_active
        assert connection.tenant_id == "tenant-1"
        assert connection.tenant_name == "Acme Ltd"
        assert connection.access_token == "access-abc"
        assert connection.expires_at == clock() + timedelta(minutes=30)
        assert token_manager.get_state(connection.id) == ConnectionState.CONNECTED

    def test_state_is_single_use(self, token_manager):
        """Test that replaying a callback is rejected."""
        _, state = token_manager.begin_authorization()
        token_manager.complete_authorization("abc", state)

        with pytest.raises(AuthenticationError, match="Invalid or expired"):
            token_manager.complete_authorization("abc", state)

    def test_unknown_state_is_rejected(self, token_manager, db):
        """Test that a forged state never reaches the token endpoint."""
        token_manager.begin_authorization()

        with pytest.raises(AuthenticationError):
            token_manager.complete_authorization("abc", "forged")
        assert db.get_active_connection() is None

    def test_expired_state_is_rejected(self, token_manager, clock):
        """Test that a state older than ten minutes is rejected."""
        _, state = token_manager.begin_authorization()
        clock.advance(minutes=11)

        with pytest.raises(AuthenticationError):
            token_manager.complete_authorization("abc", state)

    def test_new_connection_replaces_active_one(self, token_manager, connection, db):
        """Test that at most one connection is active after reconnecting."""
        _, state = token_manager.begin_authorization()

        new = token_manager.complete_authorization("abc", state)

        assert db.get_active_connection()["id"] == new.id
        assert db.get_connection_by_id(connection.id)["is_active"] == 0
        assert len(db.list_connections()) == 2

    def test_tenant_can_be_selected(self, token_manager, oauth):
        """Test that tenant_id picks one of several authorized organisations."""
        oauth.tenants.append(Tenant("tenant-2", "Other Co"))
        _, state = token_manager.begin_authorization()

        connection = token_manager.complete_authorization("abc", state, tenant_id="tenant-2")

        assert connection.tenant_id == "tenant-2"

    def test_unknown_tenant_is_rejected(self, token_manager, db):
        """Test that binding an unauthorized tenant fails without storing anything."""
        _, state = token_manager.begin_authorization()

        with pytest.raises(AuthenticationError, match="not authorized"):
            token_manager.complete_authorization("abc", state, tenant_id="nope")
        assert db.get_active_connection() is None

    def test_grant_without_tenants_is_rejected(self, token_manager, oauth):
        """Test that a grant covering no organisation fails."""
        oauth.tenants = []
        _, state = token_manager.begin_authorization()

        with pytest.raises(AuthenticationError, match="any organisation"):
            token_manager.complete_authorization("abc", state)

    def test_failed_attempt_can_be_retried(self, token_manager, oauth):
        """Test that the pending state machine resets after a failure."""
        oauth.tenants = []
        _, state = token_manager.begin_authorization()
        with pytest.raises(AuthenticationError):
            token_manager.complete_authorization("abc", state)

        oauth.tenants = [Tenant("tenant-1", "Acme Ltd")]
        _, state = token_manager.begin_authorization()
        assert token_manager.complete_authorization("def", state).is_active


class TestConnectionLifecycle:
    """Tests for disconnect, status and the state machine."""

    def test_require_active_connection_raises_when_disconnected(self, token_manager):
        """Test that NotConnectedError names the connect command."""
        with pytest.raises(NotConnectedError, match="accounting-sync connect"):
            token_manager.require_active_connection()

    def test_disconnect(self, token_manager, connection):
        """Test that disconnect deactivates once."""
        assert token_manager.disconnect(connection) is True
        assert token_manager.disconnect(connection) is False
        assert token_manager.get_state(connection.id) == ConnectionState.DISCONNECTED

    def test_status_when_disconnected(self, token_manager):
        """Test the status of a system with no connection."""
        status = token_manager.connection_status()

        assert status.connected is False
        assert status.needs_reconnect is True

    def test_status_when_connected(self, token_manager, connection):
        """Test the status of a healthy connection."""
        status = token_manager.connection_status()

        assert status.connected is True
        assert status.tenant_name == "Acme Ltd"
        assert status.expires_in_minutes == 60
        assert status.to_dict()["tenant_id"] == "tenant-1"

    def test_status_with_expired_token(self, db, clock, token_manager, connection):
        """Test that an expired token is reported as recoverable."""
        expire_in(db, clock, connection, minutes=-1)

        status = token_manager.connection_status()

        assert status.connected is False
        assert status.token_expired is True
        assert status.needs_reconnect is False

    def test_invalid_transition_raises(self, token_manager, connection):
        """Test that a disconnected connection cannot start refreshing."""
        token_manager.disconnect(connection)

        with pytest.raises(RuntimeError, match="Invalid connection state transition"):
            token_manager._transition(connection.id, ConnectionState.REFRESHING)

    def test_connection_repr_hides_tokens(self, connection):
        """Test that tokens never appear in the repr."""
        assert "access-0" not in repr(connection)
        assert "refresh-0" not in repr(connection)

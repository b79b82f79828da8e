"""
Token lifecycle management for the single active provider connection.

TokenManager is the only component that reads or writes tokens. It
guarantees callers never receive an access token that expires within the
requested safety margin, and collapses concurrent refreshes of the same
connection onto one provider call: the provider rotates the refresh token on
every refresh, so a second concurrent refresh with the stale token would be
rejected as invalid_grant and break the connection.
"""

import logging
import secrets
import threading
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from accounting_sync.auth.connection import ConnectionStatus, IntegrationConnection
from accounting_sync.auth.oauth import (
    AuthenticationError,
    NotConnectedError,
    OAuthClient,
    OAuthTransientError,
    TokenExpiredError,
    TokenRevokedError,
)
from accounting_sync.storage.db import SyncDatabase
from accounting_sync.utils.dates import utc_now

# For interactive calls: leaves room for slow user-facing operations
INTERACTIVE_SAFETY_MARGIN = timedelta(minutes=20)

# For tight background batch loops
BACKGROUND_SAFETY_MARGIN = timedelta(minutes=5)

# Authorization states older than this are rejected on callback
OAUTH_STATE_TTL = timedelta(minutes=10)

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_RETRY_DELAY = 1.0
DEFAULT_MAX_RETRY_DELAY = 30.0

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Lifecycle state of a connection as seen by the token manager."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    REFRESHING = "refreshing"


ALLOWED_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTED,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.CONNECTED: {
        ConnectionState.REFRESHING,
        ConnectionState.DISCONNECTED,
        ConnectionState.CONNECTING,
    },
    ConnectionState.REFRESHING: {
        ConnectionState.CONNECTED,
        ConnectionState.DISCONNECTED,
    },
}

# Key used for the state of an authorization that has no row yet
_PENDING_KEY = 0


class _RefreshFlight:
    """One in-flight refresh that followers wait on."""

    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: Optional[IntegrationConnection] = None
        self.error: Optional[Exception] = None


class TokenManager:
    """
    Owns the OAuth2 tokens of the active connection.

    Attributes:
        db: Database holding the integration_connections table
        oauth: Client for the provider's OAuth2 endpoints

    Usage:
        manager = TokenManager(db, OAuthClient(settings.provider))
        connection = manager.get_active_connection()
        token = manager.get_valid_access_token(connection, BACKGROUND_SAFETY_MARGIN)
    """

    def __init__(
        self,
        db: SyncDatabase,
        oauth: OAuthClient,
        clock: Callable[[], datetime] = utc_now,
        interactive_margin: timedelta = INTERACTIVE_SAFETY_MARGIN,
        background_margin: timedelta = BACKGROUND_SAFETY_MARGIN,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.oauth = oauth
        self.clock = clock
        self.interactive_margin = interactive_margin
        self.background_margin = background_margin
        self.max_retries = max_retries
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay
        self._sleep = sleep

        self._lock = threading.Lock()
        self._flights: dict[int, _RefreshFlight] = {}
        self._states: dict[int, ConnectionState] = {}

    # =========================================================================
    # State machine
    # =========================================================================

    def get_state(self, connection_id: int) -> ConnectionState:
        """Return the lifecycle state of a connection."""
        with self._lock:
            state = self._states.get(connection_id)
        if state is not None:
            return state
        row = self.db.get_connection_by_id(connection_id)
        if row and row["is_active"]:
            return ConnectionState.CONNECTED
        return ConnectionState.DISCONNECTED

    def _transition(self, connection_id: int, new_state: ConnectionState) -> None:
        with self._lock:
            current = self._states.get(connection_id)
            if current is None:
                current = (
                    ConnectionState.DISCONNECTED
                    if new_state == ConnectionState.CONNECTING
                    else ConnectionState.CONNECTED
                )
            if current != new_state and new_state not in ALLOWED_TRANSITIONS[current]:
                raise RuntimeError(
                    f"Invalid connection state transition: "
                    f"{current.value} -> {new_state.value}"
                )
            self._states[connection_id] = new_state
        logger.debug(f"Connection {connection_id}: {current.value} -> {new_state.value}")

    # =========================================================================
    # Connection lookup
    # =========================================================================

    def get_active_connection(self) -> Optional[IntegrationConnection]:
        """Return the single active connection, or None when disconnected."""
        row = self.db.get_active_connection()
        return IntegrationConnection.from_row(row) if row else None

    def require_active_connection(self) -> IntegrationConnection:
        """
        Return the active connection.

        Raises:
            NotConnectedError: If no connection is active
        """
        connection = self.get_active_connection()
        if connection is None:
            raise NotConnectedError(
                "Not connected to the accounting provider. Run 'accounting-sync connect'."
            )
        return connection

    def _reload(self, connection: IntegrationConnection) -> IntegrationConnection:
        row = self.db.get_connection_by_id(connection.id)
        if row is None:
            raise NotConnectedError(f"Connection {connection.id} does not exist")
        return IntegrationConnection.from_row(row)

    # =========================================================================
    # Tokens
    # =========================================================================

    def get_valid_access_token(
        self,
        connection: IntegrationConnection,
        safety_margin: Optional[timedelta] = None,
    ) -> str:
        """
        Return an access token that does not expire within safety_margin.

        Refreshes first when the stored token is inside the margin.

        Args:
            connection: The connection to use (re-read from storage)
            safety_margin: Defaults to the interactive margin (20 minutes)

        Raises:
            TokenRevokedError: If the connection is inactive or the grant was revoked
            TokenExpiredError: If no sufficiently fresh token could be obtained
        """
        margin = self.interactive_margin if safety_margin is None else safety_margin
        current = self._reload(connection)
        if not current.is_active:
            raise TokenRevokedError(
                "Connection is no longer active; reconnect required"
            )

        if not current.expires_within(margin, self.clock()):
            return current.access_token

        refreshed = self._refresh_single_flight(current, margin)
        if refreshed.expires_within(margin, self.clock()):
            raise TokenExpiredError(
                f"Refreshed token expires at {refreshed.expires_at.isoformat()}, "
                f"inside the {margin} safety margin"
            )
        return refreshed.access_token

    def refresh(
        self,
        connection: IntegrationConnection,
        rejected_token: Optional[str] = None,
    ) -> IntegrationConnection:
        """
        Exchange the refresh token for a new pair and persist it.

        Concurrent calls for the same connection share one provider call.

        Args:
            connection: The connection to refresh
            rejected_token: Access token the provider answered with 401; if
                the stored token already differs, another caller refreshed
                it and no provider call is made

        Returns:
            The updated connection

        Raises:
            TokenRevokedError: On terminal failure; the connection is deactivated
            TokenExpiredError: When transient failures exhaust the retries
        """
        return self._refresh_single_flight(connection, None, rejected_token)

    def refresh_if_needed(
        self, connection: IntegrationConnection, safety_margin: Optional[timedelta] = None
    ) -> bool:
        """
        Refresh when the token is inside the margin.

        Returns:
            True if a fresh token is now stored
        """
        margin = self.background_margin if safety_margin is None else safety_margin
        self.get_valid_access_token(connection, margin)
        return True

    def _refresh_single_flight(
        self,
        connection: IntegrationConnection,
        margin: Optional[timedelta],
        rejected_token: Optional[str] = None,
    ) -> IntegrationConnection:
        with self._lock:
            flight = self._flights.get(connection.id)
            leader = flight is None
            if leader:
                flight = _RefreshFlight()
                self._flights[connection.id] = flight

        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.result

        try:
            flight.result = self._leader_refresh(connection, margin, rejected_token)
            return flight.result
        except Exception as e:
            flight.error = e
            raise
        finally:
            with self._lock:
                del self._flights[connection.id]
            flight.done.set()

    def _leader_refresh(
        self,
        connection: IntegrationConnection,
        margin: Optional[timedelta],
        rejected_token: Optional[str] = None,
    ) -> IntegrationConnection:
        # Another flight may have finished between our read and the election
        current = self._reload(connection)
        if not current.is_active:
            raise TokenRevokedError("Connection is no longer active; reconnect required")
        if margin is not None and not current.expires_within(margin, self.clock()):
            return current
        if rejected_token is not None and current.access_token != rejected_token:
            return current

        self._transition(current.id, ConnectionState.REFRESHING)
        try:
            return self._refresh_with_retries(current)
        finally:
            # Revocation has already moved the state to DISCONNECTED
            if self.get_state(current.id) == ConnectionState.REFRESHING:
                self._transition(current.id, ConnectionState.CONNECTED)

    def _refresh_with_retries(
        self, current: IntegrationConnection
    ) -> IntegrationConnection:
        delay = self.initial_retry_delay
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                token = self.oauth.refresh(current.refresh_token)
            except TokenRevokedError:
                self.db.deactivate_connection(current.id)
                self._transition(current.id, ConnectionState.DISCONNECTED)
                logger.error(
                    f"Refresh token for connection {current.id} was rejected; "
                    "connection deactivated, reconnect required"
                )
                raise
            except OAuthTransientError as e:
                last_error = e
                if attempt >= self.max_retries:
                    break
                logger.warning(
                    f"Token refresh failed (attempt {attempt + 1}/"
                    f"{self.max_retries + 1}), retrying in {delay:.1f}s: {e}"
                )
                self._sleep(delay)
                delay = min(delay * 2, self.max_retry_delay)
                continue

            self.db.update_connection_tokens(
                current.id, token.access_token, token.refresh_token, token.expires_at
            )
            logger.info(
                f"Refreshed access token for connection {current.id}, "
                f"expires at {token.expires_at.isoformat()}"
            )
            return self._reload(current)

        raise TokenExpiredError(
            f"Token refresh failed after {self.max_retries + 1} attempts: {last_error}"
        ) from last_error

    # =========================================================================
    # Authorization
    # =========================================================================

    def begin_authorization(self) -> tuple[str, str]:
        """
        Start the OAuth2 authorization code flow.

        Returns:
            Tuple of (authorization URL, state)
        """
        state = secrets.token_urlsafe(32)
        url = self.oauth.authorization_url(state)
        now = self.clock()
        self.db.purge_oauth_states(now - OAUTH_STATE_TTL)
        self.db.save_oauth_state(state, now)
        return url, state

    def complete_authorization(
        self, code: str, state: str, tenant_id: Optional[str] = None
    ) -> IntegrationConnection:
        """
        Finish the flow: validate state, exchange the code, store the connection.

        Any previously active connection is deactivated in the same
        transaction that stores the new one.

        Args:
            code: Authorization code from the callback
            state: State from the callback
            tenant_id: Tenant to bind when the grant covers several

        Raises:
            AuthenticationError: On invalid state, exchange failure, or no tenant
        """
        if not self.db.consume_oauth_state(state, self.clock() - OAUTH_STATE_TTL):
            raise AuthenticationError("Invalid or expired authorization state")

        self._transition(_PENDING_KEY, ConnectionState.CONNECTING)
        try:
            token = self.oauth.exchange_code(code)
            tenants = self.oauth.fetch_tenants(token.access_token)
            if not tenants:
                raise AuthenticationError("The grant does not cover any organisation")

            tenant = tenants[0]
            if tenant_id is not None:
                matches = [t for t in tenants if t.tenant_id == tenant_id]
                if not matches:
                    raise AuthenticationError(f"Tenant {tenant_id} is not authorized")
                tenant = matches[0]

            with self.db.transaction(immediate=True) as conn:
                connection_id = self.db.insert_active_connection(
                    tenant_id=tenant.tenant_id,
                    tenant_name=tenant.tenant_name,
                    access_token=token.access_token,
                    refresh_token=token.refresh_token,
                    expires_at=token.expires_at,
                    scopes=" ".join(token.scopes),
                    connected_at=self.clock(),
                    conn=conn,
                )
        except Exception:
            self._transition(_PENDING_KEY, ConnectionState.DISCONNECTED)
            raise

        self._transition(_PENDING_KEY, ConnectionState.CONNECTED)
        with self._lock:
            self._states.pop(_PENDING_KEY, None)
            self._states[connection_id] = ConnectionState.CONNECTED
        logger.info(f"Connected to tenant {tenant.tenant_name or tenant.tenant_id}")
        return IntegrationConnection.from_row(self.db.get_connection_by_id(connection_id))

    def disconnect(self, connection: IntegrationConnection) -> bool:
        """
        Deactivate a connection. The row is kept for audit history.

        Returns:
            True if the connection was active
        """
        changed = self.db.deactivate_connection(connection.id)
        with self._lock:
            self._states[connection.id] = ConnectionState.DISCONNECTED
        if changed:
            logger.info(f"Disconnected connection {connection.id}")
        return changed

    # =========================================================================
    # Status
    # =========================================================================

    def connection_status(
        self, connection: Optional[IntegrationConnection] = None
    ) -> ConnectionStatus:
        """
        Describe the health of a connection without calling the provider.

        Args:
            connection: Connection to inspect; defaults to the active one
        """
        if connection is None:
            connection = self.get_active_connection()
        else:
            connection = self._reload(connection)

        if connection is None or not connection.is_active:
            return ConnectionStatus(
                connected=False,
                reason="No active connection; authorization required",
                needs_reconnect=True,
            )

        now = self.clock()
        remaining = connection.expires_at - now
        status = ConnectionStatus(
            connected=True,
            tenant_id=connection.tenant_id,
            tenant_name=connection.tenant_name,
            expires_at=connection.expires_at,
            expires_in_minutes=int(remaining.total_seconds() // 60),
            connected_at=connection.connected_at,
            last_sync_at=connection.last_sync_at,
        )
        if connection.expires_at <= now:
            status.connected = False
            status.token_expired = True
            status.reason = "Access token expired; it will be refreshed on next use"
        return status

"""
OAuth2 client for the accounting provider.

Provides the three OAuth2 endpoint interactions the sync engine needs:
- Authorization URL construction (client_id, redirect_uri, scope, state)
- Authorization code exchange (grant_type=authorization_code)
- Token refresh (grant_type=refresh_token)

plus tenant discovery for a freshly issued access token.

Failures are classified so callers can tell a retryable hiccup from a
grant that will never work again.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import requests
from oauthlib.oauth2 import OAuth2Error
from requests.auth import HTTPBasicAuth
from requests_oauthlib import OAuth2Session

from accounting_sync.config.settings import ProviderSettings
from accounting_sync.utils.dates import utc_now

# Provider default lifetime when the token response omits expires_in
DEFAULT_TOKEN_LIFETIME_SECONDS = 1800

# OAuth2 error codes after which the grant can never be refreshed again
TERMINAL_ERROR_CODES = frozenset({"invalid_grant", "unauthorized_client", "invalid_client"})

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Raised when authentication fails or credentials are invalid."""

    pass


class TokenExpiredError(AuthenticationError):
    """The access token is expired or unusable; a refresh may recover."""

    pass


class TokenRevokedError(AuthenticationError):
    """The grant is revoked or invalid; the operator must reconnect."""

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.error_code = error_code


class OAuthTransientError(AuthenticationError):
    """Network failure or non-terminal provider error during a token call."""

    pass


class NotConnectedError(AuthenticationError):
    """No active connection exists."""

    pass


@dataclass
class TokenResponse:
    """A token pair issued by the provider."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    scopes: list[str] = field(default_factory=list)

    def __repr__(self) -> str:
        return f"TokenResponse(expires_at={self.expires_at.isoformat()}, scopes={self.scopes})"


@dataclass
class Tenant:
    """An organisation the access token is authorized for."""

    tenant_id: str
    tenant_name: Optional[str] = None
    tenant_type: Optional[str] = None


class OAuthClient:
    """
    Thin wrapper over requests-oauthlib for the provider's endpoints.

    Usage:
        client = OAuthClient(settings.provider)
        url = client.authorization_url(state)
        token = client.exchange_code(code)
        tenants = client.fetch_tenants(token.access_token)
        token = client.refresh(token.refresh_token)
    """

    def __init__(
        self,
        settings: ProviderSettings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.clock = clock

    def _session(self, **kwargs: Any) -> OAuth2Session:
        return OAuth2Session(self.settings.client_id, **kwargs)

    def _require_credentials(self) -> None:
        if not self.settings.client_id or not self.settings.client_secret:
            raise AuthenticationError(
                "OAuth client credentials are not configured. Set provider.client_id "
                "and provider.client_secret (or ACCOUNTING_SYNC_CLIENT_ID / "
                "ACCOUNTING_SYNC_CLIENT_SECRET)."
            )

    def authorization_url(self, state: str) -> str:
        """Build the URL the operator opens to grant access."""
        if not self.settings.client_id:
            raise AuthenticationError("provider.client_id is not configured")
        session = self._session(
            redirect_uri=self.settings.redirect_uri,
            scope=self.settings.scopes,
            state=state,
        )
        url, _ = session.authorization_url(self.settings.authorize_url)
        return url

    def exchange_code(self, code: str) -> TokenResponse:
        """
        Exchange an authorization code for a token pair.

        Raises:
            AuthenticationError: If the provider rejects the code
            OAuthTransientError: On network failure
        """
        self._require_credentials()
        session = self._session(
            redirect_uri=self.settings.redirect_uri, scope=self.settings.scopes
        )
        token = self._call(
            "code exchange",
            lambda: session.fetch_token(
                self.settings.token_url,
                code=code,
                client_secret=self.settings.client_secret,
                timeout=self.settings.request_timeout,
            ),
        )
        return self._to_response(token)

    def refresh(self, refresh_token: str) -> TokenResponse:
        """
        Exchange a refresh token for a new token pair.

        The provider rotates refresh tokens: the one passed in is invalid
        once this call succeeds.

        Raises:
            TokenRevokedError: On a terminal OAuth error code
            OAuthTransientError: On network failure or other provider errors
        """
        self._require_credentials()
        session = self._session(
            token={"refresh_token": refresh_token, "token_type": "Bearer"}
        )
        token = self._call(
            "token refresh",
            lambda: session.refresh_token(
                self.settings.token_url,
                refresh_token=refresh_token,
                auth=HTTPBasicAuth(
                    self.settings.client_id, self.settings.client_secret
                ),
                timeout=self.settings.request_timeout,
            ),
        )
        return self._to_response(token, fallback_refresh_token=refresh_token)

    def fetch_tenants(self, access_token: str) -> list[Tenant]:
        """
        List the organisations the access token can reach.

        Raises:
            AuthenticationError: If the request fails or returns garbage
        """
        try:
            response = requests.get(
                self.settings.connections_url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
                timeout=self.settings.request_timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as e:
            raise AuthenticationError(f"Failed to discover tenants: {e}") from e
        except ValueError as e:
            raise AuthenticationError(f"Invalid tenant discovery response: {e}") from e

        if not isinstance(payload, list):
            raise AuthenticationError("Invalid tenant discovery response: expected a list")

        return [
            Tenant(
                tenant_id=item["tenantId"],
                tenant_name=item.get("tenantName"),
                tenant_type=item.get("tenantType"),
            )
            for item in payload
            if isinstance(item, dict) and item.get("tenantId")
        ]

    def _call(self, operation: str, func: Callable[[], dict[str, Any]]) -> dict[str, Any]:
        try:
            return func()
        except OAuth2Error as e:
            code = getattr(e, "error", None)
            if code in TERMINAL_ERROR_CODES:
                logger.warning(f"OAuth {operation} rejected with terminal error: {code}")
                raise TokenRevokedError(
                    f"Authorization is no longer valid ({code}); reconnect required",
                    error_code=code,
                ) from e
            raise OAuthTransientError(f"OAuth {operation} failed: {code or e}") from e
        except requests.RequestException as e:
            raise OAuthTransientError(f"OAuth {operation} failed: {e}") from e
        except ValueError as e:
            # Unparseable body, typically an HTML error page from a 5xx
            raise OAuthTransientError(
                f"OAuth {operation} returned an invalid response: {e}"
            ) from e

    def _to_response(
        self, token: dict[str, Any], fallback_refresh_token: Optional[str] = None
    ) -> TokenResponse:
        access_token = token.get("access_token")
        refresh_token = token.get("refresh_token") or fallback_refresh_token
        if not access_token or not refresh_token:
            raise AuthenticationError("Token response is missing access or refresh token")

        try:
            lifetime = int(token.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
        except (TypeError, ValueError):
            lifetime = DEFAULT_TOKEN_LIFETIME_SECONDS

        scope = token.get("scope") or []
        if isinstance(scope, str):
            scope = scope.split()

        return TokenResponse(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=self.clock() + timedelta(seconds=lifetime),
            scopes=list(scope),
        )

"""
accounting_sync.auth - OAuth2 and token lifecycle module
"""

from accounting_sync.auth.connection import ConnectionStatus, IntegrationConnection
from accounting_sync.auth.oauth import (
    AuthenticationError,
    NotConnectedError,
    OAuthClient,
    OAuthTransientError,
    TokenExpiredError,
    TokenRevokedError,
)
from accounting_sync.auth.token_manager import (
    BACKGROUND_SAFETY_MARGIN,
    INTERACTIVE_SAFETY_MARGIN,
    ConnectionState,
    TokenManager,
)

__all__ = [
    "AuthenticationError",
    "BACKGROUND_SAFETY_MARGIN",
    "ConnectionState",
    "ConnectionStatus",
    "INTERACTIVE_SAFETY_MARGIN",
    "IntegrationConnection",
    "NotConnectedError",
    "OAuthClient",
    "OAuthTransientError",
    "TokenExpiredError",
    "TokenManager",
    "TokenRevokedError",
]

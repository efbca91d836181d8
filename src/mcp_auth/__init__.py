"""MCP Auth - lazy OAuth authorization for remote MCP servers.

Coordinates at most one interactive consent flow per server across
concurrently running proxy instances and supplies bearer tokens to
outbound requests.
"""

from mcp_auth.callback import CallbackListener
from mcp_auth.coordinator import AuthorizationCoordinator
from mcp_auth.lock import AuthorizationLock, LockState
from mcp_auth.provider import OAuthClientProvider
from mcp_auth.store import CredentialStore
from mcp_auth.token_source import TokenSource

__all__ = [
    "AuthorizationCoordinator",
    "AuthorizationLock",
    "CallbackListener",
    "CredentialStore",
    "LockState",
    "OAuthClientProvider",
    "TokenSource",
]

"""Bearer token source for outbound requests.

The token source is lazy: it never starts an authorization flow until
the remote answers 401. It plugs into httpx as an auth flow so the
``Authorization`` header is always set last and a caller-supplied value
can never replace it.
"""

from typing import AsyncGenerator, Optional

import httpx

from mcp_auth.coordinator import AuthorizationCoordinator
from mcp_auth.provider import OAuthClientProvider
from mcp_auth.store import CredentialStore
from shared.errors import TokenExchangeError
from shared.logging import get_logger
from shared.models import ServerIdentity, TokenSet

logger = get_logger(__name__)


class TokenSource(httpx.Auth):
    """Supplies the current bearer token and recovers from 401 responses."""

    def __init__(
        self,
        identity: ServerIdentity,
        store: CredentialStore,
        provider: OAuthClientProvider,
        coordinator: AuthorizationCoordinator,
        auth_timeout: float = 30.0
    ) -> None:
        self.identity = identity
        self.store = store
        self.provider = provider
        self.coordinator = coordinator
        self.auth_timeout = auth_timeout
        self._tokens: Optional[TokenSet] = None

    async def get_token(self) -> Optional[str]:
        """
        Current access token, refreshing it if expired.

        Returns:
            The access token, or None when no token exists yet
        """
        tokens = self._tokens or await self.store.read_tokens(self.identity)
        if tokens is None:
            return None

        if tokens.is_expired():
            tokens = await self._try_refresh(tokens)
            if tokens is None:
                return None

        self._tokens = tokens
        return tokens.access_token

    async def _try_refresh(self, tokens: TokenSet) -> Optional[TokenSet]:
        if not tokens.refresh_token:
            return None
        try:
            return await self.provider.refresh(tokens)
        except TokenExchangeError as e:
            logger.warning(
                "Token refresh failed",
                server=self.identity.url,
                status_code=e.status_code
            )
            return None

    async def handle_unauthorized(self, rejected_token: Optional[str] = None) -> str:
        """
        React to a 401: adopt a newer stored token, refresh, or authorize.

        Args:
            rejected_token: The access token the remote just refused

        Returns:
            A new access token
        """
        self._tokens = None
        stale = await self.store.read_tokens(self.identity)

        if (
            stale is not None
            and stale.access_token != rejected_token
            and not stale.is_expired()
        ):
            # Another instance stored a fresh token meanwhile
            self._tokens = stale
            return stale.access_token

        if stale is not None:
            refreshed = await self._try_refresh(stale)
            if refreshed is not None:
                self._tokens = refreshed
                return refreshed.access_token
            await self.provider.invalidate_credentials("tokens")

        auth_state = await self.coordinator.initialize_auth(self.auth_timeout)
        self._tokens = auth_state.token
        return auth_state.token.access_token

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        token = await self.get_token()
        if token:
            request.headers["Authorization"] = f"Bearer {token}"
        response = yield request

        if response.status_code == 401:
            logger.info("Remote requires authorization", server=self.identity.url)
            token = await self.handle_unauthorized(rejected_token=token)
            request.headers["Authorization"] = f"Bearer {token}"
            yield request

"""Lazy, cross-process OAuth authorization coordinator.

Guarantees that across every instance sharing one credential directory
at most one interactive consent flow per server is in progress. The
instance that claims the authorization lock leads the flow; the others
wait for the token set the leader persists.
"""

import asyncio
import secrets
from typing import Callable, Optional

from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_delay, wait_fixed

from mcp_auth.callback import CallbackListener
from mcp_auth.lock import AuthorizationLock, LockState
from mcp_auth.provider import OAuthClientProvider, generate_pkce_pair, open_browser
from mcp_auth.store import CredentialStore
from shared.errors import AuthStateMismatchError, AuthTimeoutError
from shared.logging import get_logger
from shared.models import AuthState, ServerIdentity, TokenSet

logger = get_logger(__name__)


class AuthorizationCoordinator:
    """
    Produces a valid token for one server, driving at most one flow.

    Single-threaded per process: correctness rests on the durability of
    the inter-process lock, not on in-process locking.
    """

    def __init__(
        self,
        identity: ServerIdentity,
        store: CredentialStore,
        provider: OAuthClientProvider,
        lock: AuthorizationLock,
        callback_port: int,
        host: str = "localhost",
        callback_path: str = "/oauth/callback",
        poll_interval: float = 0.5,
        settle_seconds: float = 0.0,
        browser_opener: Callable[[str], bool] = open_browser,
        listener_factory: Optional[Callable[[int], CallbackListener]] = None
    ) -> None:
        self.identity = identity
        self.store = store
        self.provider = provider
        self.lock = lock
        self.callback_port = callback_port
        self.poll_interval = poll_interval
        self.settle_seconds = settle_seconds
        self.browser_opener = browser_opener
        self._listener_factory = listener_factory or (
            lambda port: CallbackListener(port, host=host, callback_path=callback_path)
        )
        self.listener: Optional[CallbackListener] = None

    async def _valid_stored_token(self) -> Optional[TokenSet]:
        tokens = await self.store.read_tokens(self.identity)
        if tokens is not None and not tokens.is_expired():
            return tokens
        return None

    async def initialize_auth(self, timeout: float) -> AuthState:
        """
        Return a valid token, authorizing interactively only if needed.

        Args:
            timeout: Upper bound in seconds for the flow or the wait

        Returns:
            AuthState with the token; ``skip_browser_auth`` is True when
            the token came from the store or from another instance

        Raises:
            AuthTimeoutError: If no token appears in time
            AuthStateMismatchError: If the callback state does not match
            CallbackBindError: If the callback port is unavailable
            TokenExchangeError: If the code exchange fails
        """
        tokens = await self._valid_stored_token()
        if tokens is not None:
            logger.debug("Using stored token", server=self.identity.url)
            return AuthState(token=tokens, skip_browser_auth=True)

        if self.lock.try_acquire():
            return await self._claim(timeout)
        return await self._follow(timeout)

    async def _claim(self, timeout: float) -> AuthState:
        # A leader may have stored its token just before releasing the lock
        tokens = await self._valid_stored_token()
        if tokens is not None:
            self.lock.release()
            return AuthState(token=tokens, skip_browser_auth=True)
        return await self._lead(timeout)

    async def _lead(self, timeout: float) -> AuthState:
        logger.info("Starting authorization flow", server=self.identity.url, port=self.callback_port)
        try:
            tokens = await asyncio.wait_for(self._run_flow(), timeout=timeout)
        except asyncio.TimeoutError:
            await self.store.delete_verifier(self.identity)
            raise AuthTimeoutError(
                f"Authorization for {self.identity.url} did not complete within {timeout:g}s"
            ) from None
        finally:
            self.lock.release()

        logger.info("Authorization completed", server=self.identity.url)
        return AuthState(token=tokens, skip_browser_auth=False, listener=self.listener)

    async def _run_flow(self) -> TokenSet:
        if self.listener is None:
            listener = self._listener_factory(self.callback_port)
            await listener.start()
            self.listener = listener
        waiter = self.listener.expect()

        await self.provider.discover()
        client = await self.provider.ensure_client()

        pkce = generate_pkce_pair()
        state = secrets.token_urlsafe(32)
        await self.store.write_verifier(self.identity, pkce.verifier)

        try:
            url = self.provider.authorization_url(client, pkce, state)
            logger.info(f"Please authorize this client by visiting:\n{url}\n")
            if self.browser_opener(url):
                logger.info("Browser opened automatically")
            else:
                logger.info("Could not open browser automatically; open the URL above manually")

            result = await waiter
            if result.state is None or not secrets.compare_digest(result.state, state):
                logger.warning("Authorization callback state mismatch; aborting attempt")
                raise AuthStateMismatchError("Authorization callback state did not match this attempt")

            tokens = await self.provider.exchange_code(client, result.code, pkce.verifier)
            await self.store.write_tokens(self.identity, tokens)
            return tokens
        finally:
            await self.store.delete_verifier(self.identity)

    async def _follow(self, timeout: float) -> AuthState:
        logger.info(
            "Authorization in progress in another instance; waiting for its token",
            server=self.identity.url
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        retrying = AsyncRetrying(
            stop=stop_after_delay(timeout),
            wait=wait_fixed(self.poll_interval),
            retry=retry_if_result(lambda outcome: outcome is None),
        )

        async def poll() -> Optional[AuthState]:
            tokens = await self._valid_stored_token()
            if tokens is not None:
                return AuthState(token=tokens, skip_browser_auth=True)
            # Leader gave up, died, or its lease expired: take over
            if self.lock.state() == LockState.UNLOCKED and self.lock.try_acquire():
                return await self._claim(max(deadline - loop.time(), 0.001))
            return None

        try:
            outcome = await retrying(poll)
        except RetryError:
            raise AuthTimeoutError(
                f"Timed out after {timeout:g}s waiting for another instance to authorize {self.identity.url}"
            ) from None

        if not outcome.skip_browser_auth:
            return outcome
        if self.settle_seconds:
            await asyncio.sleep(self.settle_seconds)
        logger.info("Authorization completed by another instance", server=self.identity.url)
        return outcome

    async def shutdown(self) -> None:
        """Close the callback listener, if this instance started one."""
        if self.listener is not None:
            await self.listener.close()
            self.listener = None

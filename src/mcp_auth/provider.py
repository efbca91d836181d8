"""OAuth client provider for a remote MCP server.

Handles:
- Client metadata and effective scope selection
- Dynamic client registration (RFC 7591)
- PKCE pairs and authorization URLs
- Authorization code and refresh token grants
- Credential invalidation
"""

import base64
import hashlib
import secrets
import webbrowser
from dataclasses import dataclass
from typing import Any, Callable, Literal, Optional
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from mcp_auth.metadata import fetch_authorization_server_metadata, server_origin
from mcp_auth.store import CredentialStore
from mcp_client.tls import TLSIdentity, build_http_client
from shared.config import AuthSettings
from shared.errors import TokenExchangeError
from shared.logging import get_logger
from shared.models import (
    AuthorizationServerMetadata,
    ClientCredential,
    ServerIdentity,
    TokenSet,
)

logger = get_logger(__name__)

DEFAULT_SCOPE = "openid email profile"

CredentialScope = Literal["all", "client", "tokens", "verifier"]


@dataclass(frozen=True)
class PKCEPair:
    """PKCE code verifier and its S256 challenge."""
    verifier: str
    challenge: str
    method: str = "S256"


def generate_pkce_pair() -> PKCEPair:
    """Generate a fresh PKCE verifier (43-128 chars) and S256 challenge."""
    verifier = secrets.token_urlsafe(64)[:128]
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return PKCEPair(verifier=verifier, challenge=challenge)


def open_browser(url: str) -> bool:
    """Best-effort browser launch; returns False when it did not happen."""
    try:
        return webbrowser.open(url)
    except webbrowser.Error as e:
        logger.debug("Failed to open browser", error=str(e))
        return False


@dataclass(frozen=True)
class Endpoints:
    """Authorization server endpoints in use for one server."""
    authorization: str
    token: str
    registration: Optional[str]


class OAuthClientProvider:
    """
    OAuth 2.1 public-client behaviour for one remote server.

    All network calls use an HTTP client built from the explicit TLS
    identity; no process-wide transport state is touched.
    """

    def __init__(
        self,
        identity: ServerIdentity,
        store: CredentialStore,
        settings: AuthSettings,
        callback_port: int,
        tls_identity: Optional[TLSIdentity] = None,
        http_client_factory: Optional[Callable[[], httpx.AsyncClient]] = None
    ) -> None:
        self.identity = identity
        self.store = store
        self.settings = settings
        self.callback_port = callback_port
        self.tls_identity = tls_identity
        self._client_factory = http_client_factory or (
            lambda: build_http_client(tls_identity, timeout=15.0)
        )

        self.metadata: Optional[AuthorizationServerMetadata] = None
        self._metadata_fetched = False
        self._client_info: Optional[ClientCredential] = None

    @property
    def redirect_url(self) -> str:
        return f"http://{self.settings.host}:{self.callback_port}{self.settings.callback_path}"

    @property
    def effective_scope(self) -> str:
        """Scope to request: static, registered, server-advertised, default."""
        static_scope = (self.settings.static_client_metadata or {}).get("scope")
        if static_scope and static_scope.strip():
            return static_scope
        if self._client_info and self._client_info.scope and self._client_info.scope.strip():
            return self._client_info.scope
        if self.metadata and self.metadata.scopes_supported:
            return " ".join(self.metadata.scopes_supported)
        return DEFAULT_SCOPE

    @property
    def client_metadata(self) -> dict[str, Any]:
        """Registration metadata sent to the authorization server."""
        return {
            "redirect_uris": [self.redirect_url],
            "token_endpoint_auth_method": "none",
            "grant_types": ["authorization_code", "refresh_token"],
            "response_types": ["code"],
            "client_name": self.settings.client_name,
            "client_uri": self.settings.client_uri,
            "software_id": self.settings.software_id,
            "software_version": self.settings.software_version,
            **(self.settings.static_client_metadata or {}),
            "scope": self.effective_scope,
        }

    async def discover(self) -> Optional[AuthorizationServerMetadata]:
        """Fetch metadata once per process; failures leave it unset."""
        if not self._metadata_fetched:
            async with self._client_factory() as client:
                self.metadata = await fetch_authorization_server_metadata(self.identity.url, client)
            self._metadata_fetched = True
        return self.metadata

    @property
    def endpoints(self) -> Endpoints:
        origin = server_origin(self.identity.url)
        metadata = self.metadata or AuthorizationServerMetadata()
        return Endpoints(
            authorization=metadata.authorization_endpoint or f"{origin}/authorize",
            token=metadata.token_endpoint or f"{origin}/token",
            registration=metadata.registration_endpoint or (
                None if self.metadata else f"{origin}/register"
            ),
        )

    async def client_information(self) -> Optional[ClientCredential]:
        """Static client info, else the stored registration."""
        if self.settings.static_client_info:
            self._client_info = ClientCredential.model_validate(self.settings.static_client_info)
            return self._client_info

        client_info = await self.store.read_client(self.identity)
        if client_info:
            self._client_info = client_info
        logger.debug("Client info lookup", found=client_info is not None)
        return client_info

    async def ensure_client(self) -> ClientCredential:
        """
        Return a usable client registration, registering if needed.

        Raises:
            TokenExchangeError: If dynamic registration fails
        """
        existing = await self.client_information()
        if existing:
            return existing

        await self.discover()
        registration_url = self.endpoints.registration
        if not registration_url:
            raise TokenExchangeError(
                "Authorization server does not support dynamic client registration"
            )

        logger.info("Registering OAuth client", server=self.identity.url)
        try:
            async with self._client_factory() as client:
                response = await client.post(registration_url, json=self.client_metadata)
        except httpx.HTTPError as e:
            raise TokenExchangeError(f"Client registration failed: {e}") from e

        if response.status_code >= 400:
            raise TokenExchangeError(
                f"Client registration rejected with HTTP {response.status_code}",
                status_code=response.status_code
            )

        try:
            client_info = ClientCredential.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise TokenExchangeError(f"Invalid client registration response: {e}") from e

        if not client_info.redirect_uris:
            client_info.redirect_uris = [self.redirect_url]
        self._client_info = client_info
        await self.store.write_client(self.identity, client_info)
        return client_info

    def authorization_url(self, client: ClientCredential, pkce: PKCEPair, state: str) -> str:
        """Build the URL the user visits to grant consent."""
        params = {
            "response_type": "code",
            "client_id": client.client_id,
            "redirect_uri": self.redirect_url,
            "code_challenge": pkce.challenge,
            "code_challenge_method": pkce.method,
            "state": state,
            "scope": self.effective_scope,
        }
        if self.settings.authorize_resource:
            params["resource"] = self.settings.authorize_resource
        return f"{self.endpoints.authorization}?{urlencode(params)}"

    async def _token_request(self, data: dict[str, str], grant: str) -> TokenSet:
        await self.discover()
        try:
            async with self._client_factory() as client:
                response = await client.post(
                    self.endpoints.token,
                    data=data,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise TokenExchangeError(f"{grant} request failed: {type(e).__name__}") from e

        if response.status_code >= 400:
            raise TokenExchangeError(
                f"{grant} rejected with HTTP {response.status_code}",
                status_code=response.status_code
            )

        try:
            return TokenSet.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise TokenExchangeError(f"Invalid token response for {grant}") from e

    async def exchange_code(self, client: ClientCredential, code: str, verifier: str) -> TokenSet:
        """
        Exchange an authorization code for tokens.

        Raises:
            TokenExchangeError: On network failure or rejection; not retried
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": verifier,
            "client_id": client.client_id,
            "redirect_uri": self.redirect_url,
        }
        if client.client_secret:
            data["client_secret"] = client.client_secret
        if self.settings.authorize_resource:
            data["resource"] = self.settings.authorize_resource
        return await self._token_request(data, "Authorization code exchange")

    async def refresh(self, tokens: TokenSet) -> TokenSet:
        """
        Use the refresh token grant and persist the new token set.

        Raises:
            TokenExchangeError: If no refresh token exists or the grant fails
        """
        if not tokens.refresh_token:
            raise TokenExchangeError("No refresh token available")

        client = await self.client_information()
        if client is None:
            raise TokenExchangeError("No client registration available for refresh")

        data = {
            "grant_type": "refresh_token",
            "refresh_token": tokens.refresh_token,
            "client_id": client.client_id,
        }
        if client.client_secret:
            data["client_secret"] = client.client_secret
        if self.settings.authorize_resource:
            data["resource"] = self.settings.authorize_resource

        refreshed = await self._token_request(data, "Token refresh")
        if refreshed.refresh_token is None:
            refreshed.refresh_token = tokens.refresh_token
        await self.store.write_tokens(self.identity, refreshed)
        logger.info("Refreshed OAuth token", server=self.identity.url)
        return refreshed

    async def invalidate_credentials(self, scope: CredentialScope) -> None:
        """Delete stored credentials for the given scope."""
        logger.debug("Invalidating credentials", scope=scope)
        if scope == "all":
            await self.store.delete_all(self.identity)
            self._client_info = None
        elif scope == "client":
            await self.store.delete_client(self.identity)
            self._client_info = None
        elif scope == "tokens":
            await self.store.delete_tokens(self.identity)
        elif scope == "verifier":
            await self.store.delete_verifier(self.identity)
        else:
            raise ValueError(f"Unknown credential scope: {scope}")

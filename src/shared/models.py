"""Core data models for the MCP remote proxy.

This module defines the shared data structures: the remote endpoint
identity, the persisted OAuth artifacts and the transport vocabulary.
"""

import hashlib
import json
import time
from enum import Enum
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_PORTS = {"http": 80, "https": 443}

# Seconds before real expiry at which a token is treated as expired
EXPIRY_SKEW_SECONDS = 30


class TransportKind(str, Enum):
    """Kind of remote transport session."""
    STREAMABLE_HTTP = "streamable-http"
    SSE = "sse"


class TransportStrategy(str, Enum):
    """Order in which transport kinds are attempted."""
    HTTP_FIRST = "http-first"
    SSE_FIRST = "sse-first"
    HTTP_ONLY = "http-only"
    SSE_ONLY = "sse-only"

    @property
    def plan(self) -> list[TransportKind]:
        """Finite, ordered list of transport kinds to try."""
        return {
            TransportStrategy.HTTP_FIRST: [TransportKind.STREAMABLE_HTTP, TransportKind.SSE],
            TransportStrategy.SSE_FIRST: [TransportKind.SSE, TransportKind.STREAMABLE_HTTP],
            TransportStrategy.HTTP_ONLY: [TransportKind.STREAMABLE_HTTP],
            TransportStrategy.SSE_ONLY: [TransportKind.SSE],
        }[self]


def normalize_url(url: str) -> str:
    """
    Normalize a URL so equivalent spellings compare equal.

    Lowercases scheme and host, drops default ports, fragments and a
    trailing slash, and sorts query parameters.
    """
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    netloc = host
    if parts.port and parts.port != DEFAULT_PORTS.get(scheme):
        netloc = f"{host}:{parts.port}"
    if parts.username:
        netloc = f"{parts.username}@{netloc}"
    path = parts.path.rstrip("/")
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    return urlunsplit((scheme, netloc, path, query, ""))


class ServerIdentity(BaseModel):
    """
    Remote endpoint plus the stable hash used as credential namespace.

    The hash is a pure function of the normalized URL, the optional
    authorization resource and the custom headers; ordering of query
    parameters and headers does not affect it.
    """
    model_config = ConfigDict(frozen=True)

    url: str
    hash: str

    @classmethod
    def from_url(
        cls,
        url: str,
        authorize_resource: str = "",
        headers: Optional[dict[str, str]] = None
    ) -> "ServerIdentity":
        """Derive the identity for a remote endpoint."""
        parts = [normalize_url(url)]
        if authorize_resource:
            parts.append(authorize_resource)
        if headers:
            normalized = sorted((k.lower(), v) for k, v in headers.items())
            parts.append(json.dumps(normalized))
        digest = hashlib.md5("|".join(parts).encode("utf-8")).hexdigest()
        return cls(url=url, hash=digest)

    @property
    def default_callback_port(self) -> int:
        """Deterministic callback port shared by every instance for this server."""
        return 3335 + int(self.hash[:4], 16) % 45816


class ClientCredential(BaseModel):
    """OAuth client registration, created once and reused until invalidated."""
    model_config = ConfigDict(extra="allow")

    client_id: str
    client_secret: Optional[str] = None
    redirect_uris: list[str] = Field(default_factory=list)
    scope: Optional[str] = None
    client_id_issued_at: Optional[int] = None
    client_secret_expires_at: Optional[int] = None

    @property
    def redirect_uri(self) -> Optional[str]:
        return self.redirect_uris[0] if self.redirect_uris else None


class TokenSet(BaseModel):
    """OAuth token set with validity derived from expires_in/obtained_at."""
    model_config = ConfigDict(extra="allow")

    access_token: str
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = Field(default=None, ge=0)
    scope: Optional[str] = None
    obtained_at: float = Field(default_factory=time.time)

    @property
    def expires_at(self) -> Optional[float]:
        if self.expires_in is None:
            return None
        return self.obtained_at + self.expires_in

    def is_expired(self, now: Optional[float] = None, skew: float = EXPIRY_SKEW_SECONDS) -> bool:
        """Check whether the access token should no longer be used."""
        if self.expires_at is None:
            return False
        now = time.time() if now is None else now
        return now >= self.expires_at - skew


class AuthorizationServerMetadata(BaseModel):
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    model_config = ConfigDict(extra="allow")

    issuer: Optional[str] = None
    authorization_endpoint: Optional[str] = None
    token_endpoint: Optional[str] = None
    registration_endpoint: Optional[str] = None
    scopes_supported: Optional[list[str]] = None
    response_types_supported: Optional[list[str]] = None
    grant_types_supported: Optional[list[str]] = None
    token_endpoint_auth_methods_supported: Optional[list[str]] = None
    code_challenge_methods_supported: Optional[list[str]] = None


class LockLease(BaseModel):
    """Contents of an authorization lock lease file."""
    holder_id: str
    pid: int
    hostname: str
    port: int
    acquired_at: float
    expires_at: float

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.expires_at


class AuthState(BaseModel):
    """Outcome of initialize_auth."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    token: TokenSet
    skip_browser_auth: bool = False
    listener: Any = None

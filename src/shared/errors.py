"""Error taxonomy for the MCP remote proxy.

Every error carries enough context to diagnose a failure (server identity,
transport kind, status code) and never carries bearer tokens, private key
material or passphrases.
"""

from typing import Optional


class ProxyError(Exception):
    """Base exception for all proxy errors."""
    pass


class CertificateLoadError(ProxyError):
    """A configured certificate, key or CA file could not be loaded."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class CallbackBindError(ProxyError):
    """The local OAuth callback listener could not bind its port."""

    def __init__(self, message: str, port: int) -> None:
        super().__init__(message)
        self.port = port


class AuthStateMismatchError(ProxyError):
    """The callback carried a state value that does not match this attempt."""
    pass


class AuthTimeoutError(ProxyError):
    """Authorization did not complete within the allotted time."""
    pass


class TokenExchangeError(ProxyError):
    """Exchanging an authorization code or refresh token failed."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnauthorizedError(ProxyError):
    """The remote kept rejecting requests after re-authorization."""
    pass


class TransportRejectedError(ProxyError):
    """The remote refused a transport kind; eligible for fallback."""

    def __init__(self, message: str, kind: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


class TransportNegotiationError(ProxyError):
    """No transport kind in the fallback set could be established."""

    def __init__(
        self,
        message: str,
        server_url: str,
        attempts: Optional[list[tuple[str, Optional[int]]]] = None
    ) -> None:
        super().__init__(message)
        self.server_url = server_url
        self.attempts = attempts or []


class TransportClosedError(ProxyError):
    """An operation was attempted on a closed transport session."""
    pass

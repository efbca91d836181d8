"""Client TLS identity construction.

Turns the optional certificate, key and CA paths into one immutable
TLS identity. The identity is built once at startup and handed
explicitly to every component that opens outbound connections.
"""

import ssl
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import httpx

from shared.config import TLSSettings
from shared.errors import CertificateLoadError
from shared.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TLSIdentity:
    """Client certificate, trust anchor and verification policy."""
    ssl_context: ssl.SSLContext
    cert_path: Optional[str] = None
    key_path: Optional[str] = None
    ca_path: Optional[str] = None
    reject_unauthorized: bool = True

    @property
    def has_client_certificate(self) -> bool:
        return self.cert_path is not None


class TLSContextBuilder:
    """
    Builds a TLSIdentity from TLS settings.

    Every referenced file is read before any SSL context exists, so a
    missing or unreadable file fails the build without a partial result.
    """

    _verification_warning_logged = False

    def _read(self, label: str, path: str) -> bytes:
        try:
            data = Path(path).expanduser().read_bytes()
        except OSError as e:
            logger.error(f"Error loading TLS {label}", path=path, error=e.strerror)
            raise CertificateLoadError(
                f"Cannot read TLS {label} '{path}': {e.strerror}",
                path=path
            ) from e
        logger.info(f"Loaded TLS {label}", path=path)
        return data

    def _warn_verification_disabled(self) -> None:
        if TLSContextBuilder._verification_warning_logged:
            return
        TLSContextBuilder._verification_warning_logged = True
        logger.warning(
            "TLS certificate verification disabled (reject_unauthorized=false); "
            "server identity will not be checked"
        )

    def build(self, config: TLSSettings) -> Optional[TLSIdentity]:
        """
        Build the process-wide TLS identity.

        Args:
            config: TLS settings

        Returns:
            The identity, or None when nothing is configured and library
            defaults apply

        Raises:
            CertificateLoadError: If any referenced file cannot be loaded
        """
        if not config.is_configured:
            return None

        if config.key and not config.cert:
            raise CertificateLoadError("A TLS client key requires a client certificate", path=config.key)

        # Load everything first: no context is created if any file fails
        cert_pem = self._read("client certificate", config.cert) if config.cert else None
        if config.key:
            self._read("client key", config.key)
        ca_pem = self._read("CA certificate", config.ca) if config.ca else None

        try:
            if ca_pem is not None:
                context = ssl.create_default_context(cadata=ca_pem.decode("ascii"))
            else:
                context = ssl.create_default_context()

            if cert_pem is not None:
                password = config.passphrase.get_secret_value() if config.passphrase else None
                context.load_cert_chain(
                    certfile=str(Path(config.cert).expanduser()),
                    keyfile=str(Path(config.key).expanduser()) if config.key else None,
                    password=password,
                )
        except (ssl.SSLError, ValueError, UnicodeDecodeError) as e:
            # Message only; never the key bytes or passphrase
            raise CertificateLoadError(f"Invalid TLS material: {e}", path=config.cert or config.ca) from e

        if not config.reject_unauthorized:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            self._warn_verification_disabled()

        return TLSIdentity(
            ssl_context=context,
            cert_path=config.cert,
            key_path=config.key,
            ca_path=config.ca,
            reject_unauthorized=config.reject_unauthorized,
        )


def build_http_client(
    tls_identity: Optional[TLSIdentity] = None,
    timeout: float = 30.0,
    **kwargs: Any
) -> httpx.AsyncClient:
    """
    Create an HTTP client carrying the TLS identity as connection credential.

    Args:
        tls_identity: Process TLS identity, or None for default trust
        timeout: Request timeout in seconds
        **kwargs: Extra httpx.AsyncClient arguments (headers, auth, transport)

    Returns:
        A new httpx.AsyncClient
    """
    verify: Any = tls_identity.ssl_context if tls_identity else True
    return httpx.AsyncClient(verify=verify, timeout=timeout, **kwargs)

"""Transport negotiation with bounded fallback.

Opens a remote session using the token source and TLS identity. The
strategy yields a finite ordered list of transport kinds; a kind that
the remote refuses (4xx other than 401, or an unusable handshake) moves
on to the next kind, at most once, and nothing loops.
"""

from typing import Any, Callable, Optional

import httpx

from mcp_client.tls import TLSIdentity, build_http_client
from mcp_client.transport import SSETransport, StreamableHTTPTransport, TransportSession
from shared.errors import TransportNegotiationError, TransportRejectedError, UnauthorizedError
from shared.logging import get_logger
from shared.models import ServerIdentity, TransportKind, TransportStrategy

logger = get_logger(__name__)

ClientFactory = Callable[..., httpx.AsyncClient]


def merge_headers(caller_headers: Optional[dict[str, str]]) -> dict[str, str]:
    """Caller headers minus any attempt to set Authorization."""
    merged: dict[str, str] = {}
    for name, value in (caller_headers or {}).items():
        if name.lower() == "authorization":
            logger.warning("Ignoring caller-supplied Authorization header", header=name)
            continue
        merged[name] = value
    return merged


class TransportNegotiator:
    """
    Connects to a remote MCP server.

    Every session gets its own HTTP client carrying the TLS identity as
    connection credential, the token source as auth flow and the merged
    caller headers.
    """

    def __init__(
        self,
        request_timeout: float = 30.0,
        client_factory: Optional[ClientFactory] = None
    ) -> None:
        self.request_timeout = request_timeout
        self._client_factory = client_factory or build_http_client

    def _create_session(
        self,
        kind: TransportKind,
        url: str,
        token_source: Optional[httpx.Auth],
        tls_identity: Optional[TLSIdentity],
        headers: dict[str, str]
    ) -> TransportSession:
        client_kwargs: dict[str, Any] = {"headers": headers}
        if token_source is not None:
            client_kwargs["auth"] = token_source
        client = self._client_factory(tls_identity, timeout=self.request_timeout, **client_kwargs)

        if kind == TransportKind.STREAMABLE_HTTP:
            return StreamableHTTPTransport(url, client)
        return SSETransport(url, client, endpoint_timeout=self.request_timeout)

    async def connect(
        self,
        identity: ServerIdentity,
        token_source: Optional[httpx.Auth],
        tls_identity: Optional[TLSIdentity] = None,
        strategy: TransportStrategy = TransportStrategy.HTTP_FIRST,
        headers: Optional[dict[str, str]] = None
    ) -> TransportSession:
        """
        Open a session, falling back across the strategy's kinds.

        Args:
            identity: Remote server identity
            token_source: Bearer token auth flow (None for no auth)
            tls_identity: Process TLS identity, or None for defaults
            strategy: Transport order
            headers: Caller headers; never override Authorization

        Returns:
            A started transport session

        Raises:
            TransportNegotiationError: If every kind in the plan failed
        """
        merged = merge_headers(headers)
        attempts: list[tuple[str, Optional[int]]] = []
        plan = strategy.plan

        for index, kind in enumerate(plan):
            session = self._create_session(kind, identity.url, token_source, tls_identity, merged)
            logger.info("Connecting to remote server", server=identity.url, transport=kind.value)
            try:
                await session.start()
            except TransportRejectedError as e:
                await session.close()
                attempts.append((kind.value, e.status_code))
                if index + 1 < len(plan):
                    logger.warning(
                        "Transport rejected, falling back",
                        server=identity.url,
                        transport=kind.value,
                        status_code=e.status_code,
                        next_transport=plan[index + 1].value
                    )
                continue
            except UnauthorizedError as e:
                await session.close()
                raise TransportNegotiationError(
                    f"{identity.url} rejected credentials on {kind.value} transport",
                    server_url=identity.url,
                    attempts=attempts + [(kind.value, 401)]
                ) from e
            except httpx.HTTPError as e:
                await session.close()
                status_code = e.response.status_code if isinstance(e, httpx.HTTPStatusError) else None
                raise TransportNegotiationError(
                    f"Could not reach {identity.url} over {kind.value}: {e}",
                    server_url=identity.url,
                    attempts=attempts + [(kind.value, status_code)]
                ) from e
            except BaseException:
                await session.close()
                raise

            logger.info("Connected to remote server", server=identity.url, transport=kind.value)
            return session

        summary = ", ".join(f"{kind} ({status or 'no status'})" for kind, status in attempts)
        raise TransportNegotiationError(
            f"No transport could be established with {identity.url}: {summary}",
            server_url=identity.url,
            attempts=attempts
        )

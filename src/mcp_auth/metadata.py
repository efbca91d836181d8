"""OAuth 2.0 Authorization Server Metadata discovery (RFC 8414)."""

from typing import Optional
from urllib.parse import urlsplit

import httpx
from pydantic import ValidationError

from shared.logging import get_logger
from shared.models import AuthorizationServerMetadata

logger = get_logger(__name__)

WELL_KNOWN_PATH = "/.well-known/oauth-authorization-server"
METADATA_TIMEOUT_SECONDS = 5.0


def server_origin(server_url: str) -> str:
    """Return scheme://host[:port] of a URL."""
    parts = urlsplit(server_url)
    return f"{parts.scheme}://{parts.netloc}"


def get_metadata_url(server_url: str) -> str:
    """Well-known metadata URL relative to the server origin."""
    return f"{server_origin(server_url)}{WELL_KNOWN_PATH}"


async def fetch_authorization_server_metadata(
    server_url: str,
    client: httpx.AsyncClient
) -> Optional[AuthorizationServerMetadata]:
    """
    Fetch authorization server metadata from the well-known endpoint.

    Args:
        server_url: Remote MCP server URL
        client: HTTP client carrying the TLS identity

    Returns:
        Parsed metadata, or None if the endpoint is absent or unusable
    """
    metadata_url = get_metadata_url(server_url)
    logger.debug("Fetching authorization server metadata", metadata_url=metadata_url)

    try:
        response = await client.get(
            metadata_url,
            headers={"Accept": "application/json"},
            timeout=METADATA_TIMEOUT_SECONDS,
        )
    except httpx.HTTPError as e:
        logger.debug("Error fetching authorization server metadata", error=str(e))
        return None

    if response.status_code != 200:
        logger.debug(
            "Authorization server metadata unavailable",
            metadata_url=metadata_url,
            status_code=response.status_code
        )
        return None

    try:
        metadata = AuthorizationServerMetadata.model_validate(response.json())
    except (ValueError, ValidationError) as e:
        logger.debug("Malformed authorization server metadata", error=str(e))
        return None

    logger.debug(
        "Fetched authorization server metadata",
        issuer=metadata.issuer,
        scopes_supported=metadata.scopes_supported
    )
    return metadata

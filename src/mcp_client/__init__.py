"""MCP Client - remote session establishment.

Builds the process TLS identity, negotiates a transport with bounded
fallback and exposes the resulting session as a duplex message channel.
"""

from mcp_client.negotiator import TransportNegotiator
from mcp_client.tls import TLSContextBuilder, TLSIdentity
from mcp_client.transport import SSETransport, StreamableHTTPTransport, TransportSession

__all__ = [
    "SSETransport",
    "StreamableHTTPTransport",
    "TLSContextBuilder",
    "TLSIdentity",
    "TransportNegotiator",
    "TransportSession",
]

"""MCP Proxy - stdio bridge to a remote MCP server.

Relays JSON-RPC messages between a local stdio client and a remote
session, answering calls to ignored tools locally.
"""

from mcp_proxy.relay import MessageRelay, bridge
from mcp_proxy.stdio import StdioTransport

__all__ = [
    "MessageRelay",
    "StdioTransport",
    "bridge",
]

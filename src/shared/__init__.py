"""Shared utilities and data models for the MCP remote proxy."""

from shared.models import (
    AuthState,
    ClientCredential,
    ServerIdentity,
    TokenSet,
    TransportKind,
    TransportStrategy,
)
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "AuthState",
    "ClientCredential",
    "ServerIdentity",
    "TokenSet",
    "TransportKind",
    "TransportStrategy",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]

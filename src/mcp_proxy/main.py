"""MCP remote proxy - process entry point.

Bridges a local stdio MCP client to a remote OAuth-protected MCP server:
config -> TLS identity -> lazy authorization -> transport negotiation ->
relay -> teardown.

Run with: mcp-remote-proxy https://example.remote/server [callback-port]
"""

import argparse
import asyncio
import json
import os
import signal
import sys
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlsplit

from mcp_auth import (
    AuthorizationCoordinator,
    AuthorizationLock,
    CredentialStore,
    OAuthClientProvider,
    TokenSource,
)
from mcp_client import TLSContextBuilder, TransportNegotiator, TransportSession
from mcp_proxy.relay import bridge
from mcp_proxy.stdio import StdioTransport
from shared.config import Settings, TLSSettings, get_settings
from shared.errors import ProxyError
from shared.logging import bind_context, clear_context, get_logger, setup_logging
from shared.models import ServerIdentity, TransportStrategy

logger = get_logger(__name__)

USAGE = "mcp-remote-proxy <https://server-url> [callback-port] [options]"

CERTIFICATE_HINT = """You may be behind a VPN or a TLS-inspecting proxy.

Point the proxy at your organisation's CA bundle with --tls-ca <file.pem>
(or MCP_REMOTE_TLS_CA), or disable verification with --tls-no-verify for
testing only.
"""

LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


def _json_option(value: str) -> dict[str, Any]:
    """Parse inline JSON or ``@path`` to a JSON file."""
    if value.startswith("@"):
        value = Path(value[1:]).expanduser().read_text()
    try:
        data = json.loads(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise argparse.ArgumentTypeError("expected a JSON object")
    return data


def _header_option(value: str) -> tuple[str, str]:
    name, sep, header_value = value.partition(":")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(f"invalid header '{value}', expected 'Name: value'")
    return name.strip(), os.path.expandvars(header_value.strip())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mcp-remote-proxy", usage=USAGE)
    parser.add_argument("server_url", help="Remote MCP server URL")
    parser.add_argument("callback_port", nargs="?", type=int, help="OAuth callback port")
    parser.add_argument("--config", help="YAML settings file")
    parser.add_argument("--header", action="append", type=_header_option, default=[],
                        help="Extra request header 'Name: value' (repeatable, ${VAR} expanded)")
    parser.add_argument("--transport", choices=[s.value for s in TransportStrategy],
                        help="Transport strategy (default: http-first)")
    parser.add_argument("--host", help="Hostname used in the OAuth redirect URI")
    parser.add_argument("--allow-http", action="store_true", help="Permit plain http:// servers")
    parser.add_argument("--ignore-tool", action="append", default=[],
                        help="Tool name or wildcard pattern to block (repeatable)")
    parser.add_argument("--auth-timeout", type=float, help="Seconds to wait for authorization")
    parser.add_argument("--resource", help="Resource parameter sent to the authorization server")
    parser.add_argument("--static-oauth-client-metadata", type=_json_option,
                        help="Client metadata JSON (or @file)")
    parser.add_argument("--static-oauth-client-info", type=_json_option,
                        help="Pre-registered client info JSON (or @file)")
    parser.add_argument("--tls-cert", help="Client certificate (PEM)")
    parser.add_argument("--tls-key", help="Client private key (PEM)")
    parser.add_argument("--tls-ca", help="CA bundle for server verification (PEM)")
    parser.add_argument("--tls-passphrase", help="Passphrase for an encrypted private key")
    parser.add_argument("--tls-no-verify", action="store_true",
                        help="Do not verify the server certificate (testing only)")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    return parser


def parse_args(argv: list[str]) -> Settings:
    """Merge command-line options over file and environment settings."""
    args = build_parser().parse_args(argv)
    settings = Settings.from_yaml(args.config) if args.config else get_settings().model_copy(deep=True)

    proxy, auth, tls = settings.proxy, settings.auth, settings.tls
    proxy.server_url = args.server_url
    proxy.headers = {**proxy.headers, **dict(args.header)}
    proxy.ignored_tools = [*proxy.ignored_tools, *args.ignore_tool]
    proxy.allow_http = proxy.allow_http or args.allow_http
    if args.transport:
        proxy.transport_strategy = TransportStrategy(args.transport)

    if args.callback_port is not None:
        auth.callback_port = args.callback_port
    if args.host:
        auth.host = args.host
    if args.auth_timeout is not None:
        auth.timeout_seconds = args.auth_timeout
    if args.resource:
        auth.authorize_resource = args.resource
    if args.static_oauth_client_metadata is not None:
        auth.static_client_metadata = args.static_oauth_client_metadata
    if args.static_oauth_client_info is not None:
        auth.static_client_info = args.static_oauth_client_info

    tls_updates: dict[str, Any] = {}
    if args.tls_cert:
        tls_updates["cert"] = args.tls_cert
    if args.tls_key:
        tls_updates["key"] = args.tls_key
    if args.tls_ca:
        tls_updates["ca"] = args.tls_ca
    if args.tls_passphrase:
        tls_updates["passphrase"] = args.tls_passphrase
    if args.tls_no_verify:
        tls_updates["reject_unauthorized"] = False
    if tls_updates:
        settings.tls = TLSSettings.model_validate({**tls.model_dump(), **tls_updates})

    if args.debug:
        settings.debug = True
        settings.log_level = "DEBUG"
    return settings


def validate_server_url(url: str, allow_http: bool) -> None:
    """
    Require https unless the server is loopback or http is allowed.

    Raises:
        ValueError: If the URL is unusable
    """
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValueError(f"Invalid server URL: {url}")
    if parts.scheme == "http" and not allow_http and parts.hostname not in LOOPBACK_HOSTS:
        raise ValueError("Non-HTTPS URLs are only allowed for localhost or when --allow-http is given")


async def run_proxy(settings: Settings) -> None:
    """Run one proxy session until either side closes."""
    proxy, auth = settings.proxy, settings.auth
    validate_server_url(proxy.server_url, proxy.allow_http)

    tls_identity = TLSContextBuilder().build(settings.tls)
    identity = ServerIdentity.from_url(proxy.server_url, auth.authorize_resource, proxy.headers)
    callback_port = auth.callback_port or identity.default_callback_port
    bind_context(server_hash=identity.hash)

    store = CredentialStore(auth.config_path)
    provider = OAuthClientProvider(identity, store, auth, callback_port, tls_identity)
    lock = AuthorizationLock(
        auth.config_path,
        identity,
        callback_port,
        lease_seconds=auth.timeout_seconds + auth.lease_grace_seconds,
    )
    coordinator = AuthorizationCoordinator(
        identity,
        store,
        provider,
        lock,
        callback_port,
        host=auth.host,
        callback_path=auth.callback_path,
        poll_interval=auth.poll_interval_seconds,
        settle_seconds=auth.settle_seconds,
    )
    token_source = TokenSource(identity, store, provider, coordinator, auth.timeout_seconds)
    negotiator = TransportNegotiator(request_timeout=proxy.request_timeout_seconds)

    remote: Optional[TransportSession] = None
    local: Optional[StdioTransport] = None
    try:
        # Scope selection and refresh need the advertised endpoints
        await provider.discover()
        remote = await negotiator.connect(
            identity,
            token_source,
            tls_identity,
            proxy.transport_strategy,
            proxy.headers,
        )
        local = StdioTransport()
        await local.start()
        logger.info(
            "Proxy established between local stdio and remote server",
            server=identity.url,
            transport=remote.kind
        )
        await bridge(local, remote, proxy.ignored_tools)
    finally:
        if remote is not None:
            await remote.close()
        if local is not None:
            await local.close()
        await coordinator.shutdown()
        clear_context()


async def _run_with_signals(settings: Settings) -> None:
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, task.cancel)
    try:
        await run_proxy(settings)
    except asyncio.CancelledError:
        logger.info("Shutting down")
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


def main(argv: Optional[list[str]] = None) -> int:
    """Command-line entry point."""
    settings = parse_args(sys.argv[1:] if argv is None else argv)
    setup_logging(settings.log_level, json_output=settings.use_json_logs)

    try:
        asyncio.run(_run_with_signals(settings))
    except (ProxyError, ValueError, OSError) as e:
        logger.error("Fatal error", error=str(e), error_type=type(e).__name__)
        if "certificate" in str(e).lower() and "verif" in str(e).lower():
            sys.stderr.write(CERTIFICATE_HINT)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

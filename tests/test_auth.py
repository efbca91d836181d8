"""Tests for the authorization components."""

import asyncio
import base64
import hashlib
import json
import os
import socket
import stat
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx
import pytest
from unittest.mock import AsyncMock

from shared.config import AuthSettings
from shared.errors import AuthStateMismatchError, AuthTimeoutError, CallbackBindError
from shared.models import AuthState, ClientCredential, ServerIdentity, TokenSet

SERVER_URL = "https://mcp.example.com/mcp"
CALLBACK_PORT = 4567


class FakeListener:
    """In-memory stand-in for the callback listener."""

    def __init__(self, port: int):
        self.port = port
        self.started = False
        self.closed = False
        self._pending = None

    async def start(self):
        self.started = True

    def expect(self):
        self._pending = asyncio.get_running_loop().create_future()
        return self._pending

    def deliver(self, result):
        if self._pending is not None and not self._pending.done():
            self._pending.set_result(result)

    async def close(self):
        self.closed = True


class FakeProvider:
    """Provider that skips the network and mints numbered tokens."""

    def __init__(self):
        self.exchanges = 0

    async def discover(self):
        return None

    async def ensure_client(self):
        return ClientCredential(client_id="client-1")

    def authorization_url(self, client, pkce, state):
        query = urlencode({"state": state, "code_challenge": pkce.challenge})
        return f"https://auth.example.com/authorize?{query}"

    async def exchange_code(self, client, code, verifier):
        self.exchanges += 1
        return TokenSet(access_token=f"token-{self.exchanges}", refresh_token="refresh", expires_in=3600)


class Harness:
    """Wires a coordinator to fakes and records browser and listener use."""

    def __init__(self, config_dir, deliver_after=0.1, state_override=None, use_real_listener=False):
        from mcp_auth.coordinator import AuthorizationCoordinator
        from mcp_auth.lock import AuthorizationLock
        from mcp_auth.store import CredentialStore

        self.identity = ServerIdentity.from_url(SERVER_URL)
        self.store = CredentialStore(config_dir)
        self.lock = AuthorizationLock(config_dir, self.identity, CALLBACK_PORT, lease_seconds=10)
        self.provider = FakeProvider()
        self.deliver_after = deliver_after
        self.state_override = state_override
        self.opened_urls = []
        self.listeners = []

        self.coordinator = AuthorizationCoordinator(
            self.identity,
            self.store,
            self.provider,
            self.lock,
            CALLBACK_PORT,
            poll_interval=0.05,
            browser_opener=self.open_browser,
            listener_factory=None if use_real_listener else self.make_listener,
        )

    def make_listener(self, port):
        listener = FakeListener(port)
        self.listeners.append(listener)
        return listener

    def open_browser(self, url):
        from mcp_auth.callback import CallbackResult

        self.opened_urls.append(url)
        if self.deliver_after is not None:
            state = self.state_override or parse_qs(urlsplit(url).query)["state"][0]
            listener = self.listeners[-1]
            asyncio.get_running_loop().call_later(
                self.deliver_after,
                listener.deliver,
                CallbackResult(code="auth-code", state=state)
            )
        return True


class TestServerIdentity:
    """Tests for ServerIdentity hashing."""

    def test_hash_ignores_query_order(self):
        """Test that equivalent URLs share a hash."""
        first = ServerIdentity.from_url("https://Example.com:443/mcp/?b=2&a=1")
        second = ServerIdentity.from_url("https://example.com/mcp?a=1&b=2")

        assert first.hash == second.hash

    def test_hash_ignores_header_order_and_case(self):
        """Test that header order and name case do not matter."""
        first = ServerIdentity.from_url(SERVER_URL, headers={"X-Team": "a", "X-Env": "prod"})
        second = ServerIdentity.from_url(SERVER_URL, headers={"x-env": "prod", "x-team": "a"})

        assert first.hash == second.hash

    def test_hash_depends_on_resource(self):
        """Test that the authorization resource changes the namespace."""
        plain = ServerIdentity.from_url(SERVER_URL)
        scoped = ServerIdentity.from_url(SERVER_URL, authorize_resource="https://api.example.com")

        assert plain.hash != scoped.hash

    def test_default_callback_port_is_stable(self):
        """Test the derived callback port range and determinism."""
        identity = ServerIdentity.from_url(SERVER_URL)

        assert identity.default_callback_port == ServerIdentity.from_url(SERVER_URL).default_callback_port
        assert 3335 <= identity.default_callback_port < 3335 + 45816


class TestTokenSet:
    """Tests for token expiry."""

    def test_without_expiry_never_expires(self):
        tokens = TokenSet(access_token="abc")
        assert not tokens.is_expired()

    def test_expiry_applies_skew(self):
        """Test that tokens are treated as expired shortly before expiry."""
        tokens = TokenSet(access_token="abc", expires_in=100, obtained_at=1000.0)

        assert not tokens.is_expired(now=1050.0)
        assert tokens.is_expired(now=1075.0)


class TestCredentialStore:
    """Tests for the CredentialStore."""

    @pytest.mark.asyncio
    async def test_tokens_round_trip(self, tmp_path):
        """Test writing and reading a token set."""
        from mcp_auth.store import CredentialStore

        store = CredentialStore(tmp_path)
        identity = ServerIdentity.from_url(SERVER_URL)
        tokens = TokenSet(access_token="abc", refresh_token="def", expires_in=3600)

        await store.write_tokens(identity, tokens)
        loaded = await store.read_tokens(identity)

        assert loaded.access_token == "abc"
        assert loaded.refresh_token == "def"
        assert loaded.obtained_at == tokens.obtained_at

    @pytest.mark.asyncio
    async def test_files_are_private_and_complete(self, tmp_path):
        """Test file naming, permissions and that no temp files remain."""
        from mcp_auth.store import CredentialStore

        store = CredentialStore(tmp_path)
        identity = ServerIdentity.from_url(SERVER_URL)

        await store.write_client(identity, ClientCredential(client_id="abc"))
        await store.write_verifier(identity, "verifier")

        names = sorted(os.listdir(tmp_path))
        assert names == [
            f"{identity.hash}_client_info.json",
            f"{identity.hash}_code_verifier.txt",
        ]
        mode = stat.S_IMODE(os.stat(tmp_path / names[0]).st_mode)
        assert mode == 0o600

    @pytest.mark.asyncio
    async def test_invalid_file_reads_as_missing(self, tmp_path):
        """Test that corrupt content is treated as absent."""
        from mcp_auth.store import CredentialStore

        store = CredentialStore(tmp_path)
        identity = ServerIdentity.from_url(SERVER_URL)
        store.path_for(identity, "tokens.json").write_text("{not json")

        assert await store.read_tokens(identity) is None

    @pytest.mark.asyncio
    async def test_delete_all(self, tmp_path):
        """Test removing every artifact for a server."""
        from mcp_auth.store import CredentialStore

        store = CredentialStore(tmp_path)
        identity = ServerIdentity.from_url(SERVER_URL)
        await store.write_tokens(identity, TokenSet(access_token="abc"))
        await store.write_verifier(identity, "verifier")

        await store.delete_all(identity)

        assert await store.read_tokens(identity) is None
        assert await store.read_verifier(identity) is None
        assert os.listdir(tmp_path) == []


class TestAuthorizationLock:
    """Tests for the AuthorizationLock."""

    def _lock(self, tmp_path, lease_seconds=10.0):
        from mcp_auth.lock import AuthorizationLock

        identity = ServerIdentity.from_url(SERVER_URL)
        return AuthorizationLock(tmp_path, identity, CALLBACK_PORT, lease_seconds=lease_seconds)

    def test_acquire_and_observe(self, tmp_path):
        """Test that one holder excludes another."""
        from mcp_auth.lock import LockState

        leader = self._lock(tmp_path)
        follower = self._lock(tmp_path)

        assert leader.state() == LockState.UNLOCKED
        assert leader.try_acquire()
        assert leader.state() == LockState.HELD_BY_SELF
        assert follower.state() == LockState.HELD_BY_OTHER
        assert not follower.try_acquire()

    def test_release_only_by_holder(self, tmp_path):
        """Test that a non-holder cannot release the lock."""
        from mcp_auth.lock import LockState

        leader = self._lock(tmp_path)
        other = self._lock(tmp_path)
        leader.try_acquire()

        assert not other.release()
        assert other.state() == LockState.HELD_BY_OTHER
        assert leader.release()
        assert other.state() == LockState.UNLOCKED
        assert not leader.lease_file.exists()

    def test_expired_lease_is_reclaimed(self, tmp_path):
        """Test that an expired lease does not block a new leader."""
        stale = self._lock(tmp_path, lease_seconds=0.0)
        stale.try_acquire()

        successor = self._lock(tmp_path)

        assert successor.try_acquire()
        assert successor.current_lease().holder_id == successor.holder_id

    def test_dead_holder_is_reclaimed(self, tmp_path, monkeypatch):
        """Test that a lease held by a dead local process is stale."""
        from mcp_auth.lock import LockState

        crashed = self._lock(tmp_path)
        crashed.try_acquire()
        monkeypatch.setattr("mcp_auth.lock.psutil.pid_exists", lambda pid: False)

        successor = self._lock(tmp_path)

        assert successor.state() == LockState.UNLOCKED
        assert successor.try_acquire()

    def test_unreadable_lease_is_ignored(self, tmp_path):
        """Test that a corrupt lease file reads as unlocked."""
        lock = self._lock(tmp_path)
        lock.lease_file.write_text("garbage")

        assert lock.try_acquire()

    def test_lease_contents(self, tmp_path):
        """Test the fields recorded in the lease."""
        lock = self._lock(tmp_path)
        lock.try_acquire()

        lease = json.loads(lock.lease_file.read_text())

        assert lease["pid"] == os.getpid()
        assert lease["port"] == CALLBACK_PORT
        assert lease["expires_at"] - lease["acquired_at"] == pytest.approx(10.0)


class TestAuthorizationCoordinator:
    """Tests for the AuthorizationCoordinator."""

    @pytest.mark.asyncio
    async def test_stored_token_skips_flow(self, tmp_path):
        """Test that a valid stored token needs no listener and no browser."""
        harness = Harness(tmp_path)
        await harness.store.write_tokens(harness.identity, TokenSet(access_token="cached", expires_in=3600))

        state = await harness.coordinator.initialize_auth(timeout=1)

        assert state.token.access_token == "cached"
        assert state.skip_browser_auth
        assert harness.listeners == []
        assert harness.opened_urls == []

    @pytest.mark.asyncio
    async def test_leader_runs_flow(self, tmp_path):
        """Test a complete interactive flow."""
        harness = Harness(tmp_path)

        state = await harness.coordinator.initialize_auth(timeout=5)

        assert state.token.access_token == "token-1"
        assert not state.skip_browser_auth
        assert state.listener is harness.listeners[0]
        assert len(harness.opened_urls) == 1
        assert (await harness.store.read_tokens(harness.identity)).access_token == "token-1"
        assert await harness.store.read_verifier(harness.identity) is None
        assert not harness.lock.lease_file.exists()

        await harness.coordinator.shutdown()
        assert harness.listeners[0].closed

    @pytest.mark.asyncio
    async def test_two_instances_share_one_flow(self, tmp_path):
        """Test that a second instance waits for the first one's token."""
        first = Harness(tmp_path, deliver_after=0.3)
        second = Harness(tmp_path, deliver_after=None)

        async def start_later():
            await asyncio.sleep(0.05)
            return await second.coordinator.initialize_auth(timeout=5)

        state_a, state_b = await asyncio.gather(
            first.coordinator.initialize_auth(timeout=5),
            start_later()
        )

        assert len(first.opened_urls) + len(second.opened_urls) == 1
        assert second.listeners == []
        assert state_b.skip_browser_auth
        assert state_a.token.access_token == state_b.token.access_token
        assert state_a.token.refresh_token == state_b.token.refresh_token
        assert first.provider.exchanges + second.provider.exchanges == 1

    @pytest.mark.asyncio
    async def test_follower_returns_stored_token(self, tmp_path):
        """Test that a follower picks up a token written by the lock holder."""
        holder = Harness(tmp_path)
        follower = Harness(tmp_path, deliver_after=None)
        holder.lock.try_acquire()

        async def publish():
            await asyncio.sleep(0.1)
            await holder.store.write_tokens(holder.identity, TokenSet(access_token="shared", expires_in=3600))

        publisher = asyncio.create_task(publish())
        state = await follower.coordinator.initialize_auth(timeout=2)
        await publisher

        assert state.token.access_token == "shared"
        assert state.skip_browser_auth
        assert follower.opened_urls == []

    @pytest.mark.asyncio
    async def test_follower_takes_over_abandoned_flow(self, tmp_path):
        """Test that a follower leads once the holder releases without a token."""
        holder = Harness(tmp_path)
        follower = Harness(tmp_path, deliver_after=0.05)
        holder.lock.try_acquire()

        async def give_up():
            await asyncio.sleep(0.1)
            holder.lock.release()

        releaser = asyncio.create_task(give_up())
        state = await follower.coordinator.initialize_auth(timeout=3)
        await releaser

        assert not state.skip_browser_auth
        assert len(follower.opened_urls) == 1
        assert not follower.lock.lease_file.exists()

    @pytest.mark.asyncio
    async def test_many_instances_share_one_flow(self, tmp_path):
        """Test that several concurrent instances produce one browser visit and one exchange."""
        harnesses = [Harness(tmp_path, deliver_after=0.2) for _ in range(4)]

        async def start(harness, delay):
            await asyncio.sleep(delay)
            return await harness.coordinator.initialize_auth(timeout=5)

        states = await asyncio.gather(*(
            start(harness, index * 0.02) for index, harness in enumerate(harnesses)
        ))

        assert sum(len(h.opened_urls) for h in harnesses) == 1
        assert sum(h.provider.exchanges for h in harnesses) == 1
        assert len({state.token.access_token for state in states}) == 1
        assert sum(not state.skip_browser_auth for state in states) == 1
        assert not harnesses[0].lock.lease_file.exists()

    @pytest.mark.asyncio
    async def test_lease_of_dead_process_is_taken_over(self, tmp_path, monkeypatch):
        """Test that a lease left by a crashed process does not make the instance wait."""
        from mcp_auth.lock import AuthorizationLock

        crashed = AuthorizationLock(tmp_path, ServerIdentity.from_url(SERVER_URL), CALLBACK_PORT, lease_seconds=600)
        crashed.try_acquire()
        lease = json.loads(crashed.lease_file.read_text())
        lease["pid"] = 424242
        crashed.lease_file.write_text(json.dumps(lease))
        monkeypatch.setattr("mcp_auth.lock.psutil.pid_exists", lambda pid: pid != 424242)

        harness = Harness(tmp_path, deliver_after=0.01)
        state = await asyncio.wait_for(harness.coordinator.initialize_auth(timeout=5), timeout=1)

        assert not state.skip_browser_auth
        assert len(harness.opened_urls) == 1
        assert state.token.access_token == "token-1"
        assert not harness.lock.lease_file.exists()

    @pytest.mark.asyncio
    async def test_follower_times_out(self, tmp_path):
        """Test that a follower gives up when no token appears."""
        holder = Harness(tmp_path)
        follower = Harness(tmp_path, deliver_after=None)
        holder.lock.try_acquire()

        with pytest.raises(AuthTimeoutError):
            await follower.coordinator.initialize_auth(timeout=0.2)

        assert follower.opened_urls == []

    @pytest.mark.asyncio
    async def test_state_mismatch_aborts_and_releases(self, tmp_path):
        """Test that a foreign state value ends the attempt."""
        harness = Harness(tmp_path, state_override="forged")

        with pytest.raises(AuthStateMismatchError):
            await harness.coordinator.initialize_auth(timeout=5)

        assert harness.provider.exchanges == 0
        assert not harness.lock.lease_file.exists()
        assert await harness.store.read_tokens(harness.identity) is None
        assert await harness.store.read_verifier(harness.identity) is None

    @pytest.mark.asyncio
    async def test_leader_timeout_releases(self, tmp_path):
        """Test that an unanswered consent flow times out and frees the lock."""
        harness = Harness(tmp_path, deliver_after=None)

        with pytest.raises(AuthTimeoutError):
            await harness.coordinator.initialize_auth(timeout=0.2)

        assert not harness.lock.lease_file.exists()
        assert await harness.store.read_verifier(harness.identity) is None

    @pytest.mark.asyncio
    async def test_bind_failure_releases(self, tmp_path):
        """Test that an occupied callback port fails fast and frees the lock."""
        from mcp_auth.coordinator import AuthorizationCoordinator

        occupied = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        occupied.bind(("127.0.0.1", 0))
        occupied.listen(1)
        port = occupied.getsockname()[1]
        try:
            harness = Harness(tmp_path, use_real_listener=True)
            coordinator = AuthorizationCoordinator(
                harness.identity,
                harness.store,
                harness.provider,
                harness.lock,
                port,
                browser_opener=harness.open_browser,
            )

            with pytest.raises(CallbackBindError) as exc_info:
                await coordinator.initialize_auth(timeout=5)

            assert exc_info.value.port == port
            assert harness.opened_urls == []
            assert not harness.lock.lease_file.exists()
        finally:
            occupied.close()


class TestCallbackListener:
    """Tests for the OAuth callback endpoint."""

    @pytest.mark.asyncio
    async def test_callback_resolves_attempt(self):
        """Test a successful callback."""
        from mcp_auth.callback import CallbackListener

        listener = CallbackListener(0)
        waiter = listener.expect()
        transport = httpx.ASGITransport(app=listener.app)

        async with httpx.AsyncClient(transport=transport, base_url="http://127.0.0.1") as client:
            response = await client.get("/oauth/callback", params={"code": "abc", "state": "xyz"})

        assert response.status_code == 200
        assert "Authorization successful" in response.text
        result = await waiter
        assert result.code == "abc"
        assert result.state == "xyz"

    @pytest.mark.asyncio
    async def test_missing_code(self):
        """Test that a callback without code is a client error."""
        from mcp_auth.callback import CallbackListener

        listener = CallbackListener(0)
        waiter = listener.expect()
        transport = httpx.ASGITransport(app=listener.app)

        async with httpx.AsyncClient(transport=transport, base_url="http://127.0.0.1") as client:
            response = await client.get("/oauth/callback", params={"state": "xyz"})

        assert response.status_code == 400
        assert response.text == "Error: No authorization code received"
        assert not waiter.done()

    @pytest.mark.asyncio
    async def test_other_paths_and_methods_not_found(self):
        """Test that anything but GET on the callback path answers 404."""
        from mcp_auth.callback import CallbackListener

        listener = CallbackListener(0)
        transport = httpx.ASGITransport(app=listener.app)

        async with httpx.AsyncClient(transport=transport, base_url="http://127.0.0.1") as client:
            wrong_path = await client.get("/favicon.ico")
            wrong_method = await client.post("/oauth/callback", params={"code": "abc"})

        assert wrong_path.status_code == 404
        assert wrong_method.status_code == 404

    @pytest.mark.asyncio
    async def test_only_first_callback_counts(self):
        """Test that a second callback does not replace the first."""
        from mcp_auth.callback import CallbackListener, CallbackResult

        listener = CallbackListener(0)
        waiter = listener.expect()

        listener.deliver(CallbackResult(code="first", state="s"))
        listener.deliver(CallbackResult(code="second", state="s"))

        assert (await waiter).code == "first"

    @pytest.mark.asyncio
    async def test_serves_on_loopback(self):
        """Test the embedded server end to end on an ephemeral port."""
        from mcp_auth.callback import CallbackListener

        listener = CallbackListener(0)
        await listener.start()
        try:
            assert listener.port != 0
            waiter = listener.expect()
            async with httpx.AsyncClient(trust_env=False) as client:
                response = await client.get(
                    f"http://127.0.0.1:{listener.port}/oauth/callback",
                    params={"code": "abc", "state": "xyz"}
                )
            assert response.status_code == 200
            assert (await waiter).code == "abc"
        finally:
            await listener.close()

        assert not listener.is_running


class TestOAuthClientProvider:
    """Tests for the OAuthClientProvider."""

    def _provider(self, tmp_path, handler, **settings):
        from mcp_auth.provider import OAuthClientProvider
        from mcp_auth.store import CredentialStore

        identity = ServerIdentity.from_url(SERVER_URL)
        store = CredentialStore(tmp_path)
        auth_settings = AuthSettings(config_dir=str(tmp_path), **settings)
        provider = OAuthClientProvider(
            identity,
            store,
            auth_settings,
            CALLBACK_PORT,
            http_client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )
        return provider, store, identity

    def test_pkce_pair(self):
        """Test PKCE verifier length and S256 challenge."""
        from mcp_auth.provider import generate_pkce_pair

        pair = generate_pkce_pair()
        expected = base64.urlsafe_b64encode(
            hashlib.sha256(pair.verifier.encode()).digest()
        ).rstrip(b"=").decode()

        assert 43 <= len(pair.verifier) <= 128
        assert pair.challenge == expected
        assert pair.method == "S256"

    def test_metadata_url(self):
        """Test well-known URL derivation from the server origin."""
        from mcp_auth.metadata import get_metadata_url

        assert get_metadata_url("https://example.com/mcp") == (
            "https://example.com/.well-known/oauth-authorization-server"
        )
        assert get_metadata_url("http://localhost:8080/a/b?x=1") == (
            "http://localhost:8080/.well-known/oauth-authorization-server"
        )

    @pytest.mark.asyncio
    async def test_discovery_uses_advertised_endpoints(self, tmp_path):
        """Test that metadata endpoints and scopes are used."""
        def handler(request):
            assert request.url.path == "/.well-known/oauth-authorization-server"
            return httpx.Response(200, json={
                "issuer": "https://auth.example.com",
                "authorization_endpoint": "https://auth.example.com/oauth/authorize",
                "token_endpoint": "https://auth.example.com/oauth/token",
                "scopes_supported": ["read", "write"],
            })

        provider, _, _ = self._provider(tmp_path, handler)
        await provider.discover()

        assert provider.endpoints.authorization == "https://auth.example.com/oauth/authorize"
        assert provider.endpoints.registration is None
        assert provider.effective_scope == "read write"

    @pytest.mark.asyncio
    async def test_registration_with_default_endpoints(self, tmp_path):
        """Test dynamic registration when no metadata is published."""
        registrations = []

        def handler(request):
            if request.url.path == "/register":
                registrations.append(json.loads(request.content))
                return httpx.Response(201, json={"client_id": "registered"})
            return httpx.Response(404)

        provider, store, identity = self._provider(tmp_path, handler)
        await provider.discover()
        client = await provider.ensure_client()

        assert client.client_id == "registered"
        assert client.redirect_uri == f"http://localhost:{CALLBACK_PORT}/oauth/callback"
        assert registrations[0]["token_endpoint_auth_method"] == "none"
        assert registrations[0]["scope"] == "openid email profile"
        assert (await store.read_client(identity)).client_id == "registered"

        # Second call reuses the stored registration
        await provider.ensure_client()
        assert len(registrations) == 1

    @pytest.mark.asyncio
    async def test_static_scope_wins(self, tmp_path):
        """Test scope priority with static client metadata."""
        provider, _, _ = self._provider(
            tmp_path,
            lambda request: httpx.Response(404),
            static_client_metadata={"scope": "custom"}
        )
        await provider.discover()

        assert provider.effective_scope == "custom"

    @pytest.mark.asyncio
    async def test_authorization_url(self, tmp_path):
        """Test the consent URL parameters."""
        from mcp_auth.provider import generate_pkce_pair

        provider, _, _ = self._provider(
            tmp_path,
            lambda request: httpx.Response(404),
            authorize_resource="https://api.example.com"
        )
        await provider.discover()
        pkce = generate_pkce_pair()

        url = provider.authorization_url(ClientCredential(client_id="abc"), pkce, "state-1")
        params = {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}

        assert url.startswith("https://mcp.example.com/authorize?")
        assert params["client_id"] == "abc"
        assert params["code_challenge"] == pkce.challenge
        assert params["code_challenge_method"] == "S256"
        assert params["state"] == "state-1"
        assert params["resource"] == "https://api.example.com"

    @pytest.mark.asyncio
    async def test_exchange_code(self, tmp_path):
        """Test the authorization code grant."""
        forms = []

        def handler(request):
            if request.url.path == "/token":
                forms.append(parse_qs(request.content.decode()))
                return httpx.Response(200, json={"access_token": "abc", "expires_in": 3600})
            return httpx.Response(404)

        provider, _, _ = self._provider(tmp_path, handler)
        tokens = await provider.exchange_code(ClientCredential(client_id="abc"), "code-1", "verifier-1")

        assert tokens.access_token == "abc"
        assert forms[0]["grant_type"] == ["authorization_code"]
        assert forms[0]["code_verifier"] == ["verifier-1"]

    @pytest.mark.asyncio
    async def test_exchange_rejected(self, tmp_path):
        """Test that a rejected exchange raises with the status code."""
        from shared.errors import TokenExchangeError

        provider, _, _ = self._provider(tmp_path, lambda request: httpx.Response(400, json={"error": "invalid_grant"}))

        with pytest.raises(TokenExchangeError) as exc_info:
            await provider.exchange_code(ClientCredential(client_id="abc"), "code-1", "verifier-1")

        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_refresh_keeps_refresh_token(self, tmp_path):
        """Test that a refresh without a new refresh token keeps the old one."""
        provider, store, identity = self._provider(
            tmp_path,
            lambda request: (
                httpx.Response(200, json={"access_token": "new", "expires_in": 60})
                if request.url.path == "/token" else httpx.Response(404)
            )
        )
        await store.write_client(identity, ClientCredential(client_id="abc"))

        refreshed = await provider.refresh(TokenSet(access_token="old", refresh_token="keep"))

        assert refreshed.access_token == "new"
        assert refreshed.refresh_token == "keep"
        assert (await store.read_tokens(identity)).access_token == "new"

    @pytest.mark.asyncio
    async def test_invalidate_tokens_only(self, tmp_path):
        """Test that invalidating tokens keeps the registration."""
        provider, store, identity = self._provider(tmp_path, lambda request: httpx.Response(404))
        await store.write_client(identity, ClientCredential(client_id="abc"))
        await store.write_tokens(identity, TokenSet(access_token="abc"))

        await provider.invalidate_credentials("tokens")

        assert await store.read_tokens(identity) is None
        assert await store.read_client(identity) is not None


class TestTokenSource:
    """Tests for the TokenSource auth flow."""

    def _source(self, tmp_path, coordinator_token="fresh"):
        from mcp_auth.store import CredentialStore
        from mcp_auth.token_source import TokenSource

        identity = ServerIdentity.from_url(SERVER_URL)
        store = CredentialStore(tmp_path)
        provider = AsyncMock()
        coordinator = AsyncMock()
        coordinator.initialize_auth = AsyncMock(
            return_value=AuthState(token=TokenSet(access_token=coordinator_token))
        )
        return TokenSource(identity, store, provider, coordinator, auth_timeout=5), store, identity

    @pytest.mark.asyncio
    async def test_no_flow_without_401(self, tmp_path):
        """Test that requests go out unauthenticated until challenged."""
        source, _, _ = self._source(tmp_path)
        seen = []

        def handler(request):
            seen.append(request.headers.get("Authorization"))
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), auth=source) as client:
            response = await client.get(SERVER_URL)

        assert response.status_code == 200
        assert seen == [None]
        source.coordinator.initialize_auth.assert_not_called()

    @pytest.mark.asyncio
    async def test_401_triggers_authorization_and_retry(self, tmp_path):
        """Test the lazy authorization path."""
        source, _, _ = self._source(tmp_path)
        seen = []

        def handler(request):
            seen.append(request.headers.get("Authorization"))
            if request.headers.get("Authorization") == "Bearer fresh":
                return httpx.Response(200)
            return httpx.Response(401)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), auth=source) as client:
            response = await client.get(SERVER_URL)

        assert response.status_code == 200
        assert seen == [None, "Bearer fresh"]
        source.coordinator.initialize_auth.assert_awaited_once_with(5)

    @pytest.mark.asyncio
    async def test_adopts_newer_stored_token(self, tmp_path):
        """Test that a token stored by another instance is used without a flow."""
        source, store, identity = self._source(tmp_path)
        await store.write_tokens(identity, TokenSet(access_token="sibling", expires_in=3600))

        token = await source.handle_unauthorized(rejected_token="revoked")

        assert token == "sibling"
        source.coordinator.initialize_auth.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejected_token_is_invalidated(self, tmp_path):
        """Test that a refused token without refresh leads to a new flow."""
        source, store, identity = self._source(tmp_path)
        await store.write_tokens(identity, TokenSet(access_token="revoked", expires_in=3600))

        token = await source.handle_unauthorized(rejected_token="revoked")

        assert token == "fresh"
        source.provider.invalidate_credentials.assert_awaited_once_with("tokens")
        source.coordinator.initialize_auth.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_expired_token_refreshes_at_advertised_endpoint(self, tmp_path):
        """Test that an expired stored token is refreshed via the metadata token endpoint."""
        from mcp_auth.provider import OAuthClientProvider
        from mcp_auth.store import CredentialStore
        from mcp_auth.token_source import TokenSource

        requests = []

        def handler(request):
            requests.append(request)
            if request.url.path == "/.well-known/oauth-authorization-server":
                return httpx.Response(200, json={
                    "issuer": "https://auth.example.com",
                    "token_endpoint": "https://auth.example.com/oauth2/token",
                })
            if str(request.url) == "https://auth.example.com/oauth2/token":
                return httpx.Response(200, json={"access_token": "renewed", "expires_in": 3600})
            return httpx.Response(404)

        identity = ServerIdentity.from_url(SERVER_URL)
        store = CredentialStore(tmp_path)
        provider = OAuthClientProvider(
            identity,
            store,
            AuthSettings(config_dir=str(tmp_path)),
            CALLBACK_PORT,
            http_client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )
        coordinator = AsyncMock()
        source = TokenSource(identity, store, provider, coordinator, auth_timeout=5)

        await store.write_client(identity, ClientCredential(client_id="abc"))
        await store.write_tokens(identity, TokenSet(
            access_token="stale",
            refresh_token="refresh-1",
            expires_in=60,
            obtained_at=0,
        ))

        token = await source.get_token()

        assert token == "renewed"
        token_requests = [r for r in requests if r.method == "POST"]
        assert [str(r.url) for r in token_requests] == ["https://auth.example.com/oauth2/token"]
        form = parse_qs(token_requests[0].content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["refresh-1"]
        assert (await store.read_tokens(identity)).access_token == "renewed"
        coordinator.initialize_auth.assert_not_called()

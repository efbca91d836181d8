"""Tests for configuration, logging and the command line."""

import pytest

from shared.config import Settings, get_settings
from shared.models import TransportStrategy


@pytest.fixture
def isolated_settings(tmp_path, monkeypatch):
    """Point settings at an empty config file and reset the cache."""
    monkeypatch.setenv("MCP_REMOTE_CONFIG_PATH", str(tmp_path / "missing.yaml"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestSettings:
    """Tests for the settings layer."""

    def test_defaults(self, isolated_settings):
        settings = get_settings()

        assert settings.proxy.transport_strategy == TransportStrategy.HTTP_FIRST
        assert settings.auth.timeout_seconds == 30.0
        assert settings.auth.callback_path == "/oauth/callback"
        assert not settings.tls.is_configured

    def test_from_yaml(self, tmp_path):
        """Test loading nested sections from YAML."""
        config = tmp_path / "settings.yaml"
        config.write_text(
            "log_level: DEBUG\n"
            "proxy:\n"
            "  server_url: https://mcp.example.com/mcp\n"
            "  transport_strategy: sse-first\n"
            "  ignored_tools: [delete_*]\n"
            "auth:\n"
            "  callback_port: 4000\n"
            "tls:\n"
            "  reject_unauthorized: false\n"
        )

        settings = Settings.from_yaml(config)

        assert settings.log_level == "DEBUG"
        assert settings.proxy.transport_strategy == TransportStrategy.SSE_FIRST
        assert settings.proxy.ignored_tools == ["delete_*"]
        assert settings.auth.callback_port == 4000
        assert settings.tls.is_configured

    @pytest.mark.parametrize("environment,json_logs,expected", [
        ("development", False, False),
        ("production", False, True),
        ("development", True, True),
    ])
    def test_log_renderer_follows_environment(self, environment, json_logs, expected):
        """Test that production always logs JSON."""
        settings = Settings(environment=environment, json_logs=json_logs)

        assert settings.use_json_logs is expected

    def test_environment_overrides(self, monkeypatch):
        """Test environment variables for a component section."""
        monkeypatch.setenv("MCP_REMOTE_AUTH_TIMEOUT_SECONDS", "90")

        from shared.config import AuthSettings

        assert AuthSettings().timeout_seconds == 90.0


class TestRedaction:
    """Tests for log redaction."""

    def test_sensitive_keys_masked(self):
        from shared.logging import redact_sensitive

        event = redact_sensitive(None, "info", {
            "event": "Saving tokens",
            "access_token": "secret",
            "Authorization": "Bearer secret",
            "server": "https://mcp.example.com",
        })

        assert event["access_token"] == "[REDACTED]"
        assert event["Authorization"] == "[REDACTED]"
        assert event["server"] == "https://mcp.example.com"


class TestCommandLine:
    """Tests for argument parsing and URL validation."""

    def test_parse_args(self, isolated_settings, monkeypatch):
        """Test that flags land in the settings."""
        from mcp_proxy.main import parse_args

        monkeypatch.setenv("API_KEY", "k-123")

        settings = parse_args([
            "https://mcp.example.com/mcp",
            "4000",
            "--header", "X-Api-Key: ${API_KEY}",
            "--ignore-tool", "delete_*",
            "--ignore-tool", "admin",
            "--transport", "sse-only",
            "--tls-no-verify",
            "--tls-passphrase", "hunter2",
            "--static-oauth-client-metadata", '{"scope": "read"}',
        ])

        assert settings.proxy.server_url == "https://mcp.example.com/mcp"
        assert settings.proxy.headers == {"X-Api-Key": "k-123"}
        assert settings.proxy.ignored_tools == ["delete_*", "admin"]
        assert settings.proxy.transport_strategy == TransportStrategy.SSE_ONLY
        assert settings.auth.callback_port == 4000
        assert settings.auth.static_client_metadata == {"scope": "read"}
        assert not settings.tls.reject_unauthorized
        assert settings.tls.passphrase.get_secret_value() == "hunter2"

    def test_parse_args_does_not_touch_cached_settings(self, isolated_settings):
        from mcp_proxy.main import parse_args

        parse_args(["https://mcp.example.com/mcp", "--ignore-tool", "danger"])

        assert get_settings().proxy.ignored_tools == []

    def test_invalid_header(self, isolated_settings):
        from mcp_proxy.main import parse_args

        with pytest.raises(SystemExit):
            parse_args(["https://mcp.example.com/mcp", "--header", "no-colon"])

    @pytest.mark.parametrize("url,allow_http", [
        ("https://mcp.example.com/mcp", False),
        ("http://localhost:8080/mcp", False),
        ("http://127.0.0.1/mcp", False),
        ("http://mcp.internal/mcp", True),
    ])
    def test_accepted_urls(self, url, allow_http):
        from mcp_proxy.main import validate_server_url

        validate_server_url(url, allow_http)

    @pytest.mark.parametrize("url", [
        "http://mcp.example.com/mcp",
        "ftp://mcp.example.com",
        "not a url",
    ])
    def test_rejected_urls(self, url):
        from mcp_proxy.main import validate_server_url

        with pytest.raises(ValueError):
            validate_server_url(url, allow_http=False)

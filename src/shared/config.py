"""Configuration management for the MCP remote proxy.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once and cached for performance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.models import TransportStrategy


class TLSSettings(BaseSettings):
    """Client TLS identity configuration."""
    cert: Optional[str] = Field(default=None, description="Client certificate (PEM)")
    key: Optional[str] = Field(default=None, description="Client private key (PEM)")
    ca: Optional[str] = Field(default=None, description="CA bundle for server verification (PEM)")
    passphrase: Optional[SecretStr] = Field(default=None, description="Private key passphrase")
    reject_unauthorized: bool = Field(default=True)

    model_config = SettingsConfigDict(
        env_prefix="MCP_REMOTE_TLS_",
        env_file=".env",
        extra="ignore"
    )

    @property
    def is_configured(self) -> bool:
        """True when any field departs from the defaults."""
        return any((self.cert, self.key, self.ca, self.passphrase)) or not self.reject_unauthorized


class AuthSettings(BaseSettings):
    """OAuth authorization configuration."""
    callback_port: Optional[int] = Field(default=None, ge=0, le=65535)
    host: str = Field(default="localhost")
    callback_path: str = Field(default="/oauth/callback")
    timeout_seconds: float = Field(default=30.0, gt=0)
    poll_interval_seconds: float = Field(default=0.5, gt=0)
    settle_seconds: float = Field(default=0.0, ge=0)
    lease_grace_seconds: float = Field(default=5.0, ge=0)
    config_dir: str = Field(default="~/.mcp-auth")

    # Client registration
    client_name: str = Field(default="MCP CLI Proxy")
    client_uri: str = Field(default="https://github.com/modelcontextprotocol/mcp-cli")
    software_id: str = Field(default="2e6dc280-f3c3-4e01-99a7-8181dbd1d23d")
    software_version: str = Field(default="0.1.0")
    authorize_resource: str = Field(default="")
    static_client_metadata: Optional[dict[str, Any]] = Field(default=None)
    static_client_info: Optional[dict[str, Any]] = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="MCP_REMOTE_AUTH_",
        env_file=".env",
        extra="ignore"
    )

    @property
    def config_path(self) -> Path:
        return Path(self.config_dir).expanduser()


class ProxySettings(BaseSettings):
    """Remote endpoint and relay configuration."""
    server_url: str = Field(default="")
    transport_strategy: TransportStrategy = Field(default=TransportStrategy.HTTP_FIRST)
    headers: dict[str, str] = Field(default_factory=dict)
    ignored_tools: list[str] = Field(default_factory=list)
    allow_http: bool = Field(default=False)
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="MCP_REMOTE_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)

    # Component settings
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    tls: TLSSettings = Field(default_factory=TLSSettings)

    model_config = SettingsConfigDict(
        env_prefix="MCP_REMOTE_",
        env_file=".env",
        extra="ignore"
    )

    @property
    def use_json_logs(self) -> bool:
        """JSON log lines in production, console rendering otherwise."""
        return self.json_logs or self.environment == "production"

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        return cls(**load_yaml_config(path))


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("MCP_REMOTE_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)

"""Discovery HTTP client configuration.

Configuration sources:
1. Builder options (``DiscoveryHttpClientBuilder.with_*``)
2. Environment variables (DISCOVERY_HTTP_ prefix) via ``ClientSettings``
3. Defaults
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CLIENT_NAME = "DiscoveryClient"
DEFAULT_CONNECT_TIMEOUT_MS = 5 * 1000
DEFAULT_READ_TIMEOUT_MS = 8 * 1000
DEFAULT_IDLE_TIMEOUT_S = 30
DEFAULT_MAX_CONNECTIONS_PER_HOST = 50
DEFAULT_MAX_TOTAL_CONNECTIONS = 200
DEFAULT_CLEANUP_INTERVAL_MS = 30 * 1000

DecoderAccept = Literal["full", "compact"]


class SystemTrust(BaseModel):
    """Use the platform trust store."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["system"] = "system"


class TrustStoreFile(BaseModel):
    """Use a caller-supplied trust store file.

    PKCS#12 stores are decrypted with ``password``; PEM bundles ignore it.
    Hostname verification is disabled for this strategy.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["file"] = "file"
    path: Path
    password: SecretStr | None = None


TrustStrategy = SystemTrust | TrustStoreFile


class ProxyConfig(BaseModel):
    """Forward proxy used for every connection the pool opens."""

    model_config = ConfigDict(frozen=True)

    host: str = Field(min_length=1)
    port: int = Field(gt=0, le=65535)
    username: str | None = None
    password: SecretStr | None = None
    scheme: Literal["http", "https"] = "http"

    @property
    def uri(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"

    @property
    def has_credentials(self) -> bool:
        return self.username is not None and self.password is not None


class ClientConfig(BaseModel):
    """Immutable client configuration assembled by the builder."""

    model_config = ConfigDict(frozen=True)

    client_name: str = Field(default=DEFAULT_CLIENT_NAME, min_length=1)
    user_agent: str | None = None

    connect_timeout_ms: int = Field(default=DEFAULT_CONNECT_TIMEOUT_MS, gt=0)
    read_timeout_ms: int = Field(default=DEFAULT_READ_TIMEOUT_MS, gt=0)
    connection_idle_timeout_s: float = Field(default=DEFAULT_IDLE_TIMEOUT_S, ge=0)

    max_connections_per_host: int = Field(default=DEFAULT_MAX_CONNECTIONS_PER_HOST, gt=0)
    max_total_connections: int = Field(default=DEFAULT_MAX_TOTAL_CONNECTIONS, gt=0)

    trust: TrustStrategy | None = None
    proxy: ProxyConfig | None = None

    encoder_name: str = "json"
    decoder_name: str = "json"
    decoder_accept: DecoderAccept = "full"

    # Redirects are handled by the caller so a request stays pinned to one server.
    follow_redirects: Literal[False] = False

    cleanup_interval_ms: int = Field(default=DEFAULT_CLEANUP_INTERVAL_MS, gt=0)

    @property
    def connect_timeout(self) -> float:
        """Connect timeout in seconds."""
        return self.connect_timeout_ms / 1000

    @property
    def read_timeout(self) -> float:
        """Read timeout in seconds."""
        return self.read_timeout_ms / 1000

    @property
    def cleanup_interval(self) -> float:
        """Reaper interval in seconds."""
        return self.cleanup_interval_ms / 1000


class ProxySettings(BaseModel):
    """Proxy section of ``ClientSettings``."""

    host: str | None = None
    port: int | None = None
    username: str | None = None
    password: SecretStr | None = None


class TrustStoreSettings(BaseModel):
    """TLS section of ``ClientSettings``."""

    system: bool = False
    file: Path | None = None
    password: SecretStr | None = None


class ClientSettings(BaseSettings):
    """Environment-driven client settings.

    Example:
        DISCOVERY_HTTP_CLIENT_NAME=registry-agent
        DISCOVERY_HTTP_PROXY__HOST=proxy.internal
        DISCOVERY_HTTP_PROXY__PORT=3128
        DISCOVERY_HTTP_TLS__FILE=/etc/agent/truststore.p12
    """

    model_config = SettingsConfigDict(
        env_prefix="DISCOVERY_HTTP_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    client_name: str = DEFAULT_CLIENT_NAME
    user_agent: str | None = None
    connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS
    read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS
    connection_idle_timeout_s: float = DEFAULT_IDLE_TIMEOUT_S
    max_connections_per_host: int = DEFAULT_MAX_CONNECTIONS_PER_HOST
    max_total_connections: int = DEFAULT_MAX_TOTAL_CONNECTIONS
    encoder: str = "json"
    decoder: str = "json"
    decoder_accept: DecoderAccept = "full"

    proxy: ProxySettings = Field(default_factory=ProxySettings)
    tls: TrustStoreSettings = Field(default_factory=TrustStoreSettings)

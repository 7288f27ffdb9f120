"""Discovery HTTP client.

A pooled, long-lived HTTP client for service-discovery agents talking to a
cluster of registry servers.
"""

from discovery_http._version import build_version
from discovery_http.client import (
    DiscoveryHttpClient,
    DiscoveryHttpClientBuilder,
    compose_user_agent,
)
from discovery_http.codecs import CodecPair, CodecRegistry, JsonCodec, default_registry
from discovery_http.config import (
    ClientConfig,
    ClientSettings,
    ProxyConfig,
    SystemTrust,
    TrustStoreFile,
)
from discovery_http.errors import (
    CleanupError,
    ClientBuildError,
    ConfigurationError,
    DiscoveryHttpError,
    PoolClosedError,
    PoolExhaustedError,
)
from discovery_http.metrics import InMemoryMetrics, MetricsSink, PrometheusMetrics
from discovery_http.pool import ConnectionPool, PooledConnection, PoolStats, Route
from discovery_http.proxy import apply_proxy
from discovery_http.reaper import IdleConnectionReaper, ReaperState
from discovery_http.tls import resolve_trust

__all__ = [
    # Client
    "DiscoveryHttpClient",
    "DiscoveryHttpClientBuilder",
    "compose_user_agent",
    "build_version",
    # Config
    "ClientConfig",
    "ClientSettings",
    "ProxyConfig",
    "SystemTrust",
    "TrustStoreFile",
    # Transport
    "ConnectionPool",
    "PooledConnection",
    "PoolStats",
    "Route",
    "apply_proxy",
    "resolve_trust",
    "IdleConnectionReaper",
    "ReaperState",
    # Codecs
    "CodecPair",
    "CodecRegistry",
    "JsonCodec",
    "default_registry",
    # Metrics
    "MetricsSink",
    "InMemoryMetrics",
    "PrometheusMetrics",
    # Errors
    "DiscoveryHttpError",
    "ConfigurationError",
    "ClientBuildError",
    "CleanupError",
    "PoolExhaustedError",
    "PoolClosedError",
]

__version__ = build_version()

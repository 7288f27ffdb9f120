"""Proxy configuration for the connection pool."""

from __future__ import annotations

import structlog

from discovery_http.config import ProxyConfig
from discovery_http.pool import ConnectionPool

logger = structlog.get_logger()

# Sent only when placeholder credentials are enabled and none are configured.
PLACEHOLDER_PROXY_CREDENTIALS = ("guest", "guest")


def proxy_credentials(
    proxy: ProxyConfig,
    *,
    placeholder_credentials: bool = False,
) -> tuple[str, str] | None:
    """Credentials to send to the proxy, or None for an anonymous proxy."""
    if proxy.has_credentials:
        return (proxy.username, proxy.password.get_secret_value())
    if placeholder_credentials:
        return PLACEHOLDER_PROXY_CREDENTIALS
    return None


def apply_proxy(
    pool: ConnectionPool,
    proxy: ProxyConfig,
    *,
    placeholder_credentials: bool = False,
) -> None:
    """Attach ``proxy`` to the pool's connection-establishment path.

    Args:
        pool: Pool that has not opened any connection yet
        proxy: Proxy host, port and optional credentials
        placeholder_credentials: Send guest/guest when no credentials are set
    """
    auth = proxy_credentials(proxy, placeholder_credentials=placeholder_credentials)
    if auth is PLACEHOLDER_PROXY_CREDENTIALS:
        logger.warning("proxy.placeholder_credentials", proxy=proxy.uri)
    pool.configure_proxy(proxy.uri, auth)

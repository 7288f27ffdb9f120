"""Discovery HTTP client error types.

Construction problems surface synchronously from ``build()``; maintenance
problems (``CleanupError``) stay inside the background worker.
"""

from __future__ import annotations

from typing import Any


class DiscoveryHttpError(Exception):
    """Base error for all discovery HTTP client exceptions."""

    code: str = "internal_error"
    message: str = "An internal error occurred"

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.__class__.message
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(DiscoveryHttpError):
    """Invalid static configuration (trust store, codec name, ...)."""

    code = "configuration_error"
    message = "Invalid client configuration"


class ClientBuildError(DiscoveryHttpError):
    """Client assembly failed; the root cause is chained as ``__cause__``."""

    code = "client_build_error"
    message = "Cannot create HTTP client"


class CleanupError(DiscoveryHttpError):
    """A single idle-connection cleanup run failed."""

    code = "cleanup_error"
    message = "Cannot clean connections"


class PoolExhaustedError(DiscoveryHttpError):
    """No pooled connection became available within the pool timeout."""

    code = "pool_exhausted"
    message = "Timed out waiting for a pooled connection"


class PoolClosedError(DiscoveryHttpError):
    """The connection pool has been closed."""

    code = "pool_closed"
    message = "Connection pool is closed"

"""Discovery HTTP client and its builder.

Example:
    client = (
        DiscoveryHttpClientBuilder()
        .with_client_name("registry-agent")
        .with_connection_timeout(5000)
        .with_read_timeout(8000)
        .with_connection_idle_timeout(30)
        .with_max_connections_per_host(50)
        .with_max_total_connections(200)
        .with_system_ssl_configuration()
        .build()
    )
    try:
        response = client.get_client().get("https://registry-1:8443/eureka/apps")
    finally:
        client.destroy_resources()
"""

from __future__ import annotations

import threading
from pathlib import Path
from types import TracebackType
from typing import Any, Callable

import httpx
import structlog

from discovery_http._version import build_version
from discovery_http.codecs import (
    CodecPair,
    CodecRegistry,
    DecoderWrapper,
    EncoderWrapper,
    default_registry,
)
from discovery_http.config import DEFAULT_CLIENT_NAME, ClientConfig, ClientSettings
from discovery_http.errors import ClientBuildError
from discovery_http.metrics import InMemoryMetrics, MetricsSink
from discovery_http.pool import ConnectionFactory, ConnectionPool
from discovery_http.proxy import apply_proxy
from discovery_http.reaper import IdleConnectionReaper
from discovery_http.tls import resolve_trust

logger = structlog.get_logger()


def compose_user_agent(user_agent: str | None, client_name: str, version: str) -> str:
    """``(user_agent or client_name)/v<version>``."""
    return f"{user_agent or client_name}/v{version}"


class DiscoveryHttpClient:
    """Built client: a pooled ``httpx.Client`` plus its idle connection reaper.

    Owned by the caller that built it; release it with
    ``destroy_resources()`` (or use it as a context manager).
    """

    def __init__(
        self,
        config: ClientConfig,
        http_client: httpx.Client,
        pool: ConnectionPool,
        reaper: IdleConnectionReaper,
        codecs: CodecPair,
        user_agent: str,
    ) -> None:
        self._config = config
        self._http_client = http_client
        self._pool = pool
        self._reaper = reaper
        self._codecs = codecs
        self._user_agent = user_agent
        self._destroy_lock = threading.Lock()
        self._destroyed = False
        self._log = logger.bind(component="discovery_http_client", client=config.client_name)

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def reaper(self) -> IdleConnectionReaper:
        return self._reaper

    @property
    def codecs(self) -> CodecPair:
        return self._codecs

    @property
    def user_agent(self) -> str:
        return self._user_agent

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    def get_client(self) -> httpx.Client:
        """Get the underlying httpx client used to issue requests."""
        return self._http_client

    def destroy_resources(self) -> None:
        """Stop the reaper, then close the client and its pool.

        Safe to call more than once.
        """
        with self._destroy_lock:
            if self._destroyed:
                return
            self._destroyed = True

        self._reaper.stop()
        self._http_client.close()
        self._log.info("client.destroyed")

    def __enter__(self) -> DiscoveryHttpClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.destroy_resources()


class DiscoveryHttpClientBuilder:
    """Fluent builder for ``DiscoveryHttpClient``.

    Setters only record options; everything is validated and assembled in
    ``build()``. Not thread-safe; build once during startup.
    """

    def __init__(self) -> None:
        self._options: dict[str, Any] = {}
        self._encoder_wrapper: EncoderWrapper | None = None
        self._decoder_wrapper: DecoderWrapper | None = None
        self._codec_registry: CodecRegistry | None = None
        self._metrics: MetricsSink | None = None
        self._version_provider: Callable[[], str] = build_version
        self._connection_factory: ConnectionFactory | None = None
        self._placeholder_proxy_credentials = False
        self._system_ssl = False
        self._trust_store: dict[str, Any] | None = None

    @classmethod
    def from_settings(cls, settings: ClientSettings) -> DiscoveryHttpClientBuilder:
        """Builder preloaded from environment-driven settings."""
        builder = (
            cls()
            .with_client_name(settings.client_name)
            .with_user_agent(settings.user_agent)
            .with_connection_timeout(settings.connect_timeout_ms)
            .with_read_timeout(settings.read_timeout_ms)
            .with_connection_idle_timeout(settings.connection_idle_timeout_s)
            .with_max_connections_per_host(settings.max_connections_per_host)
            .with_max_total_connections(settings.max_total_connections)
            .with_encoder(settings.encoder)
            .with_decoder(settings.decoder, settings.decoder_accept)
        )

        proxy = settings.proxy
        if proxy.host:
            builder.with_proxy(
                proxy.host,
                proxy.port,
                proxy.username,
                proxy.password.get_secret_value() if proxy.password else None,
            )

        tls = settings.tls
        if tls.system:
            builder.with_system_ssl_configuration()
        elif tls.file is not None:
            builder.with_trust_store_file(
                tls.file,
                tls.password.get_secret_value() if tls.password else None,
            )
        return builder

    def with_client_name(self, client_name: str) -> DiscoveryHttpClientBuilder:
        self._options["client_name"] = client_name
        return self

    def with_user_agent(self, user_agent: str | None) -> DiscoveryHttpClientBuilder:
        self._options["user_agent"] = user_agent
        return self

    def with_connection_timeout(self, timeout_ms: int) -> DiscoveryHttpClientBuilder:
        self._options["connect_timeout_ms"] = timeout_ms
        return self

    def with_read_timeout(self, timeout_ms: int) -> DiscoveryHttpClientBuilder:
        self._options["read_timeout_ms"] = timeout_ms
        return self

    def with_connection_idle_timeout(self, timeout_s: float) -> DiscoveryHttpClientBuilder:
        self._options["connection_idle_timeout_s"] = timeout_s
        return self

    def with_max_connections_per_host(self, max_connections: int) -> DiscoveryHttpClientBuilder:
        self._options["max_connections_per_host"] = max_connections
        return self

    def with_max_total_connections(self, max_connections: int) -> DiscoveryHttpClientBuilder:
        self._options["max_total_connections"] = max_connections
        return self

    def with_connection_cleaner_interval(self, interval_ms: int) -> DiscoveryHttpClientBuilder:
        self._options["cleanup_interval_ms"] = interval_ms
        return self

    def with_proxy(
        self,
        host: str,
        port: int | str,
        user: str | None = None,
        password: str | None = None,
    ) -> DiscoveryHttpClientBuilder:
        self._options["proxy"] = {
            "host": host,
            "port": port,
            "username": user,
            "password": password,
        }
        return self

    def with_placeholder_proxy_credentials(self, enabled: bool = True) -> DiscoveryHttpClientBuilder:
        """Send guest/guest to the proxy when no credentials are configured."""
        self._placeholder_proxy_credentials = enabled
        return self

    def with_system_ssl_configuration(self) -> DiscoveryHttpClientBuilder:
        """Trust the platform store. Takes priority over a trust store file."""
        self._system_ssl = True
        return self

    def with_trust_store_file(
        self,
        path: str | Path,
        password: str | None,
    ) -> DiscoveryHttpClientBuilder:
        """Trust the anchors in ``path`` unless system SSL is also configured."""
        self._trust_store = {"kind": "file", "path": path, "password": password}
        return self

    def with_encoder(self, encoder_name: str) -> DiscoveryHttpClientBuilder:
        self._options["encoder_name"] = encoder_name
        self._encoder_wrapper = None
        return self

    def with_encoder_wrapper(self, encoder: EncoderWrapper) -> DiscoveryHttpClientBuilder:
        self._encoder_wrapper = encoder
        return self

    def with_decoder(self, decoder_name: str, accept: str = "full") -> DiscoveryHttpClientBuilder:
        self._options["decoder_name"] = decoder_name
        self._options["decoder_accept"] = accept
        self._decoder_wrapper = None
        return self

    def with_decoder_wrapper(self, decoder: DecoderWrapper) -> DiscoveryHttpClientBuilder:
        self._decoder_wrapper = decoder
        return self

    def with_codec_registry(self, registry: CodecRegistry) -> DiscoveryHttpClientBuilder:
        self._codec_registry = registry
        return self

    def with_metrics(self, metrics: MetricsSink) -> DiscoveryHttpClientBuilder:
        self._metrics = metrics
        return self

    def with_version_provider(self, provider: Callable[[], str]) -> DiscoveryHttpClientBuilder:
        self._version_provider = provider
        return self

    def with_connection_factory(self, factory: ConnectionFactory) -> DiscoveryHttpClientBuilder:
        """Override how the pool opens connections (custom transports, tests)."""
        self._connection_factory = factory
        return self

    def build(self) -> DiscoveryHttpClient:
        """Validate options and assemble the client.

        Raises:
            ClientBuildError: Any assembly failure; the cause is chained
        """
        client_name = self._options.get("client_name") or DEFAULT_CLIENT_NAME
        log = logger.bind(component="discovery_http_builder", client=client_name)

        pool: ConnectionPool | None = None
        http_client: httpx.Client | None = None
        try:
            config = ClientConfig(**self._options, trust=self._trust_option())

            pool = ConnectionPool(
                config.client_name,
                ssl_context=resolve_trust(config.trust),
                max_per_route=config.max_connections_per_host,
                max_total=config.max_total_connections,
                connection_factory=self._connection_factory,
            )

            if config.proxy is not None:
                apply_proxy(
                    pool,
                    config.proxy,
                    placeholder_credentials=self._placeholder_proxy_credentials,
                )

            codecs = self._resolve_codecs(config)

            user_agent = compose_user_agent(
                config.user_agent,
                config.client_name,
                self._version_provider(),
            )

            http_client = httpx.Client(
                transport=pool,
                timeout=httpx.Timeout(
                    connect=config.connect_timeout,
                    read=config.read_timeout,
                    write=config.read_timeout,
                    pool=config.connect_timeout,
                ),
                follow_redirects=config.follow_redirects,
                headers={"User-Agent": user_agent, **codecs.headers()},
                trust_env=False,
            )

            reaper = IdleConnectionReaper(
                pool,
                config.connection_idle_timeout_s,
                interval=config.cleanup_interval,
                metrics=self._metrics if self._metrics is not None else InMemoryMetrics(),
                name=config.client_name,
            )
            reaper.start()
        except Exception as e:
            log.error("client.build.failed", error=str(e), error_type=type(e).__name__)
            if http_client is not None:
                http_client.close()
            elif pool is not None:
                pool.close()
            raise ClientBuildError(
                f"Cannot create HTTP client {client_name}",
                details={"client_name": client_name, "cause": str(e)},
            ) from e

        log.info(
            "client.built",
            user_agent=user_agent,
            max_connections_per_host=config.max_connections_per_host,
            max_total_connections=config.max_total_connections,
            trust=config.trust.kind if config.trust else "default",
            proxy=config.proxy.uri if config.proxy else None,
        )
        return DiscoveryHttpClient(config, http_client, pool, reaper, codecs, user_agent)

    def _trust_option(self) -> dict[str, Any] | None:
        if self._system_ssl:
            return {"kind": "system"}
        return self._trust_store

    def _resolve_codecs(self, config: ClientConfig) -> CodecPair:
        registry = self._codec_registry or default_registry()
        encoder = self._encoder_wrapper or registry.get_encoder(config.encoder_name)
        decoder = self._decoder_wrapper or registry.resolve_decoder(
            config.decoder_name, config.decoder_accept
        )
        return CodecPair(encoder=encoder, decoder=decoder, accept=config.decoder_accept)

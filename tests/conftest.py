"""Shared fixtures and fakes.

The fakes stand in for real sockets so pool, reaper and client behavior can
be tested without network access.
"""

from __future__ import annotations

import datetime
import http.server
import threading
from pathlib import Path

import httpcore
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    BestAvailableEncryption,
    Encoding,
    pkcs12,
)
from cryptography.x509.oid import NameOID

from discovery_http.pool import Route

TRUST_STORE_PASSWORD = "changeit"


class FakeConnection:
    """In-memory stand-in for an httpcore connection.

    Records every request and answers with a canned response. When a
    ``gate`` is given, ``handle_request`` blocks until it is set.
    """

    def __init__(
        self,
        route: Route,
        *,
        status: int = 200,
        headers: list[tuple[bytes, bytes]] | None = None,
        body: bytes = b'{"applications": []}',
        gate: threading.Event | None = None,
    ) -> None:
        self.route = route
        self.status = status
        self.headers = headers or [(b"Content-Type", b"application/json")]
        self.body = body
        self.gate = gate
        self.requests: list[httpcore.Request] = []
        self.closed = False
        self.expired = False
        self.fail_on_close = False
        self.close_calls = 0

    def handle_request(self, request: httpcore.Request) -> httpcore.Response:
        self.requests.append(request)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        return httpcore.Response(self.status, headers=self.headers, content=self.body)

    def is_available(self) -> bool:
        return not self.closed

    def has_expired(self) -> bool:
        return self.expired

    def is_idle(self) -> bool:
        return not self.closed

    def is_closed(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.close_calls += 1
        if self.fail_on_close:
            raise OSError("socket already torn down")
        self.closed = True


class FakeConnectionFactory:
    """Connection factory recording every connection it opens."""

    def __init__(self, **connection_kwargs) -> None:
        self._kwargs = connection_kwargs
        self._lock = threading.Lock()
        self.connections: list[FakeConnection] = []

    def __call__(self, route: Route) -> FakeConnection:
        connection = FakeConnection(route, **self._kwargs)
        with self._lock:
            self.connections.append(connection)
        return connection

    @property
    def opened(self) -> int:
        return len(self.connections)

    def opened_for(self, route: Route) -> int:
        return sum(1 for c in self.connections if c.route == route)

    @property
    def requests(self) -> list[httpcore.Request]:
        return [r for c in self.connections for r in c.requests]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def request_header(request: httpcore.Request, name: str) -> str | None:
    """Look up a header on a recorded httpcore request."""
    wanted = name.lower().encode("ascii")
    for key, value in request.headers:
        if key.lower() == wanted:
            return value.decode("latin-1")
    return None


def make_ca_certificate(common_name: str = "registry-test-ca") -> x509.Certificate:
    """Self-signed CA certificate for trust store tests."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )


@pytest.fixture
def fake_factory() -> FakeConnectionFactory:
    return FakeConnectionFactory()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="session")
def ca_certificate() -> x509.Certificate:
    return make_ca_certificate()


@pytest.fixture
def pkcs12_trust_store(tmp_path: Path, ca_certificate: x509.Certificate) -> Path:
    """Password-protected PKCS#12 trust store holding one CA."""
    data = pkcs12.serialize_key_and_certificates(
        b"registry-trust",
        None,
        None,
        [ca_certificate],
        BestAvailableEncryption(TRUST_STORE_PASSWORD.encode("utf-8")),
    )
    path = tmp_path / "truststore.p12"
    path.write_bytes(data)
    return path


@pytest.fixture
def pem_trust_store(tmp_path: Path, ca_certificate: x509.Certificate) -> Path:
    """PEM bundle holding one CA."""
    path = tmp_path / "truststore.pem"
    path.write_bytes(ca_certificate.public_bytes(Encoding.PEM))
    return path


@pytest.fixture
def corrupt_trust_store(tmp_path: Path) -> Path:
    path = tmp_path / "corrupt.p12"
    path.write_bytes(b"\x30\x82\x00\x10 definitely not a key store")
    return path


class KeepAliveHandler(http.server.BaseHTTPRequestHandler):
    """HTTP/1.1 handler that records the client socket of every request."""

    protocol_version = "HTTP/1.1"

    def do_GET(self) -> None:
        self.server.peers.append(self.client_address)
        body = b'{"applications": []}'
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args) -> None:
        pass


@pytest.fixture
def loopback_server():
    """Keep-alive HTTP server on 127.0.0.1; ``server.peers`` lists client sockets."""
    server = http.server.ThreadingHTTPServer(("127.0.0.1", 0), KeepAliveHandler)
    server.daemon_threads = True
    server.peers = []
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()
    thread.join(timeout=5)

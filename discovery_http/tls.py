"""TLS trust resolution.

Turns a trust strategy into the ``ssl.SSLContext`` the connection pool uses
for ``https`` routes:

- ``None``: no context; the transport default applies
- ``SystemTrust``: the platform trust store
- ``TrustStoreFile``: anchors loaded from a PKCS#12 store or a PEM bundle,
  with hostname verification disabled
"""

from __future__ import annotations

import ssl
from pathlib import Path

import structlog
from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding, pkcs12

from discovery_http.config import SystemTrust, TrustStoreFile, TrustStrategy
from discovery_http.errors import ConfigurationError

logger = structlog.get_logger()

_PEM_MARKER = b"-----BEGIN CERTIFICATE-----"


def resolve_trust(strategy: TrustStrategy | None) -> ssl.SSLContext | None:
    """Resolve a trust strategy into an SSL context.

    Raises:
        ConfigurationError: If a trust store file cannot be loaded
    """
    if strategy is None:
        return None
    if isinstance(strategy, SystemTrust):
        return system_ssl_context()
    if isinstance(strategy, TrustStoreFile):
        password = strategy.password.get_secret_value() if strategy.password else None
        return load_trust_store(strategy.path, password)
    raise ConfigurationError(f"Unsupported trust strategy: {type(strategy).__name__}")


def system_ssl_context() -> ssl.SSLContext:
    """Create a client context backed by the platform trust store."""
    return ssl.create_default_context(ssl.Purpose.SERVER_AUTH)


def load_trust_store(path: str | Path, password: str | None) -> ssl.SSLContext:
    """Load trust anchors from ``path`` into a new client context.

    The caller opted into a private trust anchor, so hostname verification is
    turned off; certificate chain verification stays mandatory.

    Raises:
        ConfigurationError: Missing file, wrong password, corrupt or empty store
    """
    path = Path(path)
    try:
        with open(path, "rb") as f:
            data = f.read()
        certificates = _parse_trust_store(data, password)
        if not certificates:
            raise ValueError("trust store contains no certificates")

        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        cadata = "".join(
            cert.public_bytes(Encoding.PEM).decode("ascii") for cert in certificates
        )
        context.load_verify_locations(cadata=cadata)
    except (OSError, ValueError, TypeError, ssl.SSLError) as e:
        raise ConfigurationError(
            "SSL configuration issue",
            details={"trust_store": str(path), "reason": str(e)},
        ) from e

    context.check_hostname = False
    context.verify_mode = ssl.CERT_REQUIRED

    logger.warning(
        "tls.trust_store.loaded",
        trust_store=str(path),
        certificates=len(certificates),
        hostname_verification=False,
    )
    return context


def _parse_trust_store(data: bytes, password: str | None) -> list[x509.Certificate]:
    """Extract trust anchors from PEM or PKCS#12 bytes."""
    if _PEM_MARKER in data:
        return x509.load_pem_x509_certificates(data)

    secret = password.encode("utf-8") if password is not None else None
    _key, cert, additional = pkcs12.load_key_and_certificates(data, secret)
    certificates = list(additional)
    if cert is not None:
        certificates.insert(0, cert)
    return certificates

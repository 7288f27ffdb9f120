"""Build version lookup."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version as _pkg_version

DISTRIBUTION_NAME = "discovery-http-client"


def build_version() -> str:
    """Return the installed distribution version, or "unknown"."""
    try:
        return _pkg_version(DISTRIBUTION_NAME)
    except PackageNotFoundError:
        return "unknown"

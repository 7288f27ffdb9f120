"""Codec registry.

The client resolves a named encoder and decoder at build time and attaches
them to the product; it never calls them itself. Calling code uses
``client.codecs`` to serialize request bodies and parse responses.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import TypeAdapter

from discovery_http.errors import ConfigurationError

ACCEPT_MODE_HEADER = "X-Discovery-Accept"


class EncoderWrapper(Protocol):
    name: str
    content_type: str

    def encode(self, obj: Any) -> bytes: ...


class DecoderWrapper(Protocol):
    name: str
    content_type: str

    def decode(self, data: bytes, type_: Any = Any) -> Any: ...


class JsonCodec:
    """JSON encoder/decoder with pydantic-backed typed decoding."""

    name = "json"
    content_type = "application/json"

    def encode(self, obj: Any) -> bytes:
        if hasattr(obj, "model_dump"):
            obj = obj.model_dump(mode="json")
        return json.dumps(obj).encode("utf-8")

    def decode(self, data: bytes, type_: Any = Any) -> Any:
        if type_ is Any:
            return json.loads(data)
        return TypeAdapter(type_).validate_json(data)


@dataclass(frozen=True)
class CodecPair:
    """Encoder plus decoder bound to an accept mode (full / compact)."""

    encoder: EncoderWrapper
    decoder: DecoderWrapper
    accept: str = "full"

    def headers(self) -> dict[str, str]:
        """Default request headers implied by the codecs.

        Content-Type is set per request by the caller.
        """
        return {
            "Accept": self.decoder.content_type,
            ACCEPT_MODE_HEADER: self.accept,
        }


class CodecRegistry:
    """Named encoder/decoder lookup."""

    def __init__(self) -> None:
        self._encoders: dict[str, EncoderWrapper] = {}
        self._decoders: dict[str, DecoderWrapper] = {}

    def register_encoder(self, encoder: EncoderWrapper) -> None:
        self._encoders[encoder.name] = encoder

    def register_decoder(self, decoder: DecoderWrapper) -> None:
        self._decoders[decoder.name] = decoder

    def get_encoder(self, name: str) -> EncoderWrapper:
        try:
            return self._encoders[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown encoder: {name}",
                details={"available": sorted(self._encoders)},
            ) from None

    def resolve_decoder(self, name: str, accept: str = "full") -> DecoderWrapper:
        """Look up a decoder; ``compact`` prefers a ``<name>-compact`` variant."""
        if accept == "compact" and f"{name}-compact" in self._decoders:
            return self._decoders[f"{name}-compact"]
        try:
            return self._decoders[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown decoder: {name}",
                details={"available": sorted(self._decoders)},
            ) from None


def default_registry() -> CodecRegistry:
    """Registry preloaded with the JSON codec."""
    registry = CodecRegistry()
    codec = JsonCodec()
    registry.register_encoder(codec)
    registry.register_decoder(codec)
    return registry

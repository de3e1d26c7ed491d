from __future__ import annotations

import importlib
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from relay_gateway.config import Channel, ChannelType

# Caller headers copied to the upstream request; caller credentials never are.
FORWARDED_CALLER_HEADERS = {"accept-encoding": "Accept-Encoding"}


def _module_available(name: str) -> bool:
    try:
        importlib.import_module(name)
    except Exception:
        return False
    return True


@lru_cache
def decodable_content_codings() -> frozenset[str]:
    """Content codings the upstream client can decode before relaying."""
    codings = {"identity", "gzip", "deflate"}
    if _module_available("brotli") or _module_available("brotlicffi"):
        codings.add("br")
    if _module_available("zstandard"):
        codings.add("zstd")
    return frozenset(codings)


def narrow_accept_encoding(value: str) -> str | None:
    """Keep only codings that can be decoded; ``None`` when nothing is left."""
    supported = decodable_content_codings()
    kept: list[str] = []
    for item in value.split(","):
        item = item.strip()
        coding = item.partition(";")[0].strip().lower()
        if coding and coding in supported:
            kept.append(item)
    return ", ".join(kept) or None


@dataclass(slots=True, frozen=True)
class UpstreamRequest:
    url: str
    headers: dict[str, str]
    body: dict[str, Any]


class ProviderAdapter:
    """Wire differences for one channel type.

    Subclasses override ``build_url`` and ``credential_headers``; the shared
    header and body handling lives here. Implementations must stay pure.
    """

    channel_type: ChannelType = ChannelType.OPENAI

    def build_url(self, channel: Channel, logical_path: str) -> str:
        return f"{_normalize_base_url(channel.base_url)}{logical_path}"

    def credential_headers(self, channel: Channel) -> dict[str, str]:
        return {"Authorization": f"Bearer {channel.resolved_key()}"}

    def build_headers(
        self,
        channel: Channel,
        caller_headers: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        headers.update(self.credential_headers(channel))
        for name, value in (caller_headers or {}).items():
            canonical = FORWARDED_CALLER_HEADERS.get(name.lower())
            if canonical is None or not value:
                continue
            if canonical == "Accept-Encoding":
                value = narrow_accept_encoding(value)
                if value is None:
                    continue
            headers[canonical] = value
        return headers

    def transform_body(self, channel: Channel, body: dict[str, Any]) -> dict[str, Any]:
        transformed = dict(body)
        requested_model = body.get("model")
        if isinstance(requested_model, str):
            transformed["model"] = channel.upstream_model(requested_model)
        return transformed


def _normalize_base_url(base_url: str) -> str:
    return base_url.strip().rstrip("/")

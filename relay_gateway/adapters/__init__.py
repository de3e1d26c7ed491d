"""Provider adapters.

Each channel type maps to one small ``ProviderAdapter``; adding a provider
means registering a new adapter rather than editing a shared branch.

Usage:
    from relay_gateway.adapters import build_upstream_request

    upstream = build_upstream_request(channel, "/v1/chat/completions", body, headers)
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from relay_gateway.adapters.anthropic import AnthropicAdapter
from relay_gateway.adapters.azure import AzureAdapter
from relay_gateway.adapters.base import ProviderAdapter, UpstreamRequest
from relay_gateway.adapters.google import GoogleAdapter
from relay_gateway.adapters.openai import CustomAdapter, OpenAIAdapter
from relay_gateway.config import Channel, ChannelType

_ADAPTER_REGISTRY: dict[ChannelType, ProviderAdapter] = {
    ChannelType.OPENAI: OpenAIAdapter(),
    ChannelType.AZURE: AzureAdapter(),
    ChannelType.ANTHROPIC: AnthropicAdapter(),
    ChannelType.GOOGLE: GoogleAdapter(),
    ChannelType.CUSTOM: CustomAdapter(),
}


def get_adapter(channel_type: ChannelType) -> ProviderAdapter:
    adapter = _ADAPTER_REGISTRY.get(channel_type)
    if adapter is None:
        raise ValueError(
            f"Unknown channel type: {channel_type}. "
            f"Available types: {sorted(item.value for item in _ADAPTER_REGISTRY)}"
        )
    return adapter


def register_adapter(channel_type: ChannelType, adapter: ProviderAdapter) -> None:
    _ADAPTER_REGISTRY[channel_type] = adapter


def build_upstream_request(
    channel: Channel,
    logical_path: str,
    body: dict[str, Any],
    caller_headers: Mapping[str, str] | None = None,
) -> UpstreamRequest:
    adapter = get_adapter(channel.type)
    return UpstreamRequest(
        url=adapter.build_url(channel, logical_path),
        headers=adapter.build_headers(channel, caller_headers),
        body=adapter.transform_body(channel, body),
    )


__all__ = [
    "AnthropicAdapter",
    "AzureAdapter",
    "CustomAdapter",
    "GoogleAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "UpstreamRequest",
    "build_upstream_request",
    "get_adapter",
    "register_adapter",
]

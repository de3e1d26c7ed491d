from __future__ import annotations

from relay_gateway.adapters.base import ProviderAdapter
from relay_gateway.config import Channel, ChannelType

DEFAULT_ANTHROPIC_VERSION = "2023-06-01"
MESSAGES_PATH = "/v1/messages"


class AnthropicAdapter(ProviderAdapter):
    channel_type = ChannelType.ANTHROPIC

    def build_url(self, channel: Channel, logical_path: str) -> str:
        if "/chat/completions" in logical_path:
            logical_path = MESSAGES_PATH
        return super().build_url(channel, logical_path)

    def credential_headers(self, channel: Channel) -> dict[str, str]:
        return {
            "x-api-key": channel.resolved_key(),
            "anthropic-version": channel.api_version or DEFAULT_ANTHROPIC_VERSION,
        }

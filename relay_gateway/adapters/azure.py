from __future__ import annotations

from urllib.parse import urlencode

from relay_gateway.adapters.base import ProviderAdapter
from relay_gateway.config import Channel, ChannelType

DEFAULT_AZURE_API_VERSION = "2024-02-01"


class AzureAdapter(ProviderAdapter):
    channel_type = ChannelType.AZURE

    def build_url(self, channel: Channel, logical_path: str) -> str:
        api_version = channel.api_version or DEFAULT_AZURE_API_VERSION
        query = urlencode({"api-version": api_version})
        return f"{super().build_url(channel, logical_path)}?{query}"

    def credential_headers(self, channel: Channel) -> dict[str, str]:
        return {"api-key": channel.resolved_key()}

from __future__ import annotations

from relay_gateway.adapters.base import ProviderAdapter
from relay_gateway.config import ChannelType


class OpenAIAdapter(ProviderAdapter):
    channel_type = ChannelType.OPENAI


class CustomAdapter(ProviderAdapter):
    """Self-hosted or third-party OpenAI-compatible endpoints."""

    channel_type = ChannelType.CUSTOM

from __future__ import annotations

from relay_gateway.adapters.base import ProviderAdapter
from relay_gateway.config import ChannelType


class GoogleAdapter(ProviderAdapter):
    """Gemini through its OpenAI-compatible endpoint."""

    channel_type = ChannelType.GOOGLE

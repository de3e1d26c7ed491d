from __future__ import annotations

from typing import Protocol

from relay_gateway.config import Channel


class ChannelRegistry(Protocol):
    async def list_enabled_channels(self) -> list[Channel]: ...

    async def list_enabled_channels_for_model(self, model: str) -> list[Channel]: ...

    async def get_channel_by_id(self, channel_id: int) -> Channel | None: ...


class StaticChannelRegistry:
    """Read-only registry over the channels loaded from the gateway document."""

    def __init__(self, channels: list[Channel]) -> None:
        self._channels = sorted(
            channels,
            key=lambda channel: (-channel.priority, -channel.weight, channel.id),
        )
        self._by_id = {channel.id: channel for channel in channels}

    async def list_enabled_channels(self) -> list[Channel]:
        return [channel for channel in self._channels if channel.is_enabled]

    async def list_enabled_channels_for_model(self, model: str) -> list[Channel]:
        return [
            channel
            for channel in self._channels
            if channel.is_enabled and channel.supports_model(model)
        ]

    async def get_channel_by_id(self, channel_id: int) -> Channel | None:
        return self._by_id.get(channel_id)

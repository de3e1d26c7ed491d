from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Literal

from relay_gateway.config import Channel
from relay_gateway.gateway.channel_registry import ChannelRegistry
from relay_gateway.runtime.ttl_cache import ExpiringCache

logger = logging.getLogger("uvicorn.error")

SelectionOutcome = Literal[
    "selected",
    "no_channel_available",
    "channel_selection_failed",
]

CHANNEL_CACHE_KEY_PREFIX = "channels:model:"


@dataclass(slots=True)
class ChannelSelection:
    model: str
    outcome: SelectionOutcome
    channel: Channel | None = None
    candidates: list[Channel] = field(default_factory=list)
    cache_hit: bool = False

    @property
    def selected(self) -> bool:
        return self.outcome == "selected" and self.channel is not None


def pick_weighted(channels: list[Channel], rng: random.Random) -> Channel | None:
    """Weighted random pick over ``channels``.

    Draws ``r`` uniformly in ``[0, total_weight)`` and walks the list
    subtracting weights until the remainder is ``<= 0``. Channels with no
    positive weight are never picked while a positive-weight channel exists;
    when every weight is zero the first channel is returned.
    """
    if not channels:
        return None

    total_weight = sum(max(0, channel.weight) for channel in channels)
    if total_weight <= 0:
        return channels[0]

    remainder = rng.random() * total_weight
    for channel in channels:
        if channel.weight <= 0:
            continue
        remainder -= channel.weight
        if remainder <= 0:
            return channel

    # Float rounding can leave a tiny positive remainder after the last channel.
    for channel in reversed(channels):
        if channel.weight > 0:
            return channel
    return channels[0]


def highest_priority_tier(channels: list[Channel]) -> list[Channel]:
    if not channels:
        return []
    top = max(channel.priority for channel in channels)
    return [channel for channel in channels if channel.priority == top]


class ChannelSelector:
    def __init__(
        self,
        *,
        registry: ChannelRegistry,
        cache: ExpiringCache[str, list[Channel]],
        ttl_seconds: float = 60.0,
        rng: random.Random | None = None,
        priority_tiers: bool = False,
    ) -> None:
        self._registry = registry
        self._cache = cache
        self._ttl_seconds = ttl_seconds
        self._rng = rng or random.Random()
        self._priority_tiers = priority_tiers

    async def eligible_channels(self, model: str) -> tuple[list[Channel], bool]:
        cache_key = f"{CHANNEL_CACHE_KEY_PREFIX}{model}"
        cached, found = self._cache.get(cache_key)
        if found and cached is not None:
            return list(cached), True

        channels = await self._registry.list_enabled_channels_for_model(model)
        enabled = [channel for channel in channels if channel.is_enabled]
        self._cache.set(cache_key, enabled, self._ttl_seconds)
        return list(enabled), False

    async def select_channel(self, model: str) -> ChannelSelection:
        # Registry errors propagate; only business conditions become outcomes.
        candidates, cache_hit = await self.eligible_channels(model)
        if not candidates:
            return ChannelSelection(
                model=model,
                outcome="no_channel_available",
                cache_hit=cache_hit,
            )

        pool = highest_priority_tier(candidates) if self._priority_tiers else candidates
        channel = pick_weighted(pool, self._rng)
        if channel is None:
            return ChannelSelection(
                model=model,
                outcome="channel_selection_failed",
                candidates=candidates,
                cache_hit=cache_hit,
            )

        logger.debug(
            "channel_pick model=%s channel=%s candidates=%d cache_hit=%s",
            model,
            channel.label,
            len(candidates),
            cache_hit,
        )
        return ChannelSelection(
            model=model,
            outcome="selected",
            channel=channel,
            candidates=candidates,
            cache_hit=cache_hit,
        )

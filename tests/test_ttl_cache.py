from __future__ import annotations

from relay_gateway.runtime.ttl_cache import TTLCache


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_ttl_cache_returns_value_until_expiry() -> None:
    clock = _FakeClock()
    cache: TTLCache[str, int] = TTLCache(clock=clock)
    cache.set("a", 1, ttl_seconds=60)

    clock.now += 59.9
    assert cache.get("a") == (1, True)

    clock.now += 0.1
    assert cache.get("a") == (None, False)
    assert len(cache) == 0


def test_ttl_cache_miss_is_distinguished_from_cached_empty_value() -> None:
    cache: TTLCache[str, list[int]] = TTLCache()
    assert cache.get("missing") == (None, False)

    cache.set("empty", [], ttl_seconds=10)
    assert cache.get("empty") == ([], True)


def test_ttl_cache_evicts_oldest_key_when_bounded() -> None:
    cache: TTLCache[str, int] = TTLCache(max_keys=2)
    cache.set("a", 1, ttl_seconds=60)
    cache.set("b", 2, ttl_seconds=60)
    cache.set("c", 3, ttl_seconds=60)

    assert cache.get("a") == (None, False)
    assert cache.get("b") == (2, True)
    assert cache.get("c") == (3, True)


def test_ttl_cache_refresh_does_not_evict_and_non_positive_ttl_deletes() -> None:
    cache: TTLCache[str, int] = TTLCache(max_keys=2)
    cache.set("a", 1, ttl_seconds=60)
    cache.set("b", 2, ttl_seconds=60)
    cache.set("a", 10, ttl_seconds=60)
    assert len(cache) == 2
    assert cache.get("a") == (10, True)

    cache.set("a", 11, ttl_seconds=0)
    assert cache.get("a") == (None, False)
    cache.delete("b")
    assert len(cache) == 0

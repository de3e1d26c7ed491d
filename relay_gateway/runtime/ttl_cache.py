from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Generic, Protocol, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class ExpiringCache(Protocol[K, V]):
    def get(self, key: K) -> tuple[V | None, bool]: ...

    def set(self, key: K, value: V, ttl_seconds: float) -> None: ...


class TTLCache(Generic[K, V]):
    """Bounded key/value cache whose entries expire after a per-entry TTL.

    Entries are not invalidated on writes elsewhere; readers may observe a
    value up to its TTL old. Concurrent refreshes of the same key simply
    overwrite each other.
    """

    def __init__(
        self,
        max_keys: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_keys = max(1, int(max_keys))
        self._clock = clock
        self._data: OrderedDict[K, tuple[float, V]] = OrderedDict()

    def get(self, key: K) -> tuple[V | None, bool]:
        entry = self._data.get(key)
        if entry is None:
            return None, False
        expires_at, value = entry
        if self._clock() >= expires_at:
            self._data.pop(key, None)
            return None, False
        return value, True

    def set(self, key: K, value: V, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            self._data.pop(key, None)
            return
        is_new = key not in self._data
        self._data[key] = (self._clock() + ttl_seconds, value)
        self._data.move_to_end(key)
        if is_new and len(self._data) > self._max_keys:
            self._data.popitem(last=False)

    def delete(self, key: K) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)

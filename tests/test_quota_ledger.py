from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from relay_gateway.gateway.quota_ledger import (
    InMemoryQuotaLedger,
    RedisQuotaLedger,
    UsageRecord,
    build_quota_ledger,
)


def _record(**overrides: Any) -> UsageRecord:
    payload: dict[str, Any] = {
        "account_id": 7,
        "token_id": 11,
        "channel_id": 1,
        "model": "gpt-4",
        "prompt_tokens": 10,
        "completion_tokens": 5,
        "quota": 25,
        "request_id": "req-1",
        "status_code": 200,
    }
    payload.update(overrides)
    return UsageRecord(**payload)


class _FakePipeline:
    def __init__(self, redis: _FakeRedis) -> None:
        self._redis = redis
        self._ops: list[tuple[str, tuple[Any, ...]]] = []

    def hincrby(self, key: str, field: str, amount: int) -> _FakePipeline:
        self._ops.append(("hincrby", (key, field, amount)))
        return self

    def rpush(self, key: str, value: str) -> _FakePipeline:
        self._ops.append(("rpush", (key, value)))
        return self

    def ltrim(self, key: str, start: int, end: int) -> _FakePipeline:
        self._ops.append(("ltrim", (key, start, end)))
        return self

    async def execute(self) -> list[Any]:
        results = []
        for name, args in self._ops:
            results.append(getattr(self._redis, f"_{name}")(*args))
        self._ops.clear()
        return results


class _FakeRedis:
    def __init__(self) -> None:
        self.hashes: dict[str, dict[bytes, bytes]] = {}
        self.lists: dict[str, list[str]] = {}
        self.closed = False

    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        return _FakePipeline(self)

    def _hincrby(self, key: str, field: str, amount: int) -> int:
        bucket = self.hashes.setdefault(key, {})
        current = int(bucket.get(field.encode(), b"0"))
        bucket[field.encode()] = str(current + amount).encode()
        return current + amount

    def _rpush(self, key: str, value: str) -> int:
        self.lists.setdefault(key, []).append(value)
        return len(self.lists[key])

    def _ltrim(self, key: str, start: int, end: int) -> bool:
        items = self.lists.get(key, [])
        stop = None if end == -1 else end + 1
        self.lists[key] = items[start:stop]
        return True

    async def hgetall(self, key: str) -> dict[bytes, bytes]:
        return dict(self.hashes.get(key, {}))

    async def aclose(self) -> None:
        self.closed = True


def test_in_memory_ledger_accumulates_per_token_and_account() -> None:
    sink: list[UsageRecord] = []
    ledger = InMemoryQuotaLedger(max_records=2, usage_sink=sink.append)

    async def _run() -> Any:
        for index in range(3):
            record = _record(request_id=f"req-{index}")
            await ledger.record_usage(record)
            await ledger.debit_token(record.token_id, record.quota)
            await ledger.debit_account(record.account_id, record.quota)
        return (
            await ledger.token_usage(11),
            await ledger.account_usage(7),
            await ledger.token_usage(999),
        )

    token_usage, account_usage, unknown = asyncio.run(_run())

    assert (token_usage.used_quota, token_usage.request_count) == (75, 3)
    assert (account_usage.used_quota, account_usage.request_count) == (75, 3)
    assert (unknown.used_quota, unknown.request_count) == (0, 0)
    assert [record.request_id for record in ledger.usage_records] == ["req-1", "req-2"]
    assert len(sink) == 3
    assert [record.request_id for record in sink] == ["req-0", "req-1", "req-2"]
    assert sink[0].quota == 25


def test_redis_ledger_increments_hashes_and_caps_record_list() -> None:
    redis = _FakeRedis()
    ledger = RedisQuotaLedger(redis, max_records=2)

    async def _run() -> Any:
        for index in range(3):
            await ledger.record_usage(_record(request_id=f"req-{index}"))
            await ledger.debit_token(11, 25)
        await ledger.debit_account(7, 4)
        usage = await ledger.token_usage(11), await ledger.account_usage(7)
        await ledger.close()
        return usage

    token_usage, account_usage = asyncio.run(_run())

    assert (token_usage.used_quota, token_usage.request_count) == (75, 3)
    assert (account_usage.used_quota, account_usage.request_count) == (4, 1)
    stored = [json.loads(item) for item in redis.lists["gateway:usage:records"]]
    assert [item["request_id"] for item in stored] == ["req-1", "req-2"]
    assert redis.closed


def test_build_quota_ledger_uses_in_memory_without_redis_url() -> None:
    ledger = build_quota_ledger(redis_url=None)
    assert isinstance(ledger, InMemoryQuotaLedger)


def test_build_quota_ledger_uses_redis_client_factory() -> None:
    redis = _FakeRedis()
    ledger = build_quota_ledger(
        redis_url="redis://cache:6379/0",
        create_redis_client=lambda _url: redis,
    )
    assert isinstance(ledger, RedisQuotaLedger)


def test_build_quota_ledger_falls_back_when_client_cannot_be_built(
    caplog: Any,
) -> None:
    def _broken(_url: str) -> Any:
        raise ValueError("bad redis url")

    logger = logging.getLogger("relay-gateway-test")
    with caplog.at_level(logging.WARNING, logger="relay-gateway-test"):
        ledger = build_quota_ledger(
            redis_url="redis://cache:6379/0",
            logger=logger,
            create_redis_client=_broken,
        )

    assert isinstance(ledger, InMemoryQuotaLedger)
    assert "quota_ledger_redis_unavailable" in caplog.text

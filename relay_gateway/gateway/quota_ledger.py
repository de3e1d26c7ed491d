from __future__ import annotations

import json
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Protocol

if TYPE_CHECKING:
    import logging


@dataclass(slots=True, frozen=True)
class UsageRecord:
    account_id: int
    token_id: int
    channel_id: int
    model: str
    prompt_tokens: int
    completion_tokens: int
    quota: int
    request_id: str
    status_code: int
    created_at_epoch: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class QuotaUsage:
    used_quota: int = 0
    request_count: int = 0


UsageSink = Callable[[UsageRecord], None]


class QuotaLedger(Protocol):
    async def record_usage(self, record: UsageRecord) -> None: ...

    async def debit_token(self, token_id: int, quota: int) -> None: ...

    async def debit_account(self, account_id: int, quota: int) -> None: ...

    async def token_usage(self, token_id: int) -> QuotaUsage: ...

    async def account_usage(self, account_id: int) -> QuotaUsage: ...


class InMemoryQuotaLedger:
    """Process-local ledger; counters reset on restart."""

    def __init__(
        self,
        *,
        max_records: int = 4096,
        usage_sink: UsageSink | None = None,
    ) -> None:
        self._records: deque[UsageRecord] = deque(maxlen=max(1, int(max_records)))
        self._tokens: dict[int, QuotaUsage] = {}
        self._accounts: dict[int, QuotaUsage] = {}
        self._usage_sink = usage_sink

    @property
    def usage_records(self) -> list[UsageRecord]:
        return list(self._records)

    async def record_usage(self, record: UsageRecord) -> None:
        self._records.append(record)
        if self._usage_sink is not None:
            self._usage_sink(record)

    async def debit_token(self, token_id: int, quota: int) -> None:
        usage = self._tokens.setdefault(token_id, QuotaUsage())
        usage.used_quota += int(quota)
        usage.request_count += 1

    async def debit_account(self, account_id: int, quota: int) -> None:
        usage = self._accounts.setdefault(account_id, QuotaUsage())
        usage.used_quota += int(quota)
        usage.request_count += 1

    async def token_usage(self, token_id: int) -> QuotaUsage:
        usage = self._tokens.get(token_id)
        if usage is None:
            return QuotaUsage()
        return QuotaUsage(used_quota=usage.used_quota, request_count=usage.request_count)

    async def account_usage(self, account_id: int) -> QuotaUsage:
        usage = self._accounts.get(account_id)
        if usage is None:
            return QuotaUsage()
        return QuotaUsage(used_quota=usage.used_quota, request_count=usage.request_count)


class RedisQuotaLedger:
    """Durable counters in redis hashes; debits are plain ``HINCRBY`` deltas."""

    def __init__(
        self,
        redis_client: Any,
        *,
        key_prefix: str = "gateway:quota:",
        records_key: str = "gateway:usage:records",
        max_records: int = 4096,
        usage_sink: UsageSink | None = None,
    ) -> None:
        self._redis = redis_client
        self._key_prefix = key_prefix
        self._records_key = records_key
        self._max_records = max(1, int(max_records))
        self._usage_sink = usage_sink

    def _token_key(self, token_id: int) -> str:
        return f"{self._key_prefix}token:{token_id}"

    def _account_key(self, account_id: int) -> str:
        return f"{self._key_prefix}account:{account_id}"

    @staticmethod
    def _parse_usage(raw: Any) -> QuotaUsage:
        if not isinstance(raw, dict):
            return QuotaUsage()
        decoded = {
            (k.decode("utf-8") if isinstance(k, bytes) else str(k)): (
                v.decode("utf-8") if isinstance(v, bytes) else str(v)
            )
            for k, v in raw.items()
        }

        def _to_int(value: str | None) -> int:
            try:
                return int(value or 0)
            except ValueError:
                return 0

        return QuotaUsage(
            used_quota=_to_int(decoded.get("used_quota")),
            request_count=_to_int(decoded.get("request_count")),
        )

    async def _debit(self, key: str, quota: int) -> None:
        pipeline = self._redis.pipeline(transaction=False)
        pipeline.hincrby(key, "used_quota", int(quota))
        pipeline.hincrby(key, "request_count", 1)
        await pipeline.execute()

    async def record_usage(self, record: UsageRecord) -> None:
        line = json.dumps(record.to_dict(), ensure_ascii=True, separators=(",", ":"))
        pipeline = self._redis.pipeline(transaction=False)
        pipeline.rpush(self._records_key, line)
        pipeline.ltrim(self._records_key, -self._max_records, -1)
        await pipeline.execute()
        if self._usage_sink is not None:
            self._usage_sink(record)

    async def debit_token(self, token_id: int, quota: int) -> None:
        await self._debit(self._token_key(token_id), quota)

    async def debit_account(self, account_id: int, quota: int) -> None:
        await self._debit(self._account_key(account_id), quota)

    async def token_usage(self, token_id: int) -> QuotaUsage:
        return self._parse_usage(await self._redis.hgetall(self._token_key(token_id)))

    async def account_usage(self, account_id: int) -> QuotaUsage:
        return self._parse_usage(
            await self._redis.hgetall(self._account_key(account_id))
        )

    async def close(self) -> None:
        close = getattr(self._redis, "aclose", None)
        if close is not None:
            await close()


def build_quota_ledger(
    *,
    redis_url: str | None,
    logger: logging.Logger | None = None,
    max_records: int = 4096,
    usage_sink: UsageSink | None = None,
    create_redis_client: Callable[[str], Any] | None = None,
) -> QuotaLedger:
    if not redis_url:
        return InMemoryQuotaLedger(max_records=max_records, usage_sink=usage_sink)

    try:
        if create_redis_client is None:
            from redis.asyncio import from_url

            client = from_url(redis_url, decode_responses=False)
        else:
            client = create_redis_client(redis_url)
    except Exception as exc:
        if logger is not None:
            logger.warning(
                "quota_ledger_redis_unavailable reason=%s fallback=in_memory", str(exc)
            )
        return InMemoryQuotaLedger(max_records=max_records, usage_sink=usage_sink)

    return RedisQuotaLedger(
        client,
        max_records=max_records,
        usage_sink=usage_sink,
    )

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Literal

from relay_gateway.config import Channel
from relay_gateway.gateway.auth import TokenContext
from relay_gateway.gateway.quota_ledger import QuotaLedger, UsageRecord

logger = logging.getLogger("uvicorn.error")

EndpointKind = Literal["chat", "embeddings"]

# Lines longer than this are discarded unscanned; forwarding is unaffected.
MAX_SCAN_LINE_BYTES = 1 << 20


@dataclass(slots=True, frozen=True)
class UsageFigures:
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass(slots=True, frozen=True)
class QuotaPolicy:
    prompt_ratio: float = 1.0
    completion_ratio: float = 3.0

    def billed_quota(self, figures: UsageFigures) -> int:
        billed = (
            figures.prompt_tokens * self.prompt_ratio
            + figures.completion_tokens * self.completion_ratio
        )
        return max(0, int(round(billed)))


def _as_token_count(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return max(0, int(value))


def parse_usage_object(usage: Any) -> tuple[int | None, int | None]:
    """Read prompt/completion counts, accepting ``input_tokens``/``output_tokens``."""
    if not isinstance(usage, dict):
        return None, None
    prompt = _as_token_count(usage.get("prompt_tokens"))
    if prompt is None:
        prompt = _as_token_count(usage.get("input_tokens"))
    completion = _as_token_count(usage.get("completion_tokens"))
    if completion is None:
        completion = _as_token_count(usage.get("output_tokens"))
    return prompt, completion


def _usage_candidate(event: dict[str, Any]) -> Any:
    usage = event.get("usage")
    if isinstance(usage, dict):
        return usage
    message = event.get("message")
    if isinstance(message, dict) and isinstance(message.get("usage"), dict):
        return message["usage"]
    return None


def extract_usage(body: bytes | str, request_id: str | None = None) -> UsageFigures:
    """Usage from a buffered JSON body; anything unreadable counts as zero."""
    try:
        parsed = json.loads(body) if body else None
    except ValueError:
        logger.info("usage_parse_failed request_id=%s reason=invalid_json", request_id)
        return UsageFigures()
    if not isinstance(parsed, dict):
        logger.info("usage_parse_failed request_id=%s reason=not_an_object", request_id)
        return UsageFigures()

    prompt, completion = parse_usage_object(_usage_candidate(parsed))
    if prompt is None and completion is None:
        logger.info("usage_parse_failed request_id=%s reason=missing_usage", request_id)
        return UsageFigures()
    return UsageFigures(prompt_tokens=prompt or 0, completion_tokens=completion or 0)


class StreamUsageAccumulator:
    """Side-channel scanner for usage objects embedded in an SSE byte stream.

    Lines split across chunks are reassembled. The most recently observed
    value of each counter wins.
    """

    def __init__(self, max_line_bytes: int = MAX_SCAN_LINE_BYTES) -> None:
        self._max_line_bytes = max(1024, int(max_line_bytes))
        self._buffer = bytearray()
        self._discarding = False
        self._prompt_tokens: int | None = None
        self._completion_tokens: int | None = None
        self.bytes_seen = 0
        self.usage_events = 0
        self.parse_failures = 0

    @property
    def figures(self) -> UsageFigures:
        return UsageFigures(
            prompt_tokens=self._prompt_tokens or 0,
            completion_tokens=self._completion_tokens or 0,
        )

    @property
    def found_usage(self) -> bool:
        return self.usage_events > 0

    def feed(self, chunk: bytes) -> None:
        if not chunk:
            return
        self.bytes_seen += len(chunk)
        self._buffer.extend(chunk)
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            if self._discarding:
                self._discarding = False
                continue
            self._consume_line(line)
        if len(self._buffer) > self._max_line_bytes:
            self._buffer.clear()
            self._discarding = True

    def finish(self) -> None:
        if self._buffer and not self._discarding:
            self._consume_line(bytes(self._buffer))
        self._buffer.clear()
        self._discarding = False

    def _consume_line(self, raw: bytes) -> None:
        if b'"usage"' not in raw:
            return
        line = raw.decode("utf-8", errors="replace").strip()
        if not line.startswith("data:"):
            return
        payload = line[5:].strip()
        if not payload or payload == "[DONE]":
            return
        try:
            event = json.loads(payload)
        except ValueError:
            self.parse_failures += 1
            return
        if not isinstance(event, dict):
            return
        prompt, completion = parse_usage_object(_usage_candidate(event))
        if prompt is None and completion is None:
            return
        self.usage_events += 1
        if prompt is not None:
            self._prompt_tokens = prompt
        if completion is not None:
            self._completion_tokens = completion


async def meter_stream(
    source: AsyncIterator[bytes],
    accumulator: StreamUsageAccumulator,
) -> AsyncIterator[bytes]:
    """Tee: hand each chunk downstream first, then scan the same bytes.

    A chunk the caller received is scanned even if the caller goes away
    right after it.
    """
    try:
        async for chunk in source:
            try:
                yield chunk
            finally:
                accumulator.feed(chunk)
    finally:
        accumulator.finish()


class UsageSettlement:
    """Writes the usage record and both debits for one request, at most once."""

    def __init__(
        self,
        *,
        ledger: QuotaLedger,
        policy: QuotaPolicy,
        context: TokenContext,
        channel: Channel,
        model: str,
        request_id: str,
        kind: EndpointKind = "chat",
        started: float | None = None,
    ) -> None:
        self._ledger = ledger
        self._policy = policy
        self._context = context
        self._channel = channel
        self._model = model
        self._request_id = request_id
        self._kind = kind
        self._started = started if started is not None else time.perf_counter()
        self._settled = False

    @property
    def settled(self) -> bool:
        return self._settled

    async def settle(self, figures: UsageFigures, status_code: int) -> UsageRecord | None:
        if self._settled:
            return None
        self._settled = True

        if self._kind == "embeddings":
            figures = UsageFigures(prompt_tokens=figures.prompt_tokens)
        quota = self._policy.billed_quota(figures)
        record = UsageRecord(
            account_id=self._context.account_id,
            token_id=self._context.token_id,
            channel_id=self._channel.id,
            model=self._model,
            prompt_tokens=figures.prompt_tokens,
            completion_tokens=figures.completion_tokens,
            quota=quota,
            request_id=self._request_id,
            status_code=status_code,
        )
        results = await asyncio.gather(
            self._ledger.record_usage(record),
            self._ledger.debit_token(self._context.token_id, quota),
            self._ledger.debit_account(self._context.account_id, quota),
            return_exceptions=True,
        )
        for write, result in zip(
            ("record_usage", "debit_token", "debit_account"), results
        ):
            if isinstance(result, BaseException):
                logger.warning(
                    "usage_write_failed request_id=%s write=%s error_type=%s error=%s",
                    self._request_id,
                    write,
                    result.__class__.__name__,
                    result,
                )

        logger.info(
            (
                "relay_completed request_id=%s channel=%s model=%s status=%d "
                "prompt_tokens=%d completion_tokens=%d quota=%d latency_ms=%.2f"
            ),
            self._request_id,
            self._channel.label,
            self._model,
            status_code,
            figures.prompt_tokens,
            figures.completion_tokens,
            quota,
            (time.perf_counter() - self._started) * 1000.0,
        )
        return record

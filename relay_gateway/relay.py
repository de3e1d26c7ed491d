from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from typing import Any, AsyncIterator

import httpx
from fastapi import status
from fastapi.responses import Response, StreamingResponse

from relay_gateway.adapters import build_upstream_request
from relay_gateway.adapters.base import decodable_content_codings
from relay_gateway.channel_selector import ChannelSelector
from relay_gateway.config import Channel
from relay_gateway.dispatcher import RelayDispatcher
from relay_gateway.errors import (
    ChannelSelectionFailedError,
    InvalidRequestError,
    ModelNotAllowedError,
    NoChannelAvailableError,
    UpstreamUnreachableError,
)
from relay_gateway.gateway.auth import TokenContext
from relay_gateway.gateway.quota_ledger import QuotaLedger
from relay_gateway.usage_meter import (
    EndpointKind,
    QuotaPolicy,
    StreamUsageAccumulator,
    UsageFigures,
    UsageSettlement,
    extract_usage,
    meter_stream,
)
from relay_gateway.utils.model_utils import is_model_allowed

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
}

REQUEST_ID_HEADER = "X-Request-Id"

logger = logging.getLogger("uvicorn.error")


def _undecoded_content_codings(value: str) -> str | None:
    supported = decodable_content_codings()
    remaining = [
        coding.strip()
        for coding in value.split(",")
        if coding.strip() and coding.strip().lower() not in supported
    ]
    return ", ".join(remaining) or None


def _filter_response_headers(headers: httpx.Headers) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for name, value in headers.items():
        lowered = name.lower()
        if lowered in HOP_BY_HOP_RESPONSE_HEADERS or lowered == "x-request-id":
            continue
        if lowered == "content-encoding":
            # httpx decoded the supported codings; anything else is still applied.
            remaining = _undecoded_content_codings(value)
            if remaining is not None:
                filtered[name] = remaining
            continue
        filtered[name] = value
    return filtered


def _pop_content_type(response_headers: dict[str, str]) -> str | None:
    for name in list(response_headers.keys()):
        if name.lower() == "content-type":
            return response_headers.pop(name)
    return None


def _is_event_stream(content_type: str | None) -> bool:
    if not content_type:
        return False
    return "text/event-stream" in content_type.lower()


def require_model(payload: dict[str, Any], context: TokenContext) -> str:
    model = payload.get("model")
    if not isinstance(model, str) or not model.strip():
        raise InvalidRequestError("model is required", code="missing_model")
    model = model.strip()
    if not is_model_allowed(model, context.allowed_models):
        raise ModelNotAllowedError(model)
    return model


class RelayEngine:
    """Select a channel, adapt the request, dispatch it and meter the reply."""

    def __init__(
        self,
        *,
        selector: ChannelSelector,
        dispatcher: RelayDispatcher,
        ledger: QuotaLedger,
        policy: QuotaPolicy,
    ) -> None:
        self.selector = selector
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.policy = policy
        self._pending: set[asyncio.Task[Any]] = set()

    async def relay(
        self,
        *,
        path: str,
        payload: dict[str, Any],
        context: TokenContext,
        incoming_headers: Mapping[str, str],
        request_id: str,
        kind: EndpointKind = "chat",
    ) -> Response:
        started = time.perf_counter()
        try:
            model = require_model(payload, context)
        except ModelNotAllowedError as exc:
            logger.info(
                "model_not_allowed request_id=%s token_id=%s model=%s",
                request_id,
                context.token_id,
                exc.model,
            )
            raise

        channel = await self._select_channel(model, request_id)
        upstream_request = build_upstream_request(
            channel, path, payload, incoming_headers
        )
        settlement = UsageSettlement(
            ledger=self.ledger,
            policy=self.policy,
            context=context,
            channel=channel,
            model=model,
            request_id=request_id,
            kind=kind,
            started=started,
        )

        logger.info(
            "relay_dispatch request_id=%s path=%s channel=%s type=%s model=%s upstream_model=%s",
            request_id,
            path,
            channel.label,
            channel.type.value,
            model,
            upstream_request.body.get("model"),
        )
        try:
            upstream = await self.dispatcher.dispatch(
                "POST",
                upstream_request.url,
                upstream_request.headers,
                upstream_request.body,
                request_id,
            )
        except UpstreamUnreachableError:
            await settlement.settle(UsageFigures(), status.HTTP_502_BAD_GATEWAY)
            raise

        if upstream.status_code >= 400:
            logger.warning(
                "relay_upstream_error request_id=%s channel=%s status=%d",
                request_id,
                channel.label,
                upstream.status_code,
            )

        response_headers = _filter_response_headers(upstream.headers)
        response_headers[REQUEST_ID_HEADER] = request_id
        content_type = _pop_content_type(response_headers)

        if _is_event_stream(content_type):
            return self._streaming_response(
                upstream=upstream,
                settlement=settlement,
                response_headers=response_headers,
                media_type=content_type or "text/event-stream",
                request_id=request_id,
            )
        return await self._buffered_response(
            upstream=upstream,
            settlement=settlement,
            response_headers=response_headers,
            content_type=content_type,
            request_id=request_id,
        )

    async def _select_channel(self, model: str, request_id: str) -> Channel:
        selection = await self.selector.select_channel(model)
        if selection.outcome == "no_channel_available":
            logger.info(
                "no_channel_available request_id=%s model=%s", request_id, model
            )
            raise NoChannelAvailableError(model)
        if not selection.selected or selection.channel is None:
            logger.error(
                "channel_selection_failed request_id=%s model=%s candidates=%d",
                request_id,
                model,
                len(selection.candidates),
            )
            raise ChannelSelectionFailedError(model)

        logger.info(
            "channel_selected request_id=%s model=%s channel=%s candidates=%d cache_hit=%s",
            request_id,
            model,
            selection.channel.label,
            len(selection.candidates),
            selection.cache_hit,
        )
        return selection.channel

    async def _buffered_response(
        self,
        *,
        upstream: httpx.Response,
        settlement: UsageSettlement,
        response_headers: dict[str, str],
        content_type: str | None,
        request_id: str,
    ) -> Response:
        try:
            body = await upstream.aread()
        except httpx.HTTPError as exc:
            await settlement.settle(UsageFigures(), status.HTTP_502_BAD_GATEWAY)
            raise UpstreamUnreachableError(
                error_type=exc.__class__.__name__,
                error=str(exc) or repr(exc),
                stage="read_body",
            ) from exc
        finally:
            await upstream.aclose()

        figures = extract_usage(body, request_id=request_id)
        await settlement.settle(figures, upstream.status_code)
        return Response(
            content=body,
            status_code=upstream.status_code,
            headers=response_headers,
            media_type=content_type,
        )

    def _streaming_response(
        self,
        *,
        upstream: httpx.Response,
        settlement: UsageSettlement,
        response_headers: dict[str, str],
        media_type: str,
        request_id: str,
    ) -> StreamingResponse:
        accumulator = StreamUsageAccumulator()
        metered = meter_stream(upstream.aiter_bytes(), accumulator)

        async def stream_generator() -> AsyncIterator[bytes]:
            try:
                async for chunk in metered:
                    yield chunk
            except httpx.HTTPError as exc:
                logger.warning(
                    "relay_stream_interrupted request_id=%s error_type=%s error=%s",
                    request_id,
                    exc.__class__.__name__,
                    exc,
                )
            finally:
                # Runs on completion and on caller disconnect alike.
                task = asyncio.ensure_future(
                    self._finish_stream(upstream, metered, accumulator, settlement)
                )
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
                await asyncio.shield(task)

        return StreamingResponse(
            content=stream_generator(),
            status_code=upstream.status_code,
            headers=response_headers,
            media_type=media_type,
        )

    @staticmethod
    async def _finish_stream(
        upstream: httpx.Response,
        metered: AsyncIterator[bytes],
        accumulator: StreamUsageAccumulator,
        settlement: UsageSettlement,
    ) -> None:
        try:
            aclose = getattr(metered, "aclose", None)
            if aclose is not None:
                await aclose()
            await upstream.aclose()
        finally:
            await settlement.settle(accumulator.figures, upstream.status_code)

    async def close(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self.dispatcher.close()

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from relay_gateway.channel_selector import ChannelSelector
from relay_gateway.config import Channel, load_gateway_config
from relay_gateway.dispatcher import RelayDispatcher, build_upstream_client
from relay_gateway.errors import GatewayError, InvalidRequestError
from relay_gateway.gateway.auth import TokenAuthenticator, TokenContext
from relay_gateway.gateway.channel_registry import ChannelRegistry, StaticChannelRegistry
from relay_gateway.gateway.quota_ledger import build_quota_ledger
from relay_gateway.gateway.usage_log import JsonlUsageLogger
from relay_gateway.relay import REQUEST_ID_HEADER, RelayEngine
from relay_gateway.runtime.ttl_cache import TTLCache
from relay_gateway.settings import get_settings
from relay_gateway.usage_meter import EndpointKind, QuotaPolicy

app = FastAPI(
    title="LLM Relay Gateway",
    description="OpenAI-compatible relay with weighted channel selection and usage metering.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


def _request_id_for(request: Request) -> str:
    existing = getattr(request.state, "request_id", None)
    if existing:
        return str(existing)
    request_id = (request.headers.get("x-request-id") or "").strip() or uuid4().hex
    request.state.request_id = request_id
    return request_id


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    request_id = _request_id_for(request)
    response: Response | None = None
    if request.url.path.startswith("/v1"):
        authenticator: TokenAuthenticator | None = getattr(
            app.state, "authenticator", None
        )
        if authenticator is not None:
            response = await authenticator.authenticate_request(request)

    if response is None:
        response = await call_next(request)
    if REQUEST_ID_HEADER not in response.headers:
        response.headers[REQUEST_ID_HEADER] = request_id
    return response


def _build_models_response(channels: list[Channel]) -> dict[str, Any]:
    created = int(time.time())
    owners: dict[str, str] = {}
    for channel in channels:
        for model in channel.advertised_models():
            owners.setdefault(model, channel.type.value)
    return {
        "object": "list",
        "data": [
            {
                "id": model,
                "object": "model",
                "created": created,
                "owned_by": owners[model],
            }
            for model in sorted(owners)
        ],
    }


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    gateway_config = load_gateway_config(settings.gateway_config_path)

    usage_logger = JsonlUsageLogger(
        path=settings.usage_log_path,
        enabled=settings.usage_log_enabled,
    )
    ledger = build_quota_ledger(
        redis_url=settings.redis_url,
        logger=logger,
        max_records=settings.usage_record_buffer_size,
        usage_sink=usage_logger.record if usage_logger.enabled else None,
    )
    registry = StaticChannelRegistry(gateway_config.channels)
    selector = ChannelSelector(
        registry=registry,
        cache=TTLCache(max_keys=settings.channel_cache_max_keys),
        ttl_seconds=settings.channel_cache_ttl_seconds,
        priority_tiers=settings.selection_priority_tiers,
    )
    dispatcher = RelayDispatcher(
        client=build_upstream_client(
            connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
            read_timeout_seconds=settings.upstream_read_timeout_seconds,
            max_connections=settings.upstream_max_connections,
            max_keepalive_connections=settings.upstream_max_keepalive_connections,
        ),
        relay_proxy_url=settings.relay_proxy_url,
        relay_proxy_key=settings.relay_proxy_key,
    )

    app.state.settings = settings
    app.state.gateway_config = gateway_config
    app.state.usage_logger = usage_logger
    app.state.quota_ledger = ledger
    app.state.channel_registry = registry
    app.state.channel_selector = selector
    app.state.dispatcher = dispatcher
    app.state.authenticator = TokenAuthenticator(gateway_config, ledger)
    app.state.relay_engine = RelayEngine(
        selector=selector,
        dispatcher=dispatcher,
        ledger=ledger,
        policy=QuotaPolicy(
            prompt_ratio=settings.prompt_quota_ratio,
            completion_ratio=settings.completion_quota_ratio,
        ),
    )
    logger.info(
        (
            "startup complete gateway_config_path=%s channels=%d tokens=%d accounts=%d "
            "forwarding_hop=%s ledger=%s usage_log_enabled=%s usage_log_path=%s"
        ),
        settings.gateway_config_path,
        len(gateway_config.channels),
        len(gateway_config.tokens),
        len(gateway_config.accounts),
        settings.forwarding_hop_configured,
        ledger.__class__.__name__,
        settings.usage_log_enabled,
        settings.usage_log_path,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    engine: RelayEngine | None = getattr(app.state, "relay_engine", None)
    if engine is not None:
        await engine.close()
    ledger = getattr(app.state, "quota_ledger", None)
    close_ledger = getattr(ledger, "close", None)
    if close_ledger is not None:
        await close_ledger()
    usage_logger: JsonlUsageLogger | None = getattr(app.state, "usage_logger", None)
    if usage_logger is not None:
        usage_logger.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    registry: ChannelRegistry = app.state.channel_registry
    return _build_models_response(await registry.list_enabled_channels())


async def _relay_json_request(
    request: Request, path: str, kind: EndpointKind
) -> Response:
    try:
        payload = await request.json()
    except Exception as exc:
        raise InvalidRequestError(
            f"Expected JSON body: {exc}", code="invalid_json"
        ) from exc

    if not isinstance(payload, dict):
        raise InvalidRequestError(
            "Expected a JSON object request body.", code="invalid_json"
        )

    engine: RelayEngine = app.state.relay_engine
    context: TokenContext = request.state.token_context
    return await engine.relay(
        path=path,
        payload=payload,
        context=context,
        incoming_headers=request.headers,
        request_id=_request_id_for(request),
        kind=kind,
    )


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    return await _relay_json_request(request, "/v1/chat/completions", "chat")


@app.post("/v1/embeddings")
async def embeddings(request: Request) -> Response:
    return await _relay_json_request(request, "/v1/embeddings", "embeddings")


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    request_id = _request_id_for(request)
    logger.info(
        "gateway_error request_id=%s path=%s status=%d code=%s details=%s",
        request_id,
        request.url.path,
        exc.status_code,
        exc.code,
        exc.details,
    )
    return exc.to_response(request_id)


@app.exception_handler(FileNotFoundError)
async def config_missing_handler(_: Request, exc: FileNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


def run() -> None:
    import uvicorn

    uvicorn.run("relay_gateway.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()

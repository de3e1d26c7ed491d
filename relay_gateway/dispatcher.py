from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from relay_gateway.errors import UpstreamUnreachableError

logger = logging.getLogger("uvicorn.error")

FORWARDING_HOP_PATH = "/proxy"


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    error_message = str(exc).strip() or error_repr
    error_type = exc.__class__.__name__.strip() or "RequestError"
    details: dict[str, Any] = {
        "error": error_message,
        "error_type": error_type,
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    request = getattr(exc, "request", None)
    if isinstance(request, httpx.Request):
        details["request_method"] = request.method
        details["request_url"] = str(request.url)
    return details


def _can_enable_http2() -> bool:
    try:
        import h2  # noqa: F401
    except Exception:
        return False
    return True


def build_upstream_client(
    *,
    connect_timeout_seconds: float | None = None,
    read_timeout_seconds: float | None = None,
    max_connections: int = 512,
    max_keepalive_connections: int = 128,
) -> httpx.AsyncClient:
    # No overall deadline; the hosting platform owns the request lifetime.
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=None,
            connect=connect_timeout_seconds,
            read=read_timeout_seconds,
        ),
        limits=httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive_connections,
        ),
        http2=_can_enable_http2(),
    )


class RelayDispatcher:
    """Transparent conduit to the upstream, optionally through a forwarding hop.

    The dispatcher never retries, never inspects bodies and returns the
    upstream response unread so callers can choose to buffer or stream it.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        relay_proxy_url: str | None = None,
        relay_proxy_key: str | None = None,
    ) -> None:
        self.client = client
        self.relay_proxy_url = (relay_proxy_url or "").strip().rstrip("/") or None
        self.relay_proxy_key = relay_proxy_key or ""

    @property
    def uses_forwarding_hop(self) -> bool:
        return self.relay_proxy_url is not None

    def resolve_destination(
        self,
        target_url: str,
        headers: dict[str, str],
        request_id: str,
    ) -> tuple[str, dict[str, str]]:
        if self.relay_proxy_url is None:
            return target_url, dict(headers)
        hop_headers = {
            **headers,
            "X-Proxy-Key": self.relay_proxy_key,
            "X-Target-URL": target_url,
            "X-Request-Id": request_id,
        }
        return f"{self.relay_proxy_url}{FORWARDING_HOP_PATH}", hop_headers

    async def dispatch(
        self,
        method: str,
        target_url: str,
        headers: dict[str, str],
        body: dict[str, Any] | None,
        request_id: str,
    ) -> httpx.Response:
        url, request_headers = self.resolve_destination(target_url, headers, request_id)
        started = time.perf_counter()
        try:
            request = self.client.build_request(
                method=method,
                url=url,
                json=body,
                headers=request_headers,
            )
            upstream = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                (
                    "relay_upstream_unreachable request_id=%s via_hop=%s method=%s url=%s "
                    "error_type=%s error=%s is_timeout=%s"
                ),
                request_id,
                self.uses_forwarding_hop,
                details.get("request_method", method),
                details.get("request_url", url),
                details["error_type"],
                details["error"],
                details["is_timeout"],
            )
            raise UpstreamUnreachableError(**details) from exc

        logger.info(
            "relay_upstream_connected request_id=%s via_hop=%s connect_ms=%.2f status=%d",
            request_id,
            self.uses_forwarding_hop,
            (time.perf_counter() - started) * 1000.0,
            upstream.status_code,
        )
        return upstream

    async def close(self) -> None:
        await self.client.aclose()

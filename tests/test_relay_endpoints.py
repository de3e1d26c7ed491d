from __future__ import annotations

import gzip
import json
import logging
from pathlib import Path
from typing import Any

import httpx

from relay_gateway.main import app
from tests.client_test_utils import (
    auth_headers,
    build_test_client,
    default_gateway_document,
    install_upstream,
)

USAGE_BODY = {
    "id": "chatcmpl-1",
    "object": "chat.completion",
    "choices": [{"index": 0, "message": {"role": "assistant", "content": "hi"}}],
    "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
}


def _usage_records() -> list[Any]:
    return app.state.quota_ledger.usage_records


class _RecordingUpstream:
    def __init__(self, response_factory: Any) -> None:
        self.requests: list[httpx.Request] = []
        self._response_factory = response_factory

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._response_factory(request)


def test_chat_completion_is_relayed_and_billed_once(
    monkeypatch: Any, tmp_path: Path
) -> None:
    upstream = _RecordingUpstream(lambda _request: httpx.Response(200, json=USAGE_BODY))
    with build_test_client(monkeypatch, tmp_path) as client:
        install_upstream(client, upstream)
        response = client.post(
            "/v1/chat/completions",
            headers={**auth_headers(), "X-Request-Id": "req-e2e"},
            json={"model": "gpt-4", "messages": [{"role": "user", "content": "hi"}]},
        )

        assert response.status_code == 200
        assert response.json() == USAGE_BODY
        assert response.headers["x-request-id"] == "req-e2e"

        records = _usage_records()
        assert len(records) == 1
        record = records[0]
        assert (record.prompt_tokens, record.completion_tokens, record.quota) == (10, 5, 25)
        assert (record.token_id, record.account_id) == (11, 7)
        assert record.channel_id in {1, 2}
        assert record.request_id == "req-e2e"
        assert record.status_code == 200

    assert len(upstream.requests) == 1
    sent = upstream.requests[0]
    assert sent.url.path == "/v1/chat/completions"
    assert sent.headers["authorization"] in {
        "Bearer upstream-key-a",
        "Bearer upstream-key-b",
    }
    assert json.loads(sent.content)["model"] == "gpt-4"


def test_unknown_model_is_rejected_without_dispatch_or_billing(
    monkeypatch: Any, tmp_path: Path
) -> None:
    upstream = _RecordingUpstream(lambda _request: httpx.Response(200, json=USAGE_BODY))
    with build_test_client(monkeypatch, tmp_path) as client:
        install_upstream(client, upstream)
        response = client.post(
            "/v1/chat/completions",
            headers=auth_headers(),
            json={"model": "claude-3", "messages": []},
        )

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "no_channel_available"
        assert response.headers["x-request-id"]
        assert _usage_records() == []
    assert upstream.requests == []


def test_model_outside_token_allow_list_is_forbidden(
    monkeypatch: Any, tmp_path: Path
) -> None:
    document = default_gateway_document()
    document["tokens"][0]["models"] = "gpt-3.5-turbo"
    upstream = _RecordingUpstream(lambda _request: httpx.Response(200, json=USAGE_BODY))
    with build_test_client(monkeypatch, tmp_path, document) as client:
        install_upstream(client, upstream)
        response = client.post(
            "/v1/chat/completions",
            headers=auth_headers(),
            json={"model": "gpt-4", "messages": []},
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "model_not_allowed"
        assert _usage_records() == []
    assert upstream.requests == []


def test_invalid_body_and_missing_model_are_client_errors(
    monkeypatch: Any, tmp_path: Path
) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        not_json = client.post(
            "/v1/chat/completions",
            headers={**auth_headers(), "Content-Type": "application/json"},
            content=b"{not json",
        )
        not_object = client.post(
            "/v1/chat/completions", headers=auth_headers(), json=["gpt-4"]
        )
        no_model = client.post(
            "/v1/chat/completions", headers=auth_headers(), json={"messages": []}
        )

        assert not_json.status_code == 400
        assert not_json.json()["error"]["code"] == "invalid_json"
        assert not_object.status_code == 400
        assert not_object.json()["error"]["code"] == "invalid_json"
        assert no_model.status_code == 400
        assert no_model.json()["error"]["code"] == "missing_model"
        assert _usage_records() == []


def test_streaming_response_is_forwarded_verbatim_and_metered(
    monkeypatch: Any, tmp_path: Path
) -> None:
    events = (
        b'data: {"choices":[{"delta":{"content":"He"}}]}\n\n'
        b'data: {"choices":[{"delta":{"content":"llo"}}]}\n\n'
        b'data: {"choices":[],"usage":{"prompt_tokens":7,"completion_tokens":3}}\n\n'
        b"data: [DONE]\n\n"
    )
    upstream = _RecordingUpstream(
        lambda _request: httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=events,
        )
    )
    with build_test_client(monkeypatch, tmp_path) as client:
        install_upstream(client, upstream)
        response = client.post(
            "/v1/chat/completions",
            headers=auth_headers(),
            json={"model": "gpt-4", "stream": True, "messages": []},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.content == events

        records = _usage_records()
        assert len(records) == 1
        assert (records[0].prompt_tokens, records[0].completion_tokens) == (7, 3)
        assert records[0].quota == 16


def test_upstream_error_is_relayed_and_recorded(
    monkeypatch: Any, tmp_path: Path
) -> None:
    error_body = {"error": {"message": "rate limited", "type": "rate_limit"}}
    upstream = _RecordingUpstream(lambda _request: httpx.Response(429, json=error_body))
    with build_test_client(monkeypatch, tmp_path) as client:
        install_upstream(client, upstream)
        response = client.post(
            "/v1/chat/completions",
            headers=auth_headers(),
            json={"model": "gpt-4", "messages": []},
        )

        assert response.status_code == 429
        assert response.json() == error_body
        records = _usage_records()
        assert len(records) == 1
        assert records[0].status_code == 429
        assert records[0].quota == 0


def test_unreachable_upstream_returns_502_and_records_zero_usage(
    monkeypatch: Any, tmp_path: Path, caplog: Any
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with caplog.at_level(logging.INFO), build_test_client(monkeypatch, tmp_path) as client:
        install_upstream(client, handler)
        response = client.post(
            "/v1/chat/completions",
            headers=auth_headers(),
            json={"model": "gpt-4", "messages": []},
        )

        assert response.status_code == 502
        payload = response.json()
        assert payload["error"]["code"] == "upstream_error"
        assert payload["error"]["message"] == "Failed to connect to upstream"
        records = _usage_records()
        assert len(records) == 1
        assert (records[0].status_code, records[0].quota) == (502, 0)
    assert "gateway_error" in caplog.text
    assert "'error_type': 'ConnectError'" in caplog.text


def test_compressed_upstream_body_is_relayed_decoded(
    monkeypatch: Any, tmp_path: Path
) -> None:
    raw = json.dumps(USAGE_BODY).encode()
    upstream = _RecordingUpstream(
        lambda _request: httpx.Response(
            200,
            headers={"content-type": "application/json", "content-encoding": "gzip"},
            content=gzip.compress(raw),
        )
    )
    with build_test_client(monkeypatch, tmp_path) as client:
        install_upstream(client, upstream)
        response = client.post(
            "/v1/chat/completions",
            headers=auth_headers(),
            json={"model": "gpt-4", "messages": []},
        )

        assert response.status_code == 200
        assert "content-encoding" not in response.headers
        assert response.json() == USAGE_BODY
        assert _usage_records()[0].quota == 25


def test_unknown_content_coding_is_relayed_with_its_header(
    monkeypatch: Any, tmp_path: Path
) -> None:
    opaque = b"\x1f\x9d\x90lzw-packed-body"
    upstream = _RecordingUpstream(
        lambda _request: httpx.Response(
            200,
            headers={"content-type": "application/json", "content-encoding": "compress"},
            content=opaque,
        )
    )
    with build_test_client(monkeypatch, tmp_path) as client:
        install_upstream(client, upstream)
        response = client.post(
            "/v1/chat/completions",
            headers={**auth_headers(), "Accept-Encoding": "gzip, compress"},
            json={"model": "gpt-4", "messages": []},
        )

        assert response.status_code == 200
        assert response.headers["content-encoding"] == "compress"
        assert response.content == opaque
        assert len(_usage_records()) == 1
    assert upstream.requests[0].headers["accept-encoding"] == "gzip"


def test_wildcard_channel_serves_token_with_model_allow_list(
    monkeypatch: Any, tmp_path: Path
) -> None:
    document = default_gateway_document()
    document["channels"] = [
        {
            "id": 5,
            "name": "catch-all",
            "type": "openai",
            "key": "upstream-key-any",
            "base_url": "http://upstream-any.example",
            "models": "*",
            "weight": 1,
        }
    ]
    document["tokens"][0]["models"] = "gpt-4,gpt-3.5"
    upstream = _RecordingUpstream(lambda _request: httpx.Response(200, json=USAGE_BODY))
    with build_test_client(monkeypatch, tmp_path, document) as client:
        install_upstream(client, upstream)
        response = client.post(
            "/v1/chat/completions",
            headers=auth_headers(),
            json={"model": "gpt-4", "messages": []},
        )

        assert response.status_code == 200
        records = _usage_records()
        assert len(records) == 1
        assert records[0].channel_id == 5
        assert records[0].model == "gpt-4"
    assert len(upstream.requests) == 1
    assert upstream.requests[0].url.host == "upstream-any.example"
    assert upstream.requests[0].headers["authorization"] == "Bearer upstream-key-any"


def test_embeddings_bill_prompt_tokens_only(monkeypatch: Any, tmp_path: Path) -> None:
    body = {
        "object": "list",
        "data": [{"object": "embedding", "index": 0, "embedding": [0.1, 0.2]}],
        "usage": {"prompt_tokens": 8, "total_tokens": 8},
    }
    upstream = _RecordingUpstream(lambda _request: httpx.Response(200, json=body))
    with build_test_client(monkeypatch, tmp_path) as client:
        install_upstream(client, upstream)
        response = client.post(
            "/v1/embeddings",
            headers=auth_headers(),
            json={"model": "text-embedding-3-small", "input": "hello"},
        )

        assert response.status_code == 200
        records = _usage_records()
        assert len(records) == 1
        assert (records[0].prompt_tokens, records[0].completion_tokens) == (8, 0)
        assert records[0].quota == 8
    assert upstream.requests[0].url.host == "upstream-a.example"
    assert upstream.requests[0].url.path == "/v1/embeddings"


def test_forwarding_hop_is_used_when_configured(
    monkeypatch: Any, tmp_path: Path
) -> None:
    upstream = _RecordingUpstream(lambda _request: httpx.Response(200, json=USAGE_BODY))
    with build_test_client(monkeypatch, tmp_path) as client:
        install_upstream(client, upstream)
        client.app.state.dispatcher.relay_proxy_url = "http://hop.internal"
        client.app.state.dispatcher.relay_proxy_key = "hop-secret"
        response = client.post(
            "/v1/embeddings",
            headers=auth_headers(),
            json={"model": "text-embedding-3-small", "input": "x"},
        )

    assert response.status_code == 200
    sent = upstream.requests[0]
    assert str(sent.url) == "http://hop.internal/proxy"
    assert sent.headers["x-proxy-key"] == "hop-secret"
    assert sent.headers["x-target-url"] == "http://upstream-a.example/v1/embeddings"
    assert sent.headers["x-request-id"] == response.headers["x-request-id"]

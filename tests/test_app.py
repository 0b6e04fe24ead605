"""Endpoint tests for the proxy application.

Tests cover the happy path for both pipelines, errors reported as JSON or as
stream chunks, capability pre-validation, advisory duplicate detection,
auth independence, and the auxiliary routes.
"""

import json
import logging
from typing import Dict, List

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from chatproxy.app import create_app
from chatproxy.auth import StaticCredentialStore
from chatproxy.config import ProxyConfig, load_config
from chatproxy.models import ChatResponse
from chatproxy.translator import validate_translated_response
from conftest import (
    TEST_CREDENTIAL,
    _make_config,
    UpstreamMock,
    completion_body,
    sse_body,
    stream_chunk,
)

AUTH = {"Authorization": "Bearer sk-placeholder"}


def _make_request_body(
    model: str = "openai/gpt-4o-mini",
    content: str = "hi",
    stream: bool = False,
    **extra,
) -> Dict:
    body = {"model": model, "messages": [{"role": "user", "content": content}], "stream": stream}
    body.update(extra)
    return body


def _client(
    config: ProxyConfig, mock: UpstreamMock, credential: str = TEST_CREDENTIAL
) -> AsyncClient:
    application = create_app(
        config,
        credential_store=StaticCredentialStore(credential),
        upstream=mock.client,
    )
    return AsyncClient(transport=ASGITransport(app=application), base_url="http://test")


def _frames(text: str) -> List[str]:
    return [block for block in text.split("\n\n") if block.strip()]


def _content(frame: str) -> str:
    return json.loads(frame[len("data: "):])["choices"][0]["delta"]["content"]


@pytest.fixture()
def ok_upstream(upstream_factory) -> UpstreamMock:
    return upstream_factory(lambda request: httpx.Response(200, json=completion_body()))


# --- Non-streaming ---


@pytest.mark.asyncio
async def test_non_streaming_example(test_config: ProxyConfig, ok_upstream: UpstreamMock) -> None:
    async with _client(test_config, ok_upstream) as client:
        resp = await client.post("/v1/chat/completions", json=_make_request_body(), headers=AUTH)

    assert resp.status_code == 200
    data = resp.json()
    assert data["model"] == "openai/gpt-4o-mini"
    assert data["choices"][0]["message"]["role"] == "assistant"
    assert data["object"] == "chat.completion"
    assert resp.headers["X-Request-ID"].startswith("chat-")
    assert validate_translated_response(ChatResponse.model_validate(data))


@pytest.mark.asyncio
async def test_chat_alias_route(test_config: ProxyConfig, ok_upstream: UpstreamMock) -> None:
    async with _client(test_config, ok_upstream) as client:
        resp = await client.post("/chat/completions", json=_make_request_body(), headers=AUTH)
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_stored_credential_sent_upstream(
    test_config: ProxyConfig, ok_upstream: UpstreamMock
) -> None:
    async with _client(test_config, ok_upstream) as client:
        await client.post("/v1/chat/completions", json=_make_request_body(), headers=AUTH)

    sent = ok_upstream.requests[0].headers["Authorization"]
    assert sent == "Bearer {}".format(TEST_CREDENTIAL)


@pytest.mark.asyncio
async def test_upstream_error_keeps_status(test_config: ProxyConfig, upstream_factory) -> None:
    body = {"error": {"message": "No endpoints found for foo/bar."}}
    mock = upstream_factory(lambda request: httpx.Response(404, json=body))
    async with _client(test_config, mock) as client:
        resp = await client.post(
            "/v1/chat/completions", json=_make_request_body(model="foo/bar"), headers=AUTH
        )

    assert resp.status_code == 404
    error = resp.json()["error"]
    assert "Model Unavailable: foo/bar" in error["message"]
    assert error["code"] == "model_not_available"
    assert error["request_id"] == resp.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_upstream_timeout_is_408(test_config: ProxyConfig, upstream_factory) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    async with _client(test_config, upstream_factory(handler)) as client:
        resp = await client.post("/v1/chat/completions", json=_make_request_body(), headers=AUTH)

    assert resp.status_code == 408
    assert resp.json()["error"]["type"] == "timeout_error"


@pytest.mark.asyncio
async def test_unexpected_exception_is_500(test_config: ProxyConfig, upstream_factory) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise RuntimeError("connection pool in a bad state")

    async with _client(test_config, upstream_factory(handler)) as client:
        resp = await client.post("/v1/chat/completions", json=_make_request_body(), headers=AUTH)

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "internal_error"


@pytest.mark.asyncio
async def test_default_max_tokens_applied(tmp_path, upstream_factory) -> None:
    config = load_config(_make_config(tmp_path, {"default_max_tokens": 256}))
    mock = upstream_factory(lambda request: httpx.Response(200, json=completion_body()))
    async with _client(config, mock) as client:
        await client.post("/v1/chat/completions", json=_make_request_body(), headers=AUTH)

    assert mock.last_json()["max_tokens"] == 256


# --- Request validation ---


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw, message",
    [
        ("{not json", "Invalid JSON"),
        ('{"messages": [{"role": "user", "content": "hi"}]}', "Model is required"),
        ('{"model": "a/b", "messages": []}', "Messages cannot be null or empty"),
        ('["a list"]', "JSON object"),
    ],
)
async def test_invalid_body_is_400(
    test_config: ProxyConfig, ok_upstream: UpstreamMock, raw: str, message: str
) -> None:
    async with _client(test_config, ok_upstream) as client:
        resp = await client.post(
            "/v1/chat/completions",
            content=raw,
            headers={**AUTH, "Content-Type": "application/json"},
        )

    assert resp.status_code == 400
    assert message in resp.json()["error"]["message"]
    assert ok_upstream.call_count == 0


@pytest.mark.asyncio
async def test_sampling_out_of_range_is_400(
    test_config: ProxyConfig, ok_upstream: UpstreamMock
) -> None:
    async with _client(test_config, ok_upstream) as client:
        resp = await client.post(
            "/v1/chat/completions", json=_make_request_body(temperature=3.0), headers=AUTH
        )

    assert resp.status_code == 400
    assert resp.json()["error"]["param"] == "temperature"
    assert ok_upstream.call_count == 0


# --- Authentication ---


@pytest.mark.asyncio
async def test_bogus_token_succeeds_with_stored_credential(
    test_config: ProxyConfig, ok_upstream: UpstreamMock
) -> None:
    async with _client(test_config, ok_upstream) as client:
        resp = await client.post(
            "/v1/chat/completions",
            json=_make_request_body(),
            headers={"Authorization": "Bearer not-a-real-key"},
        )
    assert resp.status_code == 200


@pytest.mark.asyncio
@pytest.mark.parametrize("stream", [False, True])
async def test_missing_bearer_is_401(
    test_config: ProxyConfig, ok_upstream: UpstreamMock, stream: bool
) -> None:
    async with _client(test_config, ok_upstream) as client:
        resp = await client.post("/v1/chat/completions", json=_make_request_body(stream=stream))

    assert resp.status_code == 401
    assert resp.json()["error"]["type"] == "authentication_error"
    assert ok_upstream.call_count == 0


@pytest.mark.asyncio
async def test_blank_stored_credential_is_401(
    test_config: ProxyConfig, ok_upstream: UpstreamMock
) -> None:
    async with _client(test_config, ok_upstream, credential="") as client:
        resp = await client.post("/v1/chat/completions", json=_make_request_body(), headers=AUTH)

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "api_key_missing"
    assert ok_upstream.call_count == 0


# --- Capability pre-validation ---


IMAGE_MESSAGES = [
    {
        "role": "user",
        "content": [
            {"type": "text", "text": "What is in this picture?"},
            {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
        ],
    }
]


@pytest.mark.asyncio
@pytest.mark.parametrize("stream", [False, True])
async def test_image_to_text_only_model_rejected_before_upstream(
    test_config: ProxyConfig, ok_upstream: UpstreamMock, stream: bool
) -> None:
    body = {"model": "meta-llama/llama-3-8b-instruct", "messages": IMAGE_MESSAGES, "stream": stream}
    async with _client(test_config, ok_upstream) as client:
        resp = await client.post("/v1/chat/completions", json=body, headers=AUTH)

    assert resp.status_code == 400
    assert resp.headers["content-type"].startswith("application/json")
    error = resp.json()["error"]
    assert error["code"] == "model_capability_error"
    assert error["param"] == "model"
    assert "image input" in error["message"]
    assert ok_upstream.call_count == 0


@pytest.mark.asyncio
async def test_image_to_vision_model_forwarded(
    test_config: ProxyConfig, ok_upstream: UpstreamMock
) -> None:
    body = {"model": "openai/gpt-4o-mini", "messages": IMAGE_MESSAGES}
    async with _client(test_config, ok_upstream) as client:
        resp = await client.post("/v1/chat/completions", json=body, headers=AUTH)

    assert resp.status_code == 200
    assert ok_upstream.last_json()["messages"] == IMAGE_MESSAGES


# --- Duplicate detection ---


@pytest.mark.asyncio
async def test_duplicate_requests_both_succeed(
    test_config: ProxyConfig, ok_upstream: UpstreamMock, caplog: pytest.LogCaptureFixture
) -> None:
    payload = json.dumps(_make_request_body())
    headers = {**AUTH, "Content-Type": "application/json"}
    with caplog.at_level(logging.INFO, logger="chatproxy"):
        async with _client(test_config, ok_upstream) as client:
            first = await client.post("/v1/chat/completions", content=payload, headers=headers)
            second = await client.post("/v1/chat/completions", content=payload, headers=headers)

    assert first.status_code == 200
    assert second.status_code == 200
    assert ok_upstream.call_count == 2
    assert any("Potential duplicate request" in r.getMessage() for r in caplog.records)
    assert any('"duplicate": true' in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_apps_do_not_share_state(test_config: ProxyConfig, ok_upstream: UpstreamMock) -> None:
    first = create_app(test_config, credential_store=StaticCredentialStore("k"), upstream=ok_upstream.client)
    second = create_app(test_config, credential_store=StaticCredentialStore("k"), upstream=ok_upstream.client)
    assert first.state.proxy.deduplicator is not second.state.proxy.deduplicator

    first.state.proxy.deduplicator.check(b"body", "127.0.0.1")
    assert second.state.proxy.deduplicator.check(b"body", "127.0.0.1") is False


# --- Streaming ---


async def _stream(config: ProxyConfig, mock: UpstreamMock, model: str = "openai/gpt-4o-mini") -> httpx.Response:
    async with _client(config, mock) as client:
        return await client.post(
            "/v1/chat/completions", json=_make_request_body(model=model, stream=True), headers=AUTH
        )


@pytest.mark.asyncio
async def test_streaming_success(test_config: ProxyConfig, upstream_factory) -> None:
    mock = upstream_factory(
        lambda request: httpx.Response(200, content=sse_body(stream_chunk("Hel"), stream_chunk("lo")))
    )
    resp = await _stream(test_config, mock)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"
    assert resp.headers["x-accel-buffering"] == "no"
    frames = _frames(resp.text)
    assert [_content(f) for f in frames[:-1]] == ["Hel", "lo"]
    assert frames[-1] == "data: [DONE]"
    assert mock.last_json()["stream"] is True


@pytest.mark.asyncio
async def test_streaming_no_endpoints_example(test_config: ProxyConfig, upstream_factory) -> None:
    body = {"error": {"message": "No endpoints found for foo/bar."}}
    mock = upstream_factory(lambda request: httpx.Response(404, json=body))
    resp = await _stream(test_config, mock, model="foo/bar")

    assert resp.status_code == 200
    frames = _frames(resp.text)
    assert len(frames) == 2
    message = _content(frames[0])
    assert "Model Unavailable" in message
    assert "- openai/gpt-4o-mini" in message
    assert frames[1] == "data: [DONE]"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, body",
    [
        (500, {"error": {"message": "Internal Server Error", "code": 500}}),
        (401, {"error": {"message": "No auth credentials found", "code": 401}}),
        (429, {"error": {"message": "Rate limit exceeded: free-models-per-min"}}),
    ],
)
async def test_streaming_errors_are_readable_chunks(
    test_config: ProxyConfig, upstream_factory, status: int, body: Dict
) -> None:
    mock = upstream_factory(lambda request: httpx.Response(status, json=body))
    resp = await _stream(test_config, mock)

    assert resp.status_code == 200
    frames = _frames(resp.text)
    assert frames.count("data: [DONE]") == 1
    message = _content(frames[0])
    assert message
    assert not message.lstrip().startswith("{")


@pytest.mark.asyncio
async def test_streaming_empty_upstream(test_config: ProxyConfig, upstream_factory) -> None:
    mock = upstream_factory(lambda request: httpx.Response(200, content=b""))
    resp = await _stream(test_config, mock)

    frames = _frames(resp.text)
    assert len(frames) == 2
    assert "No response" in _content(frames[0])
    assert frames[1] == "data: [DONE]"


@pytest.mark.asyncio
async def test_streaming_mid_stream_error(test_config: ProxyConfig, upstream_factory) -> None:
    content = sse_body(
        stream_chunk("partial"),
        {"error": {"message": "Provider returned error", "code": 200}},
    )
    mock = upstream_factory(lambda request: httpx.Response(200, content=content))
    resp = await _stream(test_config, mock)

    frames = _frames(resp.text)
    assert _content(frames[0]) == "partial"
    assert "model provider encountered an error" in _content(frames[1])
    assert frames.count("data: [DONE]") == 1


# --- Auxiliary routes ---


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["/v1/models", "/models"])
async def test_models_listing(test_config: ProxyConfig, ok_upstream: UpstreamMock, path: str) -> None:
    async with _client(test_config, ok_upstream) as client:
        resp = await client.get(path)

    assert resp.status_code == 200
    data = resp.json()
    assert data["object"] == "list"
    ids = [m["id"] for m in data["data"]]
    assert "openai/gpt-4o-mini" in ids
    assert "test/model-a" in ids


@pytest.mark.asyncio
async def test_models_search_and_limit(test_config: ProxyConfig, ok_upstream: UpstreamMock) -> None:
    async with _client(test_config, ok_upstream) as client:
        searched = await client.get("/v1/models", params={"mode": "search", "search": "turbo"})
        limited = await client.get("/v1/models", params={"limit": "2"})
        bad_limit = await client.get("/v1/models", params={"limit": "lots", "mode": "bogus"})

    assert [m["id"] for m in searched.json()["data"]] == [
        "openai/gpt-4-turbo",
        "openai/gpt-3.5-turbo",
    ]
    assert len(limited.json()["data"]) == 2
    assert bad_limit.status_code == 200
    assert len(bad_limit.json()["data"]) == 6


@pytest.mark.asyncio
async def test_health_and_root(test_config: ProxyConfig, ok_upstream: UpstreamMock) -> None:
    async with _client(test_config, ok_upstream) as client:
        health = await client.get("/health")
        root = await client.get("/")

    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert health.json()["service"] == "chatproxy"
    assert "timestamp" in health.json()
    assert "/v1/chat/completions" in root.json()["endpoints"]


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["/v1/engines", "/v1/organizations"])
async def test_legacy_routes_require_bearer(
    test_config: ProxyConfig, ok_upstream: UpstreamMock, path: str
) -> None:
    async with _client(test_config, ok_upstream) as client:
        denied = await client.get(path)
        allowed = await client.get(path, headers=AUTH)

    assert denied.status_code == 401
    assert "error" in denied.json()
    assert allowed.status_code == 200
    assert allowed.json()["object"] == "list"


@pytest.mark.asyncio
async def test_options_preflight(test_config: ProxyConfig, ok_upstream: UpstreamMock) -> None:
    async with _client(test_config, ok_upstream) as client:
        cors = await client.options(
            "/v1/chat/completions",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "Authorization, Content-Type",
            },
        )
        bare = await client.options("/v1/chat/completions")

    assert cors.status_code == 200
    assert cors.headers["access-control-allow-origin"] == "*"
    assert "POST" in cors.headers["access-control-allow-methods"]
    assert bare.status_code == 200
    assert "POST" in bare.headers["access-control-allow-methods"]
    assert bare.headers["access-control-max-age"] == "3600"


@pytest.mark.asyncio
async def test_unknown_route_uses_error_envelope(
    test_config: ProxyConfig, ok_upstream: UpstreamMock
) -> None:
    async with _client(test_config, ok_upstream) as client:
        resp = await client.get("/v1/nothing-here")

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"

import json

import httpx
from fastapi.testclient import TestClient

from app.core.settings import Settings, get_settings
from app.main import create_app
from app.services.chat_proxy_service import ChatProxyService

UPSTREAM_URL = "https://upstream.test/v1/chat/completions"
PROXY_URL = "/api/gemini-proxy"

HISTORY = [{"role": "user", "parts": [{"text": "hi"}]}]


def _settings(**overrides) -> Settings:
    values = {
        "upstream_api_key": "test-key",
        "upstream_url": UPSTREAM_URL,
        "system_instruction": "be nice",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _client_for(handler, settings: Settings | None = None) -> TestClient:
    app = create_app()

    import app.api.chat_proxy as chat_proxy_api

    service_settings = settings or _settings()
    app.dependency_overrides[chat_proxy_api.get_chat_proxy_service] = lambda: ChatProxyService(
        settings=service_settings, transport=httpx.MockTransport(handler)
    )
    return TestClient(app)


def _streaming_handler(chunks):
    async def body():
        for chunk in chunks:
            yield chunk

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, headers={"Content-Type": "text/event-stream"}, content=body()
        )

    return handler


def test_non_streaming_relays_upstream_json():
    upstream_json = {
        "id": "x",
        "choices": [{"message": {"role": "assistant", "content": "hello"}}],
    }
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=upstream_json)

    client = _client_for(handler)
    r = client.post(
        PROXY_URL,
        json={"conversationHistory": HISTORY, "modelId": "m1", "stream": False},
    )

    assert r.status_code == 200
    assert r.json() == upstream_json
    assert r.headers["access-control-allow-origin"] == "*"

    assert len(seen) == 1
    assert str(seen[0].url) == UPSTREAM_URL
    assert seen[0].headers["authorization"] == "Bearer test-key"


def test_upstream_body_is_translated():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(json.loads(request.content))
        return httpx.Response(200, json={"ok": True})

    client = _client_for(handler)
    history = [
        {"role": "user", "parts": [{"text": "question"}]},
        {"role": "model", "parts": [{"text": "answer"}]},
    ]
    r = client.post(PROXY_URL, json={"conversationHistory": history, "modelId": "m1"})

    assert r.status_code == 200
    assert captured == {
        "model": "m1",
        "stream": False,
        "messages": [
            {"role": "system", "content": "be nice"},
            {"role": "user", "content": "question"},
            {"role": "assistant", "content": "answer"},
        ],
    }


def test_streaming_relays_bytes_unchanged():
    client = _client_for(_streaming_handler([b"data: a\n\n", b"data: b\n\n"]))
    r = client.post(
        PROXY_URL,
        json={"conversationHistory": HISTORY, "modelId": "m1", "stream": True},
    )

    assert r.status_code == 200
    assert r.headers["content-type"] == "text/event-stream; charset=utf-8"
    assert r.headers["cache-control"] == "no-cache"
    assert r.headers["connection"] == "keep-alive"
    assert r.headers["access-control-allow-origin"] == "*"
    assert r.content == b"data: a\n\ndata: b\n\n"


def test_streaming_many_chunks():
    chunks = [f"data: {i}\n\n".encode() for i in range(50)]
    client = _client_for(_streaming_handler(chunks))
    r = client.post(
        PROXY_URL,
        json={"conversationHistory": HISTORY, "modelId": "m1", "stream": True},
    )

    assert r.status_code == 200
    assert r.content == b"".join(chunks)


def test_upstream_non_json_error_is_wrapped():
    client = _client_for(lambda request: httpx.Response(429, text="rate limited"))
    r = client.post(
        PROXY_URL,
        json={"conversationHistory": HISTORY, "modelId": "m1", "stream": False},
    )

    assert r.status_code == 429
    assert r.json() == {
        "error": {"message": "Upstream API returned a non-JSON error: rate limited"}
    }


def test_upstream_json_error_passes_through_for_streaming_requests():
    error = {"error": {"message": "invalid api key", "type": "auth_error"}}
    client = _client_for(lambda request: httpx.Response(401, json=error))
    r = client.post(
        PROXY_URL,
        json={"conversationHistory": HISTORY, "modelId": "m1", "stream": True},
    )

    assert r.status_code == 401
    assert r.json() == error


def test_network_failure_returns_500():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused")

    client = _client_for(handler)
    r = client.post(PROXY_URL, json={"conversationHistory": HISTORY, "modelId": "m1"})

    assert r.status_code == 500
    body = r.json()
    assert body["error"]["message"] == "Proxy server internal error: connection refused"
    assert "developerMessage" in body


def test_upstream_connect_timeout_returns_500():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out")

    client = _client_for(handler, settings=_settings(upstream_timeout_s=0.5))
    r = client.post(
        PROXY_URL,
        json={"conversationHistory": HISTORY, "modelId": "m1", "stream": True},
    )

    assert r.status_code == 500
    assert r.json()["error"]["message"] == "Proxy server internal error: timed out"


def test_non_json_success_body_returns_500():
    client = _client_for(lambda request: httpx.Response(200, text="<html>oops</html>"))
    r = client.post(PROXY_URL, json={"conversationHistory": HISTORY, "modelId": "m1"})

    assert r.status_code == 500
    assert r.json()["error"]["message"].startswith("Proxy server internal error")


def test_missing_fields_return_400():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    client = _client_for(handler)
    expected = {"error": {"message": "Missing conversationHistory or modelId in request body."}}

    for body in (
        {"modelId": "m1", "stream": True},
        {"conversationHistory": HISTORY},
        {"conversationHistory": HISTORY, "modelId": ""},
        {"conversationHistory": None, "modelId": "m1"},
    ):
        r = client.post(PROXY_URL, json=body)
        assert r.status_code == 400, body
        assert r.json() == expected

    assert calls == []


def test_empty_history_is_accepted():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(json.loads(request.content))
        return httpx.Response(200, json={"id": "y"})

    client = _client_for(handler)
    r = client.post(PROXY_URL, json={"conversationHistory": [], "modelId": "m1"})

    assert r.status_code == 200
    assert captured["messages"] == [{"role": "system", "content": "be nice"}]


def test_message_without_text_returns_400():
    client = _client_for(lambda request: httpx.Response(200, json={}))
    history = HISTORY + [{"role": "user", "parts": [{"inline_data": {"mime_type": "image/png"}}]}]
    r = client.post(PROXY_URL, json={"conversationHistory": history, "modelId": "m1"})

    assert r.status_code == 400
    assert r.json() == {
        "error": {"message": "Message 1 in conversationHistory has no text part."}
    }


def test_malformed_body_returns_400_envelope():
    client = _client_for(lambda request: httpx.Response(200, json={}))
    r = client.post(PROXY_URL, json={"conversationHistory": "nope", "modelId": "m1"})

    assert r.status_code == 400
    assert r.json()["error"]["message"].startswith("Malformed request body")


def test_missing_credential_returns_500_without_upstream_call(monkeypatch):
    sent = []

    async def _record_send(self, request, **kwargs):
        sent.append(request)
        raise AssertionError("upstream must not be called")

    monkeypatch.setattr(httpx.AsyncClient, "send", _record_send)

    app = create_app()
    app.dependency_overrides[get_settings] = lambda: _settings(
        upstream_api_key=None
    )

    client = TestClient(app)
    r = client.post(PROXY_URL, json={"conversationHistory": HISTORY, "modelId": "m1"})

    assert sent == []
    assert r.status_code == 500
    assert "Server API Key not configured" in r.json()["error"]["message"]


def test_other_methods_are_rejected():
    client = _client_for(lambda request: httpx.Response(200, json={}))
    r = client.get(PROXY_URL)

    assert r.status_code == 405
    assert r.json() == {"error": {"message": "Method Not Allowed"}}
    assert r.headers["access-control-allow-methods"] == "POST, OPTIONS"


def test_preflight_returns_cors_headers_and_no_body():
    client = _client_for(lambda request: httpx.Response(200, json={}))
    r = client.options(PROXY_URL)

    assert r.status_code == 200
    assert r.content == b""
    assert r.headers["access-control-allow-origin"] == "*"
    assert r.headers["access-control-allow-methods"] == "POST, OPTIONS"
    assert r.headers["access-control-allow-headers"] == "Content-Type, Authorization"

from __future__ import annotations

import json

import pytest

import httpx

from planforge.models.openai_compat import OpenAICompatChatModel, OpenAICompatError


def _client(handler, **kwargs) -> OpenAICompatChatModel:
    return OpenAICompatChatModel(
        base_url=kwargs.pop("base_url", "https://example.com/v1/"),
        api_key="test-key",
        model="gpt-test",
        backoff_seconds=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_openai_base_url_payload_and_usage():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        data = json.loads(request.content.decode())
        assert data["model"] == "gpt-test"
        assert data["temperature"] == 0.2
        assert "tools" not in data
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"content": "ok"}}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 3},
            },
        )

    client = _client(handler, temperature=0.2, extra_headers={"X-Test": "yes"})
    response = client.chat(messages=[{"role": "user", "content": "hi"}])
    assert response.final_text == "ok"
    assert (response.usage.input_tokens, response.usage.output_tokens) == (12, 3)
    assert response.usage.estimated is False
    assert requests[0].url == httpx.URL("https://example.com/v1/chat/completions")
    assert requests[0].headers["Authorization"] == "Bearer test-key"
    assert requests[0].headers["X-Test"] == "yes"


def test_openai_base_url_without_path_gets_v1():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    response = _client(handler, base_url="localhost:8080").chat([{"role": "user", "content": "x"}])
    assert seen == ["http://localhost:8080/v1/chat/completions"]
    assert response.usage is None


def test_openai_retries_server_errors():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json={"choices": [{"message": {"content": "late"}}]})

    assert _client(handler).chat([{"role": "user", "content": "x"}]).final_text == "late"
    assert len(attempts) == 3


def test_openai_gives_up_and_redacts_key():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text="rate limited for test-key")

    with pytest.raises(OpenAICompatError) as excinfo:
        _client(handler).chat([{"role": "user", "content": "x"}])
    assert "test-key" not in str(excinfo.value)


def test_openai_rejects_oversized_response():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": {"content": "x" * 200}}]})

    with pytest.raises(OpenAICompatError):
        _client(handler, max_response_bytes=50).chat([{"role": "user", "content": "x"}])


def test_openai_client_errors_are_not_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(401, text="bad key")

    with pytest.raises(OpenAICompatError, match="rejected with 401"):
        _client(handler).chat([{"role": "user", "content": "x"}])
    assert len(attempts) == 1

"""OpenAI-compatible chat model client."""

from __future__ import annotations

import json
import time
from typing import Any
from urllib.parse import urlparse, urlunparse

import httpx

from planforge.models.base import BaseChatModel, ModelResponse, TokenUsage
from planforge.util.logging import get_logger, redact


MAX_ATTEMPTS = 3
RETRY_STATUSES = frozenset({408, 429})


class OpenAICompatError(RuntimeError):
    """Raised when the OpenAI-compatible backend returns an error."""


def _usage_from(data: dict[str, Any]) -> TokenUsage | None:
    usage = data.get("usage")
    if not isinstance(usage, dict):
        return None
    prompt = usage.get("prompt_tokens", usage.get("input_tokens"))
    completion = usage.get("completion_tokens", usage.get("output_tokens"))
    if not isinstance(prompt, int) and not isinstance(completion, int):
        return None
    return TokenUsage(
        input_tokens=prompt if isinstance(prompt, int) else 0,
        output_tokens=completion if isinstance(completion, int) else 0,
    )


class OpenAICompatChatModel(BaseChatModel):
    """HTTP client for OpenAI-compatible chat/completions."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        timeout_seconds: int = 30,
        max_response_bytes: int = 2_000_000,
        extra_headers: dict[str, str] | None = None,
        temperature: float | None = None,
        backoff_seconds: float = 1.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        normalized = base_url.strip()
        if not normalized.startswith(("http://", "https://")):
            normalized = f"http://{normalized}"
        self.base_url = normalized.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_response_bytes = max_response_bytes
        self.extra_headers = extra_headers or {}
        self.temperature = temperature
        self.backoff_seconds = backoff_seconds
        self.transport = transport
        self.logger = get_logger("planforge.models")

    def _request_payload(self, messages: list[dict[str, Any]]) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": self.model, "messages": messages}
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        return payload

    def _build_url(self) -> str:
        """Point the base URL at ``/v1/chat/completions`` unless it already is."""
        parsed = urlparse(self.base_url)
        path = (parsed.path or "").rstrip("/")
        if not path.endswith("/chat/completions"):
            if "v1" not in path.split("/"):
                path = f"{path}/v1"
            path = f"{path}/chat/completions"
        return urlunparse(parsed._replace(path=path, params="", query="", fragment=""))

    def _parse_response(self, response: httpx.Response) -> ModelResponse:
        if len(response.content) > self.max_response_bytes:
            raise OpenAICompatError("Response too large")
        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise OpenAICompatError("Malformed JSON response") from exc
        if not isinstance(data, dict):
            raise OpenAICompatError("Response body is not a JSON object")
        choices = data.get("choices") or [{}]
        content = (choices[0].get("message") or {}).get("content")
        return ModelResponse(
            final_text=content if isinstance(content, str) else "",
            usage=_usage_from(data),
        )

    def chat(self, messages: list[dict[str, Any]]) -> ModelResponse:
        url = self._build_url()
        headers = {"Authorization": f"Bearer {self.api_key}", **self.extra_headers}
        payload = self._request_payload(messages)
        timeout = httpx.Timeout(self.timeout_seconds)

        last_error: Exception | None = None
        for attempt in range(MAX_ATTEMPTS):
            try:
                with httpx.Client(timeout=timeout, transport=self.transport) as client:
                    response = client.post(url, headers=headers, json=payload)
            except httpx.HTTPError as exc:
                last_error = exc
            else:
                status = response.status_code
                if status < 400:
                    return self._parse_response(response)
                detail = redact(response.text[:200], [self.api_key])
                if status not in RETRY_STATUSES and status < 500:
                    raise OpenAICompatError(f"Request rejected with {status}: {detail}")
                last_error = OpenAICompatError(f"Retryable error {status}: {detail}")
            self.logger.warning(
                "model.retry attempt=%s error=%s",
                attempt + 1,
                redact(str(last_error), [self.api_key]),
            )
            if attempt + 1 < MAX_ATTEMPTS:
                time.sleep(self.backoff_seconds * 2**attempt)
        message = redact(str(last_error), [self.api_key])
        raise OpenAICompatError(
            f"OpenAI-compatible request failed after {MAX_ATTEMPTS} attempts: {message}"
        )

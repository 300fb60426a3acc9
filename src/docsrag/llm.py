from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
import json
from typing import Any, Protocol

import httpx

from docsrag.errors import ConfigurationError, ProviderError
from docsrag.services.rag.types import TokenUsage

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"


class LLMClientError(ProviderError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message, provider="openai", status_code=status_code)


@dataclass(frozen=True)
class StreamDelta:
    """One streamed item: a text fragment, or the closing usage totals."""

    text: str | None = None
    usage: TokenUsage | None = None


class LLMClient(Protocol):
    model: str

    def stream_chat(self, messages: list[dict[str, str]]) -> Iterator[StreamDelta]: ...


def _parse_usage(payload: Any) -> TokenUsage | None:
    if not isinstance(payload, dict):
        return None
    return TokenUsage(
        prompt_tokens=int(payload.get("prompt_tokens", 0)),
        completion_tokens=int(payload.get("completion_tokens", 0)),
        total_tokens=int(payload.get("total_tokens", 0)),
    )


def parse_stream_line(line: str) -> list[StreamDelta] | None:
    """Decode one server-sent-events line of a chat completion stream.

    Returns ``None`` on the terminal ``[DONE]`` marker and an empty list for
    lines that carry nothing (comments, keep-alives, role-only deltas).
    """
    line = line.strip()
    if not line.startswith(SSE_DATA_PREFIX):
        return []
    data = line[len(SSE_DATA_PREFIX) :].strip()
    if data == SSE_DONE:
        return None

    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        raise LLMClientError(f"Invalid chat completion chunk: {exc}") from exc
    if not isinstance(payload, dict):
        raise LLMClientError("Invalid chat completion chunk: expected an object")

    deltas: list[StreamDelta] = []
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        delta = choices[0].get("delta") if isinstance(choices[0], dict) else None
        content = delta.get("content") if isinstance(delta, dict) else None
        if isinstance(content, str) and content:
            deltas.append(StreamDelta(text=content))

    usage = _parse_usage(payload.get("usage"))
    if usage is not None:
        deltas.append(StreamDelta(usage=usage))
    return deltas


class OpenAIChatClient:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        model: str,
        max_tokens: int = 1024,
        temperature: float = 0.3,
        timeout_seconds: float = 30.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=timeout_seconds)

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> OpenAIChatClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def stream_chat(self, messages: list[dict[str, str]]) -> Iterator[StreamDelta]:
        if not self._api_key:
            raise ConfigurationError("OPENAI_API_KEY is not set")

        request_body = {
            "model": self.model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
        }
        try:
            with self._http.stream(
                "POST",
                f"{self._base_url}/chat/completions",
                json=request_body,
                headers={"Authorization": f"Bearer {self._api_key}"},
            ) as response:
                if response.is_error:
                    response.read()
                    raise LLMClientError(
                        f"OpenAI API error ({response.status_code}): {response.text}",
                        status_code=response.status_code,
                    )

                for line in response.iter_lines():
                    deltas = parse_stream_line(line)
                    if deltas is None:
                        return
                    yield from deltas
        except (httpx.HTTPError, httpx.StreamError) as exc:
            raise LLMClientError(str(exc)) from exc

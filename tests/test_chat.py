from datetime import datetime, timezone

from docsrag.llm import StreamDelta
from docsrag.services.rag.chat import (
    ANONYMOUS_SYSTEM_PROMPT,
    AUTHENTICATED_SYSTEM_PROMPT,
    build_messages,
    stream_answer,
)
from docsrag.services.rag.types import ChatMessage, TokenUsage


class FakeLLMClient:
    model = "fake-model"

    def __init__(self, deltas: list[StreamDelta]) -> None:
        self._deltas = deltas
        self.messages: list[dict[str, str]] | None = None

    def stream_chat(self, messages):
        self.messages = messages
        yield from self._deltas


def _history(turns: int) -> list[ChatMessage]:
    created = datetime(2026, 10, 1, tzinfo=timezone.utc)
    history: list[ChatMessage] = []
    for turn in range(turns):
        history.append(ChatMessage(role="user", content=f"q{turn}", created_at=created))
        history.append(ChatMessage(role="assistant", content=f"a{turn}", created_at=created))
    return history


def test_build_messages_selects_prompt_by_identity() -> None:
    authenticated = build_messages(context="CTX", query="hi", history=[], authenticated=True)
    anonymous = build_messages(context="CTX", query="hi", history=[], authenticated=False)

    assert authenticated[0]["content"].startswith(AUTHENTICATED_SYSTEM_PROMPT)
    assert anonymous[0]["content"].startswith(ANONYMOUS_SYSTEM_PROMPT)
    assert "register" in ANONYMOUS_SYSTEM_PROMPT
    assert authenticated[0]["content"].endswith("Context from documentation:\nCTX")
    assert authenticated[-1] == {"role": "user", "content": "hi"}


def test_build_messages_keeps_last_ten_history_messages() -> None:
    messages = build_messages(context="", query="next", history=_history(8), authenticated=True)

    history_part = messages[1:-1]
    assert len(history_part) == 10
    assert history_part[0] == {"role": "user", "content": "q3"}
    assert history_part[-1] == {"role": "assistant", "content": "a7"}


def test_stream_answer_yields_fragments_and_reports_usage() -> None:
    usage = TokenUsage(prompt_tokens=30, completion_tokens=3, total_tokens=33)
    client = FakeLLMClient(
        [StreamDelta(text="Use "), StreamDelta(text="the CLI."), StreamDelta(usage=usage)]
    )
    reported: list[tuple[TokenUsage, int]] = []

    fragments = list(
        stream_answer(
            client,
            context="[Source 1: Setup > Install]\nRun the installer.",
            query="How do I install?",
            history=[],
            authenticated=False,
            on_usage=lambda totals, duration_ms: reported.append((totals, duration_ms)),
        )
    )

    assert fragments == ["Use ", "the CLI."]
    assert len(reported) == 1
    assert reported[0][0] == usage
    assert reported[0][1] >= 0
    assert client.messages is not None
    assert "Run the installer." in client.messages[0]["content"]


def test_stream_answer_without_usage_skips_callback() -> None:
    client = FakeLLMClient([StreamDelta(text="ok")])
    reported: list[object] = []

    fragments = list(
        stream_answer(
            client,
            context="",
            query="hi",
            history=[],
            authenticated=True,
            on_usage=lambda totals, duration_ms: reported.append(totals),
        )
    )

    assert fragments == ["ok"]
    assert reported == []

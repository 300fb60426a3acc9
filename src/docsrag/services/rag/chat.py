from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
import time

from docsrag.llm import LLMClient
from docsrag.logging import get_logger
from docsrag.services.rag.types import ChatMessage, TokenUsage

logger = get_logger(__name__)

HISTORY_WINDOW = 10

AUTHENTICATED_SYSTEM_PROMPT = """You are the Docs Assistant, an AI helper for the platform documentation.
Answer questions using ONLY the provided context from the documentation and event data.

Rules:
- Be concise and helpful
- When users ask about events (dates, locations, countries, themes, capacity), use the event data in the context to give specific, accurate answers
- Prioritize user-facing guides over API reference docs:
  * Favor Admin, Getting Started, Features and AI guides
  * Only cite API documentation when the user explicitly asks about an API, endpoint, route or integration
  * When both UI and API docs are available, prefer the UI explanation
- Reference specific documentation sections when relevant
- If the context doesn't contain the answer, say so honestly
- Never make up features, events or capabilities that are not in the context
- Format responses with markdown for readability"""

ANONYMOUS_SYSTEM_PROMPT = """You are the Docs Assistant, a friendly guide to the platform.
You help potential participants learn about the platform and encourage them to register.

Rules:
- Be enthusiastic and welcoming
- When users ask about events (dates, locations, countries, themes), use the event data in the context to give specific, accurate answers
- Prioritize user-facing content over technical API docs:
  * Focus on how-to guides, getting started tutorials and feature explanations
  * Only mention API endpoints if the user specifically asks about technical integration
- Answer questions using ONLY the provided context
- When relevant, encourage users to sign up or register for events
- If asked about features only available to registered users, mention they can access more by creating an account
- Keep responses concise and engaging
- Never make up features, events or capabilities that are not in the context"""

UsageCallback = Callable[[TokenUsage, int], None]


def system_prompt_for(authenticated: bool) -> str:
    return AUTHENTICATED_SYSTEM_PROMPT if authenticated else ANONYMOUS_SYSTEM_PROMPT


def build_messages(
    *,
    context: str,
    query: str,
    history: Sequence[ChatMessage],
    authenticated: bool,
    history_window: int = HISTORY_WINDOW,
) -> list[dict[str, str]]:
    messages = [
        {
            "role": "system",
            "content": f"{system_prompt_for(authenticated)}\n\nContext from documentation:\n{context}",
        }
    ]
    recent = list(history)[-history_window:] if history_window > 0 else []
    messages.extend({"role": message.role, "content": message.content} for message in recent)
    messages.append({"role": "user", "content": query})
    return messages


def stream_answer(
    llm_client: LLMClient,
    *,
    context: str,
    query: str,
    history: Sequence[ChatMessage],
    authenticated: bool,
    on_usage: UsageCallback | None = None,
    history_window: int = HISTORY_WINDOW,
) -> Iterator[str]:
    """Yield answer text fragments as the generation service streams them.

    Usage totals from the final stream item are logged and passed to
    ``on_usage`` together with the elapsed milliseconds. Errors raised by
    the client propagate to the consumer at the point they occur.
    """
    messages = build_messages(
        context=context,
        query=query,
        history=history,
        authenticated=authenticated,
        history_window=history_window,
    )

    started = time.perf_counter()
    usage: TokenUsage | None = None
    for delta in llm_client.stream_chat(messages):
        if delta.text:
            yield delta.text
        if delta.usage is not None:
            usage = delta.usage

    duration_ms = int((time.perf_counter() - started) * 1000)
    if usage is None:
        logger.warning("generation_usage_missing", model=llm_client.model, duration_ms=duration_ms)
        return

    logger.info(
        "generation_usage",
        model=llm_client.model,
        prompt_tokens=usage.prompt_tokens,
        completion_tokens=usage.completion_tokens,
        total_tokens=usage.total_tokens,
        duration_ms=duration_ms,
    )
    if on_usage is not None:
        on_usage(usage, duration_ms)

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Protocol

API_PATTERN = re.compile(
    r"\b(api|endpoint|route|rest|http|post|get|put|delete|integration)\b",
    re.IGNORECASE,
)
EVENT_PATTERN = re.compile(
    r"\b(event|hackathon|schedule|country|countries|location|venue|date|when|where"
    r"|register|registration|upcoming|capacity)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class QueryIntent:
    is_api: bool = False
    is_event: bool = False


class IntentClassifier(Protocol):
    def classify(self, query: str) -> QueryIntent: ...


class KeywordIntentClassifier:
    """Flags API and event questions with whole-word keyword patterns."""

    def __init__(
        self,
        *,
        api_pattern: re.Pattern[str] = API_PATTERN,
        event_pattern: re.Pattern[str] = EVENT_PATTERN,
    ) -> None:
        self._api_pattern = api_pattern
        self._event_pattern = event_pattern

    def classify(self, query: str) -> QueryIntent:
        return QueryIntent(
            is_api=bool(self._api_pattern.search(query)),
            is_event=bool(self._event_pattern.search(query)),
        )

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import replace

from docsrag.logging import get_logger
from docsrag.services.rag.chunk_store import EMBEDDING_FIELD, VectorSearchBackend, VectorSearchQuery
from docsrag.services.rag.embedding_client import EmbeddingClient
from docsrag.services.rag.intent import IntentClassifier, KeywordIntentClassifier, QueryIntent
from docsrag.services.rag.types import Citation, RetrievalResult, RetrievedChunk

logger = get_logger(__name__)

CATEGORY_BOOST: dict[str, float] = {
    "events": 1.6,
    "admin": 1.5,
    "getting-started": 1.4,
    "features": 1.2,
    "ai": 1.1,
    "docs": 1.0,
    "api": 0.3,
}
DEFAULT_BOOST = 1.0
API_PENALTY_BOOST = 0.15
EVENT_INTENT_MULTIPLIER = 1.3
EVENT_OVERSAMPLE_FACTOR = 2

DEFAULT_TOP_K = 5
EVENT_TOP_K = 10
DEFAULT_SCORE_THRESHOLD = 0.7
API_CANDIDATE_MULTIPLIER = 20
CANDIDATE_MULTIPLIER = 30
RESULT_MULTIPLIER = 3
DEFAULT_VECTOR_INDEX = "rag_document_vector"

CONTEXT_SEPARATOR = "\n\n---\n\n"


def category_boost(
    category: str,
    intent: QueryIntent,
    boosts: Mapping[str, float] = CATEGORY_BOOST,
) -> float:
    category = category.lower()
    boost = boosts.get(category, DEFAULT_BOOST)
    if category == "api" and not intent.is_api:
        boost = API_PENALTY_BOOST
    if category == "events" and intent.is_event:
        boost *= EVENT_INTENT_MULTIPLIER
    return boost


def apply_boosts(chunks: list[RetrievedChunk], intent: QueryIntent) -> list[RetrievedChunk]:
    boosted = [
        replace(chunk, score=chunk.score * category_boost(chunk.category, intent))
        for chunk in chunks
    ]
    boosted.sort(key=lambda chunk: chunk.score, reverse=True)
    return boosted


def build_context(chunks: list[RetrievedChunk]) -> str:
    return CONTEXT_SEPARATOR.join(
        f"[Source {position}: {chunk.title} > {chunk.section}]\n{chunk.content}"
        for position, chunk in enumerate(chunks, start=1)
    )


def dedupe_citations(citations: list[Citation]) -> list[Citation]:
    seen: set[tuple[str, str]] = set()
    unique: list[Citation] = []
    for citation in citations:
        key = (citation.url, citation.section)
        if key in seen:
            continue
        seen.add(key)
        unique.append(citation)
    return unique


class RetrievalEngine:
    """Embeds a query, searches the chunk index and re-ranks by category.

    Anonymous callers only ever see ``public`` chunks. When nothing clears
    the score threshold the single best candidate is returned instead, so a
    non-empty corpus always yields some context.
    """

    def __init__(
        self,
        *,
        embedding_client: EmbeddingClient,
        search_backend: VectorSearchBackend,
        intent_classifier: IntentClassifier | None = None,
        index_name: str = DEFAULT_VECTOR_INDEX,
        default_score_threshold: float = DEFAULT_SCORE_THRESHOLD,
    ) -> None:
        self._embedding_client = embedding_client
        self._search = search_backend
        self._intent = intent_classifier or KeywordIntentClassifier()
        self._index_name = index_name
        self._default_score_threshold = default_score_threshold

    def retrieve_context(
        self,
        query: str,
        *,
        authenticated: bool,
        category: str | None = None,
        top_k: int | None = None,
        score_threshold: float | None = None,
    ) -> RetrievalResult:
        normalized_query = query.strip()
        if not normalized_query:
            raise ValueError("query must not be empty")

        intent = self._intent.classify(normalized_query)
        if top_k is None:
            top_k = EVENT_TOP_K if intent.is_event else DEFAULT_TOP_K
        if top_k <= 0:
            raise ValueError("top_k must be > 0")
        threshold = self._default_score_threshold if score_threshold is None else score_threshold

        query_vector = self._embedding_client.embed_query(normalized_query)

        search_filter: dict[str, str] = {}
        if not authenticated:
            search_filter["access_level"] = "public"
        if category:
            search_filter["category"] = category

        multiplier = API_CANDIDATE_MULTIPLIER if intent.is_api else CANDIDATE_MULTIPLIER
        if intent.is_event:
            multiplier *= EVENT_OVERSAMPLE_FACTOR

        candidates = self._search.vector_search(
            VectorSearchQuery(
                index=self._index_name,
                path=EMBEDDING_FIELD,
                query_vector=query_vector,
                num_candidates=top_k * multiplier,
                limit=top_k * RESULT_MULTIPLIER,
                filter=search_filter,
            )
        )

        top_results = apply_boosts(candidates, intent)[:top_k]
        relevant = [chunk for chunk in top_results if chunk.score >= threshold]
        chunks = relevant or top_results[:1]

        citations = dedupe_citations(
            [
                Citation(
                    title=chunk.title,
                    url=chunk.url,
                    section=chunk.section,
                    relevance_score=chunk.score,
                )
                for chunk in chunks
            ]
        )
        logger.info(
            "retrieval_completed",
            candidates=len(candidates),
            returned=len(chunks),
            above_threshold=len(relevant),
            authenticated=authenticated,
            is_api=intent.is_api,
            is_event=intent.is_event,
        )
        return RetrievalResult(context=build_context(chunks), citations=citations)

from __future__ import annotations

from typing import Any, Literal, Protocol

import httpx

from docsrag.errors import ConfigurationError, ProviderError
from docsrag.logging import get_logger
from docsrag.services.rag.types import EmbeddingResult

logger = get_logger(__name__)

InputType = Literal["document", "query"]
VOYAGE_BATCH_SIZE = 128


class EmbeddingClientError(ProviderError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message, provider="voyage", status_code=status_code)


class EmbeddingClient(Protocol):
    def embed_documents(self, texts: list[str]) -> EmbeddingResult: ...

    def embed_query(self, text: str) -> list[float]: ...


class VoyageEmbeddingClient:
    """Embedding client for a Voyage-compatible ``/embeddings`` endpoint.

    Documents and queries are embedded with separate ``input_type`` values
    into one shared vector space, so the query model may be a cheaper
    variant. Document batches are sent sequentially; a failing batch aborts
    the whole call without retrying the remaining batches.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        document_model: str,
        query_model: str,
        batch_size: int = VOYAGE_BATCH_SIZE,
        timeout_seconds: float = 30.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._document_model = document_model
        self._query_model = query_model
        self._batch_size = batch_size
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=timeout_seconds)

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> VoyageEmbeddingClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def embed_documents(self, texts: list[str]) -> EmbeddingResult:
        if not texts:
            return EmbeddingResult(embeddings=[], total_tokens=0)

        embeddings: list[list[float]] = []
        total_tokens = 0
        for start in range(0, len(texts), self._batch_size):
            batch = texts[start : start + self._batch_size]
            vectors, tokens = self._call(batch, input_type="document", model=self._document_model)
            embeddings.extend(vectors)
            total_tokens += tokens
            logger.debug(
                "embedding_batch_completed",
                batch=start // self._batch_size,
                size=len(batch),
                tokens=tokens,
            )

        return EmbeddingResult(embeddings=embeddings, total_tokens=total_tokens)

    def embed_query(self, text: str) -> list[float]:
        vectors, _ = self._call([text], input_type="query", model=self._query_model)
        return vectors[0]

    def _call(
        self,
        texts: list[str],
        *,
        input_type: InputType,
        model: str,
    ) -> tuple[list[list[float]], int]:
        if not self._api_key:
            raise ConfigurationError("VOYAGE_API_KEY is not set")

        try:
            response = self._http.post(
                f"{self._base_url}/embeddings",
                json={"input": texts, "model": model, "input_type": input_type},
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as exc:
            raise EmbeddingClientError(str(exc)) from exc

        if response.is_error:
            raise EmbeddingClientError(
                f"Voyage API error ({response.status_code}): {response.text}",
                status_code=response.status_code,
            )

        return self._parse_payload(response.json(), expected=len(texts))

    @staticmethod
    def _parse_payload(payload: Any, *, expected: int) -> tuple[list[list[float]], int]:
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise EmbeddingClientError("Invalid embeddings payload: missing data")

        indexed: list[tuple[int, list[float]]] = []
        for position, item in enumerate(data):
            embedding = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(embedding, list) or not embedding:
                raise EmbeddingClientError("Invalid embeddings payload: missing embedding vector")
            index = item.get("index", position)
            indexed.append((int(index), [float(value) for value in embedding]))

        if len(indexed) != expected:
            raise EmbeddingClientError(
                f"Invalid embeddings payload: expected {expected} vectors, got {len(indexed)}"
            )

        indexed.sort(key=lambda pair: pair[0])
        usage = payload.get("usage")
        total_tokens = usage.get("total_tokens", 0) if isinstance(usage, dict) else 0
        return [vector for _, vector in indexed], int(total_tokens)

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from docsrag.config import get_settings
from docsrag.db import Base, get_engine
from docsrag.llm import StreamDelta
from docsrag.main import app, get_embedding_client, get_llm_client
import docsrag.models  # noqa: F401
from docsrag.services.rag.types import EmbeddingResult, TokenUsage

VOCABULARY = ("install", "project", "api", "event", "admin", "team", "deploy", "search")


def keyword_vector(text: str) -> list[float]:
    lowered = text.lower()
    return [float(lowered.count(word)) for word in VOCABULARY] + [1.0]


class KeywordEmbeddingClient:
    def __init__(self) -> None:
        self.document_batches: list[list[str]] = []
        self.queries: list[str] = []

    def embed_documents(self, texts: list[str]) -> EmbeddingResult:
        self.document_batches.append(list(texts))
        return EmbeddingResult(
            embeddings=[keyword_vector(text) for text in texts],
            total_tokens=sum(len(text) // 4 for text in texts),
        )

    def embed_query(self, text: str) -> list[float]:
        self.queries.append(text)
        return keyword_vector(text)


class ScriptedLLMClient:
    model = "scripted-model"

    def __init__(self, fragments: tuple[str, ...] = ("Hello", " there")) -> None:
        self._fragments = fragments
        self.requests: list[list[dict[str, str]]] = []

    def stream_chat(self, messages: list[dict[str, str]]) -> Iterator[StreamDelta]:
        self.requests.append(messages)
        for fragment in self._fragments:
            yield StreamDelta(text=fragment)
        yield StreamDelta(usage=TokenUsage(prompt_tokens=10, completion_tokens=2, total_tokens=12))


@pytest.fixture(autouse=True)
def reset_docsrag_caches() -> Iterator[None]:
    get_settings.cache_clear()
    get_engine.cache_clear()
    yield
    get_settings.cache_clear()
    get_engine.cache_clear()


@pytest.fixture
def engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[Engine]:
    sqlite_db_path = tmp_path / "docsrag-tests.db"
    monkeypatch.setenv("DOCSRAG_DATABASE_URL", f"sqlite+pysqlite:///{sqlite_db_path}")
    monkeypatch.setenv("DOCSRAG_DB_ECHO", "false")

    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def embedding_client() -> KeywordEmbeddingClient:
    return KeywordEmbeddingClient()


@pytest.fixture
def llm_client() -> ScriptedLLMClient:
    return ScriptedLLMClient()


@pytest.fixture
def client(
    engine: Engine,
    embedding_client: KeywordEmbeddingClient,
    llm_client: ScriptedLLMClient,
) -> Iterator[TestClient]:
    app.dependency_overrides[get_embedding_client] = lambda: embedding_client
    app.dependency_overrides[get_llm_client] = lambda: llm_client

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()

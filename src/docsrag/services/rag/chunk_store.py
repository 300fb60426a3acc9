from __future__ import annotations

from array import array
from dataclasses import dataclass, field
from datetime import datetime
import heapq
import math
from typing import Any, Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from docsrag.models import RagChunkRecord
from docsrag.services.rag.types import RetrievedChunk

CHUNK_SCHEMA_VERSION = 1
EMBEDDING_FIELD = "embedding"

# Filter keys accepted by the vector search stage, mapped to chunk columns.
FILTER_COLUMNS = {
    "access_level": RagChunkRecord.access_level,
    "category": RagChunkRecord.category,
    "doc_type": RagChunkRecord.doc_type,
    "file_path": RagChunkRecord.file_path,
}


@dataclass(frozen=True)
class NewChunk:
    content: str
    content_hash: str
    access_level: str
    file_path: str
    title: str
    section: str
    category: str
    url: str
    doc_type: str
    chunk_index: int
    total_chunks: int
    tokens: int
    embedding: list[float]
    run_id: str
    ingested_at: datetime
    ingested_by: str
    schema_version: int = CHUNK_SCHEMA_VERSION


@dataclass(frozen=True)
class IndexedFile:
    file_path: str
    title: str
    category: str
    url: str
    access_level: str
    chunks: int
    total_tokens: int
    last_ingested: datetime | None


@dataclass(frozen=True)
class VectorSearchQuery:
    index: str
    path: str
    query_vector: list[float]
    num_candidates: int
    limit: int
    filter: dict[str, Any] = field(default_factory=dict)


class VectorSearchBackend(Protocol):
    def vector_search(self, query: VectorSearchQuery) -> list[RetrievedChunk]: ...


def _encode_embedding(values: list[float]) -> bytes:
    vector = array("f", values)
    return vector.tobytes()


def _decode_embedding(blob: bytes) -> list[float]:
    vector = array("f")
    vector.frombytes(blob)
    return vector.tolist()


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def similarity_score(a: list[float], b: list[float]) -> float:
    """Cosine similarity rescaled to 0..1, the scale of hosted vector-search scores."""
    return (1.0 + _cosine(a, b)) / 2.0


def _to_record(chunk: NewChunk) -> RagChunkRecord:
    return RagChunkRecord(
        content=chunk.content,
        content_hash=chunk.content_hash,
        access_level=chunk.access_level,
        file_path=chunk.file_path,
        title=chunk.title,
        section=chunk.section,
        category=chunk.category,
        url=chunk.url,
        doc_type=chunk.doc_type,
        chunk_index=chunk.chunk_index,
        total_chunks=chunk.total_chunks,
        tokens=chunk.tokens,
        embedding=_encode_embedding(chunk.embedding),
        embedding_dim=len(chunk.embedding),
        run_id=chunk.run_id,
        ingested_at=chunk.ingested_at,
        ingested_by=chunk.ingested_by,
        schema_version=chunk.schema_version,
    )


class ChunkStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def stored_hashes(self, doc_type: str = "docs") -> dict[str, str]:
        """Map each stored file path to the hash of its most recently ingested chunk."""
        with Session(self._engine) as session:
            rows = session.execute(
                select(RagChunkRecord.file_path, RagChunkRecord.content_hash)
                .where(RagChunkRecord.doc_type == doc_type)
                .order_by(RagChunkRecord.ingested_at.desc(), RagChunkRecord.id.desc())
            ).all()

        hashes: dict[str, str] = {}
        for file_path, content_hash in rows:
            hashes.setdefault(file_path, content_hash)
        return hashes

    def replace_file_chunks(self, file_path: str, chunks: list[NewChunk]) -> int:
        """Delete every chunk stored for ``file_path`` and insert ``chunks`` atomically."""
        if any(chunk.file_path != file_path for chunk in chunks):
            raise ValueError("all chunks must belong to the replaced file path")

        with Session(self._engine) as session, session.begin():
            deleted = session.execute(
                delete(RagChunkRecord).where(RagChunkRecord.file_path == file_path)
            ).rowcount
            session.add_all([_to_record(chunk) for chunk in chunks])
        return int(deleted or 0)

    def replace_chunks_by_type(self, doc_type: str, chunks: list[NewChunk]) -> int:
        with Session(self._engine) as session, session.begin():
            deleted = session.execute(
                delete(RagChunkRecord).where(RagChunkRecord.doc_type == doc_type)
            ).rowcount
            session.add_all([_to_record(chunk) for chunk in chunks])
        return int(deleted or 0)

    def delete_file_chunks(self, file_path: str) -> int:
        return self.replace_file_chunks(file_path, [])

    def delete_all(self) -> int:
        with Session(self._engine) as session, session.begin():
            deleted = session.execute(delete(RagChunkRecord)).rowcount
        return int(deleted or 0)

    def count_chunks(self) -> int:
        with Session(self._engine) as session:
            return int(session.scalar(select(func.count()).select_from(RagChunkRecord)) or 0)

    def count_files(self) -> int:
        with Session(self._engine) as session:
            return int(
                session.scalar(select(func.count(func.distinct(RagChunkRecord.file_path)))) or 0
            )

    def list_indexed_files(self) -> list[IndexedFile]:
        with Session(self._engine) as session:
            rows = session.execute(
                select(
                    RagChunkRecord.file_path,
                    func.min(RagChunkRecord.title),
                    func.min(RagChunkRecord.category),
                    func.min(RagChunkRecord.url),
                    func.min(RagChunkRecord.access_level),
                    func.count(RagChunkRecord.id),
                    func.sum(RagChunkRecord.tokens),
                    func.max(RagChunkRecord.ingested_at),
                )
                .group_by(RagChunkRecord.file_path)
                .order_by(func.min(RagChunkRecord.category), RagChunkRecord.file_path)
            ).all()

        return [
            IndexedFile(
                file_path=file_path,
                title=title,
                category=category,
                url=url,
                access_level=access_level,
                chunks=int(chunks),
                total_tokens=int(total_tokens or 0),
                last_ingested=last_ingested,
            )
            for (
                file_path,
                title,
                category,
                url,
                access_level,
                chunks,
                total_tokens,
                last_ingested,
            ) in rows
        ]


class SqlVectorSearch:
    """Vector search stage over the chunk table.

    Filters run in SQL; similarity is scored in process. The ``index`` name is
    carried for parity with hosted vector indexes and only used for logging.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def vector_search(self, query: VectorSearchQuery) -> list[RetrievedChunk]:
        if query.path != EMBEDDING_FIELD:
            raise ValueError(f"Unsupported vector field path: {query.path}")
        if query.num_candidates < query.limit:
            raise ValueError("num_candidates must be >= limit")

        stmt = select(
            RagChunkRecord.content,
            RagChunkRecord.title,
            RagChunkRecord.url,
            RagChunkRecord.section,
            RagChunkRecord.category,
            RagChunkRecord.embedding,
        )
        for key, value in query.filter.items():
            column = FILTER_COLUMNS.get(key)
            if column is None:
                raise ValueError(f"Unsupported vector search filter: {key}")
            stmt = stmt.where(column == value)

        with Session(self._engine) as session:
            rows = session.execute(stmt).all()

        scored = (
            RetrievedChunk(
                content=content,
                title=title,
                url=url,
                section=section,
                category=category,
                score=similarity_score(query.query_vector, _decode_embedding(embedding)),
            )
            for content, title, url, section, category, embedding in rows
        )
        candidates = heapq.nlargest(query.num_candidates, scored, key=lambda hit: hit.score)
        return candidates[: query.limit]

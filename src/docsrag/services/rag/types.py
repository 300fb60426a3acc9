from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Literal

AccessLevel = Literal["public", "authenticated"]
DocumentType = Literal["docs", "event"]
FileStatus = Literal["new", "changed", "unchanged", "deleted"]
RunStatus = Literal["running", "completed", "failed", "cancelled"]
MessageRole = Literal["user", "assistant"]

RUN_STATUSES: tuple[str, ...] = ("running", "completed", "failed", "cancelled")


@dataclass(frozen=True)
class ParsedSection:
    heading: str
    level: int
    content: str


@dataclass(frozen=True)
class ParsedDocument:
    file_path: str
    title: str
    category: str
    url: str
    frontmatter: dict[str, Any]
    sections: list[ParsedSection]
    raw_content: str


@dataclass(frozen=True)
class DocumentChunk:
    content: str
    section: str
    section_index: int
    index: int
    tokens: int


@dataclass(frozen=True)
class ChunkingConfig:
    max_chunk_tokens: int = 512
    overlap_tokens: int = 64
    min_chunk_tokens: int = 50


@dataclass(frozen=True)
class FileChange:
    file_path: str
    status: FileStatus
    content_hash: str
    raw_content: str
    error: str | None = None


@dataclass(frozen=True)
class EmbeddingResult:
    embeddings: list[list[float]]
    total_tokens: int


@dataclass
class IngestionStats:
    files_processed: int = 0
    files_skipped: int = 0
    chunks_created: int = 0
    chunks_deleted: int = 0
    embeddings_generated: int = 0
    total_tokens: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "files_processed": self.files_processed,
            "files_skipped": self.files_skipped,
            "chunks_created": self.chunks_created,
            "chunks_deleted": self.chunks_deleted,
            "embeddings_generated": self.embeddings_generated,
            "total_tokens": self.total_tokens,
            "errors": [dict(error) for error in self.errors],
        }


@dataclass(frozen=True)
class EventRecord:
    event_id: str
    name: str
    description: str
    start_date: date
    end_date: date
    location: str
    slug: str | None = None
    theme: str = ""
    status: str = ""
    registration_deadline: date | None = None
    city: str = ""
    country: str = ""
    venue: str = ""
    capacity: int | None = None
    is_virtual: bool = False
    tags: tuple[str, ...] = ()
    rules: str = ""
    judging_criteria: tuple[str, ...] = ()
    about: str = ""


@dataclass(frozen=True)
class Citation:
    title: str
    url: str
    section: str
    relevance_score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "url": self.url,
            "section": self.section,
            "relevance_score": self.relevance_score,
        }


@dataclass(frozen=True)
class RetrievedChunk:
    content: str
    title: str
    url: str
    section: str
    category: str
    score: float


@dataclass(frozen=True)
class RetrievalResult:
    context: str
    citations: list[Citation]


@dataclass(frozen=True)
class ChatMessage:
    role: MessageRole
    content: str
    created_at: datetime | None = None
    sources: list[Citation] | None = None
    feedback: str | None = None


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

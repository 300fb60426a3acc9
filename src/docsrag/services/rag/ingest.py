from __future__ import annotations

from collections.abc import Collection
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy.engine import Engine

from docsrag.errors import ConfigurationError, PerFileIngestionError, PipelineFatalError
from docsrag.logging import get_logger
from docsrag.services.rag.change_detector import content_hash, detect_changes
from docsrag.services.rag.chunk_store import ChunkStore, IndexedFile, NewChunk
from docsrag.services.rag.chunker import TokenEstimator, chunk_document, estimate_tokens
from docsrag.services.rag.embedding_client import EmbeddingClient
from docsrag.services.rag.loader import scan_markdown_files
from docsrag.services.rag.parser import parse_markdown
from docsrag.services.rag.runs import IngestionRun, IngestionRunStore, utcnow
from docsrag.services.rag.types import (
    AccessLevel,
    ChunkingConfig,
    EventRecord,
    FileChange,
    IngestionStats,
)

logger = get_logger(__name__)

DEFAULT_PUBLIC_CATEGORIES = frozenset({"getting-started", "general"})
EVENTS_CATEGORY = "events"
EVENT_SECTION = "Event Details"


class EventSource(Protocol):
    def fetch_events(self) -> list[EventRecord]: ...


def _format_date(value: Any) -> str:
    return f"{value:%B} {value.day}, {value.year}"


def render_event(event: EventRecord) -> str:
    location = ", ".join(part for part in (event.location, event.city, event.country) if part)
    parts = [
        f"Event: {event.name}",
        f"Description: {event.description}",
    ]
    if event.theme:
        parts.append(f"Theme: {event.theme}")
    if event.status:
        parts.append(f"Status: {event.status}")
    parts.append(f"Dates: {_format_date(event.start_date)} to {_format_date(event.end_date)}")
    if event.registration_deadline is not None:
        parts.append(f"Registration Deadline: {_format_date(event.registration_deadline)}")
    parts.append(f"Location: {location}")
    if event.venue:
        parts.append(f"Venue: {event.venue}")
    parts.append(f"Virtual: {'Yes' if event.is_virtual else 'No'}")
    if event.capacity is not None:
        parts.append(f"Capacity: {event.capacity}")
    if event.tags:
        parts.append(f"Tags: {', '.join(event.tags)}")
    if event.rules:
        parts.append(f"Rules: {event.rules}")
    if event.judging_criteria:
        parts.append(f"Judging Criteria: {', '.join(event.judging_criteria)}")
    if event.about:
        parts.append(f"About: {event.about}")
    return "\n".join(parts)


class IngestionService:
    """Drives scan -> diff -> parse -> chunk -> embed -> persist -> prune.

    Failures inside a single file are recorded in the run stats and the run
    moves on; anything else fails the run and raises ``PipelineFatalError``.
    The running check and cancel flag are advisory: nothing stops two runs
    started at the same time, and cancelling does not interrupt a run that
    is already executing.
    """

    def __init__(
        self,
        *,
        engine: Engine,
        embedding_client: EmbeddingClient,
        chunking: ChunkingConfig | None = None,
        public_categories: Collection[str] = DEFAULT_PUBLIC_CATEGORIES,
        event_source: EventSource | None = None,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self._chunks = ChunkStore(engine)
        self._runs = IngestionRunStore(engine)
        self._embedding_client = embedding_client
        self._chunking = chunking or ChunkingConfig()
        self._public_categories = frozenset(public_categories)
        self._event_source = event_source
        self._estimator = estimator

    def access_level_for(self, category: str) -> AccessLevel:
        return "public" if category in self._public_categories else "authenticated"

    def run_ingestion(
        self,
        docs_path: Path,
        *,
        triggered_by: str,
        force_reindex: bool = False,
    ) -> str:
        run = self.start_run(triggered_by=triggered_by)
        self.execute_run(run, docs_path=docs_path, force_reindex=force_reindex)
        return run.run_id

    def start_run(self, *, triggered_by: str) -> IngestionRun:
        try:
            run = self._runs.create(triggered_by)
        except Exception as exc:
            raise PipelineFatalError(f"Could not create ingestion run: {exc}") from exc
        logger.info("ingestion_run_started", run_id=run.run_id, triggered_by=triggered_by)
        return run

    def execute_run(
        self,
        run: IngestionRun,
        *,
        docs_path: Path,
        force_reindex: bool = False,
    ) -> IngestionStats:
        log = logger.bind(run_id=run.run_id)
        stats = IngestionStats()
        try:
            self._execute(
                run,
                stats,
                docs_path=docs_path,
                force_reindex=force_reindex,
            )
            finished = self._runs.finish(run, status="completed", stats=stats)
        except Exception as exc:
            stats.errors = [{"file": "pipeline", "error": str(exc)}]
            try:
                self._runs.finish(run, status="failed", stats=stats)
            except Exception:
                log.exception("ingestion_run_status_update_failed")
            log.error("ingestion_run_failed", error=str(exc))
            raise PipelineFatalError(str(exc), run_id=run.run_id) from exc

        if not finished:
            log.warning(
                "ingestion_run_already_finalized",
                files_processed=stats.files_processed,
                errors=len(stats.errors),
            )
            return stats

        log.info(
            "ingestion_run_completed",
            files_processed=stats.files_processed,
            files_skipped=stats.files_skipped,
            chunks_created=stats.chunks_created,
            chunks_deleted=stats.chunks_deleted,
            errors=len(stats.errors),
        )
        return stats

    def _execute(
        self,
        run: IngestionRun,
        stats: IngestionStats,
        *,
        docs_path: Path,
        force_reindex: bool,
    ) -> None:
        files = scan_markdown_files(docs_path)
        changes = detect_changes(
            files,
            docs_path=docs_path,
            stored_hashes=self._chunks.stored_hashes(),
            force_reindex=force_reindex,
        )
        stats.files_skipped = sum(1 for change in changes if change.status == "unchanged")

        for change in changes:
            if change.status not in ("new", "changed"):
                continue
            if change.error is not None:
                stats.errors.append({"file": change.file_path, "error": change.error})
                logger.warning(
                    "ingestion_file_unreadable",
                    run_id=run.run_id,
                    file=change.file_path,
                    error=change.error,
                )
                continue
            try:
                self._process_file(change, run=run, stats=stats)
            except PerFileIngestionError as exc:
                stats.errors.append(exc.to_stat())
                logger.warning(
                    "ingestion_file_failed",
                    run_id=run.run_id,
                    file=exc.file,
                    error=exc.error,
                )

        for change in changes:
            if change.status != "deleted":
                continue
            stats.chunks_deleted += self._chunks.delete_file_chunks(change.file_path)
            stats.files_processed += 1
            logger.info("ingestion_file_deleted", run_id=run.run_id, file=change.file_path)

        if self._event_source is not None:
            try:
                self._ingest_events(run, stats)
            except ConfigurationError:
                raise
            except Exception as exc:
                stats.errors.append({"file": "events", "error": str(exc)})
                logger.warning("ingestion_events_failed", run_id=run.run_id, error=str(exc))

    def _process_file(self, change: FileChange, *, run: IngestionRun, stats: IngestionStats) -> None:
        try:
            document = parse_markdown(change.raw_content, change.file_path)
            chunks = chunk_document(document, self._chunking, self._estimator)
            result = self._embedding_client.embed_documents([chunk.content for chunk in chunks])
            if len(result.embeddings) != len(chunks):
                raise ValueError(
                    f"expected {len(chunks)} embeddings, got {len(result.embeddings)}"
                )

            access_level = self.access_level_for(document.category)
            ingested_at = utcnow()
            new_chunks = [
                NewChunk(
                    content=chunk.content,
                    content_hash=change.content_hash,
                    access_level=access_level,
                    file_path=change.file_path,
                    title=document.title,
                    section=chunk.section,
                    category=document.category,
                    url=document.url,
                    doc_type="docs",
                    chunk_index=chunk.index,
                    total_chunks=len(chunks),
                    tokens=chunk.tokens,
                    embedding=embedding,
                    run_id=run.run_id,
                    ingested_at=ingested_at,
                    ingested_by=run.triggered_by,
                )
                for chunk, embedding in zip(chunks, result.embeddings)
            ]
            deleted = self._chunks.replace_file_chunks(change.file_path, new_chunks)
        except ConfigurationError:
            raise
        except Exception as exc:
            raise PerFileIngestionError(change.file_path, str(exc)) from exc

        stats.embeddings_generated += len(result.embeddings)
        stats.total_tokens += result.total_tokens
        stats.chunks_deleted += deleted
        stats.chunks_created += len(new_chunks)
        stats.files_processed += 1
        logger.info(
            "ingestion_file_processed",
            run_id=run.run_id,
            file=change.file_path,
            status=change.status,
            chunks=len(new_chunks),
        )

    def _ingest_events(self, run: IngestionRun, stats: IngestionStats) -> None:
        events = self._event_source.fetch_events()
        if not events:
            return

        texts = [render_event(event) for event in events]
        result = self._embedding_client.embed_documents(texts)
        stats.embeddings_generated += len(result.embeddings)
        stats.total_tokens += result.total_tokens

        ingested_at = utcnow()
        new_chunks = [
            NewChunk(
                content=text,
                content_hash=content_hash(text),
                access_level="public",
                file_path=f"event:{event.event_id}",
                title=event.name,
                section=EVENT_SECTION,
                category=EVENTS_CATEGORY,
                url=f"/events/{event.slug or event.event_id}",
                doc_type="event",
                chunk_index=0,
                total_chunks=1,
                tokens=estimate_tokens(text),
                embedding=embedding,
                run_id=run.run_id,
                ingested_at=ingested_at,
                ingested_by=run.triggered_by,
            )
            for event, text, embedding in zip(events, texts, result.embeddings)
        ]
        stats.chunks_deleted += self._chunks.replace_chunks_by_type("event", new_chunks)
        stats.chunks_created += len(new_chunks)
        stats.files_processed += len(events)

    def get_ingestion_stats(self) -> dict[str, Any]:
        last_run = self._runs.latest_completed()
        return {
            "total_chunks": self._chunks.count_chunks(),
            "total_files": self._chunks.count_files(),
            "last_run": (
                {
                    "run_id": last_run.run_id,
                    "completed_at": last_run.to_dict()["completed_at"],
                    "stats": last_run.stats,
                }
                if last_run is not None
                else None
            ),
        }

    def is_ingestion_running(self) -> bool:
        return self._runs.find_running() is not None

    def cancel_ingestion(self, run_id: str) -> bool:
        cancelled = self._runs.cancel(run_id)
        if cancelled:
            logger.info("ingestion_run_cancelled", run_id=run_id)
        return cancelled

    def list_ingestion_runs(self, limit: int = 20) -> list[IngestionRun]:
        return self._runs.list_recent(limit)

    def get_ingestion_run(self, run_id: str) -> IngestionRun | None:
        return self._runs.get(run_id)

    def list_indexed_files(self) -> list[IndexedFile]:
        return self._chunks.list_indexed_files()

    def delete_all_documents(self) -> int:
        deleted = self._chunks.delete_all()
        logger.info("rag_documents_deleted", deleted=deleted)
        return deleted

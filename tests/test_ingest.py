from datetime import date
from pathlib import Path

import pytest
from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from docsrag.errors import PipelineFatalError
from docsrag.models import RagChunkRecord
from docsrag.services.rag.embedding_client import EmbeddingClientError, VoyageEmbeddingClient
from docsrag.services.rag.ingest import IngestionService, render_event
from docsrag.services.rag.runs import IngestionRunStore
from docsrag.services.rag.types import EmbeddingResult, EventRecord


class FakeEmbeddingClient:
    def __init__(self, *, fail_on: str | None = None) -> None:
        self._fail_on = fail_on
        self.embedded: list[str] = []

    def embed_documents(self, texts: list[str]) -> EmbeddingResult:
        if self._fail_on and any(self._fail_on in text for text in texts):
            raise EmbeddingClientError("upstream rejected batch", status_code=500)
        self.embedded.extend(texts)
        return EmbeddingResult(embeddings=[[1.0, float(len(text))] for text in texts], total_tokens=3 * len(texts))

    def embed_query(self, text: str) -> list[float]:
        return [1.0, 0.0]


class FakeEventSource:
    def __init__(self, events: list[EventRecord] | None = None, *, error: Exception | None = None) -> None:
        self._events = events or []
        self._error = error

    def fetch_events(self) -> list[EventRecord]:
        if self._error is not None:
            raise self._error
        return self._events


def _doc(topic: str) -> str:
    return (
        f"This guide covers {topic} from start to finish. "
        f"It explains how {topic} fits into a project, which settings matter most, "
        f"and what to check when {topic} does not behave as expected in production."
    )


def _write_docs(root: Path) -> None:
    files = {
        "intro.md": _doc("the platform"),
        "getting-started/install.md": _doc("installation"),
        "admin/users.md": _doc("user management"),
    }
    for relative_path, text in files.items():
        path = root / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")


def _event(event_id: str, name: str) -> EventRecord:
    return EventRecord(
        event_id=event_id,
        name=name,
        description="A weekend of building with the community.",
        start_date=date(2026, 11, 7),
        end_date=date(2026, 11, 8),
        location="Convention Center",
        slug=name.lower().replace(" ", "-"),
        city="Lisbon",
        country="Portugal",
        capacity=200,
        tags=("ai", "data"),
    )


@pytest.fixture
def docs_root(tmp_path: Path) -> Path:
    root = tmp_path / "docs"
    _write_docs(root)
    return root


def _service(engine: Engine, embedding_client=None, **kwargs) -> IngestionService:
    return IngestionService(
        engine=engine,
        embedding_client=embedding_client or FakeEmbeddingClient(),
        **kwargs,
    )


def _chunks(engine: Engine) -> list[RagChunkRecord]:
    with Session(engine) as session:
        return list(session.scalars(select(RagChunkRecord).order_by(RagChunkRecord.file_path)).all())


def test_first_run_ingests_all_new_files(engine: Engine, docs_root: Path) -> None:
    service = _service(engine)

    run_id = service.run_ingestion(docs_root, triggered_by="tests")

    run = service.get_ingestion_run(run_id)
    assert run is not None
    assert run.status == "completed"
    assert run.triggered_by == "tests"
    assert run.completed_at is not None
    assert run.duration_ms is not None
    assert run.stats["files_processed"] == 3
    assert run.stats["chunks_created"] >= 3
    assert run.stats["embeddings_generated"] == run.stats["chunks_created"]
    assert run.stats["errors"] == []

    access = {chunk.file_path: (chunk.category, chunk.access_level) for chunk in _chunks(engine)}
    assert access == {
        "admin/users.md": ("admin", "authenticated"),
        "getting-started/install.md": ("getting-started", "public"),
        "intro.md": ("general", "public"),
    }


def test_rerun_without_edits_skips_every_file(engine: Engine, docs_root: Path) -> None:
    service = _service(engine)
    service.run_ingestion(docs_root, triggered_by="tests")

    run = service.get_ingestion_run(service.run_ingestion(docs_root, triggered_by="tests"))

    assert run is not None
    assert run.stats["files_skipped"] == 3
    assert run.stats["files_processed"] == 0
    assert run.stats["chunks_created"] == 0


def test_changed_file_is_the_only_one_reprocessed(engine: Engine, docs_root: Path) -> None:
    client = FakeEmbeddingClient()
    service = _service(engine, client)
    service.run_ingestion(docs_root, triggered_by="tests")
    untouched_before = [
        (chunk.id, chunk.content_hash) for chunk in _chunks(engine) if chunk.file_path != "intro.md"
    ]
    client.embedded.clear()

    (docs_root / "intro.md").write_text(_doc("the updated platform"), encoding="utf-8")
    run = service.get_ingestion_run(service.run_ingestion(docs_root, triggered_by="tests"))

    assert run is not None
    assert run.stats["files_processed"] == 1
    assert run.stats["files_skipped"] == 2
    assert run.stats["chunks_deleted"] >= 1
    assert all("updated platform" in text for text in client.embedded)
    untouched_after = [
        (chunk.id, chunk.content_hash) for chunk in _chunks(engine) if chunk.file_path != "intro.md"
    ]
    assert untouched_after == untouched_before


def test_deleted_file_chunks_are_removed(engine: Engine, docs_root: Path) -> None:
    service = _service(engine)
    service.run_ingestion(docs_root, triggered_by="tests")

    (docs_root / "admin" / "users.md").unlink()
    run = service.get_ingestion_run(service.run_ingestion(docs_root, triggered_by="tests"))

    assert run is not None
    assert run.stats["chunks_deleted"] > 0
    assert run.stats["files_processed"] == 1
    assert "admin/users.md" not in {chunk.file_path for chunk in _chunks(engine)}


def test_force_reindex_reprocesses_unchanged_files(engine: Engine, docs_root: Path) -> None:
    service = _service(engine)
    service.run_ingestion(docs_root, triggered_by="tests")

    run = service.get_ingestion_run(
        service.run_ingestion(docs_root, triggered_by="tests", force_reindex=True)
    )

    assert run is not None
    assert run.stats["files_processed"] == 3
    assert run.stats["files_skipped"] == 0
    assert run.stats["chunks_deleted"] == run.stats["chunks_created"]


def test_file_failure_is_recorded_without_aborting_run(engine: Engine, docs_root: Path) -> None:
    service = _service(engine, FakeEmbeddingClient(fail_on="user management"))

    run = service.get_ingestion_run(service.run_ingestion(docs_root, triggered_by="tests"))

    assert run is not None
    assert run.status == "completed"
    assert run.stats["files_processed"] == 2
    assert len(run.stats["errors"]) == 1
    assert run.stats["errors"][0]["file"] == "admin/users.md"
    assert "upstream rejected batch" in run.stats["errors"][0]["error"]


def test_missing_docs_root_fails_run(engine: Engine, tmp_path: Path) -> None:
    service = _service(engine)

    with pytest.raises(PipelineFatalError) as exc_info:
        service.run_ingestion(tmp_path / "missing", triggered_by="tests")

    run = service.get_ingestion_run(exc_info.value.run_id)
    assert run is not None
    assert run.status == "failed"
    assert run.completed_at is not None
    assert [error["file"] for error in run.stats["errors"]] == ["pipeline"]


def test_missing_embedding_credentials_fail_the_run(engine: Engine, docs_root: Path) -> None:
    client = VoyageEmbeddingClient(
        base_url="https://voyage.test/v1",
        api_key=None,
        document_model="voyage-doc",
        query_model="voyage-query",
    )
    service = _service(engine, client)

    with pytest.raises(PipelineFatalError, match="VOYAGE_API_KEY"):
        service.run_ingestion(docs_root, triggered_by="tests")

    client.close()
    assert service.get_ingestion_stats()["total_chunks"] == 0


def test_running_check_and_cancel(engine: Engine, docs_root: Path) -> None:
    service = _service(engine)
    run = service.start_run(triggered_by="tests")

    assert service.is_ingestion_running() is True
    assert service.cancel_ingestion(run.run_id) is True
    assert service.cancel_ingestion(run.run_id) is False
    assert service.is_ingestion_running() is False

    service.execute_run(run, docs_path=docs_root)

    cancelled = service.get_ingestion_run(run.run_id)
    assert cancelled is not None
    assert cancelled.status == "cancelled"
    assert cancelled.completed_at is not None
    assert cancelled.duration_ms is not None


def test_cancel_unknown_run_returns_false(engine: Engine) -> None:
    assert _service(engine).cancel_ingestion("does-not-exist") is False


def test_finish_rejects_non_terminal_status(engine: Engine) -> None:
    store = IngestionRunStore(engine)
    run = store.create("tests")

    with pytest.raises(ValueError):
        store.finish(run, status="running", stats=None)


def test_stats_report_totals_and_last_completed_run(engine: Engine, docs_root: Path) -> None:
    service = _service(engine)
    assert service.get_ingestion_stats() == {"total_chunks": 0, "total_files": 0, "last_run": None}

    run_id = service.run_ingestion(docs_root, triggered_by="tests")
    stats = service.get_ingestion_stats()

    assert stats["total_files"] == 3
    assert stats["total_chunks"] >= 3
    assert stats["last_run"]["run_id"] == run_id
    assert stats["last_run"]["stats"]["files_processed"] == 3
    assert [run.run_id for run in service.list_ingestion_runs()] == [run_id]


def test_event_records_are_indexed_as_public_event_chunks(engine: Engine, docs_root: Path) -> None:
    events = [_event("e1", "Autumn Hack"), _event("e2", "Winter Hack")]
    service = _service(engine, event_source=FakeEventSource(events))

    service.run_ingestion(docs_root, triggered_by="tests")
    rerun = service.get_ingestion_run(service.run_ingestion(docs_root, triggered_by="tests"))

    event_chunks = [chunk for chunk in _chunks(engine) if chunk.doc_type == "event"]
    assert sorted(chunk.file_path for chunk in event_chunks) == ["event:e1", "event:e2"]
    assert {chunk.access_level for chunk in event_chunks} == {"public"}
    assert {chunk.category for chunk in event_chunks} == {"events"}
    assert {chunk.section for chunk in event_chunks} == {"Event Details"}
    assert "/events/autumn-hack" in {chunk.url for chunk in event_chunks}
    assert rerun is not None
    assert rerun.stats["files_skipped"] == 3
    assert rerun.stats["chunks_deleted"] == 2


def test_event_source_failure_is_recorded(engine: Engine, docs_root: Path) -> None:
    service = _service(engine, event_source=FakeEventSource(error=RuntimeError("events api down")))

    run = service.get_ingestion_run(service.run_ingestion(docs_root, triggered_by="tests"))

    assert run is not None
    assert run.status == "completed"
    assert run.stats["errors"] == [{"file": "events", "error": "events api down"}]


def test_render_event_includes_schedule_and_location() -> None:
    text = render_event(_event("e1", "Autumn Hack"))

    assert "Event: Autumn Hack" in text
    assert "Dates: November 7, 2026 to November 8, 2026" in text
    assert "Location: Convention Center, Lisbon, Portugal" in text
    assert "Capacity: 200" in text
    assert "Tags: ai, data" in text


def test_delete_all_documents_and_list_files(engine: Engine, docs_root: Path) -> None:
    service = _service(engine)
    service.run_ingestion(docs_root, triggered_by="tests")

    stored = len(_chunks(engine))
    files = service.list_indexed_files()
    deleted = service.delete_all_documents()

    assert [item.file_path for item in files] == [
        "admin/users.md",
        "intro.md",
        "getting-started/install.md",
    ]
    assert deleted == stored
    assert service.get_ingestion_stats()["total_chunks"] == 0


def test_invalid_utf8_file_is_ingested_without_aborting_run(engine: Engine, docs_root: Path) -> None:
    (docs_root / "broken.md").write_bytes(b"# Caf\xe9 guide\n" + _doc("encodings").encode("utf-8"))
    service = _service(engine)

    run = service.get_ingestion_run(service.run_ingestion(docs_root, triggered_by="tests"))

    assert run is not None
    assert run.status == "completed"
    assert run.stats["files_processed"] == 4
    assert run.stats["errors"] == []
    broken = [chunk for chunk in _chunks(engine) if chunk.file_path == "broken.md"]
    assert broken
    assert "\ufffd" in broken[0].content


def test_rerun_skips_short_documents(engine: Engine, docs_root: Path) -> None:
    (docs_root / "tiny.md").write_text("Short note.", encoding="utf-8")
    service = _service(engine)

    first = service.get_ingestion_run(service.run_ingestion(docs_root, triggered_by="tests"))
    second = service.get_ingestion_run(service.run_ingestion(docs_root, triggered_by="tests"))

    assert first is not None and second is not None
    assert first.stats["files_processed"] == 4
    assert "tiny.md" in {chunk.file_path for chunk in _chunks(engine)}
    assert second.stats["files_skipped"] == 4
    assert second.stats["files_processed"] == 0
    assert second.stats["chunks_created"] == 0


class RecordingLogger:
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []

    def bind(self, **kwargs) -> "RecordingLogger":
        return self

    def info(self, event: str, **kwargs) -> None:
        self.events.append(("info", event))

    def warning(self, event: str, **kwargs) -> None:
        self.events.append(("warning", event))

    def error(self, event: str, **kwargs) -> None:
        self.events.append(("error", event))

    def exception(self, event: str, **kwargs) -> None:
        self.events.append(("exception", event))


class CancellingEmbeddingClient(FakeEmbeddingClient):
    def __init__(self) -> None:
        super().__init__()
        self.cancel = None

    def embed_documents(self, texts: list[str]) -> EmbeddingResult:
        if self.cancel is not None:
            self.cancel()
            self.cancel = None
        return super().embed_documents(texts)


def test_run_cancelled_mid_execution_is_not_logged_as_completed(
    engine: Engine,
    docs_root: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    recorder = RecordingLogger()
    monkeypatch.setattr("docsrag.services.rag.ingest.logger", recorder)
    client = CancellingEmbeddingClient()
    service = _service(engine, client)
    run = service.start_run(triggered_by="tests")
    client.cancel = lambda: service.cancel_ingestion(run.run_id)

    service.execute_run(run, docs_path=docs_root)

    stored = service.get_ingestion_run(run.run_id)
    assert stored is not None
    assert stored.status == "cancelled"
    assert ("warning", "ingestion_run_already_finalized") in recorder.events
    assert ("info", "ingestion_run_completed") not in recorder.events

from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager
import json
from pathlib import Path
from typing import Annotated, Any

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from docsrag.config import get_settings
from docsrag.db import get_engine
from docsrag.errors import ConfigurationError, DocsRagError, PipelineFatalError, ProviderError
from docsrag.llm import LLMClient, OpenAIChatClient
from docsrag.logging import configure_logging, get_logger
from docsrag.services.rag.chat import stream_answer
from docsrag.services.rag.chunk_store import SqlVectorSearch
from docsrag.services.rag.embedding_client import EmbeddingClient, VoyageEmbeddingClient
from docsrag.services.rag.ingest import IngestionService
from docsrag.services.rag.rate_limit import SlidingWindowRateLimiter
from docsrag.services.rag.retrieval import RetrievalEngine
from docsrag.services.rag.runs import IngestionRun
from docsrag.services.rag.session import SessionStore
from docsrag.services.rag.types import ChunkingConfig

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_logging()
    get_engine()

    embedding_client = VoyageEmbeddingClient(
        base_url=settings.voyage_base_url,
        api_key=settings.voyage_api_key,
        document_model=settings.voyage_document_model,
        query_model=settings.voyage_query_model,
        batch_size=settings.voyage_batch_size,
        timeout_seconds=settings.http_timeout_seconds,
    )
    llm_client = OpenAIChatClient(
        base_url=settings.openai_base_url,
        api_key=settings.openai_api_key,
        model=settings.openai_chat_model,
        max_tokens=settings.openai_max_tokens,
        temperature=settings.openai_temperature,
        timeout_seconds=settings.http_timeout_seconds,
    )
    app.state.embedding_client = embedding_client
    app.state.llm_client = llm_client
    app.state.rate_limiter = SlidingWindowRateLimiter(
        max_messages=settings.chat_rate_limit_per_minute,
    )
    logger.info("api_started", app_env=settings.app_env)
    try:
        yield
    finally:
        embedding_client.close()
        llm_client.close()


app = FastAPI(title="Docs RAG API", version="0.1.0", lifespan=lifespan)


class IngestRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    force_reindex: bool = False


class CancelRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    run_id: str = Field(min_length=1)


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    message: str
    session_id: str | None = None
    category: str | None = None
    page: str = ""


def get_embedding_client(request: Request) -> EmbeddingClient:
    return request.app.state.embedding_client


def get_llm_client(request: Request) -> LLMClient:
    return request.app.state.llm_client


def get_rate_limiter(request: Request) -> SlidingWindowRateLimiter:
    return request.app.state.rate_limiter


def get_ingestion_service(
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
) -> IngestionService:
    settings = get_settings()
    return IngestionService(
        engine=get_engine(),
        embedding_client=embedding_client,
        chunking=ChunkingConfig(
            max_chunk_tokens=settings.rag_max_chunk_tokens,
            overlap_tokens=settings.rag_overlap_tokens,
            min_chunk_tokens=settings.rag_min_chunk_tokens,
        ),
        public_categories=settings.rag_public_categories,
    )


def get_retrieval_engine(
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
) -> RetrievalEngine:
    settings = get_settings()
    return RetrievalEngine(
        embedding_client=embedding_client,
        search_backend=SqlVectorSearch(get_engine()),
        index_name=settings.rag_vector_index,
        default_score_threshold=settings.rag_score_threshold,
    )


def get_session_store() -> SessionStore:
    return SessionStore(get_engine())


def _provider_http_error(exc: DocsRagError) -> HTTPException:
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, ProviderError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def _client_address(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def _execute_ingestion(
    service: IngestionService,
    run: IngestionRun,
    docs_path: Path,
    force_reindex: bool,
) -> None:
    try:
        service.execute_run(run, docs_path=docs_path, force_reindex=force_reindex)
    except PipelineFatalError:
        # Already recorded on the run as failed.
        logger.warning("ingestion_background_run_failed", run_id=run.run_id)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/rag/ingest")
def trigger_ingestion(
    background_tasks: BackgroundTasks,
    service: Annotated[IngestionService, Depends(get_ingestion_service)],
    request: IngestRequest | None = None,
    x_user_id: Annotated[str | None, Header()] = None,
) -> JSONResponse:
    force_reindex = request.force_reindex if request is not None else False

    if service.is_ingestion_running():
        return JSONResponse(status_code=409, content={"detail": "Ingestion is already running"})

    try:
        run = service.start_run(triggered_by=x_user_id or "admin")
    except PipelineFatalError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    background_tasks.add_task(
        _execute_ingestion,
        service,
        run,
        Path(get_settings().rag_docs_path),
        force_reindex,
    )
    return JSONResponse(status_code=202, content={"run_id": run.run_id, "status": run.status})


@app.get("/rag/status")
def ingestion_status(
    service: Annotated[IngestionService, Depends(get_ingestion_service)],
) -> dict[str, Any]:
    return {"is_running": service.is_ingestion_running(), **service.get_ingestion_stats()}


@app.post("/rag/cancel")
def cancel_ingestion(
    request: CancelRequest,
    service: Annotated[IngestionService, Depends(get_ingestion_service)],
) -> dict[str, str]:
    if not service.cancel_ingestion(request.run_id):
        raise HTTPException(status_code=404, detail="No running ingestion found with that id")
    return {"status": "cancelled"}


@app.get("/rag/runs")
def list_runs(
    service: Annotated[IngestionService, Depends(get_ingestion_service)],
) -> list[dict[str, Any]]:
    return [run.to_dict() for run in service.list_ingestion_runs()]


@app.get("/rag/runs/{run_id}")
def get_run(
    run_id: str,
    service: Annotated[IngestionService, Depends(get_ingestion_service)],
) -> dict[str, Any]:
    run = service.get_ingestion_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="run not found")
    return run.to_dict()


@app.get("/rag/files")
def list_files(
    service: Annotated[IngestionService, Depends(get_ingestion_service)],
) -> list[dict[str, Any]]:
    return [
        {
            "file_path": item.file_path,
            "title": item.title,
            "category": item.category,
            "url": item.url,
            "access_level": item.access_level,
            "chunks": item.chunks,
            "total_tokens": item.total_tokens,
            "last_ingested": item.last_ingested.isoformat() if item.last_ingested else None,
        }
        for item in service.list_indexed_files()
    ]


@app.delete("/rag/documents")
def delete_documents(
    service: Annotated[IngestionService, Depends(get_ingestion_service)],
) -> dict[str, int]:
    return {"deleted": service.delete_all_documents()}


@app.post("/chat")
def chat(
    request: ChatRequest,
    http_request: Request,
    retrieval: Annotated[RetrievalEngine, Depends(get_retrieval_engine)],
    sessions: Annotated[SessionStore, Depends(get_session_store)],
    llm_client: Annotated[LLMClient, Depends(get_llm_client)],
    rate_limiter: Annotated[SlidingWindowRateLimiter, Depends(get_rate_limiter)],
    x_user_id: Annotated[str | None, Header()] = None,
    user_agent: Annotated[str | None, Header()] = None,
) -> StreamingResponse:
    settings = get_settings()
    message = request.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message is required")
    if len(request.message) > settings.chat_max_message_chars:
        raise HTTPException(
            status_code=400,
            detail=f"Message must be under {settings.chat_max_message_chars} characters",
        )

    rate_key = request.session_id or f"anon-{_client_address(http_request)}"
    decision = rate_limiter.check(rate_key)
    if not decision.allowed:
        retry_after = max(1, int(decision.retry_after_seconds + 0.999))
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Please wait before sending more messages.",
            headers={"Retry-After": str(retry_after)},
        )

    authenticated = bool(x_user_id)
    chat_session = sessions.get_or_create(
        request.session_id,
        user_id=x_user_id,
        page=request.page,
        user_agent=user_agent or "",
    )
    session_id = chat_session.session_id
    history = sessions.get_history(session_id, settings.rag_history_limit)
    sessions.append_user_message(session_id, message)

    try:
        retrieved = retrieval.retrieve_context(
            message,
            authenticated=authenticated,
            category=request.category,
        )
    except DocsRagError as exc:
        raise _provider_http_error(exc) from exc

    def event_stream() -> Iterator[str]:
        yield _sse(
            {
                "type": "sources",
                "sources": [citation.to_dict() for citation in retrieved.citations],
            }
        )
        parts: list[str] = []
        try:
            for fragment in stream_answer(
                llm_client,
                context=retrieved.context,
                query=message,
                history=history,
                authenticated=authenticated,
            ):
                parts.append(fragment)
                yield _sse({"type": "chunk", "content": fragment})
        except DocsRagError as exc:
            logger.error("chat_stream_failed", session_id=session_id, error=str(exc))
            yield _sse(
                {"type": "error", "error": "Failed to generate response. Please try again."}
            )
            return

        sessions.append_assistant_message(session_id, "".join(parts), retrieved.citations)
        yield _sse({"type": "done", "session_id": session_id})

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Chat-Session-Id": session_id,
        },
    )


def run() -> None:
    import uvicorn

    uvicorn.run("docsrag.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()

from __future__ import annotations

import argparse
from pathlib import Path
import sys

from docsrag.config import get_settings
from docsrag.db import get_engine
from docsrag.errors import PipelineFatalError
from docsrag.logging import configure_logging
from docsrag.services.rag.embedding_client import VoyageEmbeddingClient
from docsrag.services.rag.ingest import IngestionService
from docsrag.services.rag.types import ChunkingConfig


def _build_parser() -> argparse.ArgumentParser:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        prog="docsrag-ingest",
        description="Ingest markdown docs into the RAG chunk store",
    )
    parser.add_argument(
        "--path",
        default=settings.rag_docs_path,
        help="Docs root directory containing .md/.mdx files",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Re-process every file even if its content hash is unchanged",
    )
    parser.add_argument(
        "--triggered-by",
        default="cli",
        help="Identity recorded on the ingestion run",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging()
    settings = get_settings()

    with VoyageEmbeddingClient(
        base_url=settings.voyage_base_url,
        api_key=settings.voyage_api_key,
        document_model=settings.voyage_document_model,
        query_model=settings.voyage_query_model,
        batch_size=settings.voyage_batch_size,
        timeout_seconds=settings.http_timeout_seconds,
    ) as embedding_client:
        service = IngestionService(
            engine=get_engine(),
            embedding_client=embedding_client,
            chunking=ChunkingConfig(
                max_chunk_tokens=settings.rag_max_chunk_tokens,
                overlap_tokens=settings.rag_overlap_tokens,
                min_chunk_tokens=settings.rag_min_chunk_tokens,
            ),
            public_categories=settings.rag_public_categories,
        )
        try:
            run_id = service.run_ingestion(
                Path(args.path),
                triggered_by=args.triggered_by,
                force_reindex=args.force,
            )
        except PipelineFatalError as exc:
            print(f"[docsrag-ingest] failed: {exc}", file=sys.stderr, flush=True)
            raise SystemExit(1) from exc

        run = service.get_ingestion_run(run_id)
        totals = service.get_ingestion_stats()

    stats = run.stats if run is not None else {}
    print(
        "[docsrag-ingest] completed "
        f"run_id={run_id} "
        f"files_processed={stats.get('files_processed', 0)} "
        f"files_skipped={stats.get('files_skipped', 0)} "
        f"chunks_created={stats.get('chunks_created', 0)} "
        f"chunks_deleted={stats.get('chunks_deleted', 0)} "
        f"errors={len(stats.get('errors', []))} "
        f"total_chunks={totals['total_chunks']} "
        f"total_files={totals['total_files']}",
        flush=True,
    )


if __name__ == "__main__":
    main()

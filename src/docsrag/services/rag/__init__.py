from docsrag.services.rag.ingest import IngestionService
from docsrag.services.rag.retrieval import RetrievalEngine
from docsrag.services.rag.session import SessionStore
from docsrag.services.rag.types import Citation, IngestionStats, RetrievalResult

__all__ = [
    "Citation",
    "IngestionService",
    "IngestionStats",
    "RetrievalEngine",
    "RetrievalResult",
    "SessionStore",
]

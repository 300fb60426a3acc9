"""Exception hierarchy for docsrag.

    DocsRagError
    +-- ConfigurationError     missing credential or endpoint, raised at call time
    +-- ProviderError          embedding / generation service failure
    +-- PerFileIngestionError  one file failed; recorded in the run stats
    +-- PipelineFatalError     the whole ingestion run failed

Provider-specific subclasses (``EmbeddingClientError``, ``LLMClientError``)
live next to the clients that raise them.
"""

from __future__ import annotations


class DocsRagError(RuntimeError):
    pass


class ConfigurationError(DocsRagError):
    pass


class ProviderError(DocsRagError):
    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code

    def __str__(self) -> str:
        return f"[{self.provider}] {super().__str__()}"


class PerFileIngestionError(DocsRagError):
    def __init__(self, file: str, error: str) -> None:
        super().__init__(f"{file}: {error}")
        self.file = file
        self.error = error

    def to_stat(self) -> dict[str, str]:
        return {"file": self.file, "error": self.error}


class PipelineFatalError(DocsRagError):
    def __init__(self, message: str, *, run_id: str | None = None) -> None:
        super().__init__(message)
        self.run_id = run_id

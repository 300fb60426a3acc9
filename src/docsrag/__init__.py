"""Documentation knowledge assistant: ingestion, retrieval and streamed answers."""

__version__ = "0.1.0"

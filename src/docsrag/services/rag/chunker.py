from __future__ import annotations

from dataclasses import replace
import math
from typing import Protocol

from docsrag.services.rag.parser import is_code_fence, split_frontmatter
from docsrag.services.rag.types import (
    ChunkingConfig,
    DocumentChunk,
    ParsedDocument,
    ParsedSection,
)

CONTINUATION_MARKER = "..."
PARAGRAPH_SEPARATOR = "\n\n"


class TokenEstimator(Protocol):
    def count(self, text: str) -> int: ...

    def chars_for_tokens(self, tokens: int) -> int: ...


class CharRatioTokenEstimator:
    """Approximate token counter: one token per ``chars_per_token`` characters.

    Cheap and tokenizer-free, so budgets computed with it are estimates. Swap in
    an exact tokenizer behind the same interface if strict limits matter.
    """

    def __init__(self, chars_per_token: int = 4) -> None:
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be > 0")
        self._chars_per_token = chars_per_token

    def count(self, text: str) -> int:
        return math.ceil(len(text) / self._chars_per_token)

    def chars_for_tokens(self, tokens: int) -> int:
        return tokens * self._chars_per_token


DEFAULT_ESTIMATOR = CharRatioTokenEstimator()


def estimate_tokens(text: str) -> int:
    return DEFAULT_ESTIMATOR.count(text)


def split_preserving_code_blocks(text: str) -> list[str]:
    """Split on blank lines, keeping each fenced code block as one paragraph."""
    paragraphs: list[str] = []
    current: list[str] = []
    in_code_block = False

    for line in text.split("\n"):
        if is_code_fence(line):
            in_code_block = not in_code_block
            current.append(line)
            if not in_code_block:
                paragraphs.append("\n".join(current))
                current = []
            continue

        if in_code_block:
            current.append(line)
            continue

        if not line.strip():
            if current:
                paragraphs.append("\n".join(current))
                current = []
        else:
            current.append(line)

    if current:
        paragraphs.append("\n".join(current))

    return paragraphs


def _overlap_reserve(config: ChunkingConfig, estimator: TokenEstimator) -> int:
    if config.overlap_tokens <= 0:
        return 0
    overlap_chars = estimator.chars_for_tokens(config.overlap_tokens)
    return estimator.count(CONTINUATION_MARKER + "x" * overlap_chars + PARAGRAPH_SEPARATOR)


def chunk_section(
    section: ParsedSection,
    *,
    section_index: int,
    doc_title: str,
    config: ChunkingConfig,
    estimator: TokenEstimator,
) -> list[DocumentChunk]:
    prefix = f"{doc_title} > {section.heading}{PARAGRAPH_SEPARATOR}"

    def make_chunk(content: str) -> DocumentChunk:
        return DocumentChunk(
            content=content,
            section=section.heading,
            section_index=section_index,
            index=0,
            tokens=estimator.count(content),
        )

    whole = prefix + section.content
    whole_tokens = estimator.count(whole)
    if whole_tokens <= config.max_chunk_tokens:
        if whole_tokens < config.min_chunk_tokens:
            return []
        return [make_chunk(whole)]

    # Later chunks of this section receive overlap, so leave room for it.
    budget = config.max_chunk_tokens - _overlap_reserve(config, estimator)
    chunks: list[DocumentChunk] = []
    current: list[str] = []

    def flush() -> None:
        if current:
            chunks.append(make_chunk(prefix + PARAGRAPH_SEPARATOR.join(current)))

    for paragraph in split_preserving_code_blocks(section.content):
        if estimator.count(prefix + paragraph) > budget:
            flush()
            current = []
            chunks.append(make_chunk(prefix + paragraph))
            continue

        candidate = [*current, paragraph]
        if current and estimator.count(prefix + PARAGRAPH_SEPARATOR.join(candidate)) > budget:
            flush()
            current = [paragraph]
        else:
            current = candidate

    flush()
    return chunks


def _overlapped(previous: str, content: str, overlap_chars: int) -> str:
    return f"{CONTINUATION_MARKER}{previous[-overlap_chars:]}{PARAGRAPH_SEPARATOR}{content}"


def add_overlap(
    chunks: list[DocumentChunk],
    *,
    overlap_tokens: int,
    estimator: TokenEstimator,
    max_chunk_tokens: int | None = None,
) -> list[DocumentChunk]:
    """Prefix each chunk with the tail of the previous chunk of the same section.

    With ``max_chunk_tokens`` the overlap is shortened so a chunk that fit the
    budget still fits after it; oversized chunks keep the full overlap.
    """
    if len(chunks) <= 1 or overlap_tokens <= 0:
        return chunks

    overlap_chars = estimator.chars_for_tokens(overlap_tokens)
    step = max(1, estimator.chars_for_tokens(1))
    result = [chunks[0]]
    for previous, chunk in zip(chunks, chunks[1:]):
        if chunk.section_index != previous.section_index:
            result.append(chunk)
            continue

        bounded = max_chunk_tokens is not None and estimator.count(chunk.content) <= max_chunk_tokens
        chars = overlap_chars
        content = _overlapped(previous.content, chunk.content, chars)
        while bounded and estimator.count(content) > max_chunk_tokens:
            chars -= step
            if chars <= 0:
                break
            content = _overlapped(previous.content, chunk.content, chars)

        if chars <= 0:
            result.append(chunk)
        else:
            result.append(replace(chunk, content=content))
    return result


def chunk_document(
    document: ParsedDocument,
    config: ChunkingConfig | None = None,
    estimator: TokenEstimator | None = None,
) -> list[DocumentChunk]:
    config = config or ChunkingConfig()
    estimator = estimator or DEFAULT_ESTIMATOR
    if config.overlap_tokens >= config.max_chunk_tokens:
        raise ValueError("overlap_tokens must be smaller than max_chunk_tokens")

    chunks: list[DocumentChunk] = []
    for section_index, section in enumerate(document.sections):
        chunks.extend(
            chunk_section(
                section,
                section_index=section_index,
                doc_title=document.title,
                config=config,
                estimator=estimator,
            )
        )

    # Every section fell under the minimum size: retry with the whole body.
    if not chunks:
        _, body = split_frontmatter(document.raw_content)
        body = body.strip()
        if body:
            whole_body = ParsedSection(heading=document.title, level=1, content=body)
            chunks = chunk_section(
                whole_body,
                section_index=0,
                doc_title=document.title,
                config=config,
                estimator=estimator,
            )
            if not chunks:
                # A short document is still indexed so reruns see its hash.
                chunks = chunk_section(
                    whole_body,
                    section_index=0,
                    doc_title=document.title,
                    config=replace(config, min_chunk_tokens=0),
                    estimator=estimator,
                )

    with_overlap = add_overlap(
        chunks,
        overlap_tokens=config.overlap_tokens,
        estimator=estimator,
        max_chunk_tokens=config.max_chunk_tokens,
    )
    return [
        replace(chunk, index=index, tokens=estimator.count(chunk.content))
        for index, chunk in enumerate(with_overlap)
    ]

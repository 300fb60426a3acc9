from __future__ import annotations

from collections.abc import Mapping
import hashlib
from pathlib import Path

from docsrag.services.rag.loader import relative_file_path
from docsrag.services.rag.types import FileChange


def content_hash(raw_content: str) -> str:
    return hashlib.sha256(raw_content.encode("utf-8")).hexdigest()


def detect_changes(
    file_paths: list[Path],
    *,
    docs_path: Path,
    stored_hashes: Mapping[str, str],
    force_reindex: bool = False,
) -> list[FileChange]:
    """Classify scanned files against the stored corpus.

    ``stored_hashes`` maps relative file paths to the hash stored for them.
    Stored paths missing from the scan are reported as ``deleted``; with
    ``force_reindex`` every scanned file is ``changed``. Invalid UTF-8 is
    decoded with replacement characters; a file that cannot be read carries
    ``error`` instead of content.
    """
    changes: list[FileChange] = []
    current_paths: set[str] = set()

    for path in file_paths:
        relative_path = relative_file_path(docs_path, path)
        current_paths.add(relative_path)

        stored_hash = stored_hashes.get(relative_path)
        try:
            raw_content = path.read_bytes().decode("utf-8", errors="replace")
        except OSError as exc:
            changes.append(
                FileChange(
                    file_path=relative_path,
                    status="new" if stored_hash is None else "changed",
                    content_hash="",
                    raw_content="",
                    error=str(exc),
                )
            )
            continue
        digest = content_hash(raw_content)

        if force_reindex:
            status = "changed"
        elif stored_hash is None:
            status = "new"
        elif stored_hash != digest:
            status = "changed"
        else:
            changes.append(
                FileChange(
                    file_path=relative_path,
                    status="unchanged",
                    content_hash=digest,
                    raw_content="",
                )
            )
            continue

        changes.append(
            FileChange(
                file_path=relative_path,
                status=status,
                content_hash=digest,
                raw_content=raw_content,
            )
        )

    for stored_path in sorted(stored_hashes):
        if stored_path not in current_paths:
            changes.append(
                FileChange(file_path=stored_path, status="deleted", content_hash="", raw_content="")
            )

    return changes

from __future__ import annotations

import os
from pathlib import Path

SUPPORTED_EXTENSIONS = {".md", ".mdx"}
SKIPPED_DIRECTORIES = {"node_modules"}


def _is_skipped_directory(name: str) -> bool:
    return name.startswith(".") or name in SKIPPED_DIRECTORIES


def scan_markdown_files(
    docs_path: Path,
    supported_extensions: set[str] | None = None,
) -> list[Path]:
    """Return every markdown file under ``docs_path``, sorted by path.

    Hidden directories, ``node_modules`` and files whose name starts with an
    underscore (partials) are skipped.
    """
    if not docs_path.exists():
        raise FileNotFoundError(f"Docs directory not found: {docs_path}")
    if not docs_path.is_dir():
        raise NotADirectoryError(f"Docs path is not a directory: {docs_path}")

    extensions = supported_extensions or SUPPORTED_EXTENSIONS
    files: list[Path] = []
    for current_dir, dir_names, file_names in os.walk(docs_path):
        dir_names[:] = sorted(name for name in dir_names if not _is_skipped_directory(name))
        for file_name in file_names:
            if file_name.startswith("_"):
                continue
            path = Path(current_dir) / file_name
            if path.suffix.lower() in extensions:
                files.append(path)

    return sorted(files)


def relative_file_path(docs_path: Path, path: Path) -> str:
    return path.relative_to(docs_path).as_posix()

from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import Any

from docsrag.services.rag.types import ParsedDocument, ParsedSection

FRONTMATTER_DELIMITER = "---"
CODE_FENCE = "```"
DEFAULT_CATEGORY = "general"
PREAMBLE_HEADING = "Introduction"

_HEADING_PATTERN = re.compile(r"^(#{1,4})\s+(.+)$")
_TITLE_HEADING_PATTERN = re.compile(r"^#{1,2}\s+(.+)$")
_NUMBER_PATTERN = re.compile(r"^-?\d+(\.\d+)?$")
_MARKDOWN_SUFFIX = re.compile(r"\.mdx?$")


def is_code_fence(line: str) -> bool:
    return line.strip().startswith(CODE_FENCE)


def _coerce_value(raw: str) -> Any:
    value = raw.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        value = value[1:-1]
    if value == "true":
        return True
    if value == "false":
        return False
    if _NUMBER_PATTERN.match(value):
        return float(value) if "." in value else int(value)
    return value


def parse_frontmatter_lines(lines: list[str]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for line in lines:
        key, separator, value = line.partition(":")
        key = key.strip()
        if not separator or not key:
            continue
        result[key] = _coerce_value(value)
    return result


def split_frontmatter(raw_content: str) -> tuple[dict[str, Any], str]:
    lines = raw_content.split("\n")
    if not lines or lines[0].strip() != FRONTMATTER_DELIMITER:
        return {}, raw_content

    for end_index in range(1, len(lines)):
        if lines[end_index].strip() == FRONTMATTER_DELIMITER:
            frontmatter = parse_frontmatter_lines(lines[1:end_index])
            return frontmatter, "\n".join(lines[end_index + 1 :])

    return {}, raw_content


def split_into_sections(content: str) -> list[ParsedSection]:
    sections: list[ParsedSection] = []
    heading = ""
    level = 0
    buffer: list[str] = []
    in_code_block = False

    def flush() -> None:
        text = "\n".join(buffer).strip()
        if text:
            sections.append(
                ParsedSection(
                    heading=heading or PREAMBLE_HEADING,
                    level=level or 1,
                    content=text,
                )
            )

    for line in content.split("\n"):
        if is_code_fence(line):
            in_code_block = not in_code_block
            buffer.append(line)
            continue

        match = None if in_code_block else _HEADING_PATTERN.match(line)
        if match is None:
            buffer.append(line)
            continue

        flush()
        heading = match.group(2).strip()
        level = len(match.group(1))
        buffer = []

    flush()
    return sections


def _has_headings(content: str) -> bool:
    in_code_block = False
    for line in content.split("\n"):
        if is_code_fence(line):
            in_code_block = not in_code_block
        elif not in_code_block and _HEADING_PATTERN.match(line):
            return True
    return False


def extract_first_heading(content: str) -> str | None:
    in_code_block = False
    for line in content.split("\n"):
        if is_code_fence(line):
            in_code_block = not in_code_block
            continue
        if in_code_block:
            continue
        match = _TITLE_HEADING_PATTERN.match(line)
        if match is not None:
            return match.group(1).strip()
    return None


def file_name_to_title(file_path: str) -> str:
    name = _MARKDOWN_SUFFIX.sub("", PurePosixPath(file_path).name) or "Untitled"
    words = re.split(r"[-_]", name)
    return " ".join(word[:1].upper() + word[1:] for word in words)


def file_path_to_url(file_path: str) -> str:
    stripped = _MARKDOWN_SUFFIX.sub("", file_path)
    if stripped == "index":
        return "/"
    if stripped.endswith("/index"):
        stripped = stripped[: -len("/index")]
    return "/" + stripped


def category_for_path(file_path: str) -> str:
    parts = file_path.split("/")
    return parts[0] if len(parts) > 1 else DEFAULT_CATEGORY


def _frontmatter_text(frontmatter: dict[str, Any], key: str) -> str | None:
    value = frontmatter.get(key)
    if isinstance(value, bool) or value is None or value == "":
        return None
    return str(value)


def parse_markdown(raw_content: str, file_path: str) -> ParsedDocument:
    """Parse a markdown file into title, category, URL and heading sections.

    ``file_path`` is relative to the docs root and uses forward slashes.
    """
    frontmatter, body = split_frontmatter(raw_content)
    content = body.strip()

    title = (
        _frontmatter_text(frontmatter, "title")
        or _frontmatter_text(frontmatter, "sidebar_label")
        or extract_first_heading(content)
        or file_name_to_title(file_path)
    )

    if _has_headings(content):
        sections = split_into_sections(content)
    elif content:
        sections = [ParsedSection(heading=title, level=1, content=content)]
    else:
        sections = []

    return ParsedDocument(
        file_path=file_path,
        title=title,
        category=category_for_path(file_path),
        url=file_path_to_url(file_path),
        frontmatter=frontmatter,
        sections=sections,
        raw_content=raw_content,
    )

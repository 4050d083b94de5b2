"""
Computes the chapter table from measured item durations and serializes it to
FFmpeg's FFMETADATA1 interchange format.
"""

import logging
import re
from pathlib import Path
from typing import Optional, Sequence

from hlsbook.exceptions import ChapterIntegrityError
from hlsbook.models.job import Chapter, SourceItem
from hlsbook.utils.formatting import derive_chapter_title

log = logging.getLogger(__name__)

METADATA_HEADER = ";FFMETADATA1"
_ESCAPE_RE = re.compile(r"([=;#\\\n])")


class ChapterPlanner:
    """Builds a gapless chapter table in job declaration order."""

    def __init__(self, overrides: Optional[dict[str, str]] = None):
        self.overrides = overrides or {}

    def title_for(self, item: SourceItem) -> str:
        return (
            self.overrides.get(item.key)
            or item.title_override
            or derive_chapter_title(item.key)
        )

    def plan(self, items: Sequence[SourceItem]) -> list[Chapter]:
        """
        Emits one chapter per item using a running cursor.

        Boundaries are rounded from the cumulative duration rather than from
        each item, so rounding never accumulates and the last chapter ends at
        the rounded total.
        """
        chapters: list[Chapter] = []
        cursor = 0.0
        start_ms = 0
        for position, item in enumerate(items):
            if item.duration is None or item.duration <= 0:
                raise ChapterIntegrityError(
                    f"item '{item.key}' has no measured duration", position
                )
            cursor += item.duration
            end_ms = round(cursor * 1000)
            chapters.append(Chapter(start_ms, end_ms, self.title_for(item)))
            start_ms = end_ms

        verify_chapters(chapters, expected_count=len(items))
        return chapters


def verify_chapters(
    chapters: Sequence[Chapter],
    expected_count: Optional[int] = None,
    total_ms: Optional[int] = None,
    tolerance_ms: int = 0,
) -> None:
    """
    Checks the gapless, ordered invariant of a chapter table.

    Raises:
        ChapterIntegrityError: On the first violation found.
    """
    if expected_count is not None and len(chapters) != expected_count:
        raise ChapterIntegrityError(
            f"expected {expected_count} chapters, found {len(chapters)}"
        )
    for i, chapter in enumerate(chapters):
        if i == 0 and chapter.start_ms != 0:
            raise ChapterIntegrityError(f"first chapter starts at {chapter.start_ms} ms", i)
        if chapter.end_ms <= chapter.start_ms:
            raise ChapterIntegrityError("chapter has no positive length", i)
        if i > 0 and chapters[i - 1].end_ms != chapter.start_ms:
            raise ChapterIntegrityError(
                f"starts at {chapter.start_ms} ms but previous chapter ends at "
                f"{chapters[i - 1].end_ms} ms",
                i,
            )
    if total_ms is not None and chapters:
        drift = abs(chapters[-1].end_ms - total_ms)
        if drift > tolerance_ms:
            raise ChapterIntegrityError(
                f"chapters end at {chapters[-1].end_ms} ms but the audio lasts "
                f"{total_ms} ms (drift {drift} ms > {tolerance_ms} ms)"
            )


def _escape(value: str) -> str:
    return _ESCAPE_RE.sub(r"\\\1", value)


def format_chapter_metadata(chapters: Sequence[Chapter]) -> str:
    """Renders chapters as an FFMETADATA1 document with a 1/1000 timebase."""
    lines = [METADATA_HEADER]
    for chapter in chapters:
        lines += [
            "[CHAPTER]",
            "TIMEBASE=1/1000",
            f"START={chapter.start_ms}",
            f"END={chapter.end_ms}",
            f"title={_escape(chapter.title)}",
        ]
    return "\n".join(lines) + "\n"


def write_chapter_file(chapters: Sequence[Chapter], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(format_chapter_metadata(chapters))
    return path


def _split_logical_lines(text: str) -> list[str]:
    """Joins lines whose newline was escaped with a backslash."""
    logical, current, escaped = [], [], False
    for ch in text:
        if escaped:
            current.append("\\" + ch)
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == "\n":
            logical.append("".join(current))
            current = []
        else:
            current.append(ch)
    if current:
        logical.append("".join(current))
    return logical


def _unescape(value: str) -> str:
    return re.sub(r"\\(.)", r"\1", value, flags=re.DOTALL)


def _split_key_value(line: str) -> tuple[str, str]:
    """Splits on the first unescaped '='."""
    match = re.search(r"(?<!\\)=", line)
    if not match:
        return line.strip(), ""
    return line[: match.start()].strip(), line[match.end():]


def parse_chapter_metadata(text: str) -> list[Chapter]:
    """
    Reads the chapter blocks of an FFMETADATA1 document back into Chapters.

    Timestamps are converted to milliseconds using each block's TIMEBASE.
    """
    lines = _split_logical_lines(text)
    if not lines or lines[0].strip() != METADATA_HEADER:
        raise ValueError("Not an FFMETADATA1 document")

    chapters: list[Chapter] = []
    block: Optional[dict[str, str]] = None

    def flush():
        if block is None:
            return
        num, _, den = block.get("TIMEBASE", "1/1000").partition("/")
        scale = 1000 * int(num) / int(den or 1)
        chapters.append(
            Chapter(
                start_ms=round(int(block["START"]) * scale),
                end_ms=round(int(block["END"]) * scale),
                title=block.get("title", ""),
            )
        )

    for line in lines[1:]:
        stripped = line.strip()
        if not stripped or stripped.startswith((";", "#")):
            continue
        if stripped.startswith("["):
            flush()
            block = {} if stripped.upper() == "[CHAPTER]" else None
            continue
        if block is not None:
            key, value = _split_key_value(line)
            block[key.upper() if key.lower() != "title" else "title"] = _unescape(value)
    flush()
    return chapters

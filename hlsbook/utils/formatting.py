"""
Helper functions for formatting data into human-readable strings.
"""

import re
from pathlib import PurePosixPath

INTRODUCTION_LABEL = "Introduction"
INTRODUCTION_MARKERS = {"intro", "introduction", "welcome", "preface", "overview"}

_MEDIA_SUFFIXES = {".mp4", ".m4v", ".m4a", ".mkv", ".mov", ".webm", ".ts", ".m3u8", ".aac", ".mp3"}
# Words that stay lowercase inside a title unless they lead it
_SMALL_WORDS = {"a", "an", "and", "as", "at", "by", "for", "in", "of", "on", "or", "the", "to", "vs"}


def format_size(bytes_size: int) -> str:
    """Formats bytes into a human-readable size string (e.g., '145.3 MB')."""
    if bytes_size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    while bytes_size >= 1024 and i < len(units) - 1:
        bytes_size /= 1024
        i += 1
    return f"{bytes_size:.1f} {units[i]}"


def format_duration(seconds: float) -> str:
    """
    Formats a duration in seconds into a human-readable string (e.g., '2h 34m 12s').
    """
    s = int(seconds)
    hours, remainder = divmod(s, 3600)
    minutes, secs = divmod(remainder, 60)
    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def format_timestamp(ms: int) -> str:
    """Formats milliseconds as HH:MM:SS.mmm for chapter listings."""
    hours, remainder = divmod(int(ms), 3_600_000)
    minutes, remainder = divmod(remainder, 60_000)
    secs, millis = divmod(remainder, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"


def _title_case(words: list[str]) -> str:
    out = []
    for i, word in enumerate(words):
        lower = word.lower()
        if i > 0 and lower in _SMALL_WORDS:
            out.append(lower)
        elif word.isupper() and len(word) > 1:
            # Keep acronyms such as "API" or "HTTP"
            out.append(word)
        else:
            out.append(lower[:1].upper() + lower[1:])
    return " ".join(out)


def derive_chapter_title(key: str) -> str:
    """
    Turns a source file name or key into a chapter title.

    ``00_intro.mp4`` becomes ``Introduction``, ``1_1_basics`` becomes
    ``1.1 Basics`` and ``02_03_error_handling_in_depth`` becomes
    ``2.3 Error Handling in Depth``.
    """
    stem = PurePosixPath(key.strip()).name
    if PurePosixPath(stem).suffix.lower() in _MEDIA_SUFFIXES:
        stem = PurePosixPath(stem).stem
    tokens = [t for t in re.split(r"[_\-\s]+", stem) if t]

    numbers: list[str] = []
    while tokens and tokens[0].isdigit():
        numbers.append(tokens.pop(0))
    words = tokens

    # "intro" alone is a marker; "introduction_to_recursion" is a real title
    if len(words) == 1 and words[0].lower() in INTRODUCTION_MARKERS:
        return INTRODUCTION_LABEL
    if numbers and not words and all(int(n) == 0 for n in numbers):
        return INTRODUCTION_LABEL

    section = ".".join(str(int(n)) for n in numbers)
    title = _title_case(words)
    if section and title:
        return f"{section} {title}"
    return section or title or key

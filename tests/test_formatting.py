"""Tests for hlsbook.utils.formatting and hlsbook.utils.path modules."""

from __future__ import annotations

from pathlib import Path

import pytest

from hlsbook.utils.formatting import (
    derive_chapter_title,
    format_duration,
    format_size,
    format_timestamp,
)
from hlsbook.utils.path import local_path, resolve_local, resolve_uri, safe_component


class TestDeriveChapterTitle:
    @pytest.mark.parametrize(
        "key, expected",
        [
            ("00_intro", "Introduction"),
            ("00_intro.mp4", "Introduction"),
            ("000", "Introduction"),
            ("00-welcome", "Introduction"),
            ("welcome-to-the-course", "Welcome to the Course"),
            ("03_introduction_to_recursion", "3 Introduction to Recursion"),
            ("5_overview_of_databases", "5 Overview of Databases"),
            ("1_1_basics", "1.1 Basics"),
            ("02_03_error_handling_in_depth", "2.3 Error Handling in Depth"),
            ("3_API_design", "3 API Design"),
            ("lecture-notes.ts", "Lecture Notes"),
            ("course/videos/4_wrap_up.m3u8", "4 Wrap Up"),
            ("7", "7"),
        ],
    )
    def test_titles(self, key: str, expected: str) -> None:
        assert derive_chapter_title(key) == expected

    def test_small_word_leading_is_capitalized(self) -> None:
        assert derive_chapter_title("5_the_end") == "5 The End"


class TestFormatting:
    def test_format_timestamp(self) -> None:
        assert format_timestamp(0) == "00:00:00.000"
        assert format_timestamp(1500500) == "00:25:00.500"
        assert format_timestamp(3_723_004) == "01:02:03.004"

    def test_format_duration(self) -> None:
        assert format_duration(0) == "0s"
        assert format_duration(600) == "10m"
        assert format_duration(9252.9) == "2h 34m 12s"

    def test_format_size(self) -> None:
        assert format_size(0) == "0 B"
        assert format_size(1536) == "1.5 KB"


class TestPaths:
    def test_safe_component(self) -> None:
        assert safe_component("lec/1") == "lec1"
        assert safe_component("  01_intro  ") == "01_intro"
        assert safe_component("", "audiobook") == "audiobook"

    def test_resolve_uri_remote(self) -> None:
        base = "https://cdn.example.com/course/lec1/index.m3u8"
        assert resolve_uri(base, "seg.ts") == "https://cdn.example.com/course/lec1/seg.ts"
        assert resolve_uri(base, "/root/seg.ts") == "https://cdn.example.com/root/seg.ts"
        assert resolve_uri(base, "https://other/seg.ts") == "https://other/seg.ts"

    def test_resolve_uri_local(self, tmp_path: Path) -> None:
        base = str(tmp_path / "lec1" / "index.m3u8")
        assert resolve_uri(base, "../lec2/seg.ts") == str(tmp_path / "lec2" / "seg.ts")

    def test_resolve_local(self, tmp_path: Path) -> None:
        assert resolve_local(None, tmp_path) is None
        assert resolve_local("cover.jpg", tmp_path) == tmp_path / "cover.jpg"
        assert resolve_local(str(tmp_path / "x.jpg"), Path("/elsewhere")) == tmp_path / "x.jpg"

    def test_file_scheme_base_resolves_to_a_path(self, tmp_path: Path) -> None:
        base = f"file://{tmp_path}/lec1/index.m3u8"
        assert resolve_uri(base, "seg.ts") == str(tmp_path / "lec1" / "seg.ts")
        assert local_path(f"file://{tmp_path}/a.ts") == f"{tmp_path}/a.ts"
        assert local_path("/plain/a.ts") == "/plain/a.ts"

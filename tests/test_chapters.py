"""Tests for hlsbook.media.chapters module."""

from __future__ import annotations

import pytest

from hlsbook.exceptions import ChapterIntegrityError
from hlsbook.media.chapters import (
    ChapterPlanner,
    format_chapter_metadata,
    parse_chapter_metadata,
    verify_chapters,
    write_chapter_file,
)
from hlsbook.models.job import Chapter, SourceItem


def _items(durations: dict[str, float]) -> list[SourceItem]:
    items = []
    for key, duration in durations.items():
        item = SourceItem(key=key, playlist_uri=f"{key}.m3u8")
        item.duration = duration
        items.append(item)
    return items


class TestChapterPlanner:
    def test_three_lectures(self) -> None:
        items = _items({"00_intro": 600.0, "1_1_basics": 900.5, "1_2_advanced": 300.25})

        chapters = ChapterPlanner().plan(items)

        assert chapters == [
            Chapter(0, 600000, "Introduction"),
            Chapter(600000, 1500500, "1.1 Basics"),
            Chapter(1500500, 1800750, "1.2 Advanced"),
        ]

    def test_deterministic(self) -> None:
        durations = {"a": 1.0005, "b": 2.0004, "c": 3.3333}
        assert ChapterPlanner().plan(_items(durations)) == ChapterPlanner().plan(_items(durations))

    def test_rounding_does_not_accumulate(self) -> None:
        items = _items({f"part_{i}": 0.3333 for i in range(30)})

        chapters = ChapterPlanner().plan(items)

        assert chapters[-1].end_ms == round(0.3333 * 30 * 1000)
        for previous, current in zip(chapters, chapters[1:]):
            assert previous.end_ms == current.start_ms

    def test_overrides_take_precedence(self) -> None:
        items = _items({"1_1_basics": 10.0, "1_2_advanced": 10.0})
        items[1].title_override = "Deep Dive"

        chapters = ChapterPlanner({"1_1_basics": "Getting Started"}).plan(items)

        assert [c.title for c in chapters] == ["Getting Started", "Deep Dive"]

    def test_missing_duration(self) -> None:
        items = _items({"a": 10.0, "b": 0.0})
        with pytest.raises(ChapterIntegrityError) as excinfo:
            ChapterPlanner().plan(items)
        assert excinfo.value.index == 1

    def test_unmeasured_item(self) -> None:
        items = _items({"a": 10.0})
        items[0].duration = None
        with pytest.raises(ChapterIntegrityError):
            ChapterPlanner().plan(items)


class TestVerifyChapters:
    def test_gap_is_rejected(self) -> None:
        with pytest.raises(ChapterIntegrityError) as excinfo:
            verify_chapters([Chapter(0, 100, "a"), Chapter(101, 200, "b")])
        assert excinfo.value.index == 1

    def test_first_must_start_at_zero(self) -> None:
        with pytest.raises(ChapterIntegrityError):
            verify_chapters([Chapter(5, 100, "a")])

    def test_count_mismatch(self) -> None:
        with pytest.raises(ChapterIntegrityError, match="expected 2"):
            verify_chapters([Chapter(0, 100, "a")], expected_count=2)

    def test_total_within_tolerance(self) -> None:
        chapters = [Chapter(0, 1000, "a"), Chapter(1000, 2000, "b")]
        verify_chapters(chapters, total_ms=2020, tolerance_ms=24)
        with pytest.raises(ChapterIntegrityError, match="drift"):
            verify_chapters(chapters, total_ms=2100, tolerance_ms=24)


class TestChapterMetadataFormat:
    def test_format(self) -> None:
        text = format_chapter_metadata([Chapter(0, 1500, "One"), Chapter(1500, 3000, "Two")])

        assert text.splitlines() == [
            ";FFMETADATA1",
            "[CHAPTER]",
            "TIMEBASE=1/1000",
            "START=0",
            "END=1500",
            "title=One",
            "[CHAPTER]",
            "TIMEBASE=1/1000",
            "START=1500",
            "END=3000",
            "title=Two",
        ]

    def test_special_characters_are_escaped(self) -> None:
        text = format_chapter_metadata([Chapter(0, 10, "A=B; #1 \\ end")])
        assert "title=A\\=B\\; \\#1 \\\\ end" in text

    def test_parse_reads_escaped_titles(self, tmp_path) -> None:
        chapters = [Chapter(0, 1000, "Q&A = answers; #2"), Chapter(1000, 2500, "Line\nbreak")]
        path = write_chapter_file(chapters, tmp_path / "mux" / "chapters.txt")

        assert parse_chapter_metadata(path.read_text(encoding="utf-8")) == chapters

    def test_parse_converts_timebase(self) -> None:
        text = ";FFMETADATA1\ntitle=Book\n[CHAPTER]\nTIMEBASE=1/44100\nSTART=0\nEND=88200\ntitle=One\n"
        assert parse_chapter_metadata(text) == [Chapter(0, 2000, "One")]

    def test_parse_rejects_other_documents(self) -> None:
        with pytest.raises(ValueError):
            parse_chapter_metadata("[CHAPTER]\nSTART=0\n")

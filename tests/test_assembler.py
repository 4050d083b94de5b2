"""Tests for hlsbook.media.assembler and hlsbook.media.extractor modules."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from hlsbook.exceptions import DiscontinuityError, EncodingError, SourceItemBlockedError
from hlsbook.media.assembler import StreamAssembler, validate_contiguity
from hlsbook.media.extractor import AudioExtractor
from hlsbook.models.config import EncodingConfig
from hlsbook.models.job import Segment, SegmentState, SourceItem


def _item(tmp_path: Path, count: int, key: str = "lec1") -> tuple[SourceItem, Path]:
    segment_dir = tmp_path / key / "segments"
    segment_dir.mkdir(parents=True)
    segments = []
    for i in range(count):
        segment = Segment(index=i, sequence=100 + i, uri=f"https://cdn/x/s{i}.ts", duration=4.0)
        (segment_dir / segment.filename).write_bytes(f"<{i}>".encode())
        segments.append(segment)
    item = SourceItem(key=key, playlist_uri="x.m3u8", segments=segments)
    item.segment_states = {s.index: SegmentState.COMPLETE for s in segments}
    return item, segment_dir


class TestValidateContiguity:
    def test_contiguous(self) -> None:
        validate_contiguity("a", [2, 0, 1])

    def test_gap(self) -> None:
        with pytest.raises(DiscontinuityError) as excinfo:
            validate_contiguity("a", [0, 1, 3])
        assert excinfo.value.missing == [2]
        assert excinfo.value.duplicates == []

    def test_duplicate(self) -> None:
        with pytest.raises(DiscontinuityError) as excinfo:
            validate_contiguity("a", [0, 1, 1, 2])
        assert excinfo.value.duplicates == [1]
        assert excinfo.value.missing == []

    def test_not_starting_at_zero(self) -> None:
        with pytest.raises(DiscontinuityError) as excinfo:
            validate_contiguity("a", [1, 2])
        assert excinfo.value.missing == [0]


class TestStreamAssembler:
    def test_joins_in_index_order(self, tmp_path: Path, fake_encoder) -> None:
        item, segment_dir = _item(tmp_path, 3)
        item.segments.reverse()
        output = tmp_path / "lec1" / "assembled.ts"

        asyncio.run(StreamAssembler(fake_encoder).assemble(item, segment_dir, output))

        assert output.read_bytes() == b"<0><1><2>"
        assert item.assembled_path == output
        assert not output.with_name("assembled.ts.part").exists()

    def test_same_result_regardless_of_completion_order(self, tmp_path: Path, fake_encoder) -> None:
        first, dir_a = _item(tmp_path / "a", 4)
        second, dir_b = _item(tmp_path / "b", 4)
        second.segments = [second.segments[i] for i in (3, 1, 0, 2)]

        async def run():
            assembler = StreamAssembler(fake_encoder)
            await assembler.assemble(first, dir_a, tmp_path / "a.ts")
            await assembler.assemble(second, dir_b, tmp_path / "b.ts")

        asyncio.run(run())

        assert (tmp_path / "a.ts").read_bytes() == (tmp_path / "b.ts").read_bytes()

    def test_incomplete_segments_block(self, tmp_path: Path, fake_encoder) -> None:
        item, segment_dir = _item(tmp_path, 3)
        item.segment_states[1] = SegmentState.FAILED

        with pytest.raises(SourceItemBlockedError) as excinfo:
            asyncio.run(
                StreamAssembler(fake_encoder).assemble(item, segment_dir, tmp_path / "out.ts")
            )
        assert excinfo.value.failed_indices == [1]
        assert not (tmp_path / "out.ts").exists()

    def test_gap_in_indices(self, tmp_path: Path, fake_encoder) -> None:
        item, segment_dir = _item(tmp_path, 4)
        del item.segments[2]
        del item.segment_states[2]

        with pytest.raises(DiscontinuityError) as excinfo:
            asyncio.run(
                StreamAssembler(fake_encoder).assemble(item, segment_dir, tmp_path / "out.ts")
            )
        assert excinfo.value.missing == [2]

    def test_missing_file_blocks(self, tmp_path: Path, fake_encoder) -> None:
        item, segment_dir = _item(tmp_path, 3)
        (segment_dir / item.segments[0].filename).unlink()

        with pytest.raises(SourceItemBlockedError):
            asyncio.run(
                StreamAssembler(fake_encoder).assemble(item, segment_dir, tmp_path / "out.ts")
            )

    def test_invalid_join_is_reencoded_once(self, tmp_path: Path, fake_encoder) -> None:
        item, segment_dir = _item(tmp_path, 2)
        output = tmp_path / "lec1" / "assembled.ts"
        fake_encoder.invalid_joins.add("lec1")

        asyncio.run(StreamAssembler(fake_encoder).assemble(item, segment_dir, output))

        concat_calls = [c for c in fake_encoder.calls if c[0] == "concatenate"]
        assert len(concat_calls) == 1
        assert concat_calls[0][1][2] is True
        assert json.loads(output.read_text())["reencoded"] is True

    def test_reencode_that_stays_invalid_fails(self, tmp_path: Path, fake_encoder) -> None:
        item, segment_dir = _item(tmp_path, 2)
        fake_encoder.validate = lambda path: False

        with pytest.raises(EncodingError, match="still invalid"):
            asyncio.run(
                StreamAssembler(fake_encoder).assemble(
                    item, segment_dir, tmp_path / "lec1" / "assembled.ts"
                )
            )


class TestAudioExtractor:
    def test_measured_duration_wins_over_hints(self, tmp_path: Path, fake_encoder) -> None:
        item, _ = _item(tmp_path, 3)
        source = tmp_path / "lec1" / "assembled.ts"
        source.write_bytes(b"media")
        fake_encoder.durations["lec1"] = 11.52

        duration = asyncio.run(
            AudioExtractor(fake_encoder).extract(
                item, source, tmp_path / "lec1" / "audio.m4a", EncodingConfig()
            )
        )

        assert duration == pytest.approx(11.52)
        assert item.duration == pytest.approx(11.52)
        assert item.audio_path == tmp_path / "lec1" / "audio.m4a"

    def test_video_in_output_is_an_error(self, tmp_path: Path, fake_encoder) -> None:
        item, _ = _item(tmp_path, 1)
        fake_encoder.has_video = lambda path: True

        with pytest.raises(EncodingError, match="video"):
            asyncio.run(
                AudioExtractor(fake_encoder).extract(
                    item, tmp_path / "src.ts", tmp_path / "lec1" / "audio.m4a", EncodingConfig()
                )
            )

    def test_zero_duration_is_an_error(self, tmp_path: Path, fake_encoder) -> None:
        item, _ = _item(tmp_path, 1)
        fake_encoder.durations["lec1"] = 0.0

        with pytest.raises(EncodingError, match="duration"):
            asyncio.run(
                AudioExtractor(fake_encoder).extract(
                    item, tmp_path / "lec1" / "src.ts", tmp_path / "lec1" / "audio.m4a", EncodingConfig()
                )
            )

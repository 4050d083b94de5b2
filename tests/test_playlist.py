"""Tests for hlsbook.media.playlist module."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import aiohttp
import pytest
from aiohttp.test_utils import TestServer

from hlsbook.exceptions import MalformedPlaylistError, PlaylistLoadError
from hlsbook.media.playlist import PlaylistResolver, load_playlist, parse_attributes

BASE = "https://cdn.example.com/course/lecture1/index.m3u8"


def _loader(documents: dict[str, str]):
    async def load(uri: str) -> str:
        return documents[uri]

    return load


class TestParseAttributes:
    def test_quoted_values_keep_commas(self) -> None:
        attrs = parse_attributes('BANDWIDTH=800000,CODECS="avc1.4d401e,mp4a.40.2",NAME="hd"')
        assert attrs == {
            "BANDWIDTH": "800000",
            "CODECS": "avc1.4d401e,mp4a.40.2",
            "NAME": "hd",
        }


class TestParseMediaPlaylist:
    def test_segments_in_order(self, media_playlist_text: str) -> None:
        playlist = PlaylistResolver().parse(media_playlist_text, BASE)

        assert not playlist.is_master
        assert playlist.ended
        assert playlist.media_sequence == 7
        assert playlist.target_duration == 10.0
        assert [s.index for s in playlist.segments] == [0, 1, 2]
        assert [s.sequence for s in playlist.segments] == [7, 8, 9]
        assert playlist.segments[0].uri == "https://cdn.example.com/course/lecture1/seg-0.ts"
        assert playlist.segments[2].duration == pytest.approx(3.003)
        assert playlist.total_duration == pytest.approx(21.021)

    def test_bom_and_blank_lines_are_ignored(self) -> None:
        text = "\ufeff#EXTM3U\n\n#EXTINF:4.0,\n\na.ts\n"
        playlist = PlaylistResolver().parse(text, BASE)
        assert len(playlist.segments) == 1

    def test_missing_signature_reports_line(self) -> None:
        with pytest.raises(MalformedPlaylistError) as excinfo:
            PlaylistResolver().parse("#EXTINF:4,\na.ts\n", BASE)
        assert excinfo.value.line_number == 1
        assert excinfo.value.uri == BASE

    def test_uri_without_extinf(self) -> None:
        text = "#EXTM3U\n#EXTINF:4,\na.ts\nb.ts\n"
        with pytest.raises(MalformedPlaylistError) as excinfo:
            PlaylistResolver().parse(text, BASE)
        assert excinfo.value.line_number == 4
        assert excinfo.value.line == "b.ts"

    def test_media_sequence_after_segments_is_rejected(self) -> None:
        text = "#EXTM3U\n#EXTINF:4,\na.ts\n#EXT-X-MEDIA-SEQUENCE:3\n#EXTINF:4,\nb.ts\n"
        with pytest.raises(MalformedPlaylistError, match="sequence"):
            PlaylistResolver().parse(text, BASE)

    def test_repeated_media_sequence_is_rejected(self) -> None:
        text = "#EXTM3U\n#EXT-X-MEDIA-SEQUENCE:1\n#EXT-X-MEDIA-SEQUENCE:2\n#EXTINF:4,\na.ts\n"
        with pytest.raises(MalformedPlaylistError):
            PlaylistResolver().parse(text, BASE)

    def test_invalid_duration(self) -> None:
        with pytest.raises(MalformedPlaylistError, match="not a number"):
            PlaylistResolver().parse("#EXTM3U\n#EXTINF:abc,\na.ts\n", BASE)

    def test_dangling_extinf(self) -> None:
        with pytest.raises(MalformedPlaylistError) as excinfo:
            PlaylistResolver().parse("#EXTM3U\n#EXTINF:4,\na.ts\n#EXTINF:4,\n", BASE)
        assert excinfo.value.line_number == 4

    def test_encrypted_playlist_is_rejected(self) -> None:
        text = '#EXTM3U\n#EXT-X-KEY:METHOD=AES-128,URI="key.bin"\n#EXTINF:4,\na.ts\n'
        with pytest.raises(MalformedPlaylistError, match="Encrypted"):
            PlaylistResolver().parse(text, BASE)

    def test_empty_playlist(self) -> None:
        with pytest.raises(MalformedPlaylistError, match="neither"):
            PlaylistResolver().parse("#EXTM3U\n#EXT-X-ENDLIST\n", BASE)

    def test_byte_ranges_continue_previous_offset(self) -> None:
        text = (
            "#EXTM3U\n"
            "#EXTINF:4,\n#EXT-X-BYTERANGE:1000@0\nall.ts\n"
            "#EXTINF:4,\n#EXT-X-BYTERANGE:500\nall.ts\n"
            "#EXTINF:4,\n#EXT-X-BYTERANGE:250@2000\nall.ts\n"
        )
        segments = PlaylistResolver().parse(text, BASE).segments

        assert [(s.byte_offset, s.byte_length) for s in segments] == [
            (0, 1000),
            (1000, 500),
            (2000, 250),
        ]
        assert segments[1].range_header == "bytes=1000-1499"
        # Every segment still gets its own file
        assert len({s.filename for s in segments}) == 3


class TestMasterPlaylist:
    def test_renditions_are_parsed(self, master_playlist_text: str) -> None:
        playlist = PlaylistResolver().parse(master_playlist_text, BASE)

        assert playlist.is_master
        assert [r.bandwidth for r in playlist.renditions] == [400000, 1200000, 800000]
        assert playlist.renditions[0].height == 240
        assert playlist.renditions[0].codecs == "avc1.4d401e,mp4a.40.2"
        assert playlist.renditions[1].uri == "https://cdn.example.com/course/lecture1/mid/index.m3u8"

    def test_stream_inf_without_bandwidth(self) -> None:
        text = "#EXTM3U\n#EXT-X-STREAM-INF:RESOLUTION=640x360\nlow.m3u8\n"
        with pytest.raises(MalformedPlaylistError, match="BANDWIDTH") as excinfo:
            PlaylistResolver().parse(text, BASE)
        assert excinfo.value.line_number == 2

    def test_selects_lowest_rendition_at_threshold(self, master_playlist_text: str) -> None:
        resolver = PlaylistResolver(min_bandwidth=500000)
        playlist = resolver.parse(master_playlist_text, BASE)
        assert resolver.select_rendition(playlist).bandwidth == 800000

    def test_threshold_is_inclusive(self, master_playlist_text: str) -> None:
        resolver = PlaylistResolver(min_bandwidth=800000)
        playlist = resolver.parse(master_playlist_text, BASE)
        assert resolver.select_rendition(playlist).bandwidth == 800000

    def test_min_height(self, master_playlist_text: str) -> None:
        resolver = PlaylistResolver(min_height=720)
        playlist = resolver.parse(master_playlist_text, BASE)
        assert resolver.select_rendition(playlist).bandwidth == 1200000

    def test_falls_back_to_highest_with_warning(
        self, master_playlist_text: str, caplog: pytest.LogCaptureFixture
    ) -> None:
        resolver = PlaylistResolver(min_bandwidth=5_000_000)
        playlist = resolver.parse(master_playlist_text, BASE)

        with caplog.at_level(logging.WARNING, logger="hlsbook.media.playlist"):
            chosen = resolver.select_rendition(playlist)

        assert chosen.bandwidth == 1200000
        assert "No rendition meets" in caplog.text


class TestResolve:
    def test_master_resolves_to_selected_media(
        self, master_playlist_text: str, media_playlist_text: str
    ) -> None:
        sd = "https://cdn.example.com/course/lecture1/sd/index.m3u8"
        loader = _loader({BASE: master_playlist_text, sd: media_playlist_text})

        segments = asyncio.run(PlaylistResolver(min_bandwidth=500000).resolve(BASE, loader))

        assert len(segments) == 3
        assert segments[0].uri == "https://cdn.example.com/course/lecture1/sd/seg-0.ts"

    def test_media_playlist_is_used_directly(self, media_playlist_text: str) -> None:
        segments = asyncio.run(
            PlaylistResolver().resolve(BASE, _loader({BASE: media_playlist_text}))
        )
        assert [s.index for s in segments] == [0, 1, 2]

    def test_nested_master_is_malformed(self, master_playlist_text: str) -> None:
        documents = {BASE: master_playlist_text}
        documents["https://cdn.example.com/course/lecture1/low/index.m3u8"] = master_playlist_text
        with pytest.raises(MalformedPlaylistError, match="another master"):
            asyncio.run(PlaylistResolver().resolve(BASE, _loader(documents)))


class TestLoadPlaylist:
    def test_local_file(self, tmp_path: Path, media_playlist_text: str) -> None:
        path = tmp_path / "index.m3u8"
        path.write_text(media_playlist_text, encoding="utf-8")

        text = asyncio.run(load_playlist(str(path)))
        segments = PlaylistResolver().parse(text, str(path)).segments

        assert segments[0].uri == str(tmp_path / "seg-0.ts")

    def test_file_uri_resolves_segments_to_paths(
        self, tmp_path: Path, media_playlist_text: str
    ) -> None:
        path = tmp_path / "index.m3u8"
        path.write_text(media_playlist_text, encoding="utf-8")
        uri = f"file://{path}"

        segments = PlaylistResolver().parse(asyncio.run(load_playlist(uri)), uri).segments

        assert segments[2].uri == str(tmp_path / "seg-2.ts")

    def test_missing_local_file(self, tmp_path: Path) -> None:
        missing = str(tmp_path / "gone.m3u8")
        with pytest.raises(PlaylistLoadError) as excinfo:
            asyncio.run(load_playlist(missing))
        assert excinfo.value.uri == missing

    def test_non_utf8_file_is_malformed(self, tmp_path: Path) -> None:
        path = tmp_path / "index.m3u8"
        path.write_bytes(b"#EXTM3U\n#EXTINF:4,\n\xff\xfeseg.ts\n")
        with pytest.raises(MalformedPlaylistError, match="UTF-8"):
            asyncio.run(load_playlist(str(path)))

    def test_client_error_is_not_retried(self, hls_server) -> None:
        async def run():
            async with TestServer(hls_server.app) as ts, aiohttp.ClientSession() as session:
                uri = str(ts.make_url("/missing.m3u8"))
                with pytest.raises(PlaylistLoadError) as excinfo:
                    await load_playlist(uri, session, max_attempts=3, base_delay=0)
                return uri, excinfo.value

        uri, error = asyncio.run(run())

        assert error.status == 404
        assert error.uri == uri
        assert hls_server.requests["missing.m3u8"] == 1

    def test_server_errors_are_retried_then_reported(self, hls_server) -> None:
        hls_server.playlists["index.m3u8"] = "#EXTM3U\n"
        hls_server.failures["index.m3u8"] = [503, 503, 503]

        async def run():
            async with TestServer(hls_server.app) as ts, aiohttp.ClientSession() as session:
                with pytest.raises(PlaylistLoadError) as excinfo:
                    await load_playlist(
                        str(ts.make_url("/index.m3u8")), session, max_attempts=3, base_delay=0
                    )
                return excinfo.value

        error = asyncio.run(run())

        assert error.status == 503
        assert "3 attempts" in str(error)
        assert hls_server.requests["index.m3u8"] == 3

    def test_recovers_after_transient_error(self, hls_server) -> None:
        hls_server.playlists["index.m3u8"] = "#EXTM3U\n"
        hls_server.failures["index.m3u8"] = [500]

        async def run():
            async with TestServer(hls_server.app) as ts, aiohttp.ClientSession() as session:
                return await load_playlist(
                    str(ts.make_url("/index.m3u8")), session, base_delay=0
                )

        assert asyncio.run(run()) == "#EXTM3U\n"

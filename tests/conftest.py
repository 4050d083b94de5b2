"""
Test configuration and shared fixtures.
"""

from __future__ import annotations

import asyncio
import json
from collections import Counter, defaultdict
from pathlib import Path
from typing import Any

import pytest
from aiohttp import web

from hlsbook.exceptions import EncodingError
from hlsbook.media.chapters import parse_chapter_metadata
from hlsbook.media.encoder import Encoder
from hlsbook.media.tagger import Tagger
from hlsbook.models.config import AudiobookMetadata, EncodingConfig, MediaType
from hlsbook.models.job import AssemblyJob, Chapter, SourceItem


def _read_doc(path: Path) -> dict[str, Any]:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return {}


def _write_doc(path: Path, doc: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(doc), encoding="utf-8")


class FakeEncoder(Encoder):
    """
    Encoder that writes JSON documents instead of media.

    Durations are looked up by the name of the item directory holding the
    source file, so tests control what "measuring" returns.
    """

    def __init__(self, durations: dict[str, float] | None = None):
        self.durations = durations or {}
        self.invalid_joins: set[str] = set()
        self.drop_on_chapters: tuple[str, ...] = ()
        self.duration_offset = 0.0
        self.calls: list[tuple[str, Any]] = []

    def concatenate(self, inputs, output, reencode=False, encoding=None):
        self.calls.append(("concatenate", (list(inputs), output, reencode)))
        total = sum(_read_doc(p).get("duration", 0.0) for p in inputs)
        _write_doc(
            output,
            {"duration": total, "parts": [str(p) for p in inputs], "reencoded": reencode},
        )
        return output

    def extract_audio(self, source, output, encoding):
        self.calls.append(("extract_audio", (source, output)))
        duration = self.durations.get(source.parent.name, 10.0)
        _write_doc(output, {"duration": duration, "codec": encoding.codec})
        return output, duration

    def probe_duration(self, path):
        doc = _read_doc(path)
        if "duration" not in doc:
            raise EncodingError(f"Could not measure the duration of '{path.name}'")
        return doc["duration"] + self.duration_offset

    def has_video(self, path):
        return bool(_read_doc(path).get("video", False))

    def validate(self, path):
        path = Path(path)
        if not path.is_file() or path.stat().st_size == 0:
            return False
        if path.parent.name in self.invalid_joins and not _read_doc(path).get("reencoded"):
            return False
        return True

    def apply_chapters(self, source, chapter_file, output):
        self.calls.append(("apply_chapters", (source, chapter_file, output)))
        doc = _read_doc(source)
        chapters = parse_chapter_metadata(Path(chapter_file).read_text(encoding="utf-8"))
        doc["chapters"] = [[c.start_ms, c.end_ms, c.title] for c in chapters]
        tags = dict(doc.get("tags", {}))
        for name in self.drop_on_chapters:
            tags.pop(name, None)
        doc["tags"] = tags
        _write_doc(output, doc)
        return output

    def read_chapters(self, path):
        return [Chapter(*entry) for entry in _read_doc(path).get("chapters", [])]


class FakeTagger(Tagger):
    """Tagger that keeps tags inside the fake encoder's JSON documents."""

    FIELDS = ("title", "author", "album_artist", "year", "genre", "description", "language")

    def __init__(self):
        self.calls: list[str] = []

    def _update(self, path: Path, **tags: Any) -> None:
        doc = _read_doc(path)
        doc.setdefault("tags", {}).update(tags)
        _write_doc(path, doc)

    def apply_metadata(self, path, metadata):
        self.calls.append("apply_metadata")
        fields = {name: getattr(metadata, name) for name in self.FIELDS if getattr(metadata, name)}
        self._update(path, stik=metadata.media_type.stik, **fields)

    def set_audiobook_flag(self, path):
        self.calls.append("set_audiobook_flag")
        self._update(path, stik=MediaType.AUDIOBOOK.stik)

    def embed_cover_art(self, path, image):
        self.calls.append("embed_cover_art")
        self._update(path, has_cover=True)

    def read_tags(self, path):
        tags = _read_doc(path).get("tags", {})
        result = {name: tags.get(name, "") for name in self.FIELDS}
        result["stik"] = tags.get("stik")
        result["has_cover"] = bool(tags.get("has_cover"))
        return result

    def restore_tags(self, path, snapshot):
        current = self.read_tags(path)
        restored = {
            name: value
            for name, value in snapshot.items()
            if name != "has_cover" and value not in ("", None) and not current.get(name)
        }
        if restored:
            self._update(path, **restored)
        return list(restored)

    def check_integrity(self, path):
        return _read_doc(path).get("duration", 0) > 0


class HlsServer:
    """
    A tiny HLS origin: serves playlists and segment blobs by path, counts
    requests and concurrent requests, honours Range headers and can be told
    to fail or to answer slowly.
    """

    def __init__(self):
        self.playlists: dict[str, str] = {}
        self.blobs: dict[str, bytes] = {}
        self.requests: Counter = Counter()
        self.failures: dict[str, list[int]] = defaultdict(list)
        self.delay = 0.0
        self.in_flight = 0
        self.peak_in_flight = 0

    @property
    def app(self) -> web.Application:
        # aiohttp binds an Application to one event loop, so each run gets a
        # fresh app; the served state lives on this object.
        app = web.Application()
        app.router.add_get("/{name:.+}", self.handle)
        return app

    def add_media_playlist(self, name: str, segments: dict[str, bytes], duration: float = 4.0) -> None:
        lines = ["#EXTM3U", "#EXT-X-TARGETDURATION:4", "#EXT-X-MEDIA-SEQUENCE:0"]
        for seg_name, data in segments.items():
            lines += [f"#EXTINF:{duration:.3f},", seg_name]
            self.blobs[seg_name] = data
        lines.append("#EXT-X-ENDLIST")
        self.playlists[name] = "\n".join(lines) + "\n"

    async def handle(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        self.requests[name] += 1
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            return self._respond(name, request)
        finally:
            self.in_flight -= 1

    def _respond(self, name: str, request: web.Request) -> web.Response:
        if self.failures.get(name):
            return web.Response(status=self.failures[name].pop(0))
        if name in self.playlists:
            return web.Response(text=self.playlists[name])
        if name not in self.blobs:
            return web.Response(status=404)
        data = self.blobs[name]
        range_header = request.headers.get("Range")
        if range_header:
            start, _, end = range_header.removeprefix("bytes=").partition("-")
            return web.Response(status=206, body=data[int(start) : int(end) + 1])
        return web.Response(body=data)


@pytest.fixture
def hls_server() -> HlsServer:
    return HlsServer()


@pytest.fixture
def fake_encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture
def fake_tagger() -> FakeTagger:
    return FakeTagger()


@pytest.fixture
def metadata() -> AudiobookMetadata:
    return AudiobookMetadata(
        title="Intro to Systems",
        author="Ada Lovelace",
        year="2024",
        description="Lecture series",
        language="en",
    )


@pytest.fixture
def make_job(tmp_path: Path, metadata: AudiobookMetadata):
    """Builds an AssemblyJob over the given item keys inside tmp_path."""

    def _make(keys: list[str], uris: dict[str, str] | None = None) -> AssemblyJob:
        items = [SourceItem(key=k, playlist_uri=(uris or {}).get(k, f"{k}.m3u8")) for k in keys]
        return AssemblyJob(
            items=items,
            output_path=tmp_path / "out" / "book.m4b",
            work_dir=tmp_path / "work",
            metadata=metadata.model_copy(),
            encoding=EncodingConfig(),
        )

    return _make


MEDIA_PLAYLIST = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:10
#EXT-X-MEDIA-SEQUENCE:7
#EXTINF:9.009,
seg-0.ts
#EXTINF:9.009,
seg-1.ts
#EXTINF:3.003,
seg-2.ts
#EXT-X-ENDLIST
"""

MASTER_PLAYLIST = """#EXTM3U
#EXT-X-STREAM-INF:BANDWIDTH=400000,RESOLUTION=426x240,CODECS="avc1.4d401e,mp4a.40.2"
low/index.m3u8
#EXT-X-STREAM-INF:BANDWIDTH=1200000,RESOLUTION=1280x720
mid/index.m3u8
#EXT-X-STREAM-INF:BANDWIDTH=800000,RESOLUTION=854x480
sd/index.m3u8
"""


@pytest.fixture
def media_playlist_text() -> str:
    return MEDIA_PLAYLIST


@pytest.fixture
def master_playlist_text() -> str:
    return MASTER_PLAYLIST

"""
Parses HLS playlists and selects the rendition whose segments will be fetched.

Only the documented subset of the format is understood: the ``#EXTM3U``
signature, ``#EXT-X-STREAM-INF`` variant lines, and media playlists made of
``#EXTINF`` entries (with optional ``#EXT-X-MEDIA-SEQUENCE``,
``#EXT-X-TARGETDURATION``, ``#EXT-X-BYTERANGE`` and ``#EXT-X-ENDLIST``).
"""

import asyncio
import logging
import re
from typing import Awaitable, Callable, Optional

import aiofiles
import aiohttp

from hlsbook.exceptions import MalformedPlaylistError, PlaylistLoadError
from hlsbook.models.job import Playlist, Rendition, Segment
from hlsbook.net.session import get_connection_pool
from hlsbook.utils.path import is_remote, local_path, resolve_uri

log = logging.getLogger(__name__)

SIGNATURE = "#EXTM3U"
_ATTRIBUTE_RE = re.compile(r'([A-Z0-9-]+)=("[^"]*"|[^,]*)')
_RESOLUTION_RE = re.compile(r"^(\d+)x(\d+)$")

PlaylistLoader = Callable[[str], Awaitable[str]]


def parse_attributes(payload: str) -> dict[str, str]:
    """Parses an attribute list such as 'BANDWIDTH=800000,CODECS="a,b"'."""
    return {
        key: value[1:-1] if value.startswith('"') else value.strip()
        for key, value in _ATTRIBUTE_RE.findall(payload)
    }


class PlaylistResolver:
    """Turns playlist documents into an ordered list of segments."""

    def __init__(self, min_bandwidth: int = 0, min_height: Optional[int] = None):
        self.min_bandwidth = min_bandwidth
        self.min_height = min_height

    def parse(self, text: str, base_uri: str = "") -> Playlist:
        """
        Parses a master or media playlist.

        Raises:
            MalformedPlaylistError: If the signature is missing, a stream-info
            line lacks a bandwidth, or segment lines are inconsistent with the
            declared sequence numbering.
        """
        lines = text.lstrip("\ufeff").splitlines()
        numbered = [(n, line.strip()) for n, line in enumerate(lines, start=1)]
        numbered = [(n, line) for n, line in numbered if line]

        if not numbered or numbered[0][1] != SIGNATURE:
            first = numbered[0] if numbered else (1, None)
            raise MalformedPlaylistError(
                f"Missing {SIGNATURE} signature", base_uri, first[0], first[1]
            )

        playlist = Playlist(uri=base_uri, is_master=False)
        seen_bandwidths: set[int] = set()
        media_sequence: Optional[int] = None
        pending_stream: Optional[tuple[int, dict[str, str]]] = None
        pending_inf: Optional[tuple[int, float]] = None
        pending_range: Optional[tuple[int, Optional[int]]] = None
        range_ends: dict[str, int] = {}

        for line_number, line in numbered[1:]:

            def fail(message: str) -> MalformedPlaylistError:
                return MalformedPlaylistError(message, base_uri, line_number, line)

            if line.startswith("#EXT-X-STREAM-INF:"):
                attrs = parse_attributes(line.split(":", 1)[1])
                bandwidth = attrs.get("BANDWIDTH", "")
                if not bandwidth.isdigit():
                    raise fail("Stream-info line has no valid BANDWIDTH")
                if pending_stream is not None:
                    raise fail("Stream-info line is not followed by a URI")
                pending_stream = (line_number, attrs)

            elif line.startswith("#EXT-X-MEDIA-SEQUENCE:"):
                if media_sequence is not None or playlist.segments or pending_inf:
                    raise fail(
                        "Media sequence declared after segments; segment order "
                        "does not match the declared sequence numbers"
                    )
                value = line.split(":", 1)[1].strip()
                if not value.isdigit():
                    raise fail("Media sequence is not a non-negative integer")
                media_sequence = int(value)

            elif line.startswith("#EXT-X-TARGETDURATION:"):
                try:
                    playlist.target_duration = float(line.split(":", 1)[1])
                except ValueError:
                    raise fail("Target duration is not a number") from None

            elif line.startswith("#EXTINF:"):
                if pending_inf is not None:
                    raise fail("#EXTINF is not followed by a segment URI")
                hint = line.split(":", 1)[1].split(",", 1)[0].strip()
                try:
                    duration = float(hint)
                except ValueError:
                    raise fail("Segment duration hint is not a number") from None
                if duration < 0:
                    raise fail("Segment duration hint is negative")
                pending_inf = (line_number, duration)

            elif line.startswith("#EXT-X-BYTERANGE:"):
                length, _, offset = line.split(":", 1)[1].strip().partition("@")
                if not length.isdigit() or (offset and not offset.isdigit()):
                    raise fail("Byte range is not of the form <length>[@<offset>]")
                pending_range = (int(length), int(offset) if offset else None)

            elif line.startswith("#EXT-X-KEY:"):
                method = parse_attributes(line.split(":", 1)[1]).get("METHOD", "NONE")
                if method.upper() != "NONE":
                    raise fail(f"Encrypted segments ({method}) are not supported")

            elif line == "#EXT-X-ENDLIST":
                playlist.ended = True

            elif line.startswith("#"):
                continue

            elif pending_stream is not None:
                _, attrs = pending_stream
                pending_stream = None
                bandwidth = int(attrs["BANDWIDTH"])
                if bandwidth in seen_bandwidths:
                    log.debug(f"Ignoring duplicate rendition with bandwidth {bandwidth}")
                    continue
                seen_bandwidths.add(bandwidth)
                resolution = None
                if match := _RESOLUTION_RE.match(attrs.get("RESOLUTION", "")):
                    resolution = (int(match.group(1)), int(match.group(2)))
                playlist.renditions.append(
                    Rendition(
                        identifier=attrs.get("NAME") or f"v{len(playlist.renditions)}",
                        bandwidth=bandwidth,
                        uri=resolve_uri(base_uri, line),
                        resolution=resolution,
                        codecs=attrs.get("CODECS"),
                    )
                )

            elif pending_inf is not None:
                _, duration = pending_inf
                pending_inf = None
                index = len(playlist.segments)
                uri = resolve_uri(base_uri, line)
                length = offset = None
                if pending_range is not None:
                    length, offset = pending_range
                    # Without an explicit offset the range continues the previous one
                    if offset is None:
                        offset = range_ends.get(uri, 0)
                    range_ends[uri] = offset + length
                    pending_range = None
                playlist.segments.append(
                    Segment(
                        index=index,
                        sequence=(media_sequence or 0) + index,
                        uri=uri,
                        duration=duration,
                        byte_length=length,
                        byte_offset=offset,
                    )
                )

            else:
                raise fail("Segment URI without a preceding #EXTINF")

        if pending_inf is not None:
            raise MalformedPlaylistError(
                "#EXTINF is not followed by a segment URI", base_uri, pending_inf[0]
            )
        if pending_stream is not None:
            raise MalformedPlaylistError(
                "Stream-info line is not followed by a URI", base_uri, pending_stream[0]
            )
        if playlist.renditions and playlist.segments:
            raise MalformedPlaylistError(
                "Playlist mixes variant streams and media segments", base_uri
            )
        if not playlist.renditions and not playlist.segments:
            raise MalformedPlaylistError(
                "Playlist lists neither renditions nor segments", base_uri
            )

        playlist.is_master = bool(playlist.renditions)
        playlist.media_sequence = media_sequence or 0
        return playlist

    def select_rendition(self, playlist: Playlist) -> Rendition:
        """
        Picks the cheapest rendition that still meets the quality threshold.

        Only the audio is kept, so the lowest qualifying bandwidth wins. When
        nothing qualifies, the best available rendition is used instead.
        """
        if not playlist.renditions:
            raise MalformedPlaylistError("Master playlist has no renditions", playlist.uri)

        def qualifies(r: Rendition) -> bool:
            if r.bandwidth < self.min_bandwidth:
                return False
            if self.min_height is not None and r.height is not None:
                return r.height >= self.min_height
            return True

        candidates = [r for r in playlist.renditions if qualifies(r)]
        if candidates:
            return min(candidates, key=lambda r: (r.bandwidth, r.height or 0))

        best = max(playlist.renditions, key=lambda r: (r.bandwidth, r.height or 0))
        log.warning(
            f"[yellow]No rendition meets the minimum of {self.min_bandwidth} bps; "
            f"using the highest available ({best.bandwidth} bps).[/yellow]"
        )
        return best

    async def resolve(self, uri: str, loader: PlaylistLoader) -> list[Segment]:
        """Loads a playlist and, for a master playlist, the selected media playlist."""
        playlist = self.parse(await loader(uri), uri)
        if playlist.is_master:
            rendition = self.select_rendition(playlist)
            log.debug(
                f"Selected rendition {rendition.identifier} "
                f"({rendition.bandwidth} bps) from {len(playlist.renditions)}"
            )
            playlist = self.parse(await loader(rendition.uri), rendition.uri)
            if playlist.is_master:
                raise MalformedPlaylistError(
                    "Variant URI points at another master playlist", rendition.uri
                )
        if not playlist.ended:
            log.debug(f"Playlist '{uri}' has no #EXT-X-ENDLIST; treating it as complete.")
        return playlist.segments


async def load_playlist(
    uri: str,
    session: aiohttp.ClientSession | None = None,
    max_attempts: int = 3,
    base_delay: float = 1.0,
) -> str:
    """
    Reads a playlist document from an HTTP(S) URL or a local file.

    Every failure surfaces as an ``HlsBookError`` naming the URI, so a bad
    source fails its own item rather than the whole job.
    """
    if not is_remote(uri):
        try:
            async with aiofiles.open(local_path(uri), "rb") as f:
                body = await f.read()
        except OSError as e:
            raise PlaylistLoadError(f"Cannot read playlist: {e.strerror or e}", uri) from e
        return _decode(body, uri)

    session = session or await get_connection_pool()
    last_exception: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            async with session.get(uri, allow_redirects=True) as response:
                response.raise_for_status()
                return _decode(await response.read(), uri)
        except aiohttp.ClientResponseError as e:
            if e.status < 500 and e.status != 429:
                raise PlaylistLoadError(
                    f"Playlist request failed with HTTP {e.status}", uri, e.status
                ) from e
            last_exception = e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            last_exception = e
        log.debug(
            f"Playlist request attempt {attempt}/{max_attempts} for '{uri}' "
            f"failed: {last_exception!r}"
        )
        if attempt < max_attempts:
            await asyncio.sleep(base_delay * (2 ** (attempt - 1)))

    status = getattr(last_exception, "status", None)
    raise PlaylistLoadError(
        f"Playlist request failed after {max_attempts} attempts: "
        f"{type(last_exception).__name__}",
        uri,
        status,
    ) from last_exception


def _decode(body: bytes, uri: str) -> str:
    try:
        return body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedPlaylistError(
            f"Playlist is not UTF-8 text (byte {e.start})", uri
        ) from e

"""
Writes audiobook metadata, the media type flag and cover art to MP4 containers.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

from mutagen import MutagenError
from mutagen.mp4 import MP4, MP4Cover, MP4FreeForm

from hlsbook.exceptions import EncodingError
from hlsbook.media.integrity import FileIntegrityChecker
from hlsbook.models.config import AudiobookMetadata, MediaType

log = logging.getLogger(__name__)

# --- Constants ---
LANGUAGE_ATOM = "----:com.apple.iTunes:LANGUAGE"
# iTunes truncates 'desc' at 255 characters; the full text goes into 'ldes'
SHORT_DESCRIPTION_LIMIT = 255

# metadata field -> MP4 atom
TEXT_ATOMS = {
    "title": ("\xa9nam", "\xa9alb"),
    "author": ("\xa9ART",),
    "album_artist": ("aART",),
    "year": ("\xa9day",),
    "genre": ("\xa9gen",),
    "description": ("desc", "ldes"),
}

JPEG_MAGIC = b"\xff\xd8\xff"
PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


def detect_image_format(data: bytes) -> Optional[int]:
    """Returns the MP4Cover format for JPEG or PNG data, or None."""
    if data.startswith(JPEG_MAGIC):
        return MP4Cover.FORMAT_JPEG
    if data.startswith(PNG_MAGIC):
        return MP4Cover.FORMAT_PNG
    return None


class Tagger(ABC):
    """Container tagging operations used by the muxer."""

    @abstractmethod
    def apply_metadata(self, path: Path, metadata: AudiobookMetadata) -> None:
        """Writes the metadata fields and the media type flag."""

    @abstractmethod
    def set_audiobook_flag(self, path: Path) -> None:
        """Marks the container as an audiobook."""

    @abstractmethod
    def embed_cover_art(self, path: Path, image: Path) -> None:
        """Replaces any embedded cover with `image`."""

    @abstractmethod
    def read_tags(self, path: Path) -> Dict[str, Any]:
        """
        Reads the tags back as a dict keyed like AudiobookMetadata fields,
        plus ``stik`` (int or None) and ``has_cover`` (bool).
        """

    @abstractmethod
    def restore_tags(self, path: Path, snapshot: Dict[str, Any]) -> list[str]:
        """Writes back fields present in `snapshot` but missing from `path`."""

    @abstractmethod
    def check_integrity(self, path: Path) -> bool:
        """Whether the container is readable with a positive duration."""


class Mp4Tagger(Tagger):
    """Tags MP4/M4B files in place with mutagen."""

    def _open(self, path: Path) -> MP4:
        try:
            audio = MP4(path)
        except MutagenError as e:
            raise EncodingError(f"Cannot open '{path.name}' for tagging: {e}") from e
        if audio.tags is None:
            audio.add_tags()
        return audio

    def _save(self, audio: MP4, path: Path) -> None:
        try:
            audio.save()
        except MutagenError as e:
            raise EncodingError(f"Failed to write tags to '{path.name}': {e}") from e

    @staticmethod
    def _set_field(audio: MP4, name: str, value: Any) -> None:
        if name == "media_type":
            audio.tags["stik"] = [int(value)]
        elif name == "language":
            audio.tags[LANGUAGE_ATOM] = [MP4FreeForm(str(value).encode("utf-8"))]
        elif name == "description":
            audio.tags["desc"] = [str(value)[:SHORT_DESCRIPTION_LIMIT]]
            audio.tags["ldes"] = [str(value)]
        else:
            for atom in TEXT_ATOMS[name]:
                audio.tags[atom] = [str(value)]

    def apply_metadata(self, path: Path, metadata: AudiobookMetadata) -> None:
        audio = self._open(path)
        for name in TEXT_ATOMS:
            if value := getattr(metadata, name):
                self._set_field(audio, name, value)
        if metadata.language:
            self._set_field(audio, "language", metadata.language)
        self._set_field(audio, "media_type", metadata.media_type.stik)
        self._save(audio, path)
        log.debug(f"Tagged '{path.name}' as '{metadata.title}' by {metadata.author}")

    def set_audiobook_flag(self, path: Path) -> None:
        audio = self._open(path)
        self._set_field(audio, "media_type", MediaType.AUDIOBOOK.stik)
        self._save(audio, path)

    def embed_cover_art(self, path: Path, image: Path) -> None:
        with open(image, "rb") as f:
            data = f.read()
        image_format = detect_image_format(data)
        if image_format is None:
            raise EncodingError(f"Cover art '{image.name}' is neither JPEG nor PNG")

        audio = self._open(path)
        audio.tags["covr"] = [MP4Cover(data, imageformat=image_format)]
        self._save(audio, path)
        log.debug(f"Embedded cover art ({len(data)} bytes) into '{path.name}'")

    def read_tags(self, path: Path) -> Dict[str, Any]:
        audio = self._open(path)
        tags = audio.tags

        def first(atom: str) -> str:
            values = tags.get(atom)
            return str(values[0]) if values else ""

        language = tags.get(LANGUAGE_ATOM)
        stik = tags.get("stik")
        return {
            "title": first("\xa9nam"),
            "author": first("\xa9ART"),
            "album_artist": first("aART"),
            "year": first("\xa9day"),
            "genre": first("\xa9gen"),
            "description": first("ldes") or first("desc"),
            "language": bytes(language[0]).decode("utf-8") if language else "",
            "stik": int(stik[0]) if stik else None,
            "has_cover": bool(tags.get("covr")),
        }

    def restore_tags(self, path: Path, snapshot: Dict[str, Any]) -> list[str]:
        current = self.read_tags(path)
        audio = self._open(path)
        restored = []
        for name, value in snapshot.items():
            if name == "has_cover" or value in ("", None) or current.get(name):
                continue
            self._set_field(audio, "media_type" if name == "stik" else name, value)
            restored.append(name)
        if restored:
            self._save(audio, path)
            log.info(
                f"[yellow]Restored tags dropped while muxing chapters: "
                f"{', '.join(restored)}[/yellow]"
            )
        return restored

    def check_integrity(self, path: Path) -> bool:
        return FileIntegrityChecker.check_mp4(str(path))

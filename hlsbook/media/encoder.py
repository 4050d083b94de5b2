"""
The narrow encoder/muxer interface the pipeline sequences, and its FFmpeg
implementation.

The pipeline never touches codec data itself. Stages call these blocking
methods through ``asyncio.to_thread`` so they can be replaced by an
in-memory fake in tests.
"""

import json
import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from hlsbook.exceptions import EncodingError
from hlsbook.models.config import EncodingConfig
from hlsbook.models.job import Chapter

log = logging.getLogger(__name__)

# Used when a byte-level join has to be redone from scratch
FALLBACK_AUDIO_BITRATE = "192k"


class Encoder(ABC):
    """Operations the pipeline needs from an external encoder/muxer."""

    @abstractmethod
    def concatenate(
        self,
        inputs: list[Path],
        output: Path,
        reencode: bool = False,
        encoding: Optional[EncodingConfig] = None,
    ) -> Path:
        """Joins media units in the given order into `output`."""

    @abstractmethod
    def extract_audio(
        self, source: Path, output: Path, encoding: EncodingConfig
    ) -> tuple[Path, float]:
        """Writes an audio-only copy of `source` and returns it with its duration."""

    @abstractmethod
    def probe_duration(self, path: Path) -> float:
        """Measured duration of a media file, in seconds."""

    @abstractmethod
    def has_video(self, path: Path) -> bool:
        """Whether the file still carries a (non cover-art) video stream."""

    @abstractmethod
    def validate(self, path: Path) -> bool:
        """Whether the file is a readable container with an audio stream."""

    @abstractmethod
    def apply_chapters(self, source: Path, chapter_file: Path, output: Path) -> Path:
        """Writes `source` plus the chapter table to `output`, keeping its tags."""

    @abstractmethod
    def read_chapters(self, path: Path) -> list[Chapter]:
        """Reads back the chapter table of a container."""


class FFmpegEncoder(Encoder):
    """Encoder backed by the ffmpeg and ffprobe command-line tools."""

    def __init__(self, ffmpeg_path: str | None = None, ffprobe_path: str | None = None):
        self.ffmpeg = ffmpeg_path or shutil.which("ffmpeg") or "ffmpeg"
        self.ffprobe = ffprobe_path or shutil.which("ffprobe") or "ffprobe"

    def _run(self, cmd: list[str], what: str) -> subprocess.CompletedProcess:
        log.debug(f"Running: {' '.join(cmd)}")
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise EncodingError(f"{what}: executable not found ({cmd[0]})", cmd) from e
        if proc.returncode != 0:
            raise EncodingError(f"{what} failed", cmd, proc.stderr)
        return proc

    def _probe(self, path: Path, *entries: str) -> dict[str, Any]:
        cmd = [self.ffprobe, "-v", "error", "-of", "json", *entries, str(path)]
        proc = self._run(cmd, f"ffprobe of '{path.name}'")
        try:
            return json.loads(proc.stdout or "{}")
        except json.JSONDecodeError as e:
            raise EncodingError(f"ffprobe returned invalid JSON for '{path.name}'", cmd) from e

    def _streams(self, path: Path) -> list[dict[str, Any]]:
        return self._probe(path, "-show_streams").get("streams", [])

    @staticmethod
    def _audio_args(encoding: EncodingConfig) -> list[str]:
        args = ["-c:a", encoding.encoder_name]
        if encoding.codec != "alac":
            args += ["-b:a", encoding.bitrate]
        return args + ["-ac", str(encoding.channel_count), "-ar", str(encoding.sample_rate)]

    def concatenate(
        self,
        inputs: list[Path],
        output: Path,
        reencode: bool = False,
        encoding: Optional[EncodingConfig] = None,
    ) -> Path:
        if not inputs:
            raise EncodingError("Nothing to concatenate")
        output.parent.mkdir(parents=True, exist_ok=True)
        list_file = output.with_name(output.name + ".concat.txt")
        with open(list_file, "w", encoding="utf-8") as f:
            for path in inputs:
                escaped = str(path.resolve()).replace("'", "'\\''")
                f.write(f"file '{escaped}'\n")

        cmd = [
            self.ffmpeg, "-y", "-hide_banner", "-loglevel", "error",
            "-f", "concat", "-safe", "0", "-i", str(list_file),
        ]
        if reencode:
            cmd += ["-vn", "-map", "0:a:0", "-fflags", "+genpts"]
            if encoding is not None:
                cmd += self._audio_args(encoding)
            else:
                cmd += ["-c:a", "aac", "-b:a", FALLBACK_AUDIO_BITRATE]
        else:
            cmd += ["-map", "0", "-c", "copy"]
        if output.suffix.lower() == ".ts":
            cmd += ["-f", "mpegts"]
        cmd.append(str(output))

        try:
            self._run(cmd, f"Concatenation into '{output.name}'")
        finally:
            list_file.unlink(missing_ok=True)
        return output

    def extract_audio(
        self, source: Path, output: Path, encoding: EncodingConfig
    ) -> tuple[Path, float]:
        output.parent.mkdir(parents=True, exist_ok=True)
        streams = self._streams(source)
        audio = [s for s in streams if s.get("codec_type") == "audio"]
        if not audio:
            raise EncodingError(f"'{source.name}' has no audio stream")

        first = audio[0]
        passthrough = (
            not self.has_video(source)
            and first.get("codec_name") == ("alac" if encoding.codec == "alac" else "aac")
            and int(first.get("channels", 0)) == encoding.channel_count
            and int(first.get("sample_rate", 0)) == encoding.sample_rate
        )

        cmd = [
            self.ffmpeg, "-y", "-hide_banner", "-loglevel", "error",
            "-i", str(source), "-map", "0:a:0", "-vn", "-sn", "-dn",
            "-map_metadata", "-1", "-map_chapters", "-1",
        ]
        if passthrough:
            log.debug(f"'{source.name}' is already audio-only; copying the stream.")
            cmd += ["-c:a", "copy"]
        else:
            cmd += self._audio_args(encoding)
        cmd.append(str(output))

        self._run(cmd, f"Audio extraction from '{source.name}'")
        return output, self.probe_duration(output)

    def probe_duration(self, path: Path) -> float:
        data = self._probe(path, "-show_entries", "format=duration")
        try:
            return float(data["format"]["duration"])
        except (KeyError, TypeError, ValueError) as e:
            raise EncodingError(f"Could not measure the duration of '{path.name}'") from e

    def has_video(self, path: Path) -> bool:
        for stream in self._streams(path):
            if stream.get("codec_type") != "video":
                continue
            if stream.get("disposition", {}).get("attached_pic"):
                continue
            return True
        return False

    def validate(self, path: Path) -> bool:
        if not path.is_file() or path.stat().st_size == 0:
            return False
        cmd = [
            self.ffprobe, "-v", "error", "-of", "json",
            "-show_entries", "format=duration:stream=codec_type", str(path),
        ]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise EncodingError("ffprobe executable not found", cmd) from e
        if proc.returncode != 0 or proc.stderr.strip():
            log.debug(f"Validation of '{path.name}' failed: {proc.stderr.strip()}")
            return False
        try:
            data = json.loads(proc.stdout or "{}")
            duration = float(data.get("format", {}).get("duration", 0))
        except (json.JSONDecodeError, TypeError, ValueError):
            return False
        has_audio = any(
            s.get("codec_type") == "audio" for s in data.get("streams", [])
        )
        return has_audio and duration > 0

    def apply_chapters(self, source: Path, chapter_file: Path, output: Path) -> Path:
        output.parent.mkdir(parents=True, exist_ok=True)
        cmd = [
            self.ffmpeg, "-y", "-hide_banner", "-loglevel", "error",
            "-i", str(source), "-f", "ffmetadata", "-i", str(chapter_file),
            "-map", "0:a", "-map_metadata", "0", "-map_chapters", "1",
            "-c", "copy",
        ]
        if output.suffix.lower() in (".m4b", ".m4a"):
            cmd += ["-f", "ipod"]
        cmd.append(str(output))
        self._run(cmd, f"Chapter muxing into '{output.name}'")
        return output

    def read_chapters(self, path: Path) -> list[Chapter]:
        data = self._probe(path, "-show_chapters")
        chapters = []
        for entry in data.get("chapters", []):
            chapters.append(
                Chapter(
                    start_ms=round(float(entry["start_time"]) * 1000),
                    end_ms=round(float(entry["end_time"]) * 1000),
                    title=entry.get("tags", {}).get("title", ""),
                )
            )
        return chapters

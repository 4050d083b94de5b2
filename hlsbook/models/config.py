"""
Pydantic models for job configuration.
Provides robust validation for all settings.
"""

import re
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

# Codec name -> container metadata, for the formats an .m4b can carry
CODEC_MAP = {
    "aac": {"name": "AAC-LC", "encoder": "aac", "lossless": False},
    "libfdk_aac": {"name": "AAC-LC (Fraunhofer)", "encoder": "libfdk_aac", "lossless": False},
    "alac": {"name": "Apple Lossless", "encoder": "alac", "lossless": True},
}

CHANNEL_MAP = {"mono": 1, "stereo": 2}

REQUIRED_METADATA_FIELDS = ("title", "author")

# Samples per encoded frame; used to bound duration drift checks
SAMPLES_PER_FRAME = {"aac": 1024, "libfdk_aac": 1024, "alac": 4096}


class MediaType(str, Enum):
    """Values of the MP4 'stik' atom used by players to classify a file."""

    MUSIC = "music"
    AUDIOBOOK = "audiobook"
    MOVIE = "movie"

    @property
    def stik(self) -> int:
        return {"music": 1, "audiobook": 2, "movie": 9}[self.value]

    @classmethod
    def from_stik(cls, value: int) -> Optional["MediaType"]:
        for member in cls:
            if member.stik == value:
                return member
        return None


class AudiobookMetadata(BaseModel):
    """Container-level tags written onto the final audiobook."""

    title: str = ""
    author: str = ""
    album_artist: str = ""
    year: str = ""
    genre: str = "Audiobook"
    description: str = ""
    language: str = ""
    media_type: MediaType = MediaType.AUDIOBOOK

    class Config:
        """Pydantic model configuration."""

        validate_assignment = True
        str_strip_whitespace = True

    @field_validator("year")
    @classmethod
    def validate_year(cls, v: str) -> str:
        if v and not re.fullmatch(r"\d{4}(-\d{2}(-\d{2})?)?", v):
            raise ValueError("Year must look like YYYY or YYYY-MM-DD.")
        return v

    @field_validator("language")
    @classmethod
    def validate_language(cls, v: str) -> str:
        if v and not re.fullmatch(r"[A-Za-z]{2,3}(-[A-Za-z0-9]{2,8})?", v):
            raise ValueError("Language must be an ISO 639 code such as 'en' or 'eng'.")
        return v

    def missing_required(self) -> list[str]:
        """Returns the names of required fields that are still empty."""
        return [name for name in REQUIRED_METADATA_FIELDS if not getattr(self, name)]


class EncodingConfig(BaseModel):
    """Audio settings for the extracted tracks and the final container."""

    codec: str = "aac"
    bitrate: str = "64k"
    channels: str = "mono"
    sample_rate: int = 44100

    class Config:
        validate_assignment = True
        str_strip_whitespace = True

    @field_validator("codec")
    @classmethod
    def validate_codec(cls, v: str) -> str:
        v = v.lower()
        if v not in CODEC_MAP:
            raise ValueError(
                f"Codec must be one of {', '.join(CODEC_MAP)} for an M4B container."
            )
        return v

    @field_validator("bitrate")
    @classmethod
    def validate_bitrate(cls, v: str) -> str:
        v = v.lower()
        if v.isdigit():
            v = f"{v}k"
        if not re.fullmatch(r"\d{2,3}k", v):
            raise ValueError("Bitrate must look like '64k' (between 16k and 320k).")
        if not 16 <= int(v[:-1]) <= 320:
            raise ValueError("Bitrate must be between 16k and 320k.")
        return v

    @field_validator("channels")
    @classmethod
    def validate_channels(cls, v: str) -> str:
        v = v.lower()
        if v not in CHANNEL_MAP:
            raise ValueError("Channels must be 'mono' or 'stereo'.")
        return v

    @field_validator("sample_rate")
    @classmethod
    def validate_sample_rate(cls, v: int) -> int:
        if v not in (22050, 24000, 32000, 44100, 48000):
            raise ValueError("Sample rate must be one of 22050, 24000, 32000, 44100, 48000.")
        return v

    @property
    def channel_count(self) -> int:
        return CHANNEL_MAP[self.channels]

    @property
    def encoder_name(self) -> str:
        return CODEC_MAP[self.codec]["encoder"]

    @property
    def frame_tolerance_ms(self) -> int:
        """Length of one encoded frame in milliseconds, rounded up."""
        samples = SAMPLES_PER_FRAME.get(self.codec, 1024)
        return -(-samples * 1000 // self.sample_rate)

    @property
    def signature(self) -> str:
        """Compact form of the settings that shape an extracted track."""
        return f"{self.codec}/{self.bitrate}/{self.channels}/{self.sample_rate}"


class FetchConfig(BaseModel):
    """Network and parallelism settings."""

    max_workers: int = 8
    item_workers: int = 2
    request_delay: float = 0.25
    retry_budget: int = 4
    backoff_base: float = 1.0
    min_bandwidth: int = 0
    min_height: Optional[int] = None

    class Config:
        validate_assignment = True

    @field_validator("max_workers")
    @classmethod
    def validate_workers(cls, v: int) -> int:
        """Ensures a reasonable number of workers."""
        if v < 1 or v > 32:
            raise ValueError("Max workers must be between 1 and 32.")
        return v

    @field_validator("item_workers")
    @classmethod
    def validate_item_workers(cls, v: int) -> int:
        if v < 1 or v > 8:
            raise ValueError("Item workers must be between 1 and 8.")
        return v

    @field_validator("retry_budget")
    @classmethod
    def validate_retry_budget(cls, v: int) -> int:
        if v < 1 or v > 10:
            raise ValueError("Retry budget must be between 1 and 10 attempts.")
        return v

    @field_validator("request_delay", "backoff_base")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Delays cannot be negative.")
        return v

    @field_validator("min_bandwidth")
    @classmethod
    def validate_min_bandwidth(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Minimum bandwidth cannot be negative.")
        return v


class JobConfig(BaseModel):
    """A validated job description, loaded from an INI job file."""

    metadata: AudiobookMetadata = Field(default_factory=AudiobookMetadata)
    encoding: EncodingConfig = Field(default_factory=EncodingConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)

    # Ordered: declaration order is playback and chapter order
    sources: dict[str, str]
    chapter_title_overrides: dict[str, str] = Field(default_factory=dict)
    cover_art_path: Optional[Path] = None
    output: Path
    work_dir: Path

    class Config:
        validate_assignment = True

    @field_validator("sources")
    @classmethod
    def validate_sources(cls, v: dict[str, str]) -> dict[str, str]:
        if not v:
            raise ValueError("At least one source playlist is required.")
        for key, uri in v.items():
            if not key.strip():
                raise ValueError("Source keys cannot be empty.")
            if not uri.strip():
                raise ValueError(f"Source '{key}' has no playlist URI.")
        return v

    @field_validator("output")
    @classmethod
    def validate_output(cls, v: Path) -> Path:
        if v.suffix.lower() not in (".m4b", ".m4a", ".mp4"):
            raise ValueError("Output must be an .m4b (or .m4a/.mp4) file.")
        return v

    @model_validator(mode="after")
    def validate_overrides(self) -> "JobConfig":
        """Checks that chapter overrides refer to declared sources."""
        unknown = [k for k in self.chapter_title_overrides if k not in self.sources]
        if unknown:
            raise ValueError(
                f"Chapter overrides reference unknown sources: {', '.join(unknown)}"
            )
        return self

    def to_job(self):
        """Builds the AssemblyJob aggregate, preserving source declaration order."""
        from hlsbook.models.job import AssemblyJob, SourceItem

        items = [
            SourceItem(
                key=key,
                playlist_uri=uri,
                title_override=self.chapter_title_overrides.get(key),
            )
            for key, uri in self.sources.items()
        ]
        return AssemblyJob(
            items=items,
            output_path=self.output,
            work_dir=self.work_dir,
            metadata=self.metadata.model_copy(),
            encoding=self.encoding.model_copy(),
            cover_art_path=self.cover_art_path,
        )

"""
Dataclasses for the assembly job aggregate and the entities it owns.

An ``AssemblyJob`` is created once per run from the job file and passed by
reference through every pipeline stage. Stages only ever mutate the
per-item state of its ``SourceItem`` entries.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import urlparse

from hlsbook.models.config import AudiobookMetadata, EncodingConfig
from hlsbook.utils.formatting import derive_chapter_title
from hlsbook.utils.path import safe_component


@dataclass(frozen=True)
class Rendition:
    """One quality variant listed by a master playlist."""

    identifier: str
    bandwidth: int
    uri: str
    resolution: Optional[tuple[int, int]] = None
    codecs: Optional[str] = None

    @property
    def height(self) -> Optional[int]:
        return self.resolution[1] if self.resolution else None


class SegmentState(Enum):
    """Fetch lifecycle of a single segment."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    RETRYING = "retrying"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class Segment:
    """
    A sequence-numbered media chunk.

    ``index`` is the zero-based position within the rendition and drives file
    naming and concatenation order; ``sequence`` preserves the number declared
    by the playlist (media sequence + position).
    """

    index: int
    sequence: int
    uri: str
    duration: float
    byte_length: Optional[int] = None
    byte_offset: Optional[int] = None

    @property
    def range_header(self) -> Optional[str]:
        """HTTP Range value for sub-range segments listed with #EXT-X-BYTERANGE."""
        if self.byte_length is None or self.byte_offset is None:
            return None
        return f"bytes={self.byte_offset}-{self.byte_offset + self.byte_length - 1}"

    @property
    def filename(self) -> str:
        suffix = PurePosixPath(urlparse(self.uri).path).suffix.lower()
        if not suffix or len(suffix) > 5:
            suffix = ".ts"
        return f"{self.index:05d}{suffix}"


@dataclass
class Playlist:
    """A parsed playlist document: either a master or a media playlist."""

    uri: str
    is_master: bool
    renditions: list[Rendition] = field(default_factory=list)
    segments: list[Segment] = field(default_factory=list)
    media_sequence: int = 0
    target_duration: Optional[float] = None
    ended: bool = False

    @property
    def total_duration(self) -> float:
        """Sum of segment duration hints; informational only."""
        return sum(s.duration for s in self.segments)


class ItemStatus(Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    FETCHED = "fetched"
    ASSEMBLED = "assembled"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SourceItem:
    """One logical content unit (a lecture) tracked from playlist to audio."""

    key: str
    playlist_uri: str
    title_override: Optional[str] = None

    segments: list[Segment] = field(default_factory=list, repr=False)
    segment_states: dict[int, SegmentState] = field(default_factory=dict, repr=False)
    assembled_path: Optional[Path] = None
    audio_path: Optional[Path] = None
    duration: Optional[float] = None
    status: ItemStatus = ItemStatus.PENDING
    error: Optional[BaseException] = field(default=None, repr=False)

    @property
    def title(self) -> str:
        return self.title_override or derive_chapter_title(self.key)

    @property
    def is_complete(self) -> bool:
        return self.status is ItemStatus.COMPLETE


@dataclass(frozen=True)
class Chapter:
    """A labeled, half-open time range [start_ms, end_ms) in the final container."""

    start_ms: int
    end_ms: int
    title: str

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms


@dataclass
class JobReport:
    """Terminal outcome of a job, as shown to the user."""

    statuses: dict[str, ItemStatus]
    first_error: Optional[BaseException] = None
    unprocessed: int = 0
    output_path: Optional[Path] = None
    chapters: list[Chapter] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.output_path is not None and self.first_error is None


@dataclass
class AssemblyJob:
    """Root aggregate for one run."""

    items: list[SourceItem]
    output_path: Path
    work_dir: Path
    metadata: AudiobookMetadata
    encoding: EncodingConfig = field(default_factory=EncodingConfig)
    cover_art_path: Optional[Path] = None

    first_error: Optional[BaseException] = field(default=None, repr=False)
    chapters: list[Chapter] = field(default_factory=list, repr=False)
    finalized: bool = False

    def __post_init__(self):
        keys = [item.key for item in self.items]
        if len(set(keys)) != len(keys):
            raise ValueError("Source item keys must be unique within a job.")

    def item_dir(self, item: SourceItem) -> Path:
        return self.work_dir / "items" / safe_component(item.key)

    def segment_dir(self, item: SourceItem) -> Path:
        return self.item_dir(item) / "segments"

    @property
    def mux_dir(self) -> Path:
        return self.work_dir / "mux"

    @property
    def ledger_path(self) -> Path:
        return self.work_dir / "ledger.sqlite"

    def record_failure(self, item: SourceItem, error: BaseException) -> None:
        """Marks an item failed and keeps the first fatal error seen by the job."""
        item.status = ItemStatus.FAILED
        item.error = error
        if self.first_error is None:
            self.first_error = error

    def report(self) -> JobReport:
        statuses = {item.key: item.status for item in self.items}
        unprocessed = sum(
            1
            for item in self.items
            if item.status not in (ItemStatus.COMPLETE, ItemStatus.FAILED)
        )
        return JobReport(
            statuses=statuses,
            first_error=self.first_error,
            unprocessed=unprocessed,
            output_path=self.output_path if self.finalized else None,
            chapters=list(self.chapters),
        )

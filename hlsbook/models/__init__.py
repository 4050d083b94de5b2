"""
Data Models Layer.

This package contains the job aggregate (dataclasses), the Pydantic models
that validate job configuration, and fetch statistics.
"""

from .config import AudiobookMetadata, EncodingConfig, FetchConfig, JobConfig, MediaType
from .job import (
    AssemblyJob,
    Chapter,
    ItemStatus,
    JobReport,
    Playlist,
    Rendition,
    Segment,
    SegmentState,
    SourceItem,
)
from .stats import FetchStats

__all__ = [
    "AssemblyJob",
    "AudiobookMetadata",
    "Chapter",
    "EncodingConfig",
    "FetchConfig",
    "FetchStats",
    "ItemStatus",
    "JobConfig",
    "JobReport",
    "MediaType",
    "Playlist",
    "Rendition",
    "Segment",
    "SegmentState",
    "SourceItem",
]

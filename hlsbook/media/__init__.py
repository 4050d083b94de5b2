"""
Media Processing Layer.

This package is responsible for all media operations, including playlist
resolution, segment fetching, stream assembly, audio extraction, chapter
planning, tagging and the final container mux.
"""

from .assembler import StreamAssembler
from .chapters import ChapterPlanner
from .encoder import Encoder, FFmpegEncoder
from .extractor import AudioExtractor
from .fetcher import SegmentFetcher
from .integrity import FileIntegrityChecker
from .muxer import ContainerMuxer
from .playlist import PlaylistResolver
from .tagger import Mp4Tagger, Tagger

__all__ = [
    "AudioExtractor",
    "ChapterPlanner",
    "ContainerMuxer",
    "Encoder",
    "FFmpegEncoder",
    "FileIntegrityChecker",
    "Mp4Tagger",
    "PlaylistResolver",
    "SegmentFetcher",
    "StreamAssembler",
    "Tagger",
]

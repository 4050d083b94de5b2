"""
Derives the audio-only track of an assembled media unit.
"""

import asyncio
import logging
from pathlib import Path

from hlsbook.exceptions import EncodingError
from hlsbook.media.encoder import Encoder
from hlsbook.models.config import EncodingConfig
from hlsbook.models.job import SourceItem

log = logging.getLogger(__name__)


class AudioExtractor:
    """Delegates extraction to the encoder and checks its postconditions."""

    def __init__(self, encoder: Encoder):
        self.encoder = encoder

    async def extract(
        self,
        item: SourceItem,
        source: Path,
        output: Path,
        encoding: EncodingConfig,
    ) -> float:
        """
        Extracts audio and returns its measured duration in seconds.

        The duration always comes from probing the written file, never from
        the playlist's segment hints.
        """
        audio_path, _ = await asyncio.to_thread(
            self.encoder.extract_audio, source, output, encoding
        )
        if await asyncio.to_thread(self.encoder.has_video, audio_path):
            raise EncodingError(f"Extracted audio for '{item.key}' still has a video stream")

        duration = await asyncio.to_thread(self.encoder.probe_duration, audio_path)
        if duration <= 0:
            raise EncodingError(
                f"Extracted audio for '{item.key}' has no measurable duration"
            )

        hinted = sum(s.duration for s in item.segments)
        if hinted and abs(hinted - duration) > max(1.0, hinted * 0.02):
            log.debug(
                f"Measured duration of '{item.key}' ({duration:.2f}s) differs from "
                f"playlist hints ({hinted:.2f}s)"
            )

        item.audio_path = audio_path
        item.duration = duration
        return duration

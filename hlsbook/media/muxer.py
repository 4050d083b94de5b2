"""
Produces the final chaptered, tagged audiobook container from the extracted
audio units of a job.
"""

import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import Optional, Sequence

from hlsbook.exceptions import (
    ChapterIntegrityError,
    EncodingError,
    FileIntegrityError,
    MetadataValidationError,
)
from hlsbook.media.chapters import verify_chapters, write_chapter_file
from hlsbook.media.encoder import Encoder
from hlsbook.media.tagger import Tagger
from hlsbook.models.config import REQUIRED_METADATA_FIELDS, MediaType
from hlsbook.models.job import AssemblyJob, Chapter
from hlsbook.utils.cancellation import CancellationToken
from hlsbook.utils.path import create_dir

log = logging.getLogger(__name__)

CONCAT_NAME = "01_concat.m4a"
TAGGED_NAME = "02_tagged.m4a"
CHAPTERED_NAME = "03_chaptered.m4b"
CHAPTER_FILE_NAME = "chapters.ffmetadata"


class ContainerMuxer:
    """
    Runs the four muxing steps in order: concatenate, tag, chapter, finalize.

    Each step writes a new file under the job's mux directory. Intermediates
    are left in place, so a failure at any step keeps the earlier results
    for inspection and the output path is only ever written by an atomic
    rename of a verified file.
    """

    def __init__(
        self,
        encoder: Encoder,
        tagger: Tagger,
        cancel: Optional[CancellationToken] = None,
    ):
        self.encoder = encoder
        self.tagger = tagger
        self.cancel = cancel

    def _checkpoint(self, step: str) -> None:
        if self.cancel:
            self.cancel.raise_if_cancelled(f"muxing before {step}")

    async def _concatenate(
        self, audio_units: list[Path], concat_path: Path, job: AssemblyJob
    ) -> None:
        """Joins audio units by stream copy, re-encoding once if that fails."""
        try:
            await asyncio.to_thread(
                self.encoder.concatenate, audio_units, concat_path, False, job.encoding
            )
            valid = await asyncio.to_thread(self.encoder.validate, concat_path)
            failure = None
        except EncodingError as e:
            valid, failure = False, e

        if valid:
            return
        log.warning(
            f"[yellow]Stream-copy concatenation failed"
            f"{f' ({failure})' if failure else ''}; re-encoding instead.[/yellow]"
        )
        await asyncio.to_thread(
            self.encoder.concatenate, audio_units, concat_path, True, job.encoding
        )
        if not await asyncio.to_thread(self.encoder.validate, concat_path):
            raise EncodingError("Re-encoded audiobook stream is still invalid")

    async def mux(self, job: AssemblyJob, chapters: Sequence[Chapter]) -> Path:
        """
        Builds `job.output_path` from the extracted audio of every item.

        Raises:
            MetadataValidationError: Before anything is written, if required
                metadata is missing.
            ChapterIntegrityError: If the written chapters or duration do not
                match the planned table.
            EncodingError: If the encoder or tagger fails at any step.
            JobCancelledError: If cancellation is observed between steps.
        """
        missing = job.metadata.missing_required()
        if missing:
            raise MetadataValidationError(missing)

        audio_units = []
        for item in job.items:
            if item.audio_path is None:
                raise EncodingError(f"Item '{item.key}' has no extracted audio to mux")
            audio_units.append(item.audio_path)
        verify_chapters(chapters, expected_count=len(audio_units))

        mux_dir = job.mux_dir
        create_dir(mux_dir)

        self._checkpoint("concatenation")
        concat_path = mux_dir / CONCAT_NAME
        log.info(f"Concatenating {len(audio_units)} audio units...")
        await self._concatenate(audio_units, concat_path, job)

        self._checkpoint("tagging")
        tagged_path = mux_dir / TAGGED_NAME
        await asyncio.to_thread(shutil.copyfile, concat_path, tagged_path)
        await asyncio.to_thread(self.tagger.apply_metadata, tagged_path, job.metadata)
        await asyncio.to_thread(self.tagger.set_audiobook_flag, tagged_path)
        snapshot = await asyncio.to_thread(self.tagger.read_tags, tagged_path)

        self._checkpoint("chapter muxing")
        chapter_file = write_chapter_file(chapters, mux_dir / CHAPTER_FILE_NAME)
        chaptered_path = mux_dir / CHAPTERED_NAME
        log.info(f"Writing {len(chapters)} chapters...")
        await asyncio.to_thread(
            self.encoder.apply_chapters, tagged_path, chapter_file, chaptered_path
        )
        await asyncio.to_thread(self.tagger.restore_tags, chaptered_path, snapshot)

        self._checkpoint("finalization")
        output = job.output_path
        create_dir(output.parent)
        temp_path = output.with_name(f".{output.stem}.partial{output.suffix}")
        await asyncio.to_thread(shutil.copyfile, chaptered_path, temp_path)
        try:
            if job.cover_art_path:
                await asyncio.to_thread(
                    self.tagger.embed_cover_art, temp_path, job.cover_art_path
                )
            await self._verify(temp_path, job, chapters)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise
        await asyncio.to_thread(os.replace, temp_path, output)

        job.chapters = list(chapters)
        job.finalized = True
        log.info(f"[green]Audiobook written to '{output}'[/green]")
        return output

    async def _verify(
        self, path: Path, job: AssemblyJob, chapters: Sequence[Chapter]
    ) -> None:
        """Checks tags, media type, chapter count and duration of the final file."""
        tags = await asyncio.to_thread(self.tagger.read_tags, path)
        for name in REQUIRED_METADATA_FIELDS:
            expected = getattr(job.metadata, name)
            if tags.get(name) != expected:
                raise EncodingError(
                    f"Tag '{name}' is {tags.get(name)!r} after muxing, expected {expected!r}"
                )
        if tags.get("stik") != MediaType.AUDIOBOOK.stik:
            raise EncodingError(
                f"Media type flag is {tags.get('stik')!r}, expected audiobook "
                f"({MediaType.AUDIOBOOK.stik})"
            )

        written = await asyncio.to_thread(self.encoder.read_chapters, path)
        if len(written) != len(job.items):
            raise ChapterIntegrityError(
                f"container has {len(written)} chapters for {len(job.items)} items"
            )

        duration = await asyncio.to_thread(self.encoder.probe_duration, path)
        verify_chapters(
            chapters,
            total_ms=round(duration * 1000),
            tolerance_ms=job.encoding.frame_tolerance_ms,
        )

        if not await asyncio.to_thread(self.tagger.check_integrity, path):
            raise FileIntegrityError(f"'{path.name}' failed the container integrity check")

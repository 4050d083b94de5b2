"""
Handles the processing of a single source item, from playlist to audio.
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

from rich.markup import escape

from hlsbook.media.assembler import StreamAssembler
from hlsbook.media.extractor import AudioExtractor
from hlsbook.media.fetcher import SegmentFetcher
from hlsbook.media.playlist import PlaylistResolver, load_playlist
from hlsbook.models.job import AssemblyJob, ItemStatus, SourceItem
from hlsbook.storage.segment_ledger import SegmentLedger
from hlsbook.utils.cancellation import CancellationToken
from hlsbook.utils.formatting import format_duration
from hlsbook.utils.path import create_dir

log = logging.getLogger(__name__)

AUDIO_FILENAME = "audio.m4a"


class SourceItemProcessor:
    """
    Orchestrates resolve, fetch, assemble and extract for one source item.

    Each stage advances ``item.status``; the caller is responsible for turning
    a raised error into a failed status on the job.
    """

    def __init__(
        self,
        job: AssemblyJob,
        resolver: PlaylistResolver,
        fetcher: SegmentFetcher,
        assembler: StreamAssembler,
        extractor: AudioExtractor,
        ledger: Optional[SegmentLedger] = None,
        loader: Optional[Callable[[str], Awaitable[str]]] = None,
    ):
        self.job = job
        self.resolver = resolver
        self.fetcher = fetcher
        self.assembler = assembler
        self.extractor = extractor
        self.ledger = ledger
        self.loader = loader or load_playlist

    async def _try_resume(self, item: SourceItem) -> bool:
        """
        Reuses a previous run's extracted audio if it came from the same
        playlist, was encoded with the current settings and still validates.
        """
        if not self.ledger:
            return False
        recorded = await self.ledger.get_extraction(item.key)
        if recorded is None:
            return False
        if recorded.source_uri != item.playlist_uri:
            log.info(
                f"[yellow]Playlist of '{escape(item.key)}' changed since the last "
                f"run; starting it over.[/yellow]"
            )
            await self.ledger.forget_item(item.key)
            return False
        if recorded.settings != self.job.encoding.signature:
            # Fetched segments are still good; only the extraction is redone
            log.info(
                f"[yellow]Encoding settings changed ({recorded.settings or 'unknown'} -> "
                f"{self.job.encoding.signature}); re-extracting '{escape(item.key)}'.[/yellow]"
            )
            return False

        audio_path, duration = recorded.audio_path, recorded.duration
        if not audio_path.is_file() or duration <= 0:
            return False
        if not await asyncio.to_thread(self.extractor.encoder.validate, audio_path):
            log.info(
                f"[yellow]Previous audio for '{escape(item.key)}' is invalid; "
                f"rebuilding it.[/yellow]"
            )
            await self.ledger.forget_item(item.key)
            return False

        item.audio_path = audio_path
        item.duration = duration
        item.status = ItemStatus.COMPLETE
        log.info(
            f"  [yellow]○ Resumed:[/] [dim]{escape(item.key)}[/dim] "
            f"({format_duration(duration)}, already extracted)"
        )
        return True

    async def process(
        self, item: SourceItem, cancel: Optional[CancellationToken] = None
    ) -> SourceItem:
        """
        Manages the complete lifecycle of turning a playlist into audio.

        Raises whatever the failing stage raised; nothing is retried here.
        """
        if await self._try_resume(item):
            return item

        item_dir = self.job.item_dir(item)
        create_dir(item_dir)

        if cancel:
            cancel.raise_if_cancelled(f"resolving '{item.key}'")
        item.segments = await self.resolver.resolve(item.playlist_uri, self.loader)
        item.status = ItemStatus.RESOLVED
        log.debug(f"Resolved '{item.key}' to {len(item.segments)} segments")

        if cancel:
            cancel.raise_if_cancelled(f"fetching '{item.key}'")
        segment_dir = self.job.segment_dir(item)
        item.segment_states = await self.fetcher.fetch_all(
            item.key, item.segments, segment_dir, cancel
        )
        item.status = ItemStatus.FETCHED

        if cancel:
            cancel.raise_if_cancelled(f"assembling '{item.key}'")
        suffix = Path(item.segments[0].filename).suffix
        assembled = await self.assembler.assemble(
            item, segment_dir, item_dir / f"assembled{suffix}"
        )
        item.status = ItemStatus.ASSEMBLED

        if cancel:
            cancel.raise_if_cancelled(f"extracting audio of '{item.key}'")
        duration = await self.extractor.extract(
            item, assembled, item_dir / AUDIO_FILENAME, self.job.encoding
        )
        if self.ledger:
            await self.ledger.record_extraction(
                item.key,
                item.audio_path,
                duration,
                item.playlist_uri,
                self.job.encoding.signature,
            )

        item.status = ItemStatus.COMPLETE
        log.info(
            f"  [green]✓ Ready:[/] {escape(item.title)} [dim]({format_duration(duration)})[/dim]"
        )
        return item

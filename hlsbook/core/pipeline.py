"""
The job-level orchestrator: processes every source item, waits for all of
them, then plans chapters and muxes the final container.
"""

import asyncio
import logging
import sqlite3
import time
from typing import Optional

from rich.markup import escape

from hlsbook.exceptions import HlsBookError, JobCancelledError, MetadataValidationError
from hlsbook.media.chapters import ChapterPlanner
from hlsbook.media.muxer import ContainerMuxer
from hlsbook.models.job import AssemblyJob, ItemStatus, JobReport, SourceItem
from hlsbook.utils.cancellation import CancellationToken

from .item_processor import SourceItemProcessor

log = logging.getLogger(__name__)


class AssemblyPipeline:
    """Orchestrates the entire assembly of one job."""

    def __init__(
        self,
        job: AssemblyJob,
        processor: SourceItemProcessor,
        planner: ChapterPlanner,
        muxer: ContainerMuxer,
        item_workers: int = 2,
        cancel: Optional[CancellationToken] = None,
        progress=None,
    ):
        self.job = job
        self.processor = processor
        self.planner = planner
        self.muxer = muxer
        self.cancel = cancel or CancellationToken()
        self.progress = progress
        self.semaphore = asyncio.Semaphore(item_workers)
        self.start_time = time.monotonic()

    async def _process_item(self, item: SourceItem) -> None:
        """Runs one item and records its outcome without raising."""
        async with self.semaphore:
            if self.cancel.cancelled:
                item.status = ItemStatus.CANCELLED
                return
            try:
                await self.processor.process(item, self.cancel)
            except JobCancelledError as e:
                item.status = ItemStatus.CANCELLED
                log.debug(f"Item '{item.key}' stopped: {e}")
            except HlsBookError as e:
                self.job.record_failure(item, e)
                log.error(
                    f"  [red]✗ Failed:[/] {escape(item.key)} ({escape(str(e))})",
                    exc_info=log.getEffectiveLevel() == logging.DEBUG,
                )
            except OSError as e:
                self.job.record_failure(item, e)
                log.error(
                    f"  [red]✗ Failed:[/] {escape(item.key)} (I/O error: {escape(str(e))})",
                    exc_info=log.getEffectiveLevel() == logging.DEBUG,
                )
            except sqlite3.Error as e:
                self.job.record_failure(item, e)
                log.error(
                    f"  [red]✗ Failed:[/] {escape(item.key)} (ledger error: {escape(str(e))})",
                    exc_info=log.getEffectiveLevel() == logging.DEBUG,
                )
            finally:
                if self.progress:
                    self.progress.advance_overall(item.is_complete)

    async def run(self) -> JobReport:
        """
        Processes all items, then finalizes the container if every item
        completed.

        Item failures never stop the other items; the first fatal error is
        kept on the job and surfaces in the returned report.
        """
        missing = self.job.metadata.missing_required()
        if missing:
            self.job.first_error = MetadataValidationError(missing)
            log.error(f"[red]{self.job.first_error}[/red]")
            return self.job.report()

        if self.progress:
            self.progress.initialize_job(total_items=len(self.job.items))

        await asyncio.gather(*(self._process_item(item) for item in self.job.items))

        complete = sum(1 for item in self.job.items if item.is_complete)
        log.info(
            f"{complete}/{len(self.job.items)} items ready after "
            f"{time.monotonic() - self.start_time:.1f}s"
        )
        if self.job.first_error is not None:
            log.error("[red]Not writing the audiobook because an item failed.[/red]")
            return self.job.report()
        if self.cancel.cancelled or complete != len(self.job.items):
            if self.job.first_error is None:
                self.job.first_error = JobCancelledError(
                    self.cancel.reason or "job stopped before all items completed"
                )
            return self.job.report()

        try:
            chapters = self.planner.plan(self.job.items)
            if self.progress:
                self.progress.set_phase("Muxing audiobook")
            await self.muxer.mux(self.job, chapters)
        except HlsBookError as e:
            self.job.first_error = e
            log.error(
                f"[red]Finalizing failed:[/red] {escape(str(e))}",
                exc_info=log.getEffectiveLevel() == logging.DEBUG,
            )
        return self.job.report()

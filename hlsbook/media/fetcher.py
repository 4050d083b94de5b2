"""
Fetches the segments of one source item concurrently, with per-worker pacing,
exponential-backoff retries and resumable on-disk state.
"""

import asyncio
import logging
import os
from collections import Counter
from pathlib import Path
from typing import Optional

import aiofiles
import aiohttp

from hlsbook.exceptions import (
    JobCancelledError,
    SegmentFetchError,
    SourceItemBlockedError,
)
from hlsbook.models.job import Segment, SegmentState
from hlsbook.models.stats import FetchStats
from hlsbook.net.rate_limiter import RequestPacer
from hlsbook.net.session import get_connection_pool
from hlsbook.storage.segment_ledger import SegmentLedger
from hlsbook.utils.cancellation import CancellationToken
from hlsbook.utils.path import create_dir, is_remote, local_path

log = logging.getLogger(__name__)

# 408 and 429 are the only client errors worth retrying
RETRYABLE_CLIENT_STATUSES = {408, 429}
THROTTLE_STATUSES = {429, 503}


class SegmentFetcher:
    """
    Downloads segment lists with bounded parallelism.

    Each call to `fetch_all` drives every segment through
    pending -> in-flight -> complete, or through retrying back to in-flight
    until the retry budget is exhausted and the segment is marked failed.
    """

    CHUNK_SIZE = 262144  # 256 KB

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        max_workers: int = 8,
        request_delay: float = 0.25,
        retry_budget: int = 4,
        backoff_base: float = 1.0,
        ledger: SegmentLedger | None = None,
        stats: FetchStats | None = None,
        progress_manager=None,
    ):
        self._session = session
        self.max_workers = max_workers
        self.request_delay = request_delay
        self.retry_budget = retry_budget
        self.backoff_base = backoff_base
        self.ledger = ledger
        self.stats = stats or FetchStats()
        self.progress_manager = progress_manager
        self._runs: dict[str, dict[int, SegmentState]] = {}

    def counts(self, item_key: str | None = None) -> dict[str, int]:
        """Number of segments per state, for one item or across all items."""
        runs = [self._runs.get(item_key, {})] if item_key else self._runs.values()
        counter: Counter = Counter()
        for states in runs:
            counter.update(state.value for state in states.values())
        return {state.value: counter.get(state.value, 0) for state in SegmentState}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = await get_connection_pool(self.max_workers)
        return self._session

    async def fetch_all(
        self,
        item_key: str,
        segments: list[Segment],
        destination: Path,
        cancel: CancellationToken | None = None,
    ) -> dict[int, SegmentState]:
        """
        Fetches every segment of an item into `destination`.

        Returns:
            The final state of each segment, keyed by index.

        Raises:
            SourceItemBlockedError: If any segment failed terminally.
            JobCancelledError: If cancellation stopped scheduling before all
                segments were handled.
        """
        create_dir(destination)
        states = {segment.index: SegmentState.PENDING for segment in segments}
        self._runs[item_key] = states
        recorded = await self.ledger.recorded_lengths(item_key) if self.ledger else {}

        queue: asyncio.Queue[Segment] = asyncio.Queue()
        for segment in segments:
            queue.put_nowait(segment)

        failures: dict[int, SegmentFetchError] = {}
        task_id = None
        if self.progress_manager:
            task_id = self.progress_manager.add_item_task(item_key, total=len(segments))

        worker_count = max(1, min(self.max_workers, len(segments)))
        workers = [
            asyncio.create_task(
                self._worker(
                    item_key, queue, states, destination, recorded, failures, cancel, task_id
                )
            )
            for _ in range(worker_count)
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            # A worker that raised leaves its siblings running; stop and reap them
            for worker in workers:
                if not worker.done():
                    worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            if self.progress_manager and task_id is not None:
                self.progress_manager.finish_item_task(task_id, success=not failures)

        counts = self.counts(item_key)
        log.debug(f"Fetch finished for '{item_key}': {counts}")

        if failures:
            last_error = failures[max(failures)]
            raise SourceItemBlockedError(item_key, failures.keys(), last_error)
        if any(state is SegmentState.PENDING for state in states.values()):
            raise JobCancelledError(
                f"Fetching '{item_key}' stopped with {counts['pending']} segment(s) pending"
            )
        return states

    async def _worker(
        self,
        item_key: str,
        queue: "asyncio.Queue[Segment]",
        states: dict[int, SegmentState],
        destination: Path,
        recorded: dict[int, tuple[str, int]],
        failures: dict[int, SegmentFetchError],
        cancel: Optional[CancellationToken],
        task_id,
    ) -> None:
        pacer = RequestPacer(self.request_delay)
        while True:
            if cancel and cancel.cancelled:
                return
            try:
                segment = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            path = destination / segment.filename
            if await self._is_already_complete(segment, path, recorded):
                states[segment.index] = SegmentState.COMPLETE
                self.stats.segments_skipped_existing += 1
                self._advance(task_id)
                continue

            try:
                await self._fetch_with_retries(
                    item_key, segment, path, states, pacer, cancel
                )
                states[segment.index] = SegmentState.COMPLETE
                self._advance(task_id)
            except SegmentFetchError as e:
                states[segment.index] = SegmentState.FAILED
                failures[segment.index] = e
                self.stats.segments_failed += 1
                log.warning(
                    f"[yellow]Segment {segment.index} of '{item_key}' failed: {e}[/yellow]"
                )
            except JobCancelledError:
                # Left pending; whatever was written stays on disk for a resumed run
                states[segment.index] = SegmentState.PENDING
                return

    async def _is_already_complete(
        self, segment: Segment, path: Path, recorded: dict[int, tuple[str, int]]
    ) -> bool:
        """A file counts as complete when its size matches the known byte length."""
        try:
            size = await asyncio.to_thread(os.path.getsize, path)
        except OSError:
            return False
        if segment.index in recorded:
            expected = recorded[segment.index][1]
        elif segment.byte_length is not None:
            expected = segment.byte_length
        else:
            return False
        return size == expected and size > 0

    def _advance(self, task_id) -> None:
        if self.progress_manager and task_id is not None:
            self.progress_manager.advance_item_task(task_id)

    async def _fetch_with_retries(
        self,
        item_key: str,
        segment: Segment,
        path: Path,
        states: dict[int, SegmentState],
        pacer: RequestPacer,
        cancel: Optional[CancellationToken],
    ) -> None:
        last_exception: SegmentFetchError | None = None
        for attempt in range(1, self.retry_budget + 1):
            if cancel:
                cancel.raise_if_cancelled(f"segment {segment.index} of '{item_key}'")
            await pacer.acquire()
            states[segment.index] = SegmentState.IN_FLIGHT
            try:
                written = await self._download(segment, path)
                if self.ledger:
                    await self.ledger.record_segment(
                        item_key, segment.index, segment.uri, written
                    )
                self.stats.segments_fetched += 1
                return
            except SegmentFetchError as e:
                last_exception = e
                if not e.retryable:
                    raise
                if e.status in THROTTLE_STATUSES:
                    await pacer.on_throttled()
                log.debug(
                    f"Segment {segment.index} of '{item_key}' attempt "
                    f"{attempt}/{self.retry_budget} failed: {e}"
                )

            if attempt < self.retry_budget:
                states[segment.index] = SegmentState.RETRYING
                self.stats.retries += 1
                delay = self.backoff_base * (2 ** (attempt - 1))
                if cancel:
                    if await cancel.sleep(delay):
                        cancel.raise_if_cancelled(
                            f"retry of segment {segment.index} of '{item_key}'"
                        )
                else:
                    await asyncio.sleep(delay)

        raise SegmentFetchError(
            f"Gave up after {self.retry_budget} attempts: {last_exception}",
            segment.index,
            retryable=False,
            status=last_exception.status if last_exception else None,
        )

    async def _download(self, segment: Segment, path: Path) -> int:
        """Writes one segment to disk and returns the number of bytes written."""
        if is_remote(segment.uri):
            written = await self._download_remote(segment, path)
        else:
            written = await self._copy_local(segment, path)

        if written == 0:
            raise SegmentFetchError(
                f"Empty response for segment {segment.index}", segment.index
            )
        if segment.byte_length is not None and written != segment.byte_length:
            raise SegmentFetchError(
                f"Segment {segment.index} is {written} bytes, expected "
                f"{segment.byte_length}",
                segment.index,
            )
        return written

    async def _download_remote(self, segment: Segment, path: Path) -> int:
        session = await self._get_session()
        headers = {"Range": segment.range_header} if segment.range_header else None
        try:
            async with session.get(
                segment.uri, headers=headers, allow_redirects=True
            ) as response:
                if response.status >= 400:
                    retryable = (
                        response.status >= 500
                        or response.status in RETRYABLE_CLIENT_STATUSES
                    )
                    raise SegmentFetchError(
                        f"HTTP {response.status} for segment {segment.index}",
                        segment.index,
                        retryable=retryable,
                        status=response.status,
                    )

                written = 0
                async with aiofiles.open(path, "wb") as f:
                    async for chunk in response.content.iter_chunked(self.CHUNK_SIZE):
                        await f.write(chunk)
                        written += len(chunk)
                        await self.stats.add_bytes(len(chunk), self.progress_manager)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SegmentFetchError(
                f"{type(e).__name__} for segment {segment.index}: {e}",
                segment.index,
                retryable=True,
            ) from e
        return written

    async def _copy_local(self, segment: Segment, path: Path) -> int:
        """Copies a segment listed by a local playlist, honouring its byte range."""
        try:
            source = await aiofiles.open(local_path(segment.uri), "rb")
        except OSError as e:
            raise SegmentFetchError(
                f"Cannot read segment {segment.index}: {e.strerror or e}",
                segment.index,
                retryable=not isinstance(e, FileNotFoundError),
            ) from e

        written = 0
        try:
            if segment.byte_offset:
                await source.seek(segment.byte_offset)
            remaining = segment.byte_length
            async with aiofiles.open(path, "wb") as f:
                while remaining is None or remaining > 0:
                    size = self.CHUNK_SIZE
                    if remaining is not None:
                        size = min(size, remaining)
                    chunk = await source.read(size)
                    if not chunk:
                        break
                    await f.write(chunk)
                    written += len(chunk)
                    if remaining is not None:
                        remaining -= len(chunk)
                    await self.stats.add_bytes(len(chunk), self.progress_manager)
        finally:
            await source.close()
        return written

"""
Joins the fetched segments of one source item into a single media unit.
"""

import asyncio
import logging
import os
from collections import Counter
from pathlib import Path
from typing import Iterable

import aiofiles

from hlsbook.exceptions import DiscontinuityError, EncodingError, SourceItemBlockedError
from hlsbook.media.encoder import Encoder
from hlsbook.models.job import SegmentState, SourceItem

log = logging.getLogger(__name__)


def validate_contiguity(item_key: str, indices: Iterable[int]) -> None:
    """
    Checks that indices are exactly 0..n-1 with no repeats.

    Raises:
        DiscontinuityError: With the missing and duplicated indices.
    """
    indices = list(indices)
    counts = Counter(indices)
    duplicates = {i for i, n in counts.items() if n > 1}
    if not duplicates and counts.keys() == set(range(len(indices))):
        return
    top = max(counts, default=-1)
    missing = set(range(top + 1)) - counts.keys()
    raise DiscontinuityError(item_key, missing, duplicates)


class StreamAssembler:
    """Concatenates completed segments in index order."""

    CHUNK_SIZE = 1048576  # 1 MB

    def __init__(self, encoder: Encoder):
        self.encoder = encoder

    async def assemble(
        self, item: SourceItem, segment_dir: Path, output_path: Path
    ) -> Path:
        """
        Byte-joins the item's segments into `output_path`.

        If the encoder rejects the joined file, the segments are concatenated
        once more with a full re-encode; a second failure is fatal.
        """
        incomplete = [
            s.index
            for s in item.segments
            if item.segment_states.get(s.index) is not SegmentState.COMPLETE
        ]
        if incomplete:
            raise SourceItemBlockedError(item.key, incomplete)

        validate_contiguity(item.key, (s.index for s in item.segments))
        ordered = sorted(item.segments, key=lambda s: s.index)
        paths = [segment_dir / s.filename for s in ordered]

        missing_files = [s.index for s, p in zip(ordered, paths) if not p.is_file()]
        if missing_files:
            raise SourceItemBlockedError(item.key, missing_files)

        await self._join_bytes(paths, output_path)

        try:
            valid = await asyncio.to_thread(self.encoder.validate, output_path)
            failure = None
        except EncodingError as e:
            valid, failure = False, e

        if not valid:
            log.warning(
                f"[yellow]Joined stream for '{item.key}' is not a valid container"
                f"{f' ({failure})' if failure else ''}; re-encoding instead.[/yellow]"
            )
            await asyncio.to_thread(
                self.encoder.concatenate, paths, output_path, True
            )
            if not await asyncio.to_thread(self.encoder.validate, output_path):
                raise EncodingError(
                    f"Re-encoded stream for '{item.key}' is still invalid"
                )

        item.assembled_path = output_path
        return output_path

    async def _join_bytes(self, paths: list[Path], output_path: Path) -> None:
        """Streams the files into a temp file, then renames it into place."""
        output_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = output_path.with_name(output_path.name + ".part")
        async with aiofiles.open(temp_path, "wb") as out:
            for path in paths:
                async with aiofiles.open(path, "rb") as src:
                    while chunk := await src.read(self.CHUNK_SIZE):
                        await out.write(chunk)
        await asyncio.to_thread(os.replace, temp_path, output_path)
        log.debug(f"Joined {len(paths)} segments into '{output_path.name}'")

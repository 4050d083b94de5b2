"""
Dataclass for tracking segment fetch statistics.
"""

import asyncio
import time
from dataclasses import dataclass, field


@dataclass
class FetchStats:
    """Tracks statistics for a fetch session, including real-time speed."""

    segments_fetched: int = 0
    segments_skipped_existing: int = 0
    segments_failed: int = 0
    retries: int = 0
    bytes_downloaded: int = 0
    items_completed: int = 0
    items_failed: int = 0

    # Real-time speed calculation fields
    current_speed_bps: float = 0.0
    peak_speed_bps: float = 0.0
    _speed_samples: list[float] = field(default_factory=list, repr=False)
    _last_progress_time: float = field(default=0.0, repr=False)
    _last_progress_bytes: int = field(default=0, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def __post_init__(self):
        self._last_progress_time = time.monotonic()

    def counts(self) -> dict[str, int]:
        """Completion/failure counts for progress reporting."""
        return {
            "complete": self.segments_fetched + self.segments_skipped_existing,
            "fetched": self.segments_fetched,
            "resumed": self.segments_skipped_existing,
            "failed": self.segments_failed,
            "retries": self.retries,
        }

    async def add_bytes(self, count: int, progress_manager=None) -> None:
        """
        Adds downloaded bytes and refreshes the moving-average speed.
        """
        async with self._lock:
            self.bytes_downloaded += count
            now = time.monotonic()
            elapsed = now - self._last_progress_time

            # Update speed roughly twice per second
            if elapsed > 0.5:
                bytes_diff = self.bytes_downloaded - self._last_progress_bytes
                if bytes_diff > 0:
                    self._speed_samples.append(bytes_diff / elapsed)
                    # Keep a sliding window of the last 10 speed samples
                    if len(self._speed_samples) > 10:
                        self._speed_samples.pop(0)
                    self.current_speed_bps = sum(self._speed_samples) / len(
                        self._speed_samples
                    )
                    self.peak_speed_bps = max(
                        self.peak_speed_bps, self.current_speed_bps
                    )
                    if progress_manager:
                        progress_manager.update_speed(self.current_speed_bps)

                self._last_progress_time = now
                self._last_progress_bytes = self.bytes_downloaded

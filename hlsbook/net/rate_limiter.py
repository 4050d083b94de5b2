"""
Provides a per-worker request pacer that keeps a polite gap between requests.
"""

import asyncio
import logging
import time

log = logging.getLogger(__name__)


class RequestPacer:
    """
    Enforces a minimum delay between request initiations by one worker, and
    widens it when the origin signals throttling (429/503).
    """

    def __init__(self, min_interval: float = 0.25, max_interval: float = 8.0):
        """
        Initializes the pacer.

        Args:
            min_interval: The configured delay between two requests, in seconds.
            max_interval: The upper bound the delay can grow to when throttled.
        """
        self._base_interval = min_interval
        self._interval = min_interval
        self._max_interval = max(max_interval, min_interval)
        self._last_start = 0.0
        self._last_throttle_time = 0.0
        self._lock = asyncio.Lock()

    @property
    def interval(self) -> float:
        return self._interval

    async def on_throttled(self) -> None:
        """
        Called when the origin throttles us. Doubles the current delay.
        """
        async with self._lock:
            self._interval = min(
                self._max_interval, max(self._interval * 2, 0.5)
            )
            self._last_throttle_time = time.monotonic()
            log.debug(f"Origin throttling detected. New delay: {self._interval:.2f}s")

    async def acquire(self) -> None:
        """
        Waits if necessary so that consecutive initiations are spaced out.
        """
        async with self._lock:
            # Gradually recover if we have not been throttled recently
            if (
                self._interval > self._base_interval
                and time.monotonic() - self._last_throttle_time > 60
            ):
                self._interval = max(self._base_interval, self._interval * 0.9)

            if self._last_start:
                elapsed = time.monotonic() - self._last_start
                if elapsed < self._interval:
                    await asyncio.sleep(self._interval - elapsed)

            self._last_start = time.monotonic()

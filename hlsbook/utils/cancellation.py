"""
A job-wide cancellation token checked at scheduling points and between steps.
"""

import asyncio
import logging
from typing import Optional

from hlsbook.exceptions import JobCancelledError

log = logging.getLogger(__name__)


class CancellationToken:
    """
    Cooperative cancellation signal.

    Unlike task cancellation, setting the token never interrupts work that
    is already running; stages poll it at their own safe points.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled by user") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()
            log.warning(f"[yellow]Cancellation requested: {reason}[/yellow]")

    def raise_if_cancelled(self, where: str = "") -> None:
        if self._event.is_set():
            suffix = f" at {where}" if where else ""
            raise JobCancelledError(f"Job cancelled{suffix} ({self._reason})")

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """
        Sleeps up to `seconds`, waking early on cancellation.

        Returns True if the token was cancelled during the sleep.
        """
        if seconds <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

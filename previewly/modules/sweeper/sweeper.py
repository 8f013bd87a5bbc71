"""
Expiry Sweeper for Previewly.

Safety net against orphaned billable VMs: periodically tears down running
sessions whose deadline has passed.
"""

import asyncio
import logging
from typing import Optional

from previewly.modules.polling import Clock

logger = logging.getLogger("previewly.sweeper")


class SweeperModule:
    """Runs SessionModule.cleanup_expired_sessions() on an interval."""

    def __init__(self, session_module, interval: float = 60.0, clock: Optional[Clock] = None):
        """
        Initialize sweeper.

        Args:
            session_module: SessionModule to sweep
            interval: Seconds between passes
            clock: Clock used between passes
        """
        self.session_module = session_module
        self.interval = interval
        self.clock = clock or Clock()
        self._task: Optional[asyncio.Task] = None
        self.passes = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        """
        Run a single sweep pass.

        Returns:
            Number of expired sessions processed
        """
        count = await self.session_module.cleanup_expired_sessions()
        self.passes += 1
        if count:
            logger.info(f"Sweep reclaimed {count} expired sessions")
        else:
            logger.debug("Sweep found no expired sessions")
        return count

    async def _loop(self) -> None:
        while True:
            await self.clock.sleep(self.interval)
            try:
                await self.run_once()
            except Exception:
                # Next pass retries
                logger.exception("Expiry sweep failed")

    def start(self) -> None:
        """Start the background sweep task."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="previewly-sweeper")
        logger.info(f"Expiry sweeper started (every {self.interval:g}s)")

    async def stop(self) -> None:
        """Cancel the background sweep task and wait for it to finish."""
        if not self._task:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiry sweeper stopped")

"""
Clock and poll scheduling used by every component that waits.

The control plane has no state-change webhooks, so machine state and
sync-server readiness are polled. Waiting goes through an injected
``Clock`` so tests can run the loops on virtual time.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Iterator


class Clock:
    """Real wall clock, monotonic clock and sleep."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@dataclass
class PollSchedule:
    """
    Delays between successive polls.

    Starts at ``interval`` and multiplies by ``factor`` after every poll,
    capped at ``max_interval``. A factor of 1.0 gives a fixed interval.
    """

    interval: float = 1.0
    factor: float = 1.0
    max_interval: float = 5.0

    def delays(self) -> Iterator[float]:
        delay = self.interval
        while True:
            yield delay
            delay = min(delay * self.factor, self.max_interval)

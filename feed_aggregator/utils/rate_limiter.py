"""
Minimum-interval pacing for sequential outbound requests.
"""

import asyncio
import logging
from typing import Optional


class RateLimiter:
    """
    Spaces successive acquisitions at least `interval` seconds apart.

    The first acquisition never waits. Waiting is measured on the event
    loop clock from the previous acquisition, so time already spent on work
    between two calls counts toward the interval.
    """

    def __init__(self, interval: float, name: str = "default"):
        self.interval = interval
        self.name = name
        self._last_acquired: Optional[float] = None
        self._lock = asyncio.Lock()
        self.logger = logging.getLogger(__name__)

    async def acquire(self) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            if self._last_acquired is not None:
                elapsed = loop.time() - self._last_acquired
                if elapsed < self.interval:
                    wait_time = self.interval - elapsed
                    self.logger.debug(f"Rate limiting [{self.name}]: waiting {wait_time:.2f}s")
                    await asyncio.sleep(wait_time)
            self._last_acquired = loop.time()

    def reset(self) -> None:
        self._last_acquired = None

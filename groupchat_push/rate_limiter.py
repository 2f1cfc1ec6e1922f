import asyncio
import logging
import time
from typing import Awaitable, Callable

from .context import FanoutContext
from .errors import ContextTimeout

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Fixed-interval permit source shared by every caller of the engine.

    One permit is released every 1/requests_per_second seconds. Callers
    reserve the next free slot and sleep until it comes up. Unused slots are
    not banked, so an idle limiter never allows a burst.

    Reserving a slot does not await, which keeps acquire() safe for any
    number of concurrent tasks on one event loop without a lock.
    """

    def __init__(self,
                 requests_per_second: float,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self.interval = 1.0 / requests_per_second
        self._clock = clock
        self._sleep = sleep
        self._next_slot = 0.0

    async def acquire(self, ctx: FanoutContext) -> None:
        """
        Wait for a permit.

        Raises:
            ContextTimeout: If the context has no deadline, or the next
                permit would only be available after the deadline
        """
        ctx.check()

        now = self._clock()
        slot = max(now, self._next_slot)
        delay = slot - now

        if delay > ctx.remaining():
            logger.debug(f"Rate limiter permit in {delay:.3f}s is past the deadline")
            raise ContextTimeout("rate limiter permit not available before deadline")

        self._next_slot = slot + self.interval

        if delay > 0:
            await self._sleep(delay)

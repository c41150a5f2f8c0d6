"""
Pacing Delay — Random jitter before each provider call.

Spreads sends out so the provider does not see a burst from one sender.
Advisory only: it holds no lock, suspends just the current dispatch, and
makes no guarantee about the spacing between two concurrent dispatches.
"""
from __future__ import annotations

import asyncio
import random
import structlog
from typing import Awaitable, Callable, Optional

logger = structlog.get_logger()

DEFAULT_DELAY_MIN_MS = 800
DEFAULT_DELAY_MAX_MS = 2200


class PacingDelay:

    def __init__(
        self,
        min_ms: int = DEFAULT_DELAY_MIN_MS,
        max_ms: int = DEFAULT_DELAY_MAX_MS,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if min_ms < 0 or max_ms < min_ms:
            raise ValueError(f"Invalid pacing bounds: min_ms={min_ms}, max_ms={max_ms}")
        self.min_ms = int(min_ms)
        self.max_ms = int(max_ms)
        self._rng = rng or random.Random()
        self._sleep = sleep

    def next_delay_ms(self) -> int:
        """Uniform integer in [min_ms, max_ms], both ends inclusive."""
        return self._rng.randint(self.min_ms, self.max_ms)

    async def wait(self) -> int:
        delay_ms = self.next_delay_ms()
        if delay_ms > 0:
            logger.debug("pacing_delay", delay_ms=delay_ms)
            await self._sleep(delay_ms / 1000.0)
        return delay_ms

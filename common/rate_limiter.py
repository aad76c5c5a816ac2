"""Asyncio token bucket shared by upload workers and public-endpoint drivers."""

import asyncio
import time
from typing import Optional

from common.cancellation import CancellationToken


class AsyncTokenBucket:
    """
    Fair token bucket for coroutines.

    Tokens refill continuously at `rate` per second up to `burst`. Waiters are
    served in arrival order because the refill/wait loop runs under an
    asyncio.Lock, whose waiters are woken FIFO.
    """

    def __init__(self, rate: float, burst: int = 1):
        """
        Initialize token bucket.

        Args:
            rate: Tokens added per second (<= 0 disables limiting)
            burst: Maximum tokens held at once
        """
        self.rate = rate
        self.capacity = max(1, burst)
        self.tokens = float(self.capacity)
        self.last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        """Add tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now

    async def acquire(self, cancel: Optional[CancellationToken] = None) -> float:
        """
        Take one token, waiting if necessary.

        Args:
            cancel: Token that aborts the wait when cancelled

        Returns:
            Seconds spent waiting

        Raises:
            OperationCancelledError: If `cancel` fires before a token is available
        """
        if self.rate <= 0:
            if cancel is not None:
                cancel.raise_if_cancelled()
            return 0.0

        start = time.monotonic()
        async with self._lock:
            while True:
                if cancel is not None:
                    cancel.raise_if_cancelled()
                self._refill()
                if self.tokens >= 1:
                    self.tokens -= 1
                    return time.monotonic() - start
                await self._sleep((1 - self.tokens) / self.rate, cancel)

    @staticmethod
    async def _sleep(delay: float, cancel: Optional[CancellationToken]) -> None:
        if cancel is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

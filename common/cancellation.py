"""Cooperative cancellation shared between producers and consumers."""

import asyncio

from common.exceptions import OperationCancelledError


class CancellationToken:
    """
    One-shot cancellation signal.

    Consumers call `cancel()` to stop a stream early; producers check
    `cancelled` between steps or await `wait()` alongside their own work.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        """
        Raises:
            OperationCancelledError: If the token has been cancelled
        """
        if self.cancelled:
            raise OperationCancelledError(self.reason or "cancelled")

"""Cooperative cancellation for long-running operations"""

import asyncio


class OperationCancelled(Exception):
    """Raised at a chunk boundary after cancellation was requested."""

    def __init__(self, operation_id: str | None = None, reason: str | None = None):
        self.operation_id = operation_id
        self.reason = reason
        super().__init__(reason or "Operation cancelled")


class CancellationToken:
    """
    Cancellation flag checked between chunks.

    Cancelling never interrupts an adapter call that is already running; the
    operation stops at its next ``raise_if_cancelled()``.
    """

    def __init__(self, operation_id: str | None = None):
        self.operation_id = operation_id
        self.reason: str | None = None
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> bool:
        """Request cancellation. Returns False if already requested."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.operation_id, self.reason)

    async def wait(self) -> None:
        await self._event.wait()

"""
Cooperative cancellation tokens passed into long-running operations.
"""

import asyncio
from typing import Optional

from tidal_queue.exceptions import OperationCancelledError


class CancellationToken:
    """
    A one-shot cancellation flag that long-running loops poll at safe points.

    Cancelling never interrupts an await in progress; the holder decides
    where to check.
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

    def cancel(self, reason: str = "Cancelled") -> None:
        """Signals cancellation. Later calls keep the first reason."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(
        self, error_cls: type[OperationCancelledError] = OperationCancelledError
    ) -> None:
        """Raises ``error_cls`` if the token has been signalled."""
        if self._event.is_set():
            raise error_cls(self._reason or "Cancelled")

    async def wait(self) -> None:
        """Blocks until the token is cancelled."""
        await self._event.wait()

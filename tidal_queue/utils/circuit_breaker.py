"""
Circuit breaker guarding calls to the upload server.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Optional

from tidal_queue.exceptions import OperationCancelledError, TransportError

log = logging.getLogger(__name__)


class CircuitState(Enum):
    """States of the circuit breaker."""

    CLOSED = "closed"  # Requests pass through
    OPEN = "open"  # Requests fail fast
    HALF_OPEN = "half_open"  # Probing whether the server recovered


class CircuitBreakerError(TransportError):
    """Raised instead of sending a request while the circuit is open."""


class CircuitBreaker:
    """
    Stops hammering a server that keeps failing.

    Used as ``async with breaker:`` around one request attempt. An exception
    leaving the block counts as a failure unless it is a cancellation;
    ``failure_threshold`` consecutive failures open the circuit for
    ``recovery_timeout`` seconds, after which ``success_threshold`` successful
    probes close it again.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        success_threshold: int = 2,
        name: str = "upload",
        clock: Optional[Callable[[], float]] = None,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self.name = name
        self._clock = clock or time.monotonic

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def reset(self) -> None:
        """Forces the circuit closed and clears its counters."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = None

    def _maybe_half_open(self) -> None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return
        elapsed = self._clock() - self._opened_at
        if elapsed >= self.recovery_timeout:
            log.info(
                f"[yellow]Circuit '{self.name}' half-open, probing recovery "
                f"after {elapsed:.0f}s[/yellow]"
            )
            self._state = CircuitState.HALF_OPEN
            self._success_count = 0

    async def record_success(self) -> None:
        async with self._lock:
            self._failure_count = 0
            if self._state != CircuitState.HALF_OPEN:
                return
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                log.info(f"[green]✓ Circuit '{self.name}' closed again.[/green]")
                self.reset()

    async def record_failure(self) -> None:
        async with self._lock:
            self._failure_count += 1
            if self._state == CircuitState.HALF_OPEN:
                log.warning(
                    f"[yellow]Circuit '{self.name}': recovery probe failed, "
                    "reopening.[/yellow]"
                )
                self._open()
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                log.error(
                    f"[red]✗ Circuit '{self.name}' opened after "
                    f"{self._failure_count} consecutive failures; requests "
                    f"blocked for {self.recovery_timeout:.0f}s.[/red]"
                )
                self._open()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._failure_count = 0
        self._success_count = 0

    async def __aenter__(self):
        async with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.OPEN:
                raise CircuitBreakerError(
                    f"Circuit '{self.name}' is open; retry after "
                    f"{self.recovery_timeout:.0f} seconds."
                )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            await self.record_success()
        elif not issubclass(exc_type, (OperationCancelledError, asyncio.CancelledError)):
            await self.record_failure()
        return False

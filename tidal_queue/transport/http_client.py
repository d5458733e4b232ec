"""
Async HTTP client with retry, timeout and circuit breaker protection for calls
to the upload server.
"""

import asyncio
import json as jsonlib
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Optional

import aiohttp

from tidal_queue.core.cancellation import CancellationToken
from tidal_queue.exceptions import TransportError, UploadCancelledError
from tidal_queue.utils.circuit_breaker import CircuitBreaker, CircuitBreakerError

log = logging.getLogger(__name__)


@dataclass
class HttpResponse:
    """A fully read HTTP response."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Decodes the body as JSON. Raises ValueError if it is not JSON."""
        return jsonlib.loads(self.body)


class _RetryableStatus(Exception):
    def __init__(self, response: HttpResponse):
        super().__init__(f"HTTP {response.status}")
        self.response = response


def _is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


class RetryingHttpClient:
    """
    Sends requests with exponential backoff.

    Network errors, timeouts, HTTP 429 and HTTP 5xx are retried. Any other
    response, including 4xx, is returned to the caller to interpret.
    """

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        jitter: float = 1.0,
        timeout: float = 10.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        default_headers: Optional[dict[str, str]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            session: Shared aiohttp session. One is created lazily if omitted
                and closed by ``close``.
            max_retries: Retries after the first attempt.
            base_delay: Backoff base in seconds; attempt n waits
                ``base_delay * 2**n`` plus up to ``jitter`` seconds.
            timeout: Default total timeout per attempt in seconds.
            circuit_breaker: Breaker shared by every request of this client.
            default_headers: Headers sent with every request (session auth).
            sleep: Awaitable used for backoff waits.
        """
        self._session = session
        self._owns_session = session is None
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.jitter = jitter
        self.timeout = timeout
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5, recovery_timeout=60, success_threshold=2
        )
        self.default_headers = dict(default_headers or {})
        self._sleep = sleep

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=16,
                ttl_dns_cache=300,
                enable_cleanup_closed=True,
            )
            self._session = aiohttp.ClientSession(connector=connector)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Closes the session if this client created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _backoff(self, attempt: int) -> float:
        return self.base_delay * (2**attempt) + random.uniform(0, self.jitter)

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        data: Optional[bytes] = None,
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> HttpResponse:
        """
        Sends one request, retrying transient failures.

        Returns:
            The first non-retryable response.

        Raises:
            UploadCancelledError: If ``cancel_token`` fires before an attempt.
            CircuitBreakerError: If the circuit is open.
            TransportError: When every attempt failed transiently.
        """
        retries = self.max_retries if max_retries is None else max_retries
        request_headers = {**self.default_headers, **(headers or {})}
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.timeout)
        last_error: Optional[Exception] = None
        last_status: Optional[int] = None

        for attempt in range(retries + 1):
            if cancel_token:
                cancel_token.raise_if_cancelled(UploadCancelledError)
            try:
                async with self.circuit_breaker:
                    response = await self._send(
                        method, url, json, data, request_headers, client_timeout
                    )
                    if _is_retryable_status(response.status):
                        raise _RetryableStatus(response)
                    return response
            except CircuitBreakerError:
                raise
            except _RetryableStatus as e:
                last_error = e
                last_status = e.response.status
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e
                last_status = None

            if attempt < retries:
                delay = self._backoff(attempt)
                log.debug(
                    f"{method} {url} attempt {attempt + 1}/{retries + 1} failed: "
                    f"{last_error or 'timeout'}. Retrying in {delay:.1f}s"
                )
                await self._sleep(delay)

        reason = str(last_error) or type(last_error).__name__
        if isinstance(last_error, asyncio.TimeoutError):
            reason = "Request timeout"
        raise TransportError(
            f"{method} {url} failed after {retries + 1} attempt(s): {reason}",
            status_code=last_status,
        ) from last_error

    async def _send(
        self,
        method: str,
        url: str,
        json: Any,
        data: Optional[bytes],
        headers: dict[str, str],
        timeout: aiohttp.ClientTimeout,
    ) -> HttpResponse:
        session = await self._get_session()
        async with session.request(
            method, url, json=json, data=data, headers=headers, timeout=timeout
        ) as r:
            body = await r.read()
            return HttpResponse(status=r.status, headers=dict(r.headers), body=body)

"""
Maps raw download failures onto the error taxonomy used by job records.
"""

import re
from dataclasses import dataclass
from typing import Optional, Union

from tidal_queue.models.job import ErrorCategory

RETRYABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.NETWORK,
        ErrorCategory.RATE_LIMIT,
        ErrorCategory.SERVER_ERROR,
        ErrorCategory.UNKNOWN,
    }
)

# Suggested backoff before the next attempt, in milliseconds
RETRY_AFTER_MS = {
    ErrorCategory.RATE_LIMIT: 60_000,
    ErrorCategory.NETWORK: 5_000,
    ErrorCategory.SERVER_ERROR: 30_000,
    ErrorCategory.UNKNOWN: 10_000,
}

_RATE_LIMIT_MARKERS = ("rate limit", "too many requests")
_NETWORK_MARKERS = ("timeout", "econnrefused", "enotfound", "network")
_AUTH_MARKERS = ("unauthorized", "forbidden")
_NOT_FOUND_MARKERS = ("not found",)

_HTTP_STATUS_RE = re.compile(r"\bHTTP\s+(\d{3})\b", re.IGNORECASE)


@dataclass(frozen=True)
class CategorizedError:
    """A failure normalized to a taxonomy entry."""

    category: ErrorCategory
    is_retryable: bool
    message: str
    retry_after_ms: Optional[int] = None


def _categorized(category: ErrorCategory, message: str) -> CategorizedError:
    return CategorizedError(
        category=category,
        is_retryable=category in RETRYABLE_CATEGORIES,
        message=message,
        retry_after_ms=RETRY_AFTER_MS.get(category),
    )


def categorize_error(
    error: Union[str, BaseException], status_code: Optional[int] = None
) -> CategorizedError:
    """
    Classifies a failure. The first matching rule wins.

    Args:
        error: The failure message or the exception itself.
        status_code: HTTP status of the failed response, if there was one.

    Returns:
        The category with its retryability and suggested backoff.
    """
    message = str(error)
    text = message.lower()

    if status_code == 429 or any(m in text for m in _RATE_LIMIT_MARKERS):
        return _categorized(ErrorCategory.RATE_LIMIT, message)
    if any(m in text for m in _NETWORK_MARKERS):
        return _categorized(ErrorCategory.NETWORK, message)
    if status_code in (401, 403) or any(m in text for m in _AUTH_MARKERS):
        return _categorized(ErrorCategory.AUTH, message)
    if status_code == 404 or any(m in text for m in _NOT_FOUND_MARKERS):
        return _categorized(ErrorCategory.NOT_FOUND, message)
    if status_code is not None and status_code >= 500:
        return _categorized(ErrorCategory.SERVER_ERROR, message)
    if status_code is not None and status_code >= 400:
        return _categorized(ErrorCategory.API_ERROR, message)
    return _categorized(ErrorCategory.UNKNOWN, message)


def status_code_from_message(message: str) -> Optional[int]:
    """Extracts the status from messages shaped like 'HTTP 503 from target'."""
    match = _HTTP_STATUS_RE.search(message)
    return int(match.group(1)) if match else None

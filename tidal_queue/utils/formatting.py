"""
Helper functions for formatting data into human-readable strings.
"""

from datetime import datetime
from typing import Optional


def format_size(bytes_size: float) -> str:
    """Formats bytes into a human-readable size string (e.g., '145.3 MB')."""
    if bytes_size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    while bytes_size >= 1024 and i < len(units) - 1:
        bytes_size /= 1024
        i += 1
    return f"{bytes_size:.1f} {units[i]}"


def format_duration(seconds: float) -> str:
    """
    Formats a duration in seconds into a human-readable string (e.g., '2h 34m 12s').
    """
    s = int(seconds)
    hours, remainder = divmod(s, 3600)
    minutes, secs = divmod(remainder, 60)
    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def format_speed(bytes_per_second: float) -> str:
    return f"{format_size(bytes_per_second)}/s"


def format_eta(seconds: Optional[float]) -> str:
    """Formats an ETA, or '--' when it cannot be estimated yet."""
    if seconds is None:
        return "--"
    return format_duration(seconds)


def format_timestamp(epoch_ms: Optional[int]) -> str:
    """Formats an epoch-milliseconds timestamp in local time."""
    if epoch_ms is None:
        return "-"
    return datetime.fromtimestamp(epoch_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def format_age(epoch_ms: Optional[int], now_ms: int) -> str:
    """Formats how long ago a timestamp was (e.g., '3m 5s ago')."""
    if epoch_ms is None:
        return "-"
    return f"{format_duration(max(0, now_ms - epoch_ms) / 1000)} ago"

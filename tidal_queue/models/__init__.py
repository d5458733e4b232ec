"""
Data Models Layer.

This package contains the Pydantic models and dataclasses that define the
core data structures: job records, configuration and queue statistics.
"""

from .config import QueueConfig
from .job import (
    AlbumJob,
    ErrorCategory,
    Job,
    JobPriority,
    JobStatus,
    TrackJob,
    TrackProgress,
    TrackStatus,
)
from .stats import QueueMetrics, QueueSnapshot, QueueStats

__all__ = [
    "AlbumJob",
    "ErrorCategory",
    "Job",
    "JobPriority",
    "JobStatus",
    "QueueConfig",
    "QueueMetrics",
    "QueueSnapshot",
    "QueueStats",
    "TrackJob",
    "TrackProgress",
    "TrackStatus",
]

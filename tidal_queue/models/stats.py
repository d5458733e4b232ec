"""
Dataclasses for queue statistics, aggregated metrics and snapshots.
"""

from dataclasses import asdict, dataclass, field
from typing import Optional

from tidal_queue.models.job import Job


@dataclass
class QueueStats:
    """Per-status job counts."""

    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    total: int = 0

    @classmethod
    def from_jobs(cls, jobs: list[Job]) -> "QueueStats":
        stats = cls(total=len(jobs))
        for job in jobs:
            name = job.status.value
            setattr(stats, name, getattr(stats, name) + 1)
        return stats

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class QueueMetrics:
    """Aggregate health metrics over every job currently in the store."""

    total_jobs: int = 0
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    avg_success_rate: float = 0.0
    avg_retry_count: float = 0.0
    total_download_time_ms: int = 0
    avg_job_duration_ms: float = 0.0

    @classmethod
    def from_jobs(cls, jobs: list[Job]) -> "QueueMetrics":
        stats = QueueStats.from_jobs(jobs)
        metrics = cls(
            total_jobs=stats.total,
            queued=stats.queued,
            processing=stats.processing,
            completed=stats.completed,
            failed=stats.failed,
            cancelled=stats.cancelled,
        )
        finished = stats.completed + stats.failed
        if finished:
            metrics.avg_success_rate = stats.completed / finished * 100
        if jobs:
            metrics.avg_retry_count = sum(j.retry_count for j in jobs) / len(jobs)

        durations = [
            j.completed_at - j.started_at
            for j in jobs
            if j.started_at is not None and j.completed_at is not None
        ]
        metrics.total_download_time_ms = sum(durations)
        if durations:
            metrics.avg_job_duration_ms = metrics.total_download_time_ms / len(
                durations
            )
        return metrics

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass
class QueueSnapshot:
    """All jobs plus the backend that served the read."""

    jobs: list[Job] = field(default_factory=list)
    backend: str = "memory"
    warning: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.warning is not None

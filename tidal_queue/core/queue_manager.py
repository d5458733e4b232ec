"""
Server-side download queue.

Manages background download jobs that keep running after the submitting
session ends. Each job is a JSON record stored as one field of a single hash,
keyed by job id. The queue owns those records: it enforces the lifecycle,
picks the next job by priority and age, deduplicates submissions, and
recovers jobs orphaned by a crashed or stalled worker.

Only one worker process may consume a queue. Dequeue exclusivity comes from
an in-process guard set, so two processes sharing the same Redis hash can
both claim the same job, and ``update_job_status`` is a plain
read-modify-write where the last writer wins.
"""

import logging
import time
import uuid
from collections.abc import Callable
from contextlib import suppress
from typing import Any, Optional, Union

from pydantic import TypeAdapter, ValidationError

from tidal_queue.core.cancellation import CancellationToken
from tidal_queue.core.error_classifier import RETRYABLE_CATEGORIES
from tidal_queue.exceptions import (
    ConfigurationError,
    InvalidTransitionError,
    JobRecordError,
)
from tidal_queue.models.job import (
    AlbumJob,
    ErrorCategory,
    Job,
    JobPayload,
    JobPriority,
    JobStatus,
    TrackJob,
    TrackStatus,
    dedup_key,
)
from tidal_queue.models.stats import QueueMetrics, QueueSnapshot, QueueStats
from tidal_queue.storage.store import FallbackStore, JobStore, MemoryStore
from tidal_queue.utils.structured_logger import JobEventLogger

log = logging.getLogger(__name__)

DEFAULT_QUEUE_KEY = "downloadQueue"
DEDUP_COMPLETED_WINDOW_MS = 60 * 60 * 1000  # 1 hour
DEFAULT_STUCK_TIMEOUT_MS = 5 * 60 * 1000  # 5 minutes
DEFAULT_CLEANUP_AGE_MS = 24 * 60 * 60 * 1000  # 24 hours
CRASH_RECOVERY_MESSAGE = "Recovered from server crash while processing"

ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.PROCESSING, JobStatus.CANCELLED},
    JobStatus.PROCESSING: {
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    },
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: {JobStatus.QUEUED},
    JobStatus.CANCELLED: {JobStatus.QUEUED},
}

_payload_adapter = TypeAdapter(JobPayload)


def _now_ms() -> int:
    return int(time.time() * 1000)


class JobQueue:
    """The download job scheduler."""

    def __init__(
        self,
        store: JobStore,
        queue_key: str = DEFAULT_QUEUE_KEY,
        clock: Optional[Callable[[], int]] = None,
        events: Optional[JobEventLogger] = None,
        single_worker: bool = True,
    ):
        """
        Initializes the queue. Construct one instance per process and share it
        between the submission side and the worker.

        Args:
            store: The record store. Anything other than a memory or fallback
                store is wrapped so that backend failures degrade to memory.
            queue_key: The hash key all job records live under.
            clock: Returns the current time in epoch milliseconds.
            events: Optional structured event logger.
            single_worker: Must be True. Dequeue exclusivity is enforced only
                inside this process; there is no durable lease.

        Raises:
            ConfigurationError: If ``single_worker`` is False.
        """
        if not single_worker:
            raise ConfigurationError(
                "Multiple queue workers are not supported: dequeue exclusivity "
                "is process-local. Run exactly one worker per queue."
            )
        if not isinstance(store, (MemoryStore, FallbackStore)):
            store = FallbackStore(store)
        self.store = store
        self.queue_key = queue_key
        self._clock = clock or _now_ms
        self._events = events
        self._processing: set[str] = set()
        self._tokens: dict[str, CancellationToken] = {}

    def now(self) -> int:
        """Current time in epoch milliseconds, as used for job timestamps."""
        return self._clock()

    @property
    def processing_ids(self) -> frozenset[str]:
        """Ids currently claimed by this process."""
        return frozenset(self._processing)

    def cancellation_token(self, job_id: str) -> CancellationToken:
        """Returns the in-process cancellation token for a job."""
        return self._tokens.setdefault(job_id, CancellationToken())

    def _release(self, job_id: str) -> None:
        self._processing.discard(job_id)
        self._tokens.pop(job_id, None)

    def _cancel_token(self, job_id: str, reason: str) -> None:
        token = self._tokens.get(job_id)
        if token:
            token.cancel(reason)

    # --- Record I/O ---

    async def _read(self, job_id: str) -> Optional[Job]:
        raw = await self.store.hash_get(self.queue_key, job_id)
        if raw is None:
            return None
        try:
            return Job.from_record(raw)
        except JobRecordError as e:
            log.warning(f"Skipping unreadable job record '{job_id}': {e}")
            return None

    async def _write(self, job: Job) -> None:
        await self.store.hash_set(self.queue_key, job.id, job.to_record())

    async def get_job(self, job_id: str) -> Optional[Job]:
        """Returns a job, or None if it does not exist."""
        return await self._read(job_id)

    async def get_all_jobs(self) -> list[Job]:
        """Returns every readable job, oldest first."""
        records = await self.store.hash_get_all(self.queue_key)
        jobs = []
        for job_id, raw in records.items():
            try:
                jobs.append(Job.from_record(raw))
            except JobRecordError as e:
                log.warning(f"Skipping unreadable job record '{job_id}': {e}")
        jobs.sort(key=lambda j: (j.created_at, j.id))
        return jobs

    # --- Submission ---

    async def enqueue_job(
        self,
        payload: Union[TrackJob, AlbumJob, dict[str, Any]],
        priority: Union[JobPriority, str] = JobPriority.NORMAL,
        max_retries: int = 3,
        check_duplicate: bool = True,
    ) -> str:
        """
        Adds a job to the queue and returns its id.

        With ``check_duplicate``, submitting the same (type, id, quality) as a
        queued or processing job returns that job's id, and a matching job
        that failed with a retryable error is revived instead of duplicated.
        Completed jobs older than one hour never count as duplicates.

        Raises:
            JobRecordError: If the payload is not a valid track or album job.
        """
        if isinstance(payload, dict):
            try:
                payload = _payload_adapter.validate_python(payload)
            except ValidationError as e:
                raise JobRecordError(f"Invalid job payload:\n{e}") from e
        priority = JobPriority(priority)
        now = self._clock()

        if check_duplicate:
            existing_id = await self._find_duplicate(payload, now)
            if existing_id is not None:
                return existing_id

        job = Job(
            id=f"job-{now}-{uuid.uuid4().hex[:12]}",
            payload=payload,
            status=JobStatus.QUEUED,
            progress=0.0,
            priority=priority,
            retry_count=0,
            max_retries=max_retries,
            created_at=now,
        )
        await self._write(job)
        log.info(
            f"Job {job.id} enqueued ({payload.type} {payload.target_id}, "
            f"{priority.value} priority)"
        )
        if self._events:
            self._events.job_enqueued(
                job.id, payload.type, payload.target_id, priority.value
            )
        return job.id

    async def _find_duplicate(
        self, payload: Union[TrackJob, AlbumJob], now: int
    ) -> Optional[str]:
        key = dedup_key(payload)
        matches = [
            job
            for job in await self.get_all_jobs()
            if dedup_key(job.payload) == key
            and not self._is_stale_completed(job, now)
        ]

        for job in matches:
            if job.status in (JobStatus.QUEUED, JobStatus.PROCESSING):
                log.info(f"Duplicate submission matches active job {job.id}")
                if self._events:
                    self._events.job_deduplicated(job.id, job.status.value, False)
                return job.id

        for job in matches:
            if (
                job.status == JobStatus.FAILED
                and job.error_category in RETRYABLE_CATEGORIES
            ):
                revived = job.merged(
                    {
                        "status": JobStatus.QUEUED,
                        "retry_count": job.retry_count + 1,
                        "progress": 0.0,
                        "last_error": job.error or job.last_error,
                        "error": None,
                        "completed_at": None,
                        "next_retry_at": None,
                        "cancellation_requested": False,
                        "last_updated_at": now,
                    }
                )
                await self._write(revived)
                self._release(job.id)
                log.info(
                    f"Revived failed job {job.id} "
                    f"(retry {revived.retry_count}, was {job.error_category.value})"
                )
                if self._events:
                    self._events.job_deduplicated(job.id, job.status.value, True)
                return job.id
        return None

    @staticmethod
    def _is_stale_completed(job: Job, now: int) -> bool:
        if job.status != JobStatus.COMPLETED:
            return False
        finished = job.completed_at if job.completed_at is not None else job.created_at
        return now - finished > DEDUP_COMPLETED_WINDOW_MS

    # --- Scheduling ---

    async def dequeue_job(self) -> Optional[Job]:
        """
        Claims the next runnable job: highest priority first, then oldest.

        The claim is recorded in the guard set before returning, so another
        ``dequeue_job`` call in this process cannot return the same job until
        it reaches a terminal state or is retried.
        """
        jobs = await self.get_all_jobs()
        now = self._clock()
        # Filtering and claiming must stay free of awaits so that concurrent
        # callers on this event loop observe each other's claims.
        waiting = [
            job
            for job in jobs
            if job.status == JobStatus.QUEUED and job.id not in self._processing
        ]
        flagged = [job for job in waiting if job.cancellation_requested]
        runnable = [
            job
            for job in waiting
            if not job.cancellation_requested
            and (job.next_retry_at is None or job.next_retry_at <= now)
        ]
        job = None
        if runnable:
            job = min(runnable, key=lambda j: (-j.priority.rank, j.created_at, j.id))
            self._processing.add(job.id)

        # Queued jobs carrying a cancellation request would never run
        for stale in flagged:
            self._cancel_token(stale.id, "Cancelled before start")
            with suppress(InvalidTransitionError):
                await self.update_job_status(
                    stale.id, status=JobStatus.CANCELLED, completed_at=now
                )

        if job is not None and self._events:
            self._events.job_dequeued(
                job.id, job.priority.value, now - job.created_at
            )
        return job

    async def update_job_status(self, job_id: str, **changes: Any) -> Optional[Job]:
        """
        Merges ``changes`` into a stored job and stamps ``last_updated_at``.

        Keys are Job field names; ``None`` clears a field. A terminal status
        releases the job from the guard set.

        Returns:
            The updated job, or None if the job does not exist.

        Raises:
            InvalidTransitionError: If the status change is not allowed.
            JobRecordError: If the changes do not produce a valid job.
        """
        if "id" in changes:
            raise JobRecordError("Job id is immutable.")
        job = await self._read(job_id)
        if job is None:
            log.debug(f"Update for unknown job {job_id} ignored.")
            return None

        new_status = JobStatus(changes.get("status", job.status))
        self._check_transition(job, new_status)

        changes["last_updated_at"] = self._clock()
        updated = job.merged(changes)
        await self._write(updated)

        if updated.is_terminal:
            self._release(job_id)
        if new_status != job.status:
            log.debug(f"Job {job_id}: {job.status.value} -> {new_status.value}")
            if self._events:
                self._events.job_status_changed(
                    job_id, job.status.value, new_status.value
                )
        return updated

    @staticmethod
    def _check_transition(job: Job, new_status: JobStatus) -> None:
        if new_status == job.status:
            return
        if new_status not in ALLOWED_TRANSITIONS[job.status]:
            raise InvalidTransitionError(job.id, job.status.value, new_status.value)

    async def request_cancellation(self, job_id: str) -> bool:
        """
        Cancels a queued job immediately, or asks a processing job to stop.

        Processing jobs only get ``cancellation_requested`` set and their
        in-process token fired; the worker observes it at its next safe point.

        Returns:
            True if a cancellation was recorded.
        """
        job = await self._read(job_id)
        if job is None:
            return False

        if job.status == JobStatus.QUEUED:
            self._cancel_token(job_id, "Cancelled before start")
            await self.update_job_status(
                job_id, status=JobStatus.CANCELLED, completed_at=self._clock()
            )
        elif job.status == JobStatus.PROCESSING:
            await self.update_job_status(job_id, cancellation_requested=True)
            self._cancel_token(job_id, "Cancelled by user")
        else:
            return False

        log.info(f"Cancellation recorded for job {job_id} ({job.status.value})")
        if self._events:
            self._events.job_cancel_requested(job_id, job.status.value)
        return True

    async def request_retry(self, job_id: str) -> bool:
        """
        Puts a failed or cancelled job back in the queue with a clean slate.

        Returns:
            True if the job was reset, False if it does not exist or is not
            in a retryable state.
        """
        job = await self._read(job_id)
        if job is None or job.status not in (JobStatus.FAILED, JobStatus.CANCELLED):
            return False

        track_progress = [
            entry.model_copy(update={"status": TrackStatus.PENDING, "error": None})
            for entry in job.track_progress
        ]
        await self.update_job_status(
            job_id,
            status=JobStatus.QUEUED,
            progress=0.0,
            error=None,
            error_category=None,
            completed_at=None,
            started_at=None,
            download_time_ms=None,
            file_size=None,
            last_error=None,
            next_retry_at=None,
            cancellation_requested=False,
            retry_count=0,
            completed_tracks=0,
            track_progress=track_progress,
        )
        self._release(job_id)
        log.info(f"Job {job_id} reset for manual retry")
        return True

    async def reschedule_job(self, job_id: str, delay_ms: int) -> bool:
        """
        Re-queues a failed job for an automatic retry after ``delay_ms``.

        Unlike ``request_retry`` the retry count and last error are kept. A job
        whose cancellation was requested while it ran is cancelled instead.

        Returns:
            True if the job was put back in the queue.
        """
        job = await self._read(job_id)
        if job is None or job.status != JobStatus.FAILED:
            return False
        if job.cancellation_requested:
            await self.update_job_status(
                job_id, status=JobStatus.CANCELLED, completed_at=self._clock()
            )
            return False
        await self.update_job_status(
            job_id,
            status=JobStatus.QUEUED,
            progress=0.0,
            completed_at=None,
            last_error=job.error,
            next_retry_at=self._clock() + max(0, delay_ms),
        )
        self._release(job_id)
        return True

    async def delete_job(self, job_id: str) -> bool:
        """Removes a job record. Returns True if it existed."""
        self._cancel_token(job_id, "Job deleted")
        removed = await self.store.hash_delete(self.queue_key, job_id)
        self._release(job_id)
        if removed:
            log.info(f"Job {job_id} deleted")
        return removed

    # --- Recovery & housekeeping ---

    async def initialize_queue(self) -> int:
        """
        Startup recovery. Any job persisted as processing was orphaned by a
        previous process and is marked failed.

        Returns:
            The number of recovered jobs.
        """
        self._processing.clear()
        now = self._clock()
        recovered = 0
        for job in await self.get_all_jobs():
            if job.status != JobStatus.PROCESSING:
                continue
            await self.update_job_status(
                job.id,
                status=JobStatus.FAILED,
                error=CRASH_RECOVERY_MESSAGE,
                error_category=ErrorCategory.UNKNOWN,
                completed_at=now,
            )
            recovered += 1
            if self._events:
                self._events.job_recovered(job.id)

        if recovered:
            log.warning(
                f"[yellow]Recovered {recovered} job(s) left processing by a "
                "previous run.[/yellow]"
            )
        return recovered

    async def cleanup_stuck_jobs(self, timeout_ms: int = DEFAULT_STUCK_TIMEOUT_MS) -> int:
        """
        Fails processing jobs that have not been updated within ``timeout_ms``.

        This sweep is the only detection for a worker that died mid-job.

        Returns:
            The number of jobs failed.
        """
        now = self._clock()
        cleaned = 0
        for job in await self.get_all_jobs():
            if job.status != JobStatus.PROCESSING:
                continue
            last_seen = (
                job.last_updated_at if job.last_updated_at is not None else job.started_at
            )
            if last_seen is None or now - last_seen <= timeout_ms:
                continue

            idle_ms = now - last_seen
            self._cancel_token(job.id, "Job timed out")
            await self.update_job_status(
                job.id,
                status=JobStatus.FAILED,
                error=(
                    f"Job stuck in processing for {idle_ms // 1000}s without "
                    f"progress (timeout {timeout_ms // 1000}s); the worker may "
                    "have crashed"
                ),
                error_category=ErrorCategory.UNKNOWN,
                completed_at=now,
            )
            cleaned += 1
            if self._events:
                self._events.job_stuck(job.id, idle_ms)

        if cleaned:
            log.warning(f"[yellow]Failed {cleaned} stuck job(s).[/yellow]")
        return cleaned

    async def cleanup_old_jobs(self, older_than_ms: int = DEFAULT_CLEANUP_AGE_MS) -> int:
        """
        Deletes completed and failed jobs that finished more than
        ``older_than_ms`` ago.

        Returns:
            The number of deleted jobs.
        """
        now = self._clock()
        cleaned = 0
        for job in await self.get_all_jobs():
            if job.status not in (JobStatus.COMPLETED, JobStatus.FAILED):
                continue
            if job.completed_at is None or now - job.completed_at <= older_than_ms:
                continue
            if await self.store.hash_delete(self.queue_key, job.id):
                self._release(job.id)
                cleaned += 1

        if cleaned:
            log.info(f"Cleaned up {cleaned} old job(s)")
        return cleaned

    # --- Read models ---

    async def get_queue_snapshot(self) -> QueueSnapshot:
        """Returns every job plus which backend served the read."""
        jobs = await self.get_all_jobs()
        backend = self.store.backend_name
        warning = None
        if isinstance(self.store, FallbackStore) and self.store.degraded:
            warning = (
                "Redis is unavailable; the queue is running from process memory "
                "and jobs will be lost on restart."
            )
        elif backend == MemoryStore.backend_name:
            warning = (
                "Redis is disabled; the queue is held in process memory and jobs "
                "will be lost on restart."
            )
        return QueueSnapshot(jobs=jobs, backend=backend, warning=warning)

    async def get_queue_stats(self) -> QueueStats:
        return QueueStats.from_jobs(await self.get_all_jobs())

    async def get_metrics(self) -> QueueMetrics:
        return QueueMetrics.from_jobs(await self.get_all_jobs())

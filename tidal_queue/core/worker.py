"""
Background worker that drains the download queue.

The worker runs inside the server process, independent of any client session.
It polls the queue, runs up to ``max_concurrent`` jobs at once through a
``DownloadExecutor``, and records every outcome back on the job. The executor
is the part that actually fetches audio and writes files; it is supplied by
the host application.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from tidal_queue.core.cancellation import CancellationToken
from tidal_queue.core.error_classifier import categorize_error, status_code_from_message
from tidal_queue.core.queue_manager import DEFAULT_CLEANUP_AGE_MS, JobQueue
from tidal_queue.exceptions import InvalidTransitionError, OperationCancelledError
from tidal_queue.models.job import (
    AlbumJob,
    ErrorCategory,
    Job,
    JobStatus,
    TrackJob,
    TrackProgress,
    TrackStatus,
)

log = logging.getLogger(__name__)

MAX_RETRY_BACKOFF_MS = 300_000


@dataclass
class TrackDownloadRequest:
    track_id: int
    quality: str
    album_title: Optional[str] = None
    artist_name: Optional[str] = None
    track_title: Optional[str] = None
    track_number: Optional[int] = None
    cover_url: Optional[str] = None
    download_cover: bool = True


@dataclass
class TrackDownloadResult:
    success: bool
    error: Optional[str] = None
    status_code: Optional[int] = None
    filepath: Optional[str] = None
    file_size: Optional[int] = None


@dataclass
class AlbumTrack:
    track_id: int
    title: Optional[str] = None
    track_number: Optional[int] = None


@dataclass
class AlbumListing:
    title: Optional[str] = None
    artist_name: Optional[str] = None
    cover_url: Optional[str] = None
    tracks: list[AlbumTrack] = field(default_factory=list)


class DownloadExecutor(Protocol):
    """What the worker needs from the host application."""

    async def download_track(
        self, request: TrackDownloadRequest, token: CancellationToken
    ) -> TrackDownloadResult:
        """
        Downloads and stores one track. Expected failures are reported in the
        result; ``token`` should be checked at safe points.
        """
        ...

    async def fetch_album(self, album_id: int) -> AlbumListing:
        """Looks up an album's tracks. Raises on failure."""
        ...


def retry_backoff_ms(retry_after_ms: Optional[int], retry_count: int) -> int:
    """Delay before an automatic retry of a failed track job."""
    if retry_after_ms is not None:
        return retry_after_ms
    return min(5000 * retry_count, MAX_RETRY_BACKOFF_MS)


class QueueWorker:
    """Processes queued jobs with bounded concurrency."""

    def __init__(
        self,
        queue: JobQueue,
        executor: DownloadExecutor,
        max_concurrent: int = 6,
        album_concurrency: int = 6,
        poll_interval: float = 2.0,
        processing_timeout_ms: int = 300_000,
        cleanup_age_ms: int = DEFAULT_CLEANUP_AGE_MS,
        stuck_sweep_interval: float = 60.0,
        cleanup_interval: float = 3600.0,
        drain_timeout: Optional[float] = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            queue: The queue to drain. It must not be shared with another worker.
            executor: Performs the downloads.
            max_concurrent: Jobs processed at once.
            album_concurrency: Tracks of one album downloaded at once; capped
                by ``max_concurrent``.
            poll_interval: Seconds to wait when the queue is empty.
            processing_timeout_ms: Idle time after which a processing job is
                considered stuck.
            cleanup_age_ms: Age after which finished jobs are deleted.
            stuck_sweep_interval: Seconds between stuck-job sweeps.
            cleanup_interval: Seconds between old-job cleanups.
            drain_timeout: Seconds ``stop`` waits for in-flight jobs.
            clock: Monotonic clock in seconds, for sweep scheduling.
        """
        self.queue = queue
        self.executor = executor
        self.max_concurrent = max_concurrent
        self.album_concurrency = max(1, min(max_concurrent, album_concurrency))
        self.poll_interval = poll_interval
        self.processing_timeout_ms = processing_timeout_ms
        self.cleanup_age_ms = cleanup_age_ms
        self.stuck_sweep_interval = stuck_sweep_interval
        self.cleanup_interval = cleanup_interval
        self.drain_timeout = drain_timeout
        self._clock = clock

        self._active: dict[str, asyncio.Task] = {}
        self._loop_task: Optional[asyncio.Task] = None
        self._stop_requested = False
        self._wake: Optional[asyncio.Event] = None
        self._last_stuck_sweep = clock()
        self._last_cleanup = clock()

        if album_concurrency > max_concurrent:
            log.info(
                f"Album track concurrency {album_concurrency} capped by "
                f"max concurrent jobs ({max_concurrent})."
            )

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "active_downloads": len(self._active),
            "max_concurrent": self.max_concurrent,
        }

    # --- Lifecycle ---

    async def start(self) -> None:
        """Recovers orphaned jobs, then starts the polling loop in the background."""
        if self.running:
            log.info("Worker already running.")
            return
        log.info("Starting queue worker...")
        await self.queue.initialize_queue()
        self._stop_requested = False
        self._wake = asyncio.Event()
        self._loop_task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stops polling and waits for in-flight jobs to finish."""
        if not self.running:
            return
        log.info("Stopping queue worker...")
        self._stop_requested = True
        if self._wake:
            self._wake.set()
        await self._loop_task

    async def wait(self) -> None:
        """Blocks until the polling loop exits."""
        if self._loop_task:
            await self._loop_task

    async def _run(self) -> None:
        log.info(f"Worker loop started, max concurrent: {self.max_concurrent}")
        while not self._stop_requested:
            try:
                started = await self.poll_once()
                if started is None:
                    at_capacity = len(self._active) >= self.max_concurrent
                    await self._idle(0.5 if at_capacity else self.poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error(f"[red]Worker loop error: {e}[/red]")
                await self._idle(5.0)
        await self._drain()
        log.info("Worker stopped.")

    async def _idle(self, seconds: float) -> None:
        if self._wake is None:
            await asyncio.sleep(seconds)
            return
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)

    async def _drain(self) -> None:
        if not self._active:
            return
        log.info(f"Waiting for {len(self._active)} active download(s) to finish...")
        _, pending = await asyncio.wait(
            list(self._active.values()), timeout=self.drain_timeout
        )
        if pending:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            log.warning(
                f"[yellow]Stopped with {len(pending)} job(s) still processing; "
                "they will be recovered on next start.[/yellow]"
            )

    # --- Scheduling ---

    async def poll_once(self) -> Optional[asyncio.Task]:
        """
        Runs due sweeps and starts at most one job.

        Returns:
            The task processing the started job, or None if nothing started.
        """
        await self._sweep_if_due()
        if len(self._active) >= self.max_concurrent:
            return None
        job = await self.queue.dequeue_job()
        if job is None:
            return None
        return await self._start(job)

    async def _sweep_if_due(self) -> None:
        now = self._clock()
        if now - self._last_stuck_sweep >= self.stuck_sweep_interval:
            self._last_stuck_sweep = now
            cleaned = await self.queue.cleanup_stuck_jobs(self.processing_timeout_ms)
            if cleaned:
                log.info(f"Cleaned {cleaned} stuck job(s)")
        if now - self._last_cleanup >= self.cleanup_interval:
            self._last_cleanup = now
            cleaned = await self.queue.cleanup_old_jobs(self.cleanup_age_ms)
            if cleaned:
                log.info(f"Periodic cleanup removed {cleaned} old job(s)")

    async def _start(self, job: Job) -> asyncio.Task:
        task = asyncio.create_task(self._process(job))
        self._active[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._active.pop(job_id, None))
        log.debug(f"Started job {job.id}, active: {len(self._active)}/{self.max_concurrent}")
        return task

    # --- Job processing ---

    async def _process(self, job: Job) -> None:
        started = self._clock()
        try:
            current = await self._begin(job)
            if current is None:
                return
            # Only fetched once the job is ours, so a refused job leaves no token behind
            token = self.queue.cancellation_token(job.id)
            if current.cancellation_requested:
                token.cancel("Cancelled by user")
            if isinstance(current.payload, TrackJob):
                await self._process_track(current, current.payload, token)
            else:
                await self._process_album(current, current.payload, token)
        except InvalidTransitionError as e:
            log.info(f"Job {job.id} changed state while processing: {e}")
        except OperationCancelledError:
            await self._mark_cancelled(job.id)
        except Exception as e:
            log.error(f"[red]Job {job.id} processing error: {e}[/red]")
            await self._fail_if_processing(job.id, e)

        duration = self._clock() - started
        if duration * 1000 > self.processing_timeout_ms:
            log.warning(f"[yellow]Job {job.id} took {duration:.0f}s (over timeout)[/yellow]")

    async def _begin(self, job: Job) -> Optional[Job]:
        try:
            return await self.queue.update_job_status(
                job.id,
                status=JobStatus.PROCESSING,
                started_at=self.queue.now(),
                progress=0.0,
            )
        except InvalidTransitionError as e:
            log.info(f"Skipping job {job.id}: {e}")
            return None

    async def _cancel_requested(self, job_id: str, token: CancellationToken) -> bool:
        """
        Checks the local token and the stored flag. The flag may have been
        set by another process sharing the store, e.g. the ``cancel`` command.
        """
        if token.cancelled:
            return True
        current = await self.queue.get_job(job_id)
        if current is not None and current.cancellation_requested:
            token.cancel("Cancelled by user")
        return token.cancelled

    async def _mark_cancelled(self, job_id: str) -> None:
        current = await self.queue.get_job(job_id)
        if current and current.status == JobStatus.PROCESSING:
            await self.queue.update_job_status(
                job_id, status=JobStatus.CANCELLED, completed_at=self.queue.now()
            )
            log.info(f"Job {job_id} cancelled")

    async def _fail_if_processing(self, job_id: str, error: Exception) -> None:
        current = await self.queue.get_job(job_id)
        if current and current.status == JobStatus.PROCESSING:
            categorized = categorize_error(error, getattr(error, "status_code", None))
            await self.queue.update_job_status(
                job_id,
                status=JobStatus.FAILED,
                error=categorized.message or type(error).__name__,
                error_category=categorized.category,
                completed_at=self.queue.now(),
            )

    async def _process_track(
        self, job: Job, payload: TrackJob, token: CancellationToken
    ) -> None:
        started = self.queue.now()
        token.raise_if_cancelled()

        result = await self.executor.download_track(
            TrackDownloadRequest(
                track_id=payload.track_id,
                quality=payload.quality,
                album_title=payload.album_title,
                artist_name=payload.artist_name,
                track_title=payload.track_title,
                track_number=payload.track_number,
                cover_url=payload.cover_url,
            ),
            token,
        )
        await self._cancel_requested(job.id, token)
        token.raise_if_cancelled()

        finished = self.queue.now()
        if result.success:
            await self.queue.update_job_status(
                job.id,
                status=JobStatus.COMPLETED,
                progress=1.0,
                completed_at=finished,
                download_time_ms=finished - started,
                file_size=result.file_size,
            )
            log.info(f"[green]✓ Completed track {payload.track_id} (job {job.id})[/green]")
            return

        message = result.error or "Download failed"
        status_code = result.status_code or status_code_from_message(message)
        categorized = categorize_error(message, status_code)
        will_retry = categorized.is_retryable and job.retry_count < job.max_retries

        changes: dict[str, Any] = {
            "status": JobStatus.FAILED,
            "error": message,
            "error_category": categorized.category,
            "completed_at": finished,
        }
        if will_retry:
            changes["retry_count"] = job.retry_count + 1
        await self.queue.update_job_status(job.id, **changes)

        if will_retry:
            backoff = retry_backoff_ms(categorized.retry_after_ms, job.retry_count + 1)
            if not await self.queue.reschedule_job(job.id, backoff):
                log.info(f"Job {job.id} was cancelled, not retrying")
                return
            log.info(
                f"Job {job.id} failed ({categorized.category.value}), retrying in "
                f"{backoff // 1000}s (attempt {job.retry_count + 1}/{job.max_retries})"
            )
        else:
            log.error(f"[red]✗ Track {payload.track_id} failed: {message}[/red]")

    async def _process_album(
        self, job: Job, payload: AlbumJob, token: CancellationToken
    ) -> None:
        started = self.queue.now()

        try:
            listing = await self.executor.fetch_album(payload.album_id)
        except OperationCancelledError:
            raise
        except Exception as e:
            categorized = categorize_error(e, getattr(e, "status_code", None))
            await self.queue.update_job_status(
                job.id,
                status=JobStatus.FAILED,
                error=f"Failed to fetch album {payload.album_id}: {e}",
                error_category=categorized.category,
                completed_at=self.queue.now(),
            )
            log.error(f"[red]✗ Album {payload.album_id} lookup failed: {e}[/red]")
            return

        tracks = listing.tracks
        if not tracks:
            await self.queue.update_job_status(
                job.id,
                status=JobStatus.FAILED,
                error="Album has no tracks",
                error_category=ErrorCategory.NOT_FOUND,
                completed_at=self.queue.now(),
            )
            return

        total = len(tracks)
        album_title = payload.album_title or listing.title or "Unknown Album"
        artist_name = payload.artist_name or listing.artist_name or "Unknown Artist"
        progress = [
            TrackProgress(track_id=t.track_id, track_title=t.title or f"Track {i + 1}")
            for i, t in enumerate(tracks)
        ]
        await self.queue.update_job_status(
            job.id,
            payload=payload.model_copy(
                update={
                    "album_title": album_title,
                    "artist_name": artist_name,
                    "track_count": total,
                }
            ).model_dump(),
            track_count=total,
            completed_tracks=0,
            track_progress=[p.model_dump() for p in progress],
        )
        log.info(
            f"Album {payload.album_id}: {artist_name} - {album_title} "
            f"({total} tracks, concurrency {min(self.album_concurrency, total)})"
        )

        semaphore = asyncio.Semaphore(self.album_concurrency)
        write_lock = asyncio.Lock()
        counts = {"completed": 0, "failed": 0}

        async def publish() -> None:
            async with write_lock:
                processed = counts["completed"] + counts["failed"]
                updated = await self.queue.update_job_status(
                    job.id,
                    progress=processed / total,
                    completed_tracks=counts["completed"],
                    track_progress=[p.model_dump() for p in progress],
                )
                if updated is not None and updated.cancellation_requested:
                    token.cancel("Cancelled by user")

        async def download(index: int, track: AlbumTrack) -> None:
            async with semaphore:
                if await self._cancel_requested(job.id, token):
                    return
                entry = progress[index]
                if not track.track_id:
                    entry.status = TrackStatus.FAILED
                    entry.error = "Invalid track ID"
                    counts["failed"] += 1
                    await publish()
                    return

                entry.status = TrackStatus.DOWNLOADING
                await publish()
                try:
                    result = await self.executor.download_track(
                        TrackDownloadRequest(
                            track_id=track.track_id,
                            quality=payload.quality,
                            album_title=album_title,
                            artist_name=artist_name,
                            track_title=track.title,
                            track_number=track.track_number or index + 1,
                            cover_url=listing.cover_url,
                            download_cover=False,
                        ),
                        token,
                    )
                except OperationCancelledError:
                    entry.status = TrackStatus.PENDING
                    return
                except Exception as e:
                    result = TrackDownloadResult(success=False, error=str(e))

                if result.success:
                    entry.status = TrackStatus.COMPLETED
                    counts["completed"] += 1
                else:
                    entry.status = TrackStatus.FAILED
                    entry.error = result.error or "Download failed"
                    counts["failed"] += 1
                await publish()

        await asyncio.gather(*(download(i, t) for i, t in enumerate(tracks)))
        token.raise_if_cancelled()

        finished = self.queue.now()
        completed, failed = counts["completed"], counts["failed"]
        # Any failed track fails the whole album; partial albums are never completed
        if failed:
            first_error = next(p.error for p in progress if p.status == TrackStatus.FAILED)
            error = (
                "All tracks failed"
                if failed == total
                else f"Album incomplete: {failed} of {total} tracks could not be downloaded"
            )
            await self.queue.update_job_status(
                job.id,
                status=JobStatus.FAILED,
                error=error,
                error_category=categorize_error(first_error).category,
                completed_at=finished,
                download_time_ms=finished - started,
                progress=completed / total,
            )
            log.error(f"[red]✗ Album {payload.album_id}: {error}[/red]")
        else:
            await self.queue.update_job_status(
                job.id,
                status=JobStatus.COMPLETED,
                completed_at=finished,
                download_time_ms=finished - started,
                progress=1.0,
            )
            log.info(
                f"[green]✓ Album {payload.album_id} completed: "
                f"{completed}/{total} tracks[/green]"
            )

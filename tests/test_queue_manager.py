"""Tests for the JobQueue scheduler."""

import asyncio
import json

import pytest

from conftest import T0, FailingStore
from tidal_queue.core.queue_manager import (
    CRASH_RECOVERY_MESSAGE,
    DEFAULT_QUEUE_KEY,
    JobQueue,
)
from tidal_queue.exceptions import (
    ConfigurationError,
    InvalidTransitionError,
    JobRecordError,
)
from tidal_queue.models.job import ErrorCategory, JobPriority, JobStatus, TrackStatus
from tidal_queue.storage.store import FallbackStore, MemoryStore


def test_multiple_workers_rejected(store):
    with pytest.raises(ConfigurationError):
        JobQueue(store, single_worker=False)


def test_foreign_store_wrapped_in_fallback():
    queue = JobQueue(FailingStore())
    assert isinstance(queue.store, FallbackStore)


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_creates_queued_job(self, queue, track_payload):
        job_id = await queue.enqueue_job(track_payload, priority="high")

        job = await queue.get_job(job_id)
        assert job_id.startswith(f"job-{T0}-")
        assert job.status == JobStatus.QUEUED
        assert job.priority == JobPriority.HIGH
        assert job.progress == 0
        assert job.retry_count == 0
        assert job.created_at == T0

    @pytest.mark.asyncio
    async def test_duplicate_of_queued_job_returns_same_id(self, queue, track_payload):
        first = await queue.enqueue_job(track_payload)
        second = await queue.enqueue_job(dict(track_payload))

        assert first == second
        assert len(await queue.get_all_jobs()) == 1

    @pytest.mark.asyncio
    async def test_different_quality_is_not_a_duplicate(self, queue, track_payload):
        first = await queue.enqueue_job(track_payload)
        second = await queue.enqueue_job({**track_payload, "quality": "HI_RES_LOSSLESS"})

        assert first != second

    @pytest.mark.asyncio
    async def test_duplicate_check_can_be_disabled(self, queue, track_payload):
        first = await queue.enqueue_job(track_payload)
        second = await queue.enqueue_job(track_payload, check_duplicate=False)

        assert first != second

    @pytest.mark.asyncio
    async def test_retryable_failure_is_revived(self, queue, put_job):
        await put_job(
            "job-old",
            track_id=42,
            status="failed",
            error="ECONNREFUSED",
            error_category=ErrorCategory.NETWORK,
            retry_count=1,
            completed_at=T0,
        )

        job_id = await queue.enqueue_job(
            {"type": "track", "track_id": 42, "quality": "LOSSLESS"}
        )

        job = await queue.get_job(job_id)
        assert job_id == "job-old"
        assert job.status == JobStatus.QUEUED
        assert job.retry_count == 2
        assert job.error is None
        assert job.last_error == "ECONNREFUSED"

    @pytest.mark.asyncio
    async def test_permanent_failure_gets_new_job(self, queue, put_job):
        await put_job(
            "job-old",
            track_id=42,
            status="failed",
            error="Unauthorized",
            error_category=ErrorCategory.AUTH,
            completed_at=T0,
        )

        job_id = await queue.enqueue_job(
            {"type": "track", "track_id": 42, "quality": "LOSSLESS"}
        )

        assert job_id != "job-old"

    @pytest.mark.asyncio
    async def test_completed_job_is_not_revived(self, queue, put_job):
        await put_job("job-done", track_id=42, status="completed", completed_at=T0)
        payload = {"type": "track", "track_id": 42, "quality": "LOSSLESS"}

        assert await queue.enqueue_job(payload) != "job-done"

    @pytest.mark.asyncio
    async def test_invalid_payload_rejected(self, queue):
        with pytest.raises(JobRecordError):
            await queue.enqueue_job({"type": "track", "track_id": 1, "quality": "MP3"})


class TestDequeue:
    @pytest.mark.asyncio
    async def test_priority_then_age(self, queue, clock):
        a = await queue.enqueue_job(
            {"type": "track", "track_id": 1, "quality": "LOSSLESS"}, priority="low"
        )
        clock.advance(1)
        b = await queue.enqueue_job(
            {"type": "track", "track_id": 2, "quality": "LOSSLESS"}, priority="high"
        )
        clock.advance(1)
        c = await queue.enqueue_job(
            {"type": "track", "track_id": 3, "quality": "LOSSLESS"}, priority="normal"
        )

        order = [(await queue.dequeue_job()).id for _ in range(3)]

        assert order == [b, c, a]
        assert await queue.dequeue_job() is None

    @pytest.mark.asyncio
    async def test_concurrent_dequeue_is_exclusive(self, queue, track_payload):
        job_id = await queue.enqueue_job(track_payload)

        results = await asyncio.gather(*(queue.dequeue_job() for _ in range(5)))

        claimed = [job.id for job in results if job is not None]
        assert claimed == [job_id]
        assert queue.processing_ids == {job_id}

    @pytest.mark.asyncio
    async def test_future_retry_is_not_runnable(self, queue, put_job, clock):
        await put_job("job-later", next_retry_at=T0 + 5000)

        assert await queue.dequeue_job() is None
        clock.advance(5000)
        assert (await queue.dequeue_job()).id == "job-later"

    @pytest.mark.asyncio
    async def test_cancellation_requested_is_skipped(self, queue, put_job):
        await put_job("job-x", cancellation_requested=True)

        assert await queue.dequeue_job() is None

        job = await queue.get_job("job-x")
        assert job.status == JobStatus.CANCELLED
        assert job.completed_at == T0

    @pytest.mark.asyncio
    async def test_flagged_job_does_not_block_others(self, queue, put_job):
        await put_job("job-x", track_id=1, cancellation_requested=True)
        await put_job("job-y", track_id=2, created_at=T0 + 1)

        job = await queue.dequeue_job()

        assert job.id == "job-y"
        assert (await queue.get_job("job-x")).status == JobStatus.CANCELLED
        assert queue.processing_ids == {"job-y"}

    @pytest.mark.asyncio
    async def test_terminal_update_releases_guard(self, queue, track_payload):
        job_id = await queue.enqueue_job(track_payload)
        await queue.dequeue_job()

        await queue.update_job_status(job_id, status=JobStatus.PROCESSING)
        assert job_id in queue.processing_ids
        await queue.update_job_status(job_id, status=JobStatus.COMPLETED)
        assert job_id not in queue.processing_ids


class TestUpdateStatus:
    @pytest.mark.asyncio
    async def test_merges_and_stamps(self, queue, track_payload, clock):
        job_id = await queue.enqueue_job(track_payload)
        clock.advance(250)

        job = await queue.update_job_status(
            job_id, status=JobStatus.PROCESSING, progress=0.5
        )

        assert job.status == JobStatus.PROCESSING
        assert job.progress == 0.5
        assert job.last_updated_at == T0 + 250

    @pytest.mark.asyncio
    async def test_illegal_transition_rejected(self, queue, track_payload):
        job_id = await queue.enqueue_job(track_payload)

        with pytest.raises(InvalidTransitionError):
            await queue.update_job_status(job_id, status=JobStatus.COMPLETED)
        assert (await queue.get_job(job_id)).status == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_completed_is_final(self, queue, put_job):
        await put_job("job-done", status="completed", completed_at=T0)

        with pytest.raises(InvalidTransitionError):
            await queue.update_job_status("job-done", status=JobStatus.QUEUED)

    @pytest.mark.asyncio
    async def test_unknown_job_returns_none(self, queue):
        assert await queue.update_job_status("missing", progress=0.1) is None

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, queue, track_payload):
        job_id = await queue.enqueue_job(track_payload)

        with pytest.raises(JobRecordError):
            await queue.update_job_status(job_id, colour="blue")

    @pytest.mark.asyncio
    async def test_id_is_immutable(self, queue, track_payload):
        job_id = await queue.enqueue_job(track_payload)

        with pytest.raises(JobRecordError):
            await queue.update_job_status(job_id, id="job-other")


class TestCancellationAndRetry:
    @pytest.mark.asyncio
    async def test_cancel_queued_job(self, queue, track_payload):
        job_id = await queue.enqueue_job(track_payload)

        assert await queue.request_cancellation(job_id) is True

        job = await queue.get_job(job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.completed_at == T0

    @pytest.mark.asyncio
    async def test_cancel_processing_job_sets_flag_and_token(self, queue, track_payload):
        job_id = await queue.enqueue_job(track_payload)
        await queue.dequeue_job()
        await queue.update_job_status(job_id, status=JobStatus.PROCESSING)
        token = queue.cancellation_token(job_id)

        assert await queue.request_cancellation(job_id) is True

        job = await queue.get_job(job_id)
        assert job.status == JobStatus.PROCESSING
        assert job.cancellation_requested is True
        assert token.cancelled

    @pytest.mark.asyncio
    async def test_cancel_finished_or_missing_job(self, queue, put_job):
        await put_job("job-done", status="completed", completed_at=T0)

        assert await queue.request_cancellation("job-done") is False
        assert await queue.request_cancellation("missing") is False

    @pytest.mark.asyncio
    async def test_retry_resets_failed_job(self, queue, put_job):
        await put_job(
            "job-f",
            status="failed",
            progress=0.7,
            retry_count=2,
            error="boom",
            error_category=ErrorCategory.UNKNOWN,
            completed_at=T0,
            track_count=1,
            completed_tracks=0,
            track_progress=[{"track_id": 1, "status": "failed", "error": "boom"}],
        )

        assert await queue.request_retry("job-f") is True

        job = await queue.get_job("job-f")
        assert job.status == JobStatus.QUEUED
        assert job.progress == 0
        assert job.retry_count == 0
        assert job.error is None
        assert job.completed_at is None
        assert [t.status for t in job.track_progress] == [TrackStatus.PENDING]
        assert job.track_progress[0].error is None

    @pytest.mark.asyncio
    async def test_retry_refuses_active_job(self, queue, track_payload):
        job_id = await queue.enqueue_job(track_payload)

        assert await queue.request_retry(job_id) is False

    @pytest.mark.asyncio
    async def test_reschedule_keeps_retry_count(self, queue, put_job):
        await put_job("job-f", status="failed", retry_count=1, error="HTTP 503")

        assert await queue.reschedule_job("job-f", 30_000) is True

        job = await queue.get_job("job-f")
        assert job.status == JobStatus.QUEUED
        assert job.retry_count == 1
        assert job.next_retry_at == T0 + 30_000
        assert job.last_error == "HTTP 503"

    @pytest.mark.asyncio
    async def test_reschedule_cancels_flagged_job(self, queue, put_job, clock):
        await put_job(
            "job-f",
            status="failed",
            retry_count=1,
            error="ECONNREFUSED",
            cancellation_requested=True,
        )
        clock.advance(500)

        assert await queue.reschedule_job("job-f", 30_000) is False

        job = await queue.get_job("job-f")
        assert job.status == JobStatus.CANCELLED
        assert job.completed_at == T0 + 500
        assert job.next_retry_at is None
        assert await queue.dequeue_job() is None


class TestHousekeeping:
    @pytest.mark.asyncio
    async def test_stuck_job_is_failed(self, queue, put_job, clock):
        await put_job(
            "job-stuck",
            status="processing",
            started_at=T0 - 500_000,
            last_updated_at=T0 - 400_000,
        )
        queue._processing.add("job-stuck")

        assert await queue.cleanup_stuck_jobs(300_000) == 1

        job = await queue.get_job("job-stuck")
        assert job.status == JobStatus.FAILED
        assert job.error_category == ErrorCategory.UNKNOWN
        assert "job-stuck" not in queue.processing_ids

    @pytest.mark.asyncio
    async def test_recently_updated_job_is_not_stuck(self, queue, put_job):
        await put_job("job-busy", status="processing", last_updated_at=T0 - 1000)

        assert await queue.cleanup_stuck_jobs(300_000) == 0
        assert (await queue.get_job("job-busy")).status == JobStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_initialize_recovers_orphaned_jobs(self, queue, put_job):
        await put_job("job-a", status="processing", started_at=T0)
        await put_job("job-b", track_id=2)

        assert await queue.initialize_queue() == 1

        recovered = await queue.get_job("job-a")
        assert recovered.status == JobStatus.FAILED
        assert recovered.error == CRASH_RECOVERY_MESSAGE
        assert recovered.error_category == ErrorCategory.UNKNOWN
        assert (await queue.get_job("job-b")).status == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_cleanup_ttl(self, queue, put_job):
        ttl = 86_400_000
        await put_job("job-old", status="completed", completed_at=T0 - 2 * ttl)
        await put_job("job-new", track_id=2, status="completed", completed_at=T0)
        await put_job("job-queued", track_id=3, created_at=T0 - 3 * ttl)

        assert await queue.cleanup_old_jobs(ttl) == 1

        remaining = {job.id for job in await queue.get_all_jobs()}
        assert remaining == {"job-new", "job-queued"}

    @pytest.mark.asyncio
    async def test_delete_job(self, queue, track_payload):
        job_id = await queue.enqueue_job(track_payload)

        assert await queue.delete_job(job_id) is True
        assert await queue.delete_job(job_id) is False
        assert await queue.get_job(job_id) is None


class TestReads:
    @pytest.mark.asyncio
    async def test_corrupt_records_are_skipped(self, queue, store, put_job):
        await put_job("job-good")
        await store.hash_set(DEFAULT_QUEUE_KEY, "job-bad", "{not json")
        await store.hash_set(
            DEFAULT_QUEUE_KEY,
            "job-extra",
            json.dumps(
                {
                    "id": "job-extra",
                    "job": {"type": "track", "trackId": 5, "quality": "LOSSLESS"},
                    "createdAt": T0,
                    "mystery": True,
                }
            ),
        )

        jobs = await queue.get_all_jobs()

        assert [job.id for job in jobs] == ["job-good"]
        assert await queue.get_job("job-bad") is None

    @pytest.mark.asyncio
    async def test_stats_and_metrics(self, queue, put_job):
        await put_job("job-1", status="completed", started_at=T0, completed_at=T0 + 4000)
        await put_job("job-2", track_id=2, status="failed", retry_count=2, started_at=T0, completed_at=T0 + 2000)
        await put_job("job-3", track_id=3)

        stats = await queue.get_queue_stats()
        metrics = await queue.get_metrics()

        assert (stats.completed, stats.failed, stats.queued, stats.total) == (1, 1, 1, 3)
        assert metrics.avg_success_rate == 50.0
        assert metrics.total_download_time_ms == 6000
        assert metrics.avg_job_duration_ms == 3000
        assert metrics.avg_retry_count == pytest.approx(2 / 3)

    @pytest.mark.asyncio
    async def test_snapshot_reports_memory_backend(self, queue):
        snapshot = await queue.get_queue_snapshot()

        assert snapshot.backend == "memory"
        assert snapshot.degraded

    @pytest.mark.asyncio
    async def test_snapshot_after_redis_failure(self, clock, track_payload):
        queue = JobQueue(FallbackStore(FailingStore(), MemoryStore()), clock=clock)

        job_id = await queue.enqueue_job(track_payload)
        snapshot = await queue.get_queue_snapshot()

        assert [job.id for job in snapshot.jobs] == [job_id]
        assert snapshot.backend == "memory"
        assert "Redis is unavailable" in snapshot.warning

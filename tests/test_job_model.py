import json

import pytest

from tidal_queue.exceptions import JobRecordError
from tidal_queue.models.job import (
    SCHEMA_VERSION,
    AlbumJob,
    Job,
    JobStatus,
    TrackJob,
    dedup_key,
)


def make_job(**fields):
    data = {
        "id": "job-1",
        "payload": TrackJob(track_id=7, quality="HI_RES_LOSSLESS"),
        "created_at": 1000,
    }
    data.update(fields)
    return Job(**data)


class TestRecordFormat:
    def test_record_is_camel_case(self):
        record = json.loads(make_job(retry_count=1, next_retry_at=5000).to_record())

        assert record["schemaVersion"] == SCHEMA_VERSION
        assert record["job"] == {
            "type": "track",
            "trackId": 7,
            "quality": "HI_RES_LOSSLESS",
        }
        assert record["retryCount"] == 1
        assert record["nextRetryAt"] == 5000
        assert "error" not in record

    def test_round_trip(self):
        job = make_job(status=JobStatus.FAILED, error="boom", completed_at=2000)

        assert Job.from_record(job.to_record()) == job

    def test_record_without_version_reads_as_v1(self):
        raw = json.dumps(
            {
                "id": "job-legacy",
                "job": {"type": "album", "albumId": 3, "quality": "LOSSLESS"},
                "status": "queued",
                "createdAt": 1,
            }
        )

        job = Job.from_record(raw)

        assert job.schema_version == 1
        assert isinstance(job.payload, AlbumJob)
        assert job.payload.target_id == 3

    def test_unknown_field_at_current_version_rejected(self):
        record = json.loads(make_job().to_record())
        record["surprise"] = 1

        with pytest.raises(JobRecordError, match="surprise"):
            Job.from_record(json.dumps(record))

    def test_newer_version_keeps_extra_fields(self):
        record = json.loads(make_job().to_record())
        record["schemaVersion"] = SCHEMA_VERSION + 1
        record["lease"] = {"owner": "worker-2"}

        job = Job.from_record(json.dumps(record))
        rewritten = json.loads(job.merged({"progress": 0.5}).to_record())

        assert rewritten["lease"] == {"owner": "worker-2"}
        assert rewritten["progress"] == 0.5

    @pytest.mark.parametrize("raw", ["{broken", "[]", b"\xff\xfe"])
    def test_corrupt_record(self, raw):
        with pytest.raises(JobRecordError):
            Job.from_record(raw)

    def test_invalid_status_rejected(self):
        record = json.loads(make_job().to_record())
        record["status"] = "paused"

        with pytest.raises(JobRecordError):
            Job.from_record(json.dumps(record))


class TestValidation:
    def test_completed_tracks_cannot_exceed_track_count(self):
        with pytest.raises(ValueError):
            make_job(track_count=2, completed_tracks=3)

    def test_progress_bounds(self):
        with pytest.raises(ValueError):
            make_job(progress=1.5)

    def test_quality_must_be_known(self):
        with pytest.raises(ValueError):
            TrackJob(track_id=1, quality="MP3")

    def test_merged_rejects_unknown_field(self):
        with pytest.raises(JobRecordError):
            make_job().merged({"colour": "blue"})

    def test_merged_none_clears_field(self):
        job = make_job(error="boom")

        assert job.merged({"error": None}).error is None

    def test_dedup_key(self):
        album = AlbumJob(album_id=9, quality="LOSSLESS")

        assert dedup_key(album) == ("album", 9, "LOSSLESS")
        assert dedup_key(TrackJob(track_id=9, quality="LOSSLESS")) != dedup_key(album)

import json

import pytest

from tidal_queue.core.queue_manager import JobQueue
from tidal_queue.storage.store import MemoryStore
from tidal_queue.utils.formatting import (
    format_age,
    format_duration,
    format_eta,
    format_size,
    format_speed,
)
from tidal_queue.utils.structured_logger import create_structured_logger


@pytest.mark.parametrize(
    "size, expected",
    [(0, "0 B"), (512, "512.0 B"), (1536, "1.5 KB"), (10 * 1024 * 1024, "10.0 MB")],
)
def test_format_size(size, expected):
    assert format_size(size) == expected


def test_format_duration_and_eta():
    assert format_duration(0) == "0s"
    assert format_duration(3725) == "1h 2m 5s"
    assert format_eta(None) == "--"
    assert format_eta(61) == "1m 1s"
    assert format_speed(2048) == "2.0 KB/s"
    assert format_age(1_000, 6_000) == "5s ago"
    assert format_age(None, 6_000) == "-"


@pytest.mark.asyncio
async def test_job_events_are_written_as_json_lines(tmp_path):
    base, job_events, _ = create_structured_logger(log_dir=tmp_path, enable_json=True)
    queue = JobQueue(MemoryStore(), clock=lambda: 1_000, events=job_events)

    job_id = await queue.enqueue_job(
        {"type": "album", "album_id": 3, "quality": "LOSSLESS"}, priority="low"
    )
    base.close()

    (log_file,) = tmp_path.glob("tidal_queue_*.jsonl")
    entries = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
    assert entries[0]["event"] == "job_enqueued"
    assert entries[0]["job_id"] == job_id
    assert entries[0]["type"] == "album"
    assert entries[0]["priority"] == "low"
    assert "session_id" in entries[0]


def test_json_output_disabled_without_directory():
    base, _, _ = create_structured_logger(log_dir=None, enable_json=True)

    assert base.enable_json is False

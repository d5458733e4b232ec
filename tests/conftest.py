"""Shared fixtures and fakes for the test suite."""

import json
from typing import Any, Callable, Optional

import pytest

from tidal_queue.core.cancellation import CancellationToken
from tidal_queue.core.queue_manager import DEFAULT_QUEUE_KEY, JobQueue
from tidal_queue.core.worker import AlbumListing, TrackDownloadRequest, TrackDownloadResult
from tidal_queue.exceptions import StoreUnavailableError
from tidal_queue.models.job import Job, TrackJob
from tidal_queue.storage.store import JobStore, MemoryStore
from tidal_queue.transport.http_client import HttpResponse

T0 = 1_700_000_000_000


class FakeClock:
    """Epoch-milliseconds clock that only moves when told to."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FailingStore(JobStore):
    """A durable store that is never reachable."""

    backend_name = "redis"

    def __init__(self):
        self.calls = 0

    async def _fail(self, *args):
        self.calls += 1
        raise StoreUnavailableError("Connection refused")

    async def hash_get_all(self, key):
        return await self._fail(key)

    async def hash_get(self, key, field):
        return await self._fail(key, field)

    async def hash_set(self, key, field, value):
        return await self._fail(key, field, value)

    async def hash_delete(self, key, field):
        return await self._fail(key, field)


class FakeHttpClient:
    """Records requests and answers them from a responder function."""

    def __init__(self, responder: Callable[..., HttpResponse]):
        self.responder = responder
        self.requests: list[dict[str, Any]] = []

    async def request(
        self,
        method,
        url,
        *,
        json=None,
        data=None,
        headers=None,
        timeout=None,
        max_retries=None,
        cancel_token=None,
    ):
        call = {
            "method": method,
            "url": url,
            "json": json,
            "data": data,
            "headers": headers or {},
            "timeout": timeout,
            "max_retries": max_retries,
        }
        self.requests.append(call)
        return self.responder(call)


def json_response(status: int, payload: Any) -> HttpResponse:
    return HttpResponse(
        status=status,
        headers={"Content-Type": "application/json"},
        body=json.dumps(payload).encode(),
    )


class FakeExecutor:
    """Download executor with scripted per-track outcomes."""

    def __init__(
        self,
        results: Optional[dict[int, TrackDownloadResult]] = None,
        album: Optional[AlbumListing] = None,
        album_error: Optional[Exception] = None,
    ):
        self.results = results or {}
        self.album = album
        self.album_error = album_error
        self.downloaded: list[TrackDownloadRequest] = []
        self.on_download: Optional[Callable[[TrackDownloadRequest, CancellationToken], None]] = None

    async def download_track(self, request, token):
        self.downloaded.append(request)
        if self.on_download:
            self.on_download(request, token)
        return self.results.get(
            request.track_id,
            TrackDownloadResult(success=True, filepath=f"/music/{request.track_id}.flac", file_size=1024),
        )

    async def fetch_album(self, album_id):
        if self.album_error:
            raise self.album_error
        return self.album


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def queue(store, clock):
    return JobQueue(store, clock=clock)


@pytest.fixture
def put_job(store):
    """Writes a job record straight into the store."""

    async def _put(job_id: str = "job-1", **fields) -> Job:
        data = {
            "id": job_id,
            "payload": TrackJob(track_id=fields.pop("track_id", 1), quality="LOSSLESS"),
            "created_at": fields.pop("created_at", T0),
        }
        data.update(fields)
        job = Job(**data)
        await store.hash_set(DEFAULT_QUEUE_KEY, job.id, job.to_record())
        return job

    return _put


@pytest.fixture
def track_payload():
    return {"type": "track", "track_id": 42, "quality": "LOSSLESS"}

"""
Chunked upload of finished track files to the download server.

A track is announced with its metadata first; the server answers with an
upload id and, for large files, the number of chunks it expects. Chunks are
then posted in order, each with its own retries, and the server's answer to
the final chunk decides whether the upload succeeded.
"""

import base64
import hashlib
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from tidal_queue.core.cancellation import CancellationToken
from tidal_queue.exceptions import (
    ChunkUploadError,
    InvalidChunkParametersError,
    UploadCancelledError,
    UploadError,
    UploadIncompleteError,
)
from tidal_queue.transport.http_client import HttpResponse, RetryingHttpClient
from tidal_queue.utils.structured_logger import UploadEventLogger

log = logging.getLogger(__name__)

MIB = 1024 * 1024
DEFAULT_CHUNK_SIZE = 2 * MIB
CHECKSUM_WINDOW = MIB
# Files above this size are chunked unless the caller decides otherwise
CHUNKED_THRESHOLD = MIB


@dataclass
class UploadProgress:
    uploaded: int
    total: int
    speed: float  # bytes per second
    eta: Optional[float] = None  # seconds

    @property
    def percent(self) -> float:
        return 100.0 * self.uploaded / self.total if self.total else 100.0


@dataclass
class UploadResult:
    success: bool
    filepath: Optional[str] = None
    message: Optional[str] = None
    action: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ChunkUploadSession:
    """Byte accounting for one chunked upload."""

    upload_id: str
    total_chunks: int
    chunk_size: int
    uploaded_bytes: int = 0

    def chunk_bounds(self, index: int, blob_size: int) -> tuple[int, int]:
        start = index * self.chunk_size
        return start, min(start + self.chunk_size, blob_size)


@dataclass
class TrackUploadRequest:
    """What the server needs to know to store a track."""

    track_id: int
    quality: str
    album_title: str
    artist_name: str
    track_title: Optional[str] = None
    conflict_resolution: str = "overwrite_if_different"
    check_existing: bool = False
    download_cover_separately: bool = False
    cover_url: Optional[str] = None
    track_metadata: Optional[dict[str, Any]] = field(default=None, repr=False)

    def identity(self) -> dict[str, Any]:
        return {
            "trackId": self.track_id,
            "quality": self.quality,
            "albumTitle": self.album_title,
            "artistName": self.artist_name,
            "trackTitle": self.track_title,
        }


ProgressCallback = Callable[[UploadProgress], None]


def compute_checksum(blob: bytes) -> str:
    """SHA-256 hex digest of the first MiB of ``blob`` (all of it if smaller)."""
    return hashlib.sha256(blob[:CHECKSUM_WINDOW]).hexdigest()


def format_server_error(payload: Any, fallback: str) -> str:
    """Extracts the most useful message from a server error body."""
    if not payload:
        return fallback
    if isinstance(payload, str):
        return payload
    if not isinstance(payload, dict):
        return fallback

    error = payload.get("error")
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        message = error.get("message")
        suggestion = error.get("suggestion")
        if isinstance(message, str) and isinstance(suggestion, str):
            return f"{message} {suggestion}"
        if isinstance(message, str):
            return message

    for key in ("userMessage", "message"):
        if isinstance(payload.get(key), str):
            return payload[key]
    return fallback


def _json_or_none(response: HttpResponse) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _require_positive(name: str, value: Any) -> int:
    if (
        isinstance(value, bool)
        or not isinstance(value, (int, float))
        or not math.isfinite(value)
        or value <= 0
    ):
        raise InvalidChunkParametersError(f"Invalid {name} for upload: {value!r}")
    return int(value)


class ChunkedUploader:
    """Uploads track blobs to the server, in chunks when they are large."""

    def __init__(
        self,
        http_client: RetryingHttpClient,
        base_url: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_timeout: float = 30.0,
        chunk_retries: int = 3,
        events: Optional[UploadEventLogger] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.http = http_client
        self.base_url = base_url.rstrip("/")
        self.chunk_size = chunk_size
        self.chunk_timeout = chunk_timeout
        self.chunk_retries = chunk_retries
        self._events = events
        self._clock = clock

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def upload_in_chunks(
        self,
        blob: bytes,
        upload_id: str,
        total_chunks: int,
        chunk_size: int,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> UploadResult:
        """
        Posts ``blob`` to the server as ``total_chunks`` sequential slices.

        Raises:
            InvalidChunkParametersError: Before any request, if the chunk
                count or size is not a positive finite number.
            UploadCancelledError: If ``cancel_token`` fires between chunks.
            ChunkUploadError: If the server rejects a chunk.
            TransportError: If a chunk could not be delivered after retries.
            UploadIncompleteError: If the final chunk is not acknowledged
                with ``success: true``.
        """
        session = ChunkUploadSession(
            upload_id=upload_id,
            total_chunks=_require_positive("totalChunks", total_chunks),
            chunk_size=_require_positive("chunkSize", chunk_size),
        )
        total = len(blob)
        started = self._clock()
        final_data: Any = None

        for index in range(session.total_chunks):
            if cancel_token:
                cancel_token.raise_if_cancelled(UploadCancelledError)

            start, end = session.chunk_bounds(index, total)
            chunk = blob[start:end]
            response = await self.http.request(
                "POST",
                self._url(f"/api/download-track/{upload_id}/chunk"),
                data=chunk,
                headers={
                    "Content-Type": "application/octet-stream",
                    "x-chunk-index": str(index),
                    "x-total-chunks": str(session.total_chunks),
                },
                timeout=self.chunk_timeout,
                max_retries=self.chunk_retries,
                cancel_token=cancel_token,
            )
            if not response.ok:
                message = format_server_error(
                    _json_or_none(response),
                    f"Chunk {index + 1} upload failed: {response.status}",
                )
                if self._events:
                    self._events.upload_failed(upload_id, message, chunk=index + 1)
                raise ChunkUploadError(message, status_code=response.status)

            session.uploaded_bytes += len(chunk)
            elapsed = self._clock() - started
            speed = session.uploaded_bytes / elapsed if elapsed > 0 else 0.0
            remaining = total - session.uploaded_bytes
            eta = remaining / speed if speed > 0 else None
            if on_progress:
                on_progress(
                    UploadProgress(
                        uploaded=session.uploaded_bytes,
                        total=total,
                        speed=speed,
                        eta=eta,
                    )
                )
            if self._events:
                self._events.chunk_sent(
                    upload_id, index, session.total_chunks, session.uploaded_bytes
                )

            if index == session.total_chunks - 1:
                final_data = _json_or_none(response)

        if not isinstance(final_data, dict) or final_data.get("success") is not True:
            raise UploadIncompleteError("Failed to complete chunked upload")

        action = final_data.get("action") or "overwrite"
        if self._events:
            self._events.upload_completed(
                upload_id, total, self._clock() - started, action
            )
        return UploadResult(
            success=True,
            filepath=final_data.get("filepath"),
            message=final_data.get("message"),
            action=action,
        )

    async def check_existing(
        self, request: TrackUploadRequest, cancel_token: Optional[CancellationToken] = None
    ) -> Optional[UploadResult]:
        """
        Asks the server whether it already has this track.

        Returns a skipped result if it does, None otherwise. Failures of the
        check are logged and treated as "not present".
        """
        try:
            response = await self.http.request(
                "POST",
                self._url("/api/download-check"),
                json=request.identity(),
                timeout=5.0,
                max_retries=1,
                cancel_token=cancel_token,
            )
        except UploadCancelledError:
            raise
        except UploadError as e:
            log.warning(f"Failed to check for an existing file: {e}")
            return None

        data = _json_or_none(response) if response.ok else None
        if isinstance(data, dict) and data.get("exists"):
            log.info(f"[yellow]File already exists on server: {data.get('filepath')}[/yellow]")
            return UploadResult(
                success=True,
                filepath=data.get("filepath"),
                message="File already exists on server, skipped download.",
                action="skipped",
            )
        return None

    async def upload_track(
        self,
        blob: bytes,
        request: TrackUploadRequest,
        use_chunks: Optional[bool] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> UploadResult:
        """
        Announces a track to the server and uploads its bytes.

        Upload failures are reported in the result rather than raised.

        Raises:
            UploadCancelledError: If ``cancel_token`` fires.
        """
        if not blob:
            return UploadResult(success=False, error="No blob provided")

        use_chunks = len(blob) > CHUNKED_THRESHOLD if use_chunks is None else use_chunks
        label = request.track_title or request.track_id
        log.info(
            f"Sending metadata for '{label}' ({len(blob) / MIB:.2f} MB)"
            f"{' (chunked)' if use_chunks else ''}"
        )

        try:
            if request.check_existing:
                skipped = await self.check_existing(request, cancel_token)
                if skipped:
                    return skipped

            response = await self.http.request(
                "POST",
                self._url("/api/download-track"),
                json={
                    **request.identity(),
                    "blobSize": len(blob),
                    "useChunks": use_chunks,
                    "chunkSize": self.chunk_size,
                    "checksum": compute_checksum(blob),
                    "conflictResolution": request.conflict_resolution,
                    "downloadCoverSeperately": request.download_cover_separately,
                    "coverUrl": request.cover_url,
                    "trackMetadata": request.track_metadata,
                },
                timeout=10.0,
                max_retries=2,
                cancel_token=cancel_token,
            )
            if not response.ok:
                raise UploadError(
                    format_server_error(
                        _json_or_none(response), f"HTTP {response.status}"
                    )
                )

            data = _json_or_none(response)
            if not isinstance(data, dict):
                raise UploadError("Server returned an unreadable upload response")
            upload_id = data.get("uploadId")

            if data.get("chunked") and use_chunks:
                try:
                    return await self.upload_in_chunks(
                        blob,
                        upload_id,
                        data.get("totalChunks"),
                        self.chunk_size,
                        on_progress=on_progress,
                        cancel_token=cancel_token,
                    )
                except InvalidChunkParametersError as e:
                    raise UploadError("Invalid chunked upload response") from e
            return await self._upload_single(blob, upload_id, request, cancel_token)

        except UploadCancelledError:
            raise
        except UploadError as e:
            log.error(f"[red]Upload of '{label}' failed: {e}[/red]")
            if self._events:
                self._events.upload_failed(str(request.track_id), str(e))
            return UploadResult(success=False, error=str(e))

    async def _upload_single(
        self,
        blob: bytes,
        upload_id: Optional[str],
        request: TrackUploadRequest,
        cancel_token: Optional[CancellationToken],
    ) -> UploadResult:
        if cancel_token:
            cancel_token.raise_if_cancelled(UploadCancelledError)
        started = self._clock()
        response = await self.http.request(
            "POST",
            self._url("/api/download-track"),
            json={
                "uploadId": upload_id,
                **request.identity(),
                "blob": base64.b64encode(blob).decode("ascii"),
                "conflictResolution": request.conflict_resolution,
                "downloadCoverSeperately": request.download_cover_separately,
                "coverUrl": request.cover_url,
                "trackMetadata": request.track_metadata,
            },
            timeout=self.chunk_timeout,
            max_retries=0,
            cancel_token=cancel_token,
        )
        if not response.ok:
            raise UploadError(
                format_server_error(
                    _json_or_none(response), f"Upload failed: {response.status}"
                )
            )

        data = _json_or_none(response) or {}
        if self._events:
            self._events.upload_completed(
                str(upload_id), len(blob), self._clock() - started, data.get("action", "")
            )
        return UploadResult(
            success=True,
            filepath=data.get("filepath"),
            message=data.get("message"),
            action=data.get("action"),
        )

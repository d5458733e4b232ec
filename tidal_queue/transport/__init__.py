"""
Upload Transport Layer.

This package moves finished track files to the download server over HTTP,
in retried chunks for large files.
"""

from .http_client import HttpResponse, RetryingHttpClient
from .uploader import (
    ChunkedUploader,
    ChunkUploadSession,
    TrackUploadRequest,
    UploadProgress,
    UploadResult,
    compute_checksum,
)

__all__ = [
    "ChunkUploadSession",
    "ChunkedUploader",
    "HttpResponse",
    "RetryingHttpClient",
    "TrackUploadRequest",
    "UploadProgress",
    "UploadResult",
    "compute_checksum",
]
